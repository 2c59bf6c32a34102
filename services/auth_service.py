# services/auth_service.py
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError

from dtos import AuthResultDTO, LoginDTO, RegisterDTO, TokenPayload, UserDTO
from errors import authentication_error, conflict
from models import User
from repositories.user_repo import UserRepository

logger = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Одно сообщение на неизвестный email и неверный пароль, чтобы не раскрывать,
# какие адреса зарегистрированы
INVALID_CREDENTIALS = "Invalid email or password"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


class AuthService:
    def __init__(
        self,
        user_repo: UserRepository,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
        expire_days: int = 7,
    ):
        self.user_repo = user_repo
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.expire_days = expire_days

    def create_access_token(self, user: User) -> str:
        payload = TokenPayload(user_id=user.id, name=user.name, email=user.email).model_dump(by_alias=True)
        now = datetime.now(timezone.utc)
        payload["iat"] = now
        payload["exp"] = now + timedelta(days=self.expire_days)
        return jwt.encode(payload, self.jwt_secret, algorithm=self.jwt_algorithm)

    def decode_token(self, token: str) -> TokenPayload:
        try:
            claims = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except ExpiredSignatureError:
            raise authentication_error("Token has expired")
        except JWTError:
            raise authentication_error("Invalid token")

        try:
            return TokenPayload.model_validate(claims)
        except ValueError:
            raise authentication_error("Invalid token")

    async def register(self, payload: RegisterDTO, ip: Optional[str] = None) -> AuthResultDTO:
        email = payload.email.lower()
        if await self.user_repo.get_by_email(email) is not None:
            raise conflict("Email is already registered")

        password_hash = await asyncio.to_thread(hash_password, payload.password)
        try:
            user = await self.user_repo.create_user(
                email=email,
                password_hash=password_hash,
                name=payload.name or email.split("@")[0],
                ip=ip,
            )
        except IntegrityError:
            # Параллельная регистрация с тем же email
            raise conflict("Email is already registered")

        logger.info("User registered", user_id=user.id, ip=ip)
        return AuthResultDTO(token=self.create_access_token(user), user=UserDTO.model_validate(user))

    async def login(self, payload: LoginDTO, ip: Optional[str] = None) -> AuthResultDTO:
        email = payload.email.lower()
        user = await self.user_repo.get_by_email(email)
        # bcrypt медленный: проверяем в отдельном потоке и до открытия транзакции
        ok = user is not None and await asyncio.to_thread(verify_password, payload.password, user.password)
        if ok:
            user = await self.user_repo.record_login(user.id, ip=ip)
        if not ok or user is None:
            logger.warning(
                "Login failed",
                reason="unknown_email" if user is None else "wrong_password",
                ip=ip,
            )
            raise authentication_error(INVALID_CREDENTIALS)

        logger.info("User logged in", user_id=user.id, ip=ip)
        return AuthResultDTO(token=self.create_access_token(user), user=UserDTO.model_validate(user))
