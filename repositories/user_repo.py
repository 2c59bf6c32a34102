# repositories/user_repo.py
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import User, utcnow


class UserRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_user(
        self,
        email: str,
        password_hash: str,
        name: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> User:
        user = User(
            email=email,
            password=password_hash,
            name=name,
            last_login_at=utcnow(),
            last_login_ip=ip,
        )
        async with self.session_factory() as session:
            session.add(user)
            await session.commit()
            await session.refresh(user)
        return user

    async def get_by_email(self, email: str) -> Optional[User]:
        async with self.session_factory() as session:
            q = await session.execute(select(User).where(User.email == email))
            return q.scalars().first()

    async def get_by_id(self, user_id: int) -> Optional[User]:
        async with self.session_factory() as session:
            return await session.get(User, user_id)

    async def record_login(self, user_id: int, ip: Optional[str] = None) -> Optional[User]:
        """Отмечает время и IP успешного входа."""
        async with self.session_factory.begin() as session:
            user = await session.get(User, user_id)
            if user is None:
                return None
            user.last_login_at = utcnow()
            user.last_login_ip = ip
        return user

    async def update_profile(
        self,
        user_id: int,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Optional[User]:
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                return None
            if name is not None:
                user.name = name
            if avatar is not None:
                user.avatar = avatar
            await session.commit()
            await session.refresh(user)
            return user

    async def update_password(self, user_id: int, password_hash: str) -> None:
        async with self.session_factory.begin() as session:
            await session.execute(
                update(User).where(User.id == user_id).values(password=password_hash, updated_at=utcnow())
            )
