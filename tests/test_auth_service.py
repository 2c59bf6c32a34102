"""
Tests for registration, login and JWT handling.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from dtos import LoginDTO, RegisterDTO
from errors import AppError, ErrorKind
from services import auth_service as auth_module
from services.auth_service import AuthService, hash_password, verify_password

SECRET = "test-secret"


@pytest.fixture
def auth_service(user_repo):
    return AuthService(user_repo, jwt_secret=SECRET)


class TestPasswordHashing:
    """bcrypt helpers."""

    def test_hash_is_not_plaintext(self):
        hashed = hash_password("secret123")
        assert hashed != "secret123"
        assert verify_password("secret123", hashed)
        assert not verify_password("wrong", hashed)

    def test_hash_is_salted(self):
        assert hash_password("secret123") != hash_password("secret123")


class TestRegister:
    """Account creation."""

    async def test_register_returns_token(self, auth_service, user_repo):
        result = await auth_service.register(RegisterDTO(email="Alice@Example.com", password="secret123", name="Alice"))

        assert result.user.email == "alice@example.com"
        assert result.user.name == "Alice"
        claims = jwt.decode(result.token, SECRET, algorithms=["HS256"])
        assert claims["userId"] == result.user.id
        assert claims["email"] == "alice@example.com"
        assert claims["name"] == "Alice"
        assert claims["exp"] - claims["iat"] == 7 * 24 * 3600

        stored = await user_repo.get_by_email("alice@example.com")
        assert stored.password != "secret123"

    async def test_name_defaults_to_email_prefix(self, auth_service):
        result = await auth_service.register(RegisterDTO(email="carol@example.com", password="secret123"))
        assert result.user.name == "carol"

    async def test_duplicate_email(self, auth_service):
        await auth_service.register(RegisterDTO(email="dup@example.com", password="secret123"))

        with pytest.raises(AppError) as exc_info:
            await auth_service.register(RegisterDTO(email="DUP@example.com", password="other123"))

        assert exc_info.value.kind == ErrorKind.CONFLICT
        assert exc_info.value.status_code == 409


class TestLogin:
    """Credential checks."""

    async def test_login_updates_last_login(self, auth_service, user_repo):
        await auth_service.register(RegisterDTO(email="dave@example.com", password="secret123"))

        result = await auth_service.login(LoginDTO(email="Dave@example.com", password="secret123"), ip="10.0.0.1")

        assert result.user.email == "dave@example.com"
        stored = await user_repo.get_by_email("dave@example.com")
        assert stored.last_login_ip == "10.0.0.1"

    async def test_failures_look_the_same(self, auth_service):
        await auth_service.register(RegisterDTO(email="erin@example.com", password="secret123"))

        with pytest.raises(AppError) as wrong_password:
            await auth_service.login(LoginDTO(email="erin@example.com", password="bad-password"))
        with pytest.raises(AppError) as unknown_email:
            await auth_service.login(LoginDTO(email="nobody@example.com", password="secret123"))

        assert wrong_password.value.status_code == unknown_email.value.status_code == 401
        assert wrong_password.value.message == unknown_email.value.message

    async def test_wrong_password_keeps_last_login(self, auth_service, user_repo):
        await auth_service.register(RegisterDTO(email="fay@example.com", password="secret123"))
        before = (await user_repo.get_by_email("fay@example.com")).last_login_at

        with pytest.raises(AppError):
            await auth_service.login(LoginDTO(email="fay@example.com", password="bad-password"), ip="1.2.3.4")

        stored = await user_repo.get_by_email("fay@example.com")
        assert stored.last_login_at == before
        assert stored.last_login_ip != "1.2.3.4"


class TestTokens:
    """Token decoding."""

    async def test_round_trip(self, auth_service):
        result = await auth_service.register(RegisterDTO(email="gus@example.com", password="secret123"))

        payload = auth_service.decode_token(result.token)

        assert payload.user_id == result.user.id
        assert payload.email == "gus@example.com"

    async def test_expired_token(self, auth_service):
        token = jwt.encode(
            {"userId": 1, "email": "x@example.com", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(AppError) as exc_info:
            auth_service.decode_token(token)

        assert exc_info.value.status_code == 401
        assert exc_info.value.message == "Token has expired"

    async def test_foreign_signature(self, auth_service):
        token = jwt.encode({"userId": 1, "email": "x@example.com"}, "other-secret", algorithm="HS256")

        with pytest.raises(AppError) as exc_info:
            auth_service.decode_token(token)

        assert exc_info.value.message == "Invalid token"

    async def test_missing_claims(self, auth_service):
        token = jwt.encode({"sub": "1"}, SECRET, algorithm="HS256")

        with pytest.raises(AppError) as exc_info:
            auth_service.decode_token(token)

        assert exc_info.value.message == "Invalid token"


def recording_thread(threads, fn):
    def wrapper(*args):
        threads.append(threading.get_ident())
        return fn(*args)
    return wrapper


class TestPasswordWorkOffLoop:
    """bcrypt does not run on the event loop thread."""

    async def test_register_and_login(self, auth_service, monkeypatch):
        threads = []
        monkeypatch.setattr(auth_module, "hash_password", recording_thread(threads, hash_password))
        monkeypatch.setattr(auth_module, "verify_password", recording_thread(threads, verify_password))

        await auth_service.register(RegisterDTO(email="hank@example.com", password="secret123"))
        await auth_service.login(LoginDTO(email="hank@example.com", password="secret123"))

        assert len(threads) == 2
        assert threading.get_ident() not in threads

    async def test_unknown_email_skips_hashing(self, auth_service, monkeypatch):
        threads = []
        monkeypatch.setattr(auth_module, "verify_password", recording_thread(threads, verify_password))

        with pytest.raises(AppError):
            await auth_service.login(LoginDTO(email="ghost@example.com", password="secret123"))

        assert threads == []
