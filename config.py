# config.py
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

from dotenv import load_dotenv

# Переменные окружения подхватываются из .env до чтения настроек
load_dotenv()

DEV_JWT_SECRET = "dev-only-secret-change-me"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class DefaultModelSettings:
    """
    Модель, которую кладём в реестр при старте, если он пуст.
    """
    model_id: str
    name: str
    provider: str = "openai"
    base_url: Optional[str] = None
    api_key: Optional[str] = None


@dataclass(frozen=True)
class Settings:
    env: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000

    database_url: str = "sqlite+aiosqlite:///./chat_app.db"

    jwt_secret: str = DEV_JWT_SECRET
    jwt_algorithm: str = "HS256"
    jwt_expire_days: int = 7

    cors_origins: Tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    log_format: str = "console"

    # Параметры вызова модели (раньше были зашиты в коде)
    llm_temperature: float = 0.7
    llm_max_tokens: int = 4096
    llm_timeout_seconds: float = 60.0

    chat_history_limit: int = 10
    token_encoding: str = "cl100k_base"

    default_model: Optional[DefaultModelSettings] = None

    @property
    def is_development(self) -> bool:
        return self.env == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.getenv("APP_ENV", "development").lower()

        jwt_secret = os.getenv("JWT_SECRET", "")
        if not jwt_secret:
            if env != "development":
                raise RuntimeError(f"JWT_SECRET must be set when APP_ENV={env}")
            jwt_secret = DEV_JWT_SECRET

        default_model = None
        default_model_id = os.getenv("DEFAULT_MODEL_ID")
        if default_model_id:
            default_model = DefaultModelSettings(
                model_id=default_model_id,
                name=os.getenv("DEFAULT_MODEL_NAME", default_model_id),
                provider=os.getenv("DEFAULT_MODEL_PROVIDER", "openai"),
                base_url=os.getenv("DEFAULT_MODEL_BASE_URL") or None,
                api_key=os.getenv("DEFAULT_MODEL_API_KEY") or None,
            )

        return cls(
            env=env,
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8000),
            database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./chat_app.db"),
            jwt_secret=jwt_secret,
            jwt_expire_days=_env_int("JWT_EXPIRE_DAYS", 7),
            cors_origins=_env_list("CORS_ORIGINS", ("*",)),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "console").lower(),
            llm_temperature=_env_float("LLM_TEMPERATURE", 0.7),
            llm_max_tokens=_env_int("LLM_MAX_TOKENS", 4096),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 60.0),
            chat_history_limit=_env_int("CHAT_HISTORY_LIMIT", 10),
            token_encoding=os.getenv("TOKEN_ENCODING", "cl100k_base"),
            default_model=default_model,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
