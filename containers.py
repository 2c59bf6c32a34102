# containers.py
from dependency_injector import containers, providers

from config import get_settings
from db import create_engine, create_session_factory
from repositories.chat_repo import ChatRepository
from repositories.message_repo import MessageRepository
from repositories.model_repo import ModelRepository
from repositories.user_repo import UserRepository
from services.auth_service import AuthService
from services.chat_service import ChatLockRegistry, ChatService
from services.llm_provider import LLMFactory
from services.rate_limit import InMemoryRateLimitStore
from services.token_service import TokenCounter
from services.user_service import UserService


class Container(containers.DeclarativeContainer):
    """
    Контейнер зависимостей приложения.
    Модули для @inject подключаются явно в main.create_app().
    """

    settings = providers.Singleton(get_settings)

    # --- База данных ---
    # Один движок на процесс, сессии репозитории открывают сами на каждую операцию
    engine = providers.Singleton(create_engine, settings.provided.database_url)
    session_factory = providers.Singleton(create_session_factory, engine)

    # --- Репозитории ---
    user_repo: providers.Factory[UserRepository] = providers.Factory(
        UserRepository,
        session_factory=session_factory,
    )

    chat_repo: providers.Factory[ChatRepository] = providers.Factory(
        ChatRepository,
        session_factory=session_factory,
    )

    message_repo: providers.Factory[MessageRepository] = providers.Factory(
        MessageRepository,
        session_factory=session_factory,
    )

    model_repo: providers.Factory[ModelRepository] = providers.Factory(
        ModelRepository,
        session_factory=session_factory,
    )

    # --- Общие на процесс объекты ---
    token_counter = providers.Singleton(TokenCounter, settings.provided.token_encoding)

    llm_factory = providers.Singleton(
        LLMFactory,
        temperature=settings.provided.llm_temperature,
        max_tokens=settings.provided.llm_max_tokens,
        timeout=settings.provided.llm_timeout_seconds,
    )

    chat_locks = providers.Singleton(ChatLockRegistry)
    rate_limit_store = providers.Singleton(InMemoryRateLimitStore)

    # --- Сервисы ---
    auth_service: providers.Factory[AuthService] = providers.Factory(
        AuthService,
        user_repo=user_repo,
        jwt_secret=settings.provided.jwt_secret,
        jwt_algorithm=settings.provided.jwt_algorithm,
        expire_days=settings.provided.jwt_expire_days,
    )

    user_service: providers.Factory[UserService] = providers.Factory(
        UserService,
        user_repo=user_repo,
        chat_repo=chat_repo,
        message_repo=message_repo,
    )

    chat_service: providers.Factory[ChatService] = providers.Factory(
        ChatService,
        chat_repo=chat_repo,
        message_repo=message_repo,
        model_repo=model_repo,
        llm_factory=llm_factory,
        token_counter=token_counter,
        chat_locks=chat_locks,
        history_limit=settings.provided.chat_history_limit,
    )


# Создаем единственный экземпляр контейнера для всего приложения
container = Container()
