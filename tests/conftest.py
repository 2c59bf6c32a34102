import asyncio
from typing import List, Optional, Sequence

import pytest
from dependency_injector import providers
from fastapi.testclient import TestClient
from langchain_core.messages import AIMessage, AIMessageChunk

from config import DefaultModelSettings, Settings
from db import create_engine, create_session_factory, init_db
from repositories.chat_repo import ChatRepository
from repositories.message_repo import MessageRepository
from repositories.model_repo import ModelRepository
from repositories.user_repo import UserRepository
from services.chat_service import ChatLockRegistry, ChatService


class FakeUpstreamError(Exception):
    """Ошибка провайдера с HTTP-статусом, как у openai.APIStatusError."""

    def __init__(self, message: str = "bad gateway", status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


class ScriptedChatModel:
    """
    Подмена langchain-модели: отдаёт заранее заданные чанки
    и запоминает, с какими сообщениями её вызвали.
    """

    def __init__(
        self,
        chunks: Sequence[str] = ("Hello", ", world"),
        reasoning: Optional[str] = None,
        usage: Optional[dict] = None,
        error: Optional[Exception] = None,
        fail_at: int = 0,
        delay: float = 0.0,
        hang_after: Optional[int] = None,
    ):
        self.chunks = list(chunks)
        self.reasoning = reasoning
        self.usage = usage
        self.error = error
        self.fail_at = fail_at
        self.delay = delay
        self.hang_after = hang_after
        self.calls: List[list] = []
        self.cancelled = False

    async def astream(self, messages):
        self.calls.append(list(messages))
        for i, text in enumerate(self.chunks):
            if self.error is not None and i == self.fail_at:
                raise self.error
            if self.hang_after is not None and i == self.hang_after:
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    self.cancelled = True
                    raise
            if self.delay:
                await asyncio.sleep(self.delay)
            yield AIMessageChunk(content=text)
        if self.error is not None and self.fail_at >= len(self.chunks):
            raise self.error
        if self.reasoning:
            yield AIMessageChunk(content="", additional_kwargs={"reasoning_content": self.reasoning})
        if self.usage:
            yield AIMessageChunk(content="", usage_metadata=dict(self.usage))

    async def ainvoke(self, messages):
        self.calls.append(list(messages))
        if self.error is not None:
            raise self.error
        if self.delay:
            await asyncio.sleep(self.delay)
        additional_kwargs = {"reasoning_content": self.reasoning} if self.reasoning else {}
        return AIMessage(
            content="".join(self.chunks),
            additional_kwargs=additional_kwargs,
            usage_metadata=dict(self.usage) if self.usage else None,
        )


class FakeLLMFactory:
    def __init__(self, model: Optional[ScriptedChatModel] = None):
        self.model = model or ScriptedChatModel()
        self.created_for: List[str] = []

    def create(self, model_config):
        self.created_for.append(model_config.model_id)
        return self.model


class WordCounter:
    """Детерминированный счётчик токенов без tiktoken: одно слово - один токен."""

    def count(self, text: str) -> int:
        return len(text.split())

    def count_messages(self, messages) -> int:
        return sum(self.count(m["content"]) + 2 for m in messages)


DEFAULT_USAGE = {"input_tokens": 12, "output_tokens": 3, "total_tokens": 15}


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def user_repo(session_factory):
    return UserRepository(session_factory)


@pytest.fixture
def chat_repo(session_factory):
    return ChatRepository(session_factory)


@pytest.fixture
def message_repo(session_factory):
    return MessageRepository(session_factory)


@pytest.fixture
def model_repo(session_factory):
    return ModelRepository(session_factory)


@pytest.fixture
async def llm_model(model_repo):
    return await model_repo.create_model(
        name="Test Model",
        model_id="test-model",
        provider="openai",
        base_url="http://llm.local/v1",
        api_key="sk-test",
    )


@pytest.fixture
async def user(user_repo):
    return await user_repo.create_user("alice@example.com", "not-a-real-hash", name="alice")


@pytest.fixture
def fake_llm():
    return FakeLLMFactory(ScriptedChatModel(usage=DEFAULT_USAGE))


@pytest.fixture
def chat_locks():
    return ChatLockRegistry()


@pytest.fixture
def chat_service(chat_repo, message_repo, model_repo, fake_llm, chat_locks):
    return ChatService(
        chat_repo=chat_repo,
        message_repo=message_repo,
        model_repo=model_repo,
        llm_factory=fake_llm,
        token_counter=WordCounter(),
        chat_locks=chat_locks,
        history_limit=10,
    )


@pytest.fixture
def reset_sse_app_status():
    # sse-starlette держит глобальное событие выхода, привязанное к первому циклу
    from sse_starlette.sse import AppStatus

    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield
    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None


@pytest.fixture
def api_client(tmp_path, fake_llm, reset_sse_app_status):
    from containers import container
    from main import app

    settings = Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        default_model=DefaultModelSettings(
            model_id="test-model",
            name="Test Model",
            base_url="http://llm.local/v1",
            api_key="sk-test",
        ),
    )
    container.settings.override(providers.Object(settings))
    container.llm_factory.override(providers.Object(fake_llm))
    container.reset_singletons()
    try:
        with TestClient(app) as client:
            yield client
    finally:
        container.llm_factory.reset_override()
        container.settings.reset_override()
        container.reset_singletons()
