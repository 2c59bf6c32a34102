# services/chat_service.py
import asyncio
import math
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage

from dtos import (
    AIResponseDTO,
    ChatCreateDTO,
    ChatCreatedDTO,
    ChatDetailDTO,
    ChatListDTO,
    ChatSummaryDTO,
    LastMessageDTO,
    MessageDTO,
    ModelInfoDTO,
    ModelRefDTO,
    PaginationDTO,
    SendMessageDTO,
    UsageDTO,
)
from errors import business_error, configuration_error, not_found, upstream_error, validation_error
from logging_config import CHAT_TRACE_LOGGER
from models import Chat, MessageRole, ModelConfig
from repositories.chat_repo import ChatRepository
from repositories.message_repo import MessageRepository
from repositories.model_repo import ModelRepository
from services.events import ContentEvent, DoneEvent, EventCallback
from services.llm_provider import (
    LLMFactory,
    message_reasoning,
    message_text,
    message_usage,
    to_langchain_messages,
    upstream_status,
)
from services.token_service import TokenCounter

logger = structlog.get_logger(__name__)
trace_logger = structlog.get_logger(CHAT_TRACE_LOGGER)

MAX_CONTENT_LENGTH = 10_000
MAX_TITLE_LENGTH = 255
TITLE_PREVIEW_LENGTH = 50
MAX_PAGE_SIZE = 100


class ChatLockRegistry:
    """
    Замки по id чата: в одном чате одновременно идёт не больше одного хода,
    иначе порядок сообщений и updated_at теряют смысл.
    Замок удаляется, когда его никто не держит и не ждёт.
    """

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._holders: Dict[int, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, chat_id: int):
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        self._holders[chat_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[chat_id] -= 1
            if self._holders[chat_id] == 0:
                del self._holders[chat_id]
                self._locks.pop(chat_id, None)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class PreparedTurn:
    """Ход, прошедший валидацию и выбор чата/модели, но ещё не начатый."""
    user_id: int
    chat_id: int
    content: str
    model: ModelConfig
    llm: BaseChatModel
    stream: bool = True


@dataclass
class ReplyBuffer:
    content: List[str] = field(default_factory=list)
    reasoning: List[str] = field(default_factory=list)
    usage: Optional[Dict[str, int]] = None

    @property
    def text(self) -> str:
        return "".join(self.content)

    @property
    def reasoning_text(self) -> Optional[str]:
        return "".join(self.reasoning) or None


def validate_message_content(content: Optional[str]) -> str:
    text = (content or "").strip()
    if not text:
        raise validation_error("content", "must not be empty")
    if len(text) > MAX_CONTENT_LENGTH:
        raise validation_error("content", f"must be at most {MAX_CONTENT_LENGTH} characters")
    return text


def make_chat_title(content: str) -> str:
    title = content[:TITLE_PREVIEW_LENGTH]
    return title + "..." if len(content) > TITLE_PREVIEW_LENGTH else title


class ChatService:
    def __init__(
        self,
        chat_repo: ChatRepository,
        message_repo: MessageRepository,
        model_repo: ModelRepository,
        llm_factory: LLMFactory,
        token_counter: TokenCounter,
        chat_locks: ChatLockRegistry,
        history_limit: int = 10,
    ):
        self.chat_repo = chat_repo
        self.message_repo = message_repo
        self.model_repo = model_repo
        self.llm_factory = llm_factory
        self.token_counter = token_counter
        self.chat_locks = chat_locks
        self.history_limit = history_limit

    # ---------- Чаты ----------

    async def list_chats(self, user_id: int, page: int = 1, page_size: int = 20) -> ChatListDTO:
        if page < 1:
            raise validation_error("page", "must be at least 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise validation_error("pageSize", f"must be between 1 and {MAX_PAGE_SIZE}")

        total = await self.chat_repo.count_for_user(user_id)
        rows = await self.chat_repo.list_chats_for_user(user_id, offset=(page - 1) * page_size, limit=page_size)
        items = [
            ChatSummaryDTO(
                id=chat.id,
                title=chat.title,
                message_count=count,
                last_message=LastMessageDTO.model_validate(last) if last is not None else None,
                created_at=chat.created_at,
                updated_at=chat.updated_at,
            )
            for chat, count, last in rows
        ]
        logger.info("Chat list loaded", user_id=user_id, page=page, page_size=page_size, total=total)
        return ChatListDTO(
            items=items,
            pagination=PaginationDTO(
                page=page,
                page_size=page_size,
                total=total,
                total_pages=math.ceil(total / page_size),
            ),
        )

    async def get_chat(self, user_id: int, chat_id: int) -> ChatDetailDTO:
        chat = await self._get_owned_chat(user_id, chat_id)
        messages = await self.message_repo.get_messages_for_chat(chat.id, newest_first=True)
        return ChatDetailDTO(
            id=chat.id,
            title=chat.title,
            model_id=chat.model_id,
            model_name=chat.model_name,
            created_at=chat.created_at,
            updated_at=chat.updated_at,
            messages=[MessageDTO.model_validate(m) for m in messages],
        )

    async def create_chat(self, user_id: int, payload: ChatCreateDTO) -> ChatCreatedDTO:
        if payload.model_id is not None:
            model = await self.model_repo.get_enabled(payload.model_id)
            if model is None:
                raise business_error("The requested model does not exist or is disabled")
        else:
            model = await self._default_model()

        chat = await self.chat_repo.create_chat(user_id, payload.title, model.id, model.name)
        logger.info("Chat created", user_id=user_id, chat_id=chat.id, model_id=model.id)
        return ChatCreatedDTO(
            id=chat.id,
            title=chat.title,
            model=ModelRefDTO.model_validate(model),
            created_at=chat.created_at,
        )

    async def delete_chat(self, user_id: int, chat_id: int) -> None:
        chat = await self._get_owned_chat(user_id, chat_id)
        await self.chat_repo.delete_chat(chat.id)
        logger.info("Chat deleted", user_id=user_id, chat_id=chat_id)

    async def update_chat_title(self, user_id: int, chat_id: int, title: str) -> None:
        title = (title or "").strip()
        if not title:
            raise validation_error("title", "must not be empty")
        if len(title) > MAX_TITLE_LENGTH:
            raise validation_error("title", f"must be at most {MAX_TITLE_LENGTH} characters")
        chat = await self._get_owned_chat(user_id, chat_id)
        await self.chat_repo.update_title(chat.id, title)

    async def clear_chat_messages(self, user_id: int, chat_id: int) -> int:
        chat = await self._get_owned_chat(user_id, chat_id)
        async with self.chat_locks.hold(chat.id):
            removed = await self.message_repo.clear_for_chat(chat.id)
        logger.info("Chat messages cleared", user_id=user_id, chat_id=chat_id, removed=removed)
        return removed

    async def list_models(self) -> List[ModelInfoDTO]:
        return [ModelInfoDTO.model_validate(m) for m in await self.model_repo.list_enabled()]

    # ---------- Ход чата ----------

    async def send_message(
        self,
        user_id: int,
        params: SendMessageDTO,
        on_event: Optional[EventCallback] = None,
    ) -> AIResponseDTO:
        """
        Один ход целиком: проверка, выбор чата и модели, контекст,
        вызов модели (потоково или целиком) и сохранение ответа.
        """
        turn = await self.prepare_turn(user_id, params)
        return await self.execute_turn(turn, on_event)

    async def prepare_turn(self, user_id: int, params: SendMessageDTO) -> PreparedTurn:
        """
        Всё, что может упасть до начала ответа. SSE-эндпоинт вызывает это
        до открытия потока, чтобы такие ошибки уходили обычным JSON.
        """
        content = validate_message_content(params.content)

        chat: Optional[Chat] = None
        if params.chat_id is not None:
            chat = await self._get_owned_chat(user_id, params.chat_id)

        model = await self._resolve_model(params.model_id, chat.model_id if chat else None)
        llm = self.llm_factory.create(model)

        if chat is None:
            chat = await self.chat_repo.create_chat(user_id, make_chat_title(content), model.id, model.name)
            logger.info("Chat created for first message", user_id=user_id, chat_id=chat.id, model_id=model.id)

        return PreparedTurn(
            user_id=user_id,
            chat_id=chat.id,
            content=content,
            model=model,
            llm=llm,
            stream=params.stream,
        )

    async def execute_turn(self, turn: PreparedTurn, on_event: Optional[EventCallback] = None) -> AIResponseDTO:
        log = logger.bind(user_id=turn.user_id, chat_id=turn.chat_id, model_id=turn.model.model_id)

        async with self.chat_locks.hold(turn.chat_id):
            history = await self.message_repo.get_recent_messages_for_chat(turn.chat_id, self.history_limit)
            context = [{"role": m.role.value, "content": m.content} for m in history]
            context.append({"role": MessageRole.USER.value, "content": turn.content})

            # Вопрос сохраняем до вызова модели: при сбое остаётся след того, что спросили
            user_message = await self.message_repo.add_message(turn.chat_id, MessageRole.USER, turn.content)

            reply = ReplyBuffer()
            started = time.monotonic()
            try:
                messages = to_langchain_messages(context)
                if turn.stream:
                    await self._stream_reply(turn.llm, messages, reply, on_event)
                else:
                    await self._invoke_reply(turn.llm, messages, reply, on_event)
            except asyncio.CancelledError:
                # Клиент ушёл: сохраняем то, что успели получить
                log.warning("Turn cancelled, keeping partial reply", received_chars=len(reply.text))
                if reply.content or reply.reasoning:
                    await asyncio.shield(self._finalize(turn, context, reply, started))
                raise
            except Exception as e:
                status = upstream_status(e)
                log.error("LLM call failed", error=str(e), error_type=type(e).__name__, upstream_status=status)
                await self._discard_message(user_message.id)
                raise upstream_error(e, status) from e

            return await self._finalize(turn, context, reply, started)

    async def _stream_reply(
        self,
        llm: BaseChatModel,
        messages: List[BaseMessage],
        reply: ReplyBuffer,
        on_event: Optional[EventCallback],
    ) -> None:
        async for chunk in llm.astream(messages):
            text = message_text(chunk.content)
            if text:
                reply.content.append(text)
                if on_event is not None:
                    await on_event(ContentEvent(content=text))

            reasoning = message_reasoning(chunk)
            if reasoning:
                reply.reasoning.append(reasoning)

            usage = message_usage(chunk)
            if usage is not None:
                # Провайдер присылает накопленные счётчики: последнее значение побеждает
                reply.usage = usage

        if on_event is not None:
            await on_event(DoneEvent())

    async def _invoke_reply(
        self,
        llm: BaseChatModel,
        messages: List[BaseMessage],
        reply: ReplyBuffer,
        on_event: Optional[EventCallback],
    ) -> None:
        message = await llm.ainvoke(messages)
        reply.content.append(message_text(message.content))
        reasoning = message_reasoning(message)
        if reasoning:
            reply.reasoning.append(reasoning)
        reply.usage = message_usage(message)

        # Для слушателя канала ответ целиком неотличим от потока
        if on_event is not None:
            await on_event(ContentEvent(content=reply.text))
            await on_event(DoneEvent())

    async def _finalize(
        self,
        turn: PreparedTurn,
        context: List[Dict[str, str]],
        reply: ReplyBuffer,
        started: float,
    ) -> AIResponseDTO:
        duration = round(time.monotonic() - started, 3)
        content = reply.text
        reasoning = reply.reasoning_text

        usage = reply.usage
        if not usage or usage["total_tokens"] == 0:
            usage = self._estimate_usage(context, content, reasoning)

        response = AIResponseDTO(
            content=content,
            reasoning=reasoning,
            model_id=turn.model.model_id,
            model_name=turn.model.name,
            duration=duration,
            usage=UsageDTO(**usage),
        )

        try:
            message = await self.message_repo.add_assistant_message(
                user_id=turn.user_id,
                chat_id=turn.chat_id,
                content=content,
                reasoning=reasoning,
                model_id=turn.model.model_id,
                model_name=turn.model.name,
                duration=duration,
                prompt_tokens=usage["prompt_tokens"],
                completion_tokens=usage["completion_tokens"],
            )
        except Exception as e:
            # Клиент уже получил ответ целиком, ход не считается проваленным
            logger.error(
                "Failed to save assistant message",
                user_id=turn.user_id,
                chat_id=turn.chat_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return response

        logger.info(
            "Message saved",
            user_id=turn.user_id,
            chat_id=turn.chat_id,
            message_id=message.id,
            model_id=turn.model.model_id,
            usage=usage,
        )
        trace_logger.info(
            "chat_turn",
            user_id=turn.user_id,
            chat_id=turn.chat_id,
            model_id=turn.model.model_id,
            model_name=turn.model.name,
            duration=duration,
            usage=usage,
            content_chars=len(content),
        )
        return response

    def _estimate_usage(self, context: List[Dict[str, str]], content: str, reasoning: Optional[str]) -> Dict[str, int]:
        """
        Приблизительный usage, если провайдер его не прислал.
        Считается локальным токенизатором и может расходиться с биллингом провайдера.
        """
        prompt_text = "\n".join(f"{m['role']}: {m['content']}" for m in context)
        prompt_tokens = self.token_counter.count(prompt_text)
        completion_tokens = self.token_counter.count(content + (reasoning or ""))
        return {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }

    async def _discard_message(self, message_id: int) -> None:
        try:
            await self.message_repo.delete_message(message_id)
        except Exception as e:
            # Пользователь всё равно получит ошибку модели, она важнее
            logger.warning("Failed to remove user message after LLM failure", message_id=message_id, error=str(e))

    # ---------- Вспомогательное ----------

    async def _get_owned_chat(self, user_id: int, chat_id: int) -> Chat:
        chat = await self.chat_repo.get_chat_for_user(chat_id, user_id)
        if chat is None:
            raise not_found("Chat")
        return chat

    async def _resolve_model(self, override_id: Optional[int], chat_model_id: Optional[int]) -> ModelConfig:
        if override_id is not None:
            model = await self.model_repo.get_enabled(override_id)
            if model is None:
                raise business_error("The requested model does not exist or is disabled")
            return model

        if chat_model_id is not None:
            model = await self.model_repo.get_enabled(chat_model_id)
            if model is not None:
                return model

        return await self._default_model()

    async def _default_model(self) -> ModelConfig:
        model = await self.model_repo.first_enabled()
        if model is None:
            raise configuration_error("No AI model is available, please contact the administrator")
        return model
