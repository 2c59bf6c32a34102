# endpoints/api_chats.py
import asyncio
import json
from typing import AsyncIterator, List, Set

import structlog
from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Query
from sse_starlette.sse import EventSourceResponse

from containers import Container
from dtos import (
    AIResponseDTO,
    ChatCreateDTO,
    ChatCreatedDTO,
    ChatDetailDTO,
    ChatListDTO,
    ChatTitleDTO,
    Envelope,
    ModelInfoDTO,
    SendMessageDTO,
    TokenPayload,
)
from endpoints.utils import default_rate_limit, get_current_user, relaxed_rate_limit
from errors import AppError
from services.chat_service import ChatService, PreparedTurn
from services.events import ContentEvent, DoneEvent, ErrorEvent, MetaEvent, TurnChannel

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

# Ссылки на задачи ходов, чтобы их не собрал GC, пока они дописывают ответ
_background_turns: Set[asyncio.Task] = set()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def _sse(payload: dict) -> dict:
    return {"data": json.dumps(payload, ensure_ascii=False)}


async def _relay_turn(chat_service: ChatService, turn: PreparedTurn) -> AsyncIterator[dict]:
    """
    Запускает ход отдельной задачей и отдаёт его события в SSE.
    Если клиент отключился, задача отменяется, а ChatService
    сохраняет то, что модель успела прислать.
    """
    channel = TurnChannel()

    async def run_turn():
        try:
            result = await chat_service.execute_turn(turn, on_event=channel.publish)
            await channel.publish(MetaEvent(data=result))
        except AppError as e:
            await channel.publish(ErrorEvent(message=e.message))
        except Exception:
            logger.exception("Streaming turn failed", chat_id=turn.chat_id, user_id=turn.user_id)
            await channel.publish(ErrorEvent(message="Internal server error"))
        finally:
            await channel.close()

    task = asyncio.create_task(run_turn())
    _background_turns.add(task)
    task.add_done_callback(_background_turns.discard)

    done = False
    try:
        async for event in channel:
            if isinstance(event, ContentEvent):
                yield _sse({"type": "content", "content": event.content})
            elif isinstance(event, DoneEvent):
                # [DONE] уходит последним, после meta
                done = True
            elif isinstance(event, MetaEvent):
                yield _sse({"type": "meta", "data": event.data.model_dump(mode="json", by_alias=True)})
            elif isinstance(event, ErrorEvent):
                yield _sse({"type": "error", "message": event.message})
                return
        if done:
            yield {"data": "[DONE]"}
    finally:
        if not task.done():
            logger.info("Client disconnected, cancelling turn", chat_id=turn.chat_id, user_id=turn.user_id)
            task.cancel()


@router.get("/models", response_model=Envelope[List[ModelInfoDTO]])
@inject
async def list_models(
    _limit: None = Depends(relaxed_rate_limit),
    chat_service: ChatService = Depends(Provide[Container.chat_service]),
):
    return Envelope(data=await chat_service.list_models())


@router.get("", response_model=Envelope[ChatListDTO])
@inject
async def list_chats(
    page: int = Query(1),
    page_size: int = Query(20, alias="pageSize"),
    current_user: TokenPayload = Depends(get_current_user),
    _limit: None = Depends(relaxed_rate_limit),
    chat_service: ChatService = Depends(Provide[Container.chat_service]),
):
    return Envelope(data=await chat_service.list_chats(current_user.user_id, page, page_size))


@router.post("", status_code=201, response_model=Envelope[ChatCreatedDTO])
@inject
async def create_chat(
    payload: ChatCreateDTO,
    current_user: TokenPayload = Depends(get_current_user),
    _limit: None = Depends(default_rate_limit),
    chat_service: ChatService = Depends(Provide[Container.chat_service]),
):
    return Envelope(message="Chat created", data=await chat_service.create_chat(current_user.user_id, payload))


@router.post("/message", response_model=Envelope[AIResponseDTO])
@inject
async def send_message(
    payload: SendMessageDTO,
    current_user: TokenPayload = Depends(get_current_user),
    _limit: None = Depends(default_rate_limit),
    chat_service: ChatService = Depends(Provide[Container.chat_service]),
):
    if not payload.stream:
        result = await chat_service.send_message(current_user.user_id, payload)
        return Envelope(data=result)

    # Ошибки до начала потока уходят обычным JSON-ответом
    turn = await chat_service.prepare_turn(current_user.user_id, payload)
    return EventSourceResponse(_relay_turn(chat_service, turn), sep="\n", headers=SSE_HEADERS)


@router.get("/{chat_id}", response_model=Envelope[ChatDetailDTO])
@inject
async def get_chat(
    chat_id: int,
    current_user: TokenPayload = Depends(get_current_user),
    _limit: None = Depends(relaxed_rate_limit),
    chat_service: ChatService = Depends(Provide[Container.chat_service]),
):
    return Envelope(data=await chat_service.get_chat(current_user.user_id, chat_id))


@router.delete("/{chat_id}", response_model=Envelope)
@inject
async def delete_chat(
    chat_id: int,
    current_user: TokenPayload = Depends(get_current_user),
    _limit: None = Depends(default_rate_limit),
    chat_service: ChatService = Depends(Provide[Container.chat_service]),
):
    await chat_service.delete_chat(current_user.user_id, chat_id)
    return Envelope(message="Chat deleted")


@router.patch("/{chat_id}/title", response_model=Envelope)
@inject
async def update_chat_title(
    chat_id: int,
    payload: ChatTitleDTO,
    current_user: TokenPayload = Depends(get_current_user),
    _limit: None = Depends(default_rate_limit),
    chat_service: ChatService = Depends(Provide[Container.chat_service]),
):
    await chat_service.update_chat_title(current_user.user_id, chat_id, payload.title)
    return Envelope(message="Title updated")


@router.delete("/{chat_id}/messages", response_model=Envelope[dict])
@inject
async def clear_chat_messages(
    chat_id: int,
    current_user: TokenPayload = Depends(get_current_user),
    _limit: None = Depends(default_rate_limit),
    chat_service: ChatService = Depends(Provide[Container.chat_service]),
):
    removed = await chat_service.clear_chat_messages(current_user.user_id, chat_id)
    return Envelope(message="Messages cleared", data={"removed": removed})
