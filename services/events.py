# services/events.py
import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

from dtos import AIResponseDTO


@dataclass(frozen=True)
class ContentEvent:
    content: str
    type: str = "content"


@dataclass(frozen=True)
class DoneEvent:
    type: str = "done"


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    type: str = "error"


@dataclass(frozen=True)
class MetaEvent:
    data: AIResponseDTO
    type: str = "meta"


# События, которые ChatService отдаёт во время хода
StreamEvent = Union[ContentEvent, DoneEvent, ErrorEvent]
EventCallback = Callable[[StreamEvent], Awaitable[None]]

ChannelEvent = Union[ContentEvent, DoneEvent, ErrorEvent, MetaEvent]


class TurnChannel:
    """
    Очередь событий одного хода чата.
    Ход пишет в неё из своей задачи, SSE-эндпоинт читает и отдаёт клиенту.
    """

    def __init__(self):
        self._queue: asyncio.Queue[Optional[ChannelEvent]] = asyncio.Queue()
        self._closed = False

    async def publish(self, event: ChannelEvent) -> None:
        if self._closed:
            return
        await self._queue.put(event)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            await self._queue.put(None)

    async def __aiter__(self) -> AsyncIterator[ChannelEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
