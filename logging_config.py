# logging_config.py
"""
Настройка structlog для всего приложения.

- один вызов configure_logging() на старте
- JSON в продакшне, цветная консоль при разработке
- request_id на каждый HTTP-запрос через contextvars
"""
import logging
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from structlog.types import Processor

REQUEST_ID_HEADER = b"x-request-id"

# Отдельный логгер для трассировки ходов чата
CHAT_TRACE_LOGGER = "chat_trace"


def _add_timestamp(logger: logging.Logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def configure_logging(json_format: bool = False, log_level: str = "INFO") -> None:
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _add_timestamp,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        shared_processors.append(structlog.dev.set_exc_info)
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    # Шумные сторонние логгеры
    for name in ("httpx", "httpcore", "openai", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class RequestContextMiddleware:
    """
    ASGI-middleware: выдаёт запросу короткий id, кладёт его в контекст логов,
    пишет начало/конец запроса и возвращает id в заголовке X-Request-Id.
    """

    def __init__(self, app):
        self.app = app
        self.logger = structlog.get_logger("request")

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = uuid.uuid4().hex[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)

        method = scope.get("method", "UNKNOWN")
        path = scope.get("path", "/")
        started = time.perf_counter()
        status = None

        async def send_wrapper(message):
            nonlocal status
            if message["type"] == "http.response.start":
                status = message.get("status", 0)
                headers = list(message.get("headers", []))
                headers.append((REQUEST_ID_HEADER, request_id.encode("ascii")))
                message = {**message, "headers": headers}
            await send(message)

        self.logger.debug("Request started", method=method, path=path)
        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            self.logger.error(
                "Request failed",
                method=method,
                path=path,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            self.logger.info(
                "Request completed",
                method=method,
                path=path,
                status=status,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            structlog.contextvars.clear_contextvars()
