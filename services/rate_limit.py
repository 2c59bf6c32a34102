# services/rate_limit.py
"""
Ограничение частоты запросов фиксированными окнами.

Хранилище счётчиков вынесено за интерфейс RateLimitStore: сейчас это память
процесса, при нескольких воркерах его можно заменить внешним хранилищем,
не трогая эндпоинты.
"""
import abc
import asyncio
import math
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)


class RateLimitStore(abc.ABC):
    @abc.abstractmethod
    async def hit(self, key: str, window_seconds: int, now: Optional[float] = None) -> Tuple[int, float]:
        """Учитывает одно обращение. Возвращает (число обращений в окне, время сброса окна)."""

    @abc.abstractmethod
    async def sweep(self, now: Optional[float] = None) -> int:
        """Удаляет истёкшие окна, возвращает их количество."""


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(self, sweep_interval: float = 60.0):
        # (ключ, номер окна) -> [счётчик, время сброса]
        self._buckets: Dict[Tuple[str, int], list] = {}
        self._lock = asyncio.Lock()
        self._sweep_interval = sweep_interval
        self._last_sweep = 0.0

    async def hit(self, key: str, window_seconds: int, now: Optional[float] = None) -> Tuple[int, float]:
        now = time.time() if now is None else now
        window = int(now // window_seconds)
        async with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep_locked(now)
            bucket = self._buckets.get((key, window))
            if bucket is None:
                bucket = self._buckets[(key, window)] = [0, (window + 1) * window_seconds]
            bucket[0] += 1
            return bucket[0], bucket[1]

    async def sweep(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        async with self._lock:
            return self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        expired = [k for k, (_, reset_at) in self._buckets.items() if reset_at <= now]
        for k in expired:
            del self._buckets[k]
        self._last_sweep = now
        return len(expired)

    def __len__(self) -> int:
        return len(self._buckets)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }


class RateLimiter:
    def __init__(self, max_requests: int, window_seconds: int, prefix: str):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.prefix = prefix

    async def check(self, store: RateLimitStore, identity: str, now: Optional[float] = None) -> RateLimitResult:
        count, reset_at = await store.hit(f"{self.prefix}:{identity}", self.window_seconds, now=now)
        if count > self.max_requests:
            logger.warning("Rate limit exceeded", prefix=self.prefix, identity=identity, count=count)
        return RateLimitResult(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(self.max_requests - count, 0),
            reset_at=reset_at,
        )


# Пресеты
DEFAULT_LIMIT = RateLimiter(60, 60, "default")
STRICT_LIMIT = RateLimiter(20, 60, "strict")
RELAXED_LIMIT = RateLimiter(120, 60, "relaxed")
