"""Guard de envíos duplicados del mismo escaneo

Memo de corta duración: solo colapsa re-envíos rápidos de un escaneo que ya
fue consumido con éxito. Nunca es fuente de verdad; el registro manda.
"""
from collections import OrderedDict
from typing import Callable, Optional
import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class DuplicateScanGuard:
    """Guard en memoria con expiración lazy por timestamp"""

    def __init__(
        self,
        window_seconds: float = 5.0,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = asyncio.Lock()

    def _expired(self, recorded_at: float, now: float) -> bool:
        return now - recorded_at >= self.window_seconds

    async def recently_verified(self, key: str) -> bool:
        async with self._lock:
            recorded_at = self._entries.get(key)
            if recorded_at is None:
                return False
            if self._expired(recorded_at, self._clock()):
                del self._entries[key]
                return False
            return True

    async def record(self, key: str) -> None:
        async with self._lock:
            now = self._clock()
            self._entries[key] = now
            self._entries.move_to_end(key)
            self._drop_expired(now)
            # Las entradas más antiguas salen primero al superar el tope
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def _drop_expired(self, now: float) -> None:
        # Orden de inserción = orden de timestamp: basta mirar la cabeza
        while self._entries:
            recorded_at = next(iter(self._entries.values()))
            if not self._expired(recorded_at, now):
                break
            self._entries.popitem(last=False)

    async def close(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisDuplicateScanGuard:
    """Guard compartido entre instancias usando Redis (SET ... PX)"""

    def __init__(self, redis_client, window_seconds: float = 5.0, prefix: str = "scan:guard:"):
        self.redis = redis_client
        self.window_seconds = window_seconds
        self.prefix = prefix

    async def recently_verified(self, key: str) -> bool:
        return bool(await self.redis.exists(f"{self.prefix}{key}"))

    async def record(self, key: str) -> None:
        await self.redis.set(
            f"{self.prefix}{key}",
            str(time.time()),
            px=int(self.window_seconds * 1000),
        )

    async def close(self) -> None:
        pass


def build_duplicate_guard(window_seconds: float, max_entries: int, redis_client: Optional[object] = None):
    if redis_client is not None:
        logger.info("Guard de duplicados usando Redis")
        return RedisDuplicateScanGuard(redis_client, window_seconds=window_seconds)
    logger.info("Guard de duplicados en memoria local")
    return DuplicateScanGuard(window_seconds=window_seconds, max_entries=max_entries)
