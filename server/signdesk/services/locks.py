from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis

from signdesk.core.logging import get_logger

logger = get_logger(__name__)

LOCK_PREFIX = "signdesk:envelope:lock:"
LOCK_TTL_SECONDS = 30
LOCK_BLOCKING_TIMEOUT_SECONDS = 10


class EnvelopeLocks:
    """
    Per-envelope mutual exclusion.

    An in-process asyncio lock serializes tasks of this worker; when a Redis
    client is supplied a Redis lock serializes across worker processes too.
    Different envelopes never contend.
    """

    def __init__(
        self,
        redis_client: Redis | None = None,
        *,
        ttl_seconds: int = LOCK_TTL_SECONDS,
        blocking_timeout: int = LOCK_BLOCKING_TIMEOUT_SECONDS,
    ) -> None:
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds
        self._blocking_timeout = blocking_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def is_idle(self, envelope_id: str) -> bool:
        return envelope_id not in self._holders

    @asynccontextmanager
    async def hold(self, envelope_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(envelope_id, asyncio.Lock())
        self._holders[envelope_id] = self._holders.get(envelope_id, 0) + 1
        try:
            async with lock:
                if self._redis is None:
                    yield
                else:
                    async with self._redis.lock(
                        f"{LOCK_PREFIX}{envelope_id}",
                        timeout=self._ttl_seconds,
                        blocking_timeout=self._blocking_timeout,
                    ):
                        yield
        finally:
            remaining = self._holders[envelope_id] - 1
            if remaining:
                self._holders[envelope_id] = remaining
            else:
                del self._holders[envelope_id]
                self._locks.pop(envelope_id, None)
