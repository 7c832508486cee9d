"""
Short-lived store of completed mutating operations, keyed by op_id.

The processor deduplicates writes that carry an op_id, but a retried request
that reaches us after the first one succeeded would still issue a second
processor call and a second audit record. Remembering successful results for
a few minutes lets us answer the retry locally.

Keys are scoped by actor, organization and operation, so one caller's op_id
can never replay another caller's result. Concurrent duplicates wait on a
per-key lock and then observe the first caller's result. Failures are never
stored: the retry goes to the processor, which dedupes by op_id.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from cachetools import TTLCache  # type: ignore[import-untyped]

from app.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

IdempotencyKey = tuple[str, str, str, str]  # (actor, org, operation, op_id)


class IdempotencyStore:
    """In-process TTL cache of op_id -> prior result."""

    def __init__(self, ttl_seconds: float = 600, maxsize: int = 10_000):
        self._results: TTLCache[IdempotencyKey, Any] = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        self._locks: TTLCache[IdempotencyKey, asyncio.Lock] = TTLCache(
            maxsize=maxsize, ttl=ttl_seconds
        )

    @classmethod
    def from_settings(cls) -> "IdempotencyStore":
        return cls(
            ttl_seconds=settings.idempotency_ttl_seconds,
            maxsize=settings.idempotency_cache_size,
        )

    @staticmethod
    def key(actor_id: str, org_id: str, operation: str, op_id: str) -> IdempotencyKey:
        return (actor_id, org_id, operation, op_id)

    async def run(self, key: IdempotencyKey | None, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run operation once per key while the key is remembered.

        A None key (no op_id supplied) always runs the operation.
        """
        if key is None:
            return await operation()

        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock

        async with lock:
            if key in self._results:
                logger.info(f"[idempotency] Replaying stored result for {key[2]} op_id={key[3]}")
                cached: T = self._results[key]
                return cached
            result = await operation()
            self._results[key] = result
            return result
