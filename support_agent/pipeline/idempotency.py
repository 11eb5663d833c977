"""
Idempotency leases keyed by message id.

A lease is a short-lived Redis claim taken before any side effect of a run.
A completion marker survives the lease so a trigger that listed the message
before it was acknowledged cannot process it a second time.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

from support_agent.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

LEASE_PREFIX = "support:lease:"
DONE_PREFIX = "support:done:"


class LockStore(Protocol):
    async def acquire_lock(self, key: str, token: str, ttl_ms: int) -> bool: ...

    async def release_lock(self, key: str, token: str) -> bool: ...

    async def get(self, key: str) -> str | None: ...

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool: ...


class IdempotencyLeases:
    def __init__(self, store: LockStore, lease_ttl_ms: int, marker_ttl_s: int):
        self._store = store
        self._lease_ttl_ms = lease_ttl_ms
        self._marker_ttl_s = marker_ttl_s

    @asynccontextmanager
    async def hold(self, message_id: str) -> AsyncIterator[bool]:
        """
        Try to claim `message_id` for the duration of the block.

        Yields True when this run owns the lease. The lease is released on
        exit whatever happens inside the block; if the release fails the
        TTL frees it.
        """
        key = f"{LEASE_PREFIX}{message_id}"
        token = uuid.uuid4().hex
        acquired = await self._store.acquire_lock(key, token, self._lease_ttl_ms)
        if not acquired:
            logger.info("Lease held elsewhere, skipping message", message_id=message_id)
        try:
            yield acquired
        finally:
            if acquired and not await self._store.release_lock(key, token):
                logger.warning("Lease release failed, waiting for expiry", message_id=message_id)

    async def is_completed(self, message_id: str) -> bool:
        return await self._store.get(f"{DONE_PREFIX}{message_id}") is not None

    async def mark_completed(self, message_id: str, action_taken: str) -> None:
        stored = await self._store.set_with_ttl(
            f"{DONE_PREFIX}{message_id}", action_taken, self._marker_ttl_s
        )
        if not stored:
            logger.warning("Completion marker not stored", message_id=message_id)
