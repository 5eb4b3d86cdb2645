"""Submission guard for visitor messages.

Two protections keyed per (conversation, normalized content):
- duplicate window: the last accepted content of a conversation is
  remembered for a few seconds; an identical submission inside the
  window is dropped
- in-flight marker: while one submission is being persisted, an identical
  one is dropped; markers expire on their own after a safety-net TTL
  in case a release is ever missed

`SubmissionGuard` keeps the state in process memory with lazily checked
timestamps. `RedisSubmissionGuard` keeps it in Redis with key TTLs, so the
state outlives restarts. Redis failures are logged and never block a
submission: checks fail open, writes are skipped.
"""
import hashlib
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Tuple

import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()


def content_digest(content: str) -> str:
    """Stable short key for message content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def submission_key(conversation_id: str, content: str) -> str:
    """Composite in-flight key for one logical submission."""
    return f"{conversation_id}:{content_digest(content)}"


class SubmissionInFlight(Exception):
    """Raised when an identical submission is already being processed."""
    pass


class BaseSubmissionGuard:
    """Shared lifecycle on top of the storage primitives."""

    async def is_duplicate(self, conversation_id: str, content: str) -> bool:
        raise NotImplementedError

    async def remember(self, conversation_id: str, content: str) -> None:
        raise NotImplementedError

    async def acquire(self, conversation_id: str, content: str) -> bool:
        raise NotImplementedError

    async def release(self, conversation_id: str, content: str) -> None:
        raise NotImplementedError

    @asynccontextmanager
    async def hold(self, conversation_id: str, content: str) -> AsyncIterator[str]:
        """
        Hold the in-flight marker for the duration of the block.

        Usage:
            async with guard.hold(conversation_id, content):
                await store.save_message(...)
            # Marker released, even on error

        Raises:
            SubmissionInFlight: If an identical submission holds the marker
        """
        if not await self.acquire(conversation_id, content):
            raise SubmissionInFlight(
                f"Identical submission already in flight for conversation {conversation_id}"
            )
        try:
            yield submission_key(conversation_id, content)
        finally:
            await self.release(conversation_id, content)


class SubmissionGuard(BaseSubmissionGuard):
    """In-process guard. Expired entries are treated as absent when read."""

    def __init__(
        self,
        duplicate_window: float = 5.0,
        inflight_ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.duplicate_window = duplicate_window
        self.inflight_ttl = inflight_ttl
        self._clock = clock
        self._last_accepted: Dict[str, Tuple[str, float]] = {}
        self._in_flight: Dict[str, float] = {}

    async def is_duplicate(self, conversation_id: str, content: str) -> bool:
        last = self._last_accepted.get(conversation_id)
        if last is None:
            return False
        last_content, accepted_at = last
        if self._clock() - accepted_at >= self.duplicate_window:
            del self._last_accepted[conversation_id]
            return False
        return last_content == content

    async def remember(self, conversation_id: str, content: str) -> None:
        self._last_accepted[conversation_id] = (content, self._clock())

    async def acquire(self, conversation_id: str, content: str) -> bool:
        # No await between the check and the insert: atomic on the event loop
        key = submission_key(conversation_id, content)
        now = self._clock()
        started_at = self._in_flight.get(key)
        if started_at is not None and now - started_at < self.inflight_ttl:
            return False
        self._in_flight[key] = now
        return True

    async def release(self, conversation_id: str, content: str) -> None:
        self._in_flight.pop(submission_key(conversation_id, content), None)

    def in_flight_count(self) -> int:
        now = self._clock()
        return sum(1 for started_at in self._in_flight.values() if now - started_at < self.inflight_ttl)


class RedisSubmissionGuard(BaseSubmissionGuard):
    """Redis-backed guard (redis.asyncio client)."""

    def __init__(self, redis_client: Any, duplicate_window: float = 5.0, inflight_ttl: float = 30.0):
        self.redis = redis_client
        self.duplicate_window = duplicate_window
        self.inflight_ttl = inflight_ttl

    def _last_key(self, conversation_id: str) -> str:
        """Redis key holding the digest of the last accepted content."""
        return f"submissions:last:{conversation_id}"

    def _inflight_key(self, conversation_id: str, content: str) -> str:
        """Redis key of the in-flight marker."""
        return f"submissions:inflight:{submission_key(conversation_id, content)}"

    async def is_duplicate(self, conversation_id: str, content: str) -> bool:
        try:
            stored = await self.redis.get(self._last_key(conversation_id))
        except RedisError as e:
            logger.warning("submission_guard_unavailable", operation="is_duplicate", error=str(e))
            return False
        if stored is None:
            return False
        if isinstance(stored, bytes):
            stored = stored.decode()
        return stored == content_digest(content)

    async def remember(self, conversation_id: str, content: str) -> None:
        try:
            await self.redis.set(
                self._last_key(conversation_id),
                content_digest(content),
                px=int(self.duplicate_window * 1000),
            )
        except RedisError as e:
            logger.warning("submission_guard_unavailable", operation="remember", error=str(e))

    async def acquire(self, conversation_id: str, content: str) -> bool:
        # SET NX PX: atomic create-if-absent with the safety-net expiry
        try:
            created = await self.redis.set(
                self._inflight_key(conversation_id, content),
                "1",
                nx=True,
                px=int(self.inflight_ttl * 1000),
            )
        except RedisError as e:
            logger.warning("submission_guard_unavailable", operation="acquire", error=str(e))
            return True
        return bool(created)

    async def release(self, conversation_id: str, content: str) -> None:
        try:
            await self.redis.delete(self._inflight_key(conversation_id, content))
        except RedisError as e:
            # The marker still expires after the TTL
            logger.warning("submission_guard_unavailable", operation="release", error=str(e))
