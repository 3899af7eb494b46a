"""
Event Stream: the append-only log the learner consumes.

Entries are (id, fields) pairs with string fields. A learning event is
carried as its JSON serialization under the ``event`` field. Entry ids
are ordered; reading with cursor ``$`` means "only entries appended
after this read started".
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from pydantic import ValidationError

from tuning_kernel.errors import StreamReadError
from tuning_kernel.models.events import LearningEvent

logger = logging.getLogger(__name__)

StreamEntry = Tuple[str, Dict[str, str]]

LATEST = "$"


class EventStream(Protocol):
    """An ordered, append-only stream of string-field entries."""

    async def read(
        self, cursor: str, block_ms: int, count: int
    ) -> List[StreamEntry]: ...

    async def publish(self, fields: Dict[str, str]) -> str: ...


def serialize_learning_event(event: LearningEvent) -> Dict[str, str]:
    return {"event": event.model_dump_json(), "type": event.type.value}


def deserialize_learning_event(
    entry_id: str, fields: Dict[str, str]
) -> Optional[LearningEvent]:
    """Decode a stream entry. Malformed entries are logged and skipped."""
    payload = fields.get("event")
    if payload is None:
        logger.warning("Stream entry %s has no event payload", entry_id)
        return None
    try:
        return LearningEvent.model_validate_json(payload)
    except ValidationError as e:
        logger.warning("Stream entry %s is not a learning event: %s", entry_id, e)
        return None


class InMemoryEventStream:
    """
    Single-process stream for tests and development.
    Ids are ``<millis>-<seq>`` like a Redis stream.
    """

    def __init__(self):
        self._entries: List[StreamEntry] = []
        self._condition = asyncio.Condition()
        self._seq = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _next_id(self) -> str:
        self._seq += 1
        millis = int(datetime.utcnow().timestamp() * 1000)
        return f"{millis}-{self._seq}"

    def _index_after(self, cursor: str) -> int:
        if cursor == LATEST:
            return len(self._entries)
        if cursor in ("0", "0-0"):
            return 0
        for i, (entry_id, _) in enumerate(self._entries):
            if entry_id == cursor:
                return i + 1
        raise StreamReadError(f"Unknown stream cursor: {cursor}")

    async def publish(self, fields: Dict[str, str]) -> str:
        async with self._condition:
            entry_id = self._next_id()
            self._entries.append((entry_id, dict(fields)))
            self._condition.notify_all()
        return entry_id

    async def read(self, cursor: str, block_ms: int, count: int) -> List[StreamEntry]:
        async with self._condition:
            start = self._index_after(cursor)
            if start >= len(self._entries) and block_ms > 0:
                try:
                    await asyncio.wait_for(
                        self._condition.wait_for(lambda: len(self._entries) > start),
                        timeout=block_ms / 1000.0,
                    )
                except asyncio.TimeoutError:
                    return []
            return list(self._entries[start:start + count])


class RedisEventStream:
    """Event stream backed by a Redis stream (XADD / XREAD BLOCK)."""

    def __init__(self, redis_url: str, stream_key: str = "nous:learning:stream", client=None):
        self.redis_url = redis_url
        self.stream_key = stream_key
        self._client = client

    async def connect(self):
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(self.redis_url, decode_responses=True)
            logger.info("Event stream connected: %s (%s)", self.redis_url, self.stream_key)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def publish(self, fields: Dict[str, str]) -> str:
        client = await self.connect()
        return await client.xadd(self.stream_key, fields)

    async def read(self, cursor: str, block_ms: int, count: int) -> List[StreamEntry]:
        client = await self.connect()
        try:
            response = await client.xread(
                {self.stream_key: cursor}, count=count, block=block_ms
            )
        except Exception as e:
            raise StreamReadError(f"XREAD on {self.stream_key} failed: {e}") from e
        entries: List[StreamEntry] = []
        for _stream, stream_entries in response or []:
            for entry_id, fields in stream_entries:
                entries.append((entry_id, fields))
        return entries
