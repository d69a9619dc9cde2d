"""User-state job queue: transports and the producer facade.

Transports implement ``JobQueue``. ``NullJobQueue`` is selected at
composition time when propagation is switched off; producers then enqueue
nothing and revocation relies on natural token expiry.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import socket
import threading
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from tokengate.logging import get_logger
from tokengate.service.jobs import (
    USER_STATE_QUEUE,
    Delivery,
    InvalidateTokensJob,
    JobKind,
    SnapshotUpdatedJob,
)
from tokengate.storage.errors import JobQueueError
from tokengate.storage.models import UserSnapshot

logger = get_logger(__name__)


class JobQueue(Protocol):
    enabled: bool
    backend: str

    async def enqueue(self, name: str, payload: Dict[str, Any]) -> Optional[str]: ...

    async def dequeue(self, count: int = 10, block_ms: int = 0) -> List[Delivery]: ...

    async def ack(self, message_id: str) -> None: ...

    async def release(self, message_id: str) -> None: ...

    async def close(self) -> None: ...


class NullJobQueue:
    """Queue used when propagation is disabled: accepts nothing, yields nothing."""

    enabled = False
    backend = "none"

    async def enqueue(self, name: str, payload: Dict[str, Any]) -> Optional[str]:
        logger.debug("user_state_enqueue_skipped", job=name, reason="queue_disabled")
        return None

    async def dequeue(self, count: int = 10, block_ms: int = 0) -> List[Delivery]:
        if block_ms > 0:
            await asyncio.sleep(block_ms / 1000.0)
        return []

    async def ack(self, message_id: str) -> None:
        return None

    async def release(self, message_id: str) -> None:
        return None

    async def close(self) -> None:
        return None


class MemoryJobQueue:
    """In-process FIFO with explicit acknowledgement.

    Dequeued jobs stay pending until acked. ``release`` puts one back at the
    head of the queue; ``requeue_pending`` returns every un-acked job, which is
    how a consumer crash looks to an at-least-once transport.
    """

    enabled = True
    backend = "memory"

    def __init__(self, name: str = USER_STATE_QUEUE) -> None:
        self.name = name
        self._ids = itertools.count(1)
        self._ready: Deque[Delivery] = deque()
        self._pending: Dict[str, Delivery] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._ready)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    async def enqueue(self, name: str, payload: Dict[str, Any]) -> Optional[str]:
        # Round-trip through JSON so payloads look exactly as a remote consumer sees them
        data = json.loads(json.dumps(payload))
        with self._lock:
            message_id = f"{next(self._ids)}-0"
            self._ready.append(Delivery(message_id=message_id, name=name, data=data, attempts=0))
        return message_id

    def _take(self, count: int) -> List[Delivery]:
        taken: List[Delivery] = []
        with self._lock:
            while self._ready and len(taken) < count:
                delivery = self._ready.popleft()
                delivery.attempts += 1
                self._pending[delivery.message_id] = delivery
                taken.append(delivery)
        return taken

    async def dequeue(self, count: int = 10, block_ms: int = 0) -> List[Delivery]:
        taken = self._take(count)
        if not taken and block_ms > 0:
            await asyncio.sleep(block_ms / 1000.0)
            taken = self._take(count)
        return taken

    async def ack(self, message_id: str) -> None:
        with self._lock:
            self._pending.pop(message_id, None)

    async def release(self, message_id: str) -> None:
        with self._lock:
            delivery = self._pending.pop(message_id, None)
            if delivery:
                self._ready.appendleft(delivery)

    def requeue_pending(self) -> int:
        with self._lock:
            pending = sorted(self._pending.values(), key=lambda d: int(d.message_id.split("-")[0]))
            self._pending.clear()
            self._ready.extendleft(reversed(pending))
            return len(pending)

    async def close(self) -> None:
        return None


class RedisStreamJobQueue:
    """Redis Streams transport with a consumer group.

    Entries are appended with ``XADD`` (approximate ``MAXLEN``), read with
    ``XREADGROUP`` and removed from the pending list with ``XACK``. Entries
    delivered to this consumer but never acked are read again first, after a
    restart or a ``release``, giving at-least-once delivery.
    """

    enabled = True
    backend = "redis"

    def __init__(
        self,
        client: Any,
        *,
        stream: str = USER_STATE_QUEUE,
        group: str = "user-state-workers",
        consumer: Optional[str] = None,
        max_len: int = 10000,
        command_timeout: float = 0.25,
    ) -> None:
        self.client = client
        self.stream = stream
        self.group = group
        self.consumer = consumer or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.max_len = max_len
        self.command_timeout = command_timeout
        self._owns_client = False
        self._group_ready = False
        self._read_pending = True

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        *,
        block_ms: int,
        command_timeout: float = 0.25,
        **kwargs: Any,
    ) -> "RedisStreamJobQueue":
        """Build a queue on a dedicated connection pool.

        Blocking ``XREADGROUP`` calls hold a connection for up to ``block_ms``,
        so the socket read timeout must cover the block window; the key-value
        store's short timeout would cut every blocking read short.
        """
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=command_timeout + block_ms / 1000.0,
            socket_connect_timeout=command_timeout,
        )
        queue = cls(client, command_timeout=command_timeout, **kwargs)
        queue._owns_client = True
        return queue

    async def _call(self, operation: str, awaitable, *, timeout: Optional[float] = None):
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout or self.command_timeout)
        except asyncio.TimeoutError as exc:
            raise JobQueueError(f"redis {operation} timed out", operation=operation) from exc
        except (RedisError, OSError) as exc:
            raise JobQueueError(f"redis {operation} failed: {exc}", operation=operation) from exc

    async def _ensure_group(self) -> None:
        if self._group_ready:
            return
        try:
            await self._call(
                "xgroup_create",
                self.client.xgroup_create(self.stream, self.group, id="0", mkstream=True),
            )
        except JobQueueError as exc:
            cause = exc.__cause__
            if not (isinstance(cause, ResponseError) and "BUSYGROUP" in str(cause)):
                raise
        self._group_ready = True

    async def enqueue(self, name: str, payload: Dict[str, Any]) -> Optional[str]:
        fields = {"name": name, "data": json.dumps(payload, separators=(",", ":"))}
        message_id = await self._call(
            "xadd",
            self.client.xadd(self.stream, fields, maxlen=self.max_len, approximate=True),
        )
        return str(message_id)

    @staticmethod
    def _parse(message_id: str, fields: Optional[Dict[str, str]], attempts: int) -> Delivery:
        fields = fields or {}
        raw = fields.get("data")
        try:
            data = json.loads(raw) if raw else {}
        except (json.JSONDecodeError, TypeError):
            data = None
        return Delivery(
            message_id=str(message_id),
            name=fields.get("name", ""),
            data=data,
            attempts=attempts,
        )

    async def _delivery_counts(self, count: int) -> Dict[str, int]:
        entries = await self._call(
            "xpending_range",
            self.client.xpending_range(
                self.stream, self.group, min="-", max="+", count=count, consumername=self.consumer
            ),
        )
        return {str(e["message_id"]): int(e["times_delivered"]) for e in entries or []}

    async def dequeue(self, count: int = 10, block_ms: int = 0) -> List[Delivery]:
        await self._ensure_group()

        if self._read_pending:
            response = await self._call(
                "xreadgroup",
                self.client.xreadgroup(self.group, self.consumer, {self.stream: "0"}, count=count),
            )
            entries = response[0][1] if response else []
            if entries:
                counts = await self._delivery_counts(count)
                return [
                    self._parse(mid, fields, counts.get(str(mid), 1))
                    for mid, fields in entries
                ]
            self._read_pending = False

        response = await self._call(
            "xreadgroup",
            self.client.xreadgroup(
                self.group,
                self.consumer,
                {self.stream: ">"},
                count=count,
                block=block_ms or None,
            ),
            timeout=self.command_timeout + block_ms / 1000.0,
        )
        if not response:
            return []
        return [self._parse(mid, fields, 1) for mid, fields in response[0][1]]

    async def ack(self, message_id: str) -> None:
        await self._call("xack", self.client.xack(self.stream, self.group, message_id))

    async def release(self, message_id: str) -> None:
        # Left pending; re-read on the next dequeue
        self._read_pending = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class UserStateQueueService:
    """Producer facade used by administrative use cases.

    Returns True when a job was accepted by the transport. Transport errors
    are logged and reported as False: the use case has already committed its
    change to the user store and must not fail because propagation did.
    """

    def __init__(self, queue: JobQueue) -> None:
        self.queue = queue

    @property
    def enabled(self) -> bool:
        return bool(getattr(self.queue, "enabled", False))

    async def _enqueue(self, kind: JobKind, payload: Dict[str, Any], **log_fields) -> bool:
        try:
            message_id = await self.queue.enqueue(kind.value, payload)
        except JobQueueError as exc:
            logger.error("user_state_enqueue_failed", job=kind.value, error=str(exc), **log_fields)
            return False
        if message_id is None:
            return False
        logger.info("user_state_job_enqueued", job=kind.value, message_id=message_id, **log_fields)
        return True

    async def enqueue_snapshot_update(self, snapshot: UserSnapshot) -> bool:
        return await self._enqueue(
            JobKind.SNAPSHOT_UPDATED,
            SnapshotUpdatedJob(snapshot=snapshot).to_payload(),
            user_id=snapshot.id,
        )

    async def enqueue_invalidate_tokens(self, user_id: str) -> bool:
        return await self._enqueue(
            JobKind.INVALIDATE_TOKENS,
            InvalidateTokensJob(user_id=user_id).to_payload(),
            user_id=user_id,
        )
