"""Tests for the user-state queue transports and the producer facade."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from tokengate.service.jobs import JobKind
from tokengate.service.queue import (
    MemoryJobQueue,
    NullJobQueue,
    RedisStreamJobQueue,
    UserStateQueueService,
)
from tokengate.storage.errors import JobQueueError
from tokengate.storage.models import UserSnapshot


class TestMemoryJobQueue:
    async def test_fifo_with_explicit_ack(self):
        queue = MemoryJobQueue()
        first = await queue.enqueue("A", {"n": 1})
        second = await queue.enqueue("B", {"n": 2})

        batch = await queue.dequeue(count=10)

        assert [d.message_id for d in batch] == [first, second]
        assert [d.name for d in batch] == ["A", "B"]
        assert all(d.attempts == 1 for d in batch)
        assert queue.pending_count == 2

        await queue.ack(first)
        assert queue.pending_count == 1

    async def test_requeue_pending_redelivers_in_order(self):
        queue = MemoryJobQueue()
        await queue.enqueue("A", {})
        await queue.enqueue("B", {})
        await queue.enqueue("C", {})
        await queue.dequeue(count=2)

        assert queue.requeue_pending() == 2

        redelivered = await queue.dequeue(count=10)
        assert [d.name for d in redelivered] == ["A", "B", "C"]
        assert [d.attempts for d in redelivered] == [2, 2, 1]

    async def test_release_puts_job_back_at_head(self):
        queue = MemoryJobQueue()
        first = await queue.enqueue("A", {})
        await queue.enqueue("B", {})
        await queue.dequeue(count=1)

        await queue.release(first)

        assert [d.name for d in await queue.dequeue(count=1)] == ["A"]

    async def test_payload_is_copied_on_enqueue(self):
        queue = MemoryJobQueue()
        payload = {"userId": "u1"}
        await queue.enqueue("X", payload)
        payload["userId"] = "mutated"

        (delivery,) = await queue.dequeue()
        assert delivery.data == {"userId": "u1"}

    async def test_empty_dequeue_returns_nothing(self):
        assert await MemoryJobQueue().dequeue(count=5, block_ms=1) == []


class TestNullJobQueue:
    async def test_accepts_nothing(self):
        queue = NullJobQueue()

        assert await queue.enqueue("A", {}) is None
        assert await queue.dequeue() == []
        assert queue.enabled is False


def _stream_client():
    client = MagicMock()
    client.xgroup_create = AsyncMock(return_value=True)
    client.xadd = AsyncMock(return_value="1700000000000-0")
    client.xreadgroup = AsyncMock(return_value=[])
    client.xpending_range = AsyncMock(return_value=[])
    client.xack = AsyncMock(return_value=1)
    return client


class TestRedisStreamJobQueue:
    async def test_enqueue_appends_capped_entry(self):
        client = _stream_client()
        queue = RedisStreamJobQueue(client, stream="user-state", max_len=500)

        message_id = await queue.enqueue("USER_INVALIDATE_TOKENS", {"userId": "u1"})

        assert message_id == "1700000000000-0"
        client.xadd.assert_awaited_once_with(
            "user-state",
            {"name": "USER_INVALIDATE_TOKENS", "data": '{"userId":"u1"}'},
            maxlen=500,
            approximate=True,
        )

    async def test_reads_pending_before_new_entries(self):
        client = _stream_client()
        entry = ("1-0", {"name": "USER_INVALIDATE_TOKENS", "data": '{"userId":"u1"}'})
        client.xreadgroup = AsyncMock(
            side_effect=[
                [["user-state", [entry]]],
                [["user-state", []]],
                [["user-state", [("2-0", {"name": "OTHER", "data": "{}"})]]],
            ]
        )
        client.xpending_range = AsyncMock(
            return_value=[{"message_id": "1-0", "times_delivered": 3}]
        )
        queue = RedisStreamJobQueue(client, consumer="worker-1")

        pending = await queue.dequeue(count=10)
        assert [(d.message_id, d.attempts, d.data) for d in pending] == [
            ("1-0", 3, {"userId": "u1"})
        ]
        assert client.xreadgroup.await_args_list[0].args[2] == {"user-state": "0"}

        fresh = await queue.dequeue(count=10, block_ms=5)
        assert [d.message_id for d in fresh] == ["2-0"]
        assert client.xreadgroup.await_args_list[2].args[2] == {"user-state": ">"}

    async def test_existing_group_is_reused(self):
        client = _stream_client()
        client.xgroup_create = AsyncMock(
            side_effect=ResponseError("BUSYGROUP Consumer Group name already exists")
        )
        queue = RedisStreamJobQueue(client)

        assert await queue.dequeue() == []
        client.xgroup_create.assert_awaited_once()

    async def test_malformed_data_is_delivered_as_none(self):
        client = _stream_client()
        client.xreadgroup = AsyncMock(
            side_effect=[[], [["user-state", [("3-0", {"name": "X", "data": "{oops"})]]]]
        )
        queue = RedisStreamJobQueue(client)

        (delivery,) = await queue.dequeue()
        assert delivery.data is None

    async def test_transport_errors_raise_queue_error(self):
        client = _stream_client()
        client.xadd = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
        queue = RedisStreamJobQueue(client)

        with pytest.raises(JobQueueError) as excinfo:
            await queue.enqueue("X", {})
        assert excinfo.value.operation == "xadd"

    async def test_ack_and_release(self):
        client = _stream_client()
        queue = RedisStreamJobQueue(client, stream="user-state", group="g")
        await queue.dequeue()

        await queue.ack("1-0")
        client.xack.assert_awaited_once_with("user-state", "g", "1-0")

        await queue.release("1-0")
        await queue.dequeue()
        assert client.xreadgroup.await_args_list[-2].args[2] == {"user-state": "0"}


class TestUserStateQueueService:
    async def test_snapshot_job_payload(self):
        queue = MemoryJobQueue()
        producer = UserStateQueueService(queue)
        snapshot = UserSnapshot(id="u1", username="alice", email="a@example.com")

        assert await producer.enqueue_snapshot_update(snapshot) is True

        (delivery,) = await queue.dequeue()
        assert delivery.name == JobKind.SNAPSHOT_UPDATED.value
        assert delivery.data["snapshot"]["id"] == "u1"
        assert delivery.data["snapshot"]["username"] == "alice"

    async def test_invalidate_job_payload(self):
        queue = MemoryJobQueue()
        producer = UserStateQueueService(queue)

        assert await producer.enqueue_invalidate_tokens("u1") is True

        (delivery,) = await queue.dequeue()
        assert delivery.name == "USER_INVALIDATE_TOKENS"
        assert delivery.data == {"userId": "u1"}

    async def test_null_queue_reports_not_enqueued(self):
        producer = UserStateQueueService(NullJobQueue())

        assert producer.enabled is False
        assert await producer.enqueue_invalidate_tokens("u1") is False

    async def test_transport_failure_is_reported_not_raised(self):
        queue = MagicMock()
        queue.enqueue = AsyncMock(side_effect=JobQueueError("down", operation="xadd"))
        producer = UserStateQueueService(queue)

        assert await producer.enqueue_invalidate_tokens("u1") is False
