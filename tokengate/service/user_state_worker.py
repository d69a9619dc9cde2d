"""Background consumer for the user-state queue.

The worker drains ``USER_SNAPSHOT_UPDATED`` and ``USER_INVALIDATE_TOKENS``
jobs and applies them to the token cache. Deliveries are acked once they are
applied or deliberately dropped; a delivery whose handler raises stays
un-acked and is redelivered until ``max_deliveries`` is reached.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from tokengate.logging import get_logger
from tokengate.service.jobs import (
    Delivery,
    InvalidateTokensJob,
    JobKind,
    JobOutcome,
    SnapshotUpdatedJob,
)
from tokengate.service.queue import JobQueue
from tokengate.service.token_cache import TokenCacheService

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_BLOCK_MS = 1000
DEFAULT_MAX_DELIVERIES = 5
MAX_BACKOFF_SECONDS = 60
IDLE_SLEEP_SECONDS = 0.1


class UserStateProcessor:
    """Dispatches a delivery to the token cache operation named by the job."""

    def __init__(self, token_cache: TokenCacheService) -> None:
        self.token_cache = token_cache

    async def process(self, delivery: Delivery) -> JobOutcome:
        try:
            kind = JobKind(delivery.name)
        except ValueError:
            logger.warning(
                "user_state_job_unknown",
                job=delivery.name,
                message_id=delivery.message_id,
            )
            return JobOutcome.DROPPED

        if kind is JobKind.SNAPSHOT_UPDATED:
            job = SnapshotUpdatedJob.from_payload(delivery.data)
            if job is None:
                logger.warning(
                    "user_state_job_missing_snapshot",
                    job=kind.value,
                    message_id=delivery.message_id,
                )
                return JobOutcome.DROPPED
            await self.token_cache.update_user_snapshot(job.snapshot)
            return JobOutcome.APPLIED

        job = InvalidateTokensJob.from_payload(delivery.data)
        if job is None:
            logger.warning(
                "user_state_job_missing_user_id",
                job=kind.value,
                message_id=delivery.message_id,
            )
            return JobOutcome.DROPPED
        await self.token_cache.invalidate_all_tokens_for_user(job.user_id)
        return JobOutcome.APPLIED


@dataclass
class BatchResult:
    applied: int = 0
    dropped: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.applied + self.dropped + self.failed


class UserStateWorker:
    """Background worker for the user-state queue.

    Runs as an asyncio task started from the application lifespan. Waiting
    for work happens inside ``dequeue`` (blocking read on Redis, a short sleep
    in memory), so the loop itself never sleeps unless it is backing off.
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: UserStateProcessor,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        block_ms: int = DEFAULT_BLOCK_MS,
        max_deliveries: int = DEFAULT_MAX_DELIVERIES,
    ) -> None:
        self.queue = queue
        self.processor = processor
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.max_deliveries = max_deliveries
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("user_state_worker_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "user_state_worker_started",
            backend=getattr(self.queue, "backend", None),
            batch_size=self.batch_size,
        )

    async def stop(self) -> None:
        """Stop the background worker."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("user_state_worker_stopped")

    def _backoff_seconds(self, consecutive_errors: int) -> float:
        base = max(self.block_ms / 1000.0, 0.5)
        return min(MAX_BACKOFF_SECONDS, base * (2 ** (consecutive_errors - 1)))

    async def _run_loop(self) -> None:
        """Main worker loop."""
        consecutive_errors = 0
        while self._running:
            try:
                result = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "user_state_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
            else:
                if not result.failed:
                    consecutive_errors = 0
                    if not result.total and self.block_ms <= 0:
                        await asyncio.sleep(IDLE_SLEEP_SECONDS)
                    continue
                consecutive_errors += 1

            backoff = self._backoff_seconds(consecutive_errors)
            logger.warning(
                "user_state_worker_backoff",
                backoff_seconds=backoff,
                consecutive_errors=consecutive_errors,
            )
            await asyncio.sleep(backoff)

    async def run_once(self, *, block_ms: Optional[int] = None) -> BatchResult:
        """Dequeue one batch and process it. Queue errors propagate."""
        deliveries = await self.queue.dequeue(
            self.batch_size, self.block_ms if block_ms is None else block_ms
        )
        result = BatchResult()
        for delivery in deliveries:
            outcome = await self._handle(delivery)
            if outcome is JobOutcome.APPLIED:
                result.applied += 1
            elif outcome is JobOutcome.DROPPED:
                result.dropped += 1
            else:
                result.failed += 1
        return result

    async def _handle(self, delivery: Delivery) -> Optional[JobOutcome]:
        if delivery.attempts > self.max_deliveries:
            logger.error(
                "user_state_job_dead_lettered",
                job=delivery.name,
                message_id=delivery.message_id,
                attempts=delivery.attempts,
            )
            await self.queue.ack(delivery.message_id)
            return JobOutcome.DROPPED

        try:
            outcome = await self.processor.process(delivery)
        except Exception as exc:
            logger.error(
                "user_state_job_failed",
                job=delivery.name,
                message_id=delivery.message_id,
                attempts=delivery.attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self.queue.release(delivery.message_id)
            return None

        await self.queue.ack(delivery.message_id)
        logger.debug(
            "user_state_job_processed",
            job=delivery.name,
            message_id=delivery.message_id,
            outcome=outcome.value,
        )
        return outcome

    async def drain(self, *, max_batches: int = 100) -> BatchResult:
        """Process until the queue yields nothing; for tests and shutdown."""
        total = BatchResult()
        for _ in range(max_batches):
            result = await self.run_once(block_ms=0)
            if not result.total:
                break
            total.applied += result.applied
            total.dropped += result.dropped
            total.failed += result.failed
        return total
