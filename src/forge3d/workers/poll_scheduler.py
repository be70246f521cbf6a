"""Delayed poll jobs backed by the poll_jobs table.

Scheduling a poll inserts a future-dated PollJob row; nothing sleeps per task.
Delivery is at-least-once: claiming a job leases it by pushing run_at forward,
so a job whose worker dies becomes due again once the lease runs out.

A task's poll chain stays sequential because completing a job deletes its row
and inserts the successor in one transaction, and the successor is only
inserted when the delete removed the row. A duplicate delivery of the same job
finds the row gone and ends without scheduling anything.
"""

import time
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Callable
from uuid import UUID

import structlog

from forge3d.models.poll_job import PollJob, utcnow

logger = structlog.get_logger(__name__)


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class PollPolicy:
    """Polling loop constants (all durations in milliseconds)."""

    interval_ms: int = 3000
    max_duration_ms: int = 10 * 60 * 1000
    max_unknown_retries: int = 3
    max_attempts: int = 3
    initial_delay_ms: int = 1000

    def unknown_delay_ms(self, unknown_retry_count: int) -> int:
        """Delay before re-polling after the n-th consecutive unknown status (2x, 4x, ...)."""
        return self.interval_ms * 2**unknown_retry_count

    def retry_delay_ms(self, attempts: int) -> int:
        """Delay before redelivering a job whose provider call failed."""
        return self.interval_ms * 2 ** max(0, attempts - 1)


@dataclass(frozen=True)
class PollPayload:
    """State carried from one poll to the next."""

    task_id: UUID
    provider_task_id: str
    poll_start_ms: int
    unknown_retry_count: int = 0

    @classmethod
    def from_job(cls, job: PollJob) -> "PollPayload":
        return cls(
            task_id=job.task_id,
            provider_task_id=job.provider_task_id,
            poll_start_ms=job.poll_start_ms,
            unknown_retry_count=job.unknown_retry_count,
        )

    def with_unknown_count(self, unknown_retry_count: int) -> "PollPayload":
        return replace(self, unknown_retry_count=unknown_retry_count)


class PollScheduler:
    """Queue operations on poll jobs.

    Every method accepts an optional UnitOfWork so callers can make the queue
    change part of their own transaction; without one, a new UnitOfWork is
    opened and committed.
    """

    def __init__(self, uow_factory: Callable):
        """Initialize scheduler.

        Args:
            uow_factory: Factory creating UnitOfWork instances
        """
        self.uow_factory = uow_factory

    async def schedule(self, payload: PollPayload, delay_ms: int, uow=None) -> PollJob:
        """Persist one poll job due after delay_ms.

        Args:
            payload: Loop state for the poll
            delay_ms: Delay before the job becomes due
            uow: Optional UnitOfWork to join

        Returns:
            The inserted PollJob
        """
        if uow is None:
            async with await self.uow_factory() as own_uow:
                return await self._insert(own_uow, payload, delay_ms)
        return await self._insert(uow, payload, delay_ms)

    async def claim_due(self, limit: int, lease_seconds: float) -> list[PollJob]:
        """Claim due jobs (FOR UPDATE SKIP LOCKED) and lease them to the caller.

        Returns:
            Claimed jobs, detached from their session (attempts already counted)
        """
        async with await self.uow_factory() as uow:
            return await uow.poll_jobs.claim_due(
                now=utcnow(), lease=timedelta(seconds=lease_seconds), limit=limit
            )

    async def complete(
        self,
        job_id: UUID,
        successor: PollPayload | None = None,
        delay_ms: int = 0,
    ) -> bool:
        """Delete a handled job and, if it was still queued, schedule its successor.

        Args:
            job_id: Handled job
            successor: Payload of the next poll, None to end the chain
            delay_ms: Delay of the next poll

        Returns:
            True if this call removed the job (False: a duplicate delivery
            already completed it, nothing was scheduled)
        """
        async with await self.uow_factory() as uow:
            removed = await uow.poll_jobs.delete(job_id)
            if not removed:
                logger.info("poll.duplicate_delivery", job_id=str(job_id))
                return False
            if successor is not None:
                await self._insert(uow, successor, delay_ms)
        return True

    async def release(self, job_id: UUID, delay_ms: int, error_message: str) -> bool:
        """Return a claimed job to the queue, due again after delay_ms."""
        async with await self.uow_factory() as uow:
            return await uow.poll_jobs.release_for_retry(
                job_id, utcnow() + timedelta(milliseconds=delay_ms), error_message
            )

    @staticmethod
    async def _insert(uow, payload: PollPayload, delay_ms: int) -> PollJob:
        job = PollJob(
            task_id=payload.task_id,
            provider_task_id=payload.provider_task_id,
            poll_start_ms=payload.poll_start_ms,
            unknown_retry_count=payload.unknown_retry_count,
            delay_ms=delay_ms,
            run_at=utcnow() + timedelta(milliseconds=delay_ms),
        )
        await uow.poll_jobs.add(job)
        logger.debug(
            "poll.scheduled",
            task_id=str(payload.task_id),
            provider_task_id=payload.provider_task_id,
            delay_ms=delay_ms,
            unknown_retry_count=payload.unknown_retry_count,
        )
        return job
