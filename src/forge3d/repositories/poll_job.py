"""PollJob repository.

Backs the polling scheduler's queue. Workers claim due jobs via
FOR UPDATE SKIP LOCKED and take a lease on them by pushing run_at forward, so
a job whose worker died is redelivered once the lease expires.
"""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from forge3d.models.poll_job import PollJob


class PollJobRepository:
    """Repository for PollJob entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: PollJob) -> PollJob:
        """Persist new poll job.

        Args:
            job: PollJob entity to persist

        Returns:
            Persisted job
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> PollJob | None:
        result = await self.session.execute(select(PollJob).where(PollJob.id == job_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_by_task(self, task_id: UUID) -> list[PollJob]:
        """Retrieve all scheduled jobs of a task ordered by due time."""
        result = await self.session.execute(
            select(PollJob)
            .where(PollJob.task_id == task_id)  # type: ignore[arg-type]
            .order_by(PollJob.run_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def claim_due(self, now: datetime, lease: timedelta, limit: int = 20) -> list[PollJob]:
        """Claim due jobs with row-level locking and lease them to this worker.

        Query explanation:
        - WHERE run_at <= now: Job is due (or its previous lease expired)
        - ORDER BY run_at ASC: Oldest due job first
        - LIMIT: Batch size for worker
        - FOR UPDATE SKIP LOCKED: Lock rows, skip jobs another worker is claiming

        Each claimed job has attempts incremented and run_at moved to now + lease.

        Args:
            now: Current time (timezone-aware UTC)
            lease: How long the claim is valid before the job is redelivered
            limit: Maximum number of jobs to claim

        Returns:
            Claimed jobs (changes flushed, caller commits)
        """
        result = await self.session.execute(
            select(PollJob)
            .where(PollJob.run_at <= now)  # type: ignore[arg-type]
            .order_by(PollJob.run_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        jobs = list(result.scalars().all())
        for job in jobs:
            job.attempts += 1
            job.run_at = now + lease
            self.session.add(job)
        await self.session.flush()
        return jobs

    async def delete(self, job_id: UUID) -> bool:
        """Delete a handled job.

        Returns:
            True if this call removed the row, False if it was already gone
            (another delivery of the same job finished first)
        """
        result = await self.session.execute(
            delete(PollJob).where(PollJob.id == job_id)  # type: ignore[arg-type]
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def release_for_retry(self, job_id: UUID, run_at: datetime, error_message: str) -> bool:
        """Give a claimed job back to the queue, due again at run_at."""
        result = await self.session.execute(
            update(PollJob)
            .where(PollJob.id == job_id)  # type: ignore[arg-type]
            .values(run_at=run_at, last_error=error_message[:1000])
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
