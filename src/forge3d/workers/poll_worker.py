"""Poll worker driving generation tasks to a terminal state.

Claims due poll jobs, hands each to ModelTaskService.handle_poll, then
completes the job (delete + successor insert, one transaction) according to
the returned decision.

Error handling per job:
- ProviderError / TransientError: release the job for a retry after a backoff;
  once the job has been delivered max_attempts times the task is failed
- TaskNotFoundError: the task row is gone, drop the job
- PermanentError / ValueError: fail the task, drop the job
- Anything else: release (or fail once attempts are spent) and re-raise for
  batch-level logging
"""

import asyncio
from typing import TYPE_CHECKING

import structlog

from forge3d.core.config import Settings
from forge3d.models.poll_job import PollJob
from forge3d.services.exceptions import PermanentError, TaskNotFoundError, TransientError
from forge3d.workers.poll_scheduler import PollPayload

if TYPE_CHECKING:
    from forge3d.services.model_tasks.service import ModelTaskService

logger = structlog.get_logger(__name__)


async def process_single_job(job: PollJob, service: "ModelTaskService") -> None:
    """Handle one delivered poll job.

    Args:
        job: Claimed job (detached, attempts already incremented)
        service: Task orchestrator

    Raises:
        Exception: Unexpected errors after the job was released or its task failed
    """
    scheduler = service.scheduler
    policy = service.policy
    payload = PollPayload.from_job(job)
    log = logger.bind(
        job_id=str(job.id),
        task_id=str(job.task_id),
        provider_task_id=job.provider_task_id,
        attempt=job.attempts,
    )

    try:
        decision = await service.handle_poll(payload)

    except TaskNotFoundError as e:
        log.warning("poll.task_missing", error_message=str(e))
        await scheduler.complete(job.id)
        return

    except TransientError as e:
        if job.attempts >= policy.max_attempts:
            message = f"provider error after {job.attempts} attempts: {e}"
            await service.fail_task(job.task_id, message)
            await scheduler.complete(job.id)
            log.error("poll.retries_exhausted", error_type=type(e).__name__, error_message=str(e))
            return
        delay_ms = policy.retry_delay_ms(job.attempts)
        await scheduler.release(job.id, delay_ms, str(e))
        log.warning(
            "poll.retry",
            error_type=type(e).__name__,
            error_message=str(e),
            delay_ms=delay_ms,
        )
        return

    except (PermanentError, ValueError) as e:
        await service.fail_task(job.task_id, str(e))
        await scheduler.complete(job.id)
        log.error("poll.failed", error_type=type(e).__name__, error_message=str(e))
        return

    except Exception as e:
        if job.attempts >= policy.max_attempts:
            await service.fail_task(job.task_id, f"{type(e).__name__}: {e}")
            await scheduler.complete(job.id)
        else:
            await scheduler.release(job.id, policy.retry_delay_ms(job.attempts), str(e))
        log.error("poll.failed", error_type=type(e).__name__, error_message=str(e))
        raise

    completed = await scheduler.complete(job.id, decision.next_payload, decision.delay_ms)
    log.debug(
        "poll.completed",
        action=decision.action.value,
        status=decision.status.value,
        reason=decision.reason,
        delay_ms=decision.delay_ms,
        successor_scheduled=completed and decision.next_payload is not None,
    )


async def process_batch(service: "ModelTaskService", settings: Settings) -> int:
    """Claim due jobs and process them concurrently.

    Returns:
        Number of jobs claimed
    """
    jobs = await service.scheduler.claim_due(
        limit=settings.worker_batch_size, lease_seconds=settings.poll_job_lease_seconds
    )
    if not jobs:
        return 0

    results = await asyncio.gather(
        *(process_single_job(job, service) for job in jobs), return_exceptions=True
    )

    for job, result in zip(jobs, results):
        if isinstance(result, Exception):
            logger.error(
                "poll.job_error",
                job_id=str(job.id),
                task_id=str(job.task_id),
                error=str(result),
                error_type=type(result).__name__,
            )
    return len(jobs)


async def recover_orphaned_tasks(service: "ModelTaskService") -> int:
    """Re-enqueue active tasks that lost their poll job (startup recovery)."""
    tasks = await service.resume_orphaned_polls()
    return len(tasks)


async def run_poll_worker(service: "ModelTaskService", settings: Settings) -> None:
    """Main worker loop for task polling.

    Workflow:
    1. Run startup recovery (re-enqueue tasks without a poll job)
    2. Claim and process due jobs in batches
    3. Sleep POLL_WORKER_INTERVAL_SECONDS between batches
    4. Handle CancelledError for graceful shutdown

    Args:
        service: Task orchestrator (owns the scheduler and poll policy)
        settings: Application settings (interval, batch size, lease)
    """
    await recover_orphaned_tasks(service)

    logger.info(
        "worker.started",
        poll_interval=settings.poll_worker_interval_seconds,
        batch_size=settings.worker_batch_size,
        lease_seconds=settings.poll_job_lease_seconds,
    )

    try:
        while True:
            try:
                await process_batch(service, settings)
                await asyncio.sleep(settings.poll_worker_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped")
        raise
