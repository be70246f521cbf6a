"""Background workers for async processing tasks."""

from forge3d.workers.poll_scheduler import PollPayload, PollPolicy, PollScheduler
from forge3d.workers.poll_worker import run_poll_worker

__all__ = [
    "run_poll_worker",
    "PollScheduler",
    "PollPolicy",
    "PollPayload",
]
