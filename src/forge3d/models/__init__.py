"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
before tables are created.
"""

from forge3d.models.model_task import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    GenerateStyle,
    InvalidStateTransition,
    ModelGenerateType,
    ModelTask,
    TaskStatus,
)
from forge3d.models.poll_job import PollJob
from forge3d.models.user import User

__all__ = [
    "User",
    "ModelTask",
    "ModelGenerateType",
    "GenerateStyle",
    "TaskStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "InvalidStateTransition",
    "PollJob",
]
