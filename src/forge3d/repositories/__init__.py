"""Repository layer.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from forge3d.repositories.model_task import ModelTaskRepository
from forge3d.repositories.poll_job import PollJobRepository
from forge3d.repositories.user import UserRepository

__all__ = [
    "UserRepository",
    "ModelTaskRepository",
    "PollJobRepository",
]
