"""ModelTask repository.

Provides data access methods for ModelTask entities. Every status write is a
single-row conditional UPDATE keyed by task id and guarded by the statuses the
row may currently be in, so a stale or duplicated poll can never move a
terminal task backwards.
"""

from typing import Iterable
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from forge3d.models.model_task import (
    ACTIVE_STATUSES,
    ModelGenerateType,
    ModelTask,
    TaskStatus,
    now_seconds,
)
from forge3d.models.poll_job import PollJob


class ModelTaskRepository:
    """Repository for ModelTask entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, task: ModelTask) -> ModelTask:
        """Persist new task to database.

        Args:
            task: ModelTask entity to persist

        Returns:
            Persisted task
        """
        self.session.add(task)
        await self.session.flush()
        return task

    async def get_by_id(self, task_id: UUID) -> ModelTask | None:
        """Retrieve task by UUID.

        Args:
            task_id: Task's unique identifier

        Returns:
            ModelTask if found, None otherwise
        """
        result = await self.session.execute(select(ModelTask).where(ModelTask.id == task_id))  # type: ignore[arg-type]
        return result.scalar_one_or_none()

    async def get_for_user(self, task_id: UUID, user_id: UUID) -> ModelTask | None:
        """Retrieve task by UUID only if it belongs to the given user."""
        result = await self.session.execute(
            select(ModelTask).where(
                ModelTask.id == task_id,  # type: ignore[arg-type]
                ModelTask.user_id == user_id,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def list_by_user_paginated(
        self, user_id: UUID, offset: int = 0, limit: int = 10
    ) -> tuple[list[ModelTask], int]:
        """Retrieve a user's tasks (newest first) with the total count.

        Args:
            user_id: Owner's unique identifier
            offset: Number of tasks to skip (default: 0)
            limit: Maximum number of tasks to return (default: 10)

        Returns:
            Tuple of (tasks for the current page, total tasks of the user)
        """
        condition = ModelTask.user_id == user_id  # type: ignore[arg-type]
        return await self._paginate(condition, offset=offset, limit=limit)

    async def list_history_models(
        self,
        user_id: UUID,
        offset: int = 0,
        limit: int = 10,
        generate_type: ModelGenerateType | None = None,
    ) -> tuple[list[ModelTask], int]:
        """Retrieve a user's successful tasks that have durable assets (newest first).

        Args:
            user_id: Owner's unique identifier
            offset: Number of tasks to skip
            limit: Maximum number of tasks to return
            generate_type: Optional filter on the generation type

        Returns:
            Tuple of (tasks for the current page, total matching tasks)
        """
        conditions = [
            ModelTask.user_id == user_id,  # type: ignore[arg-type]
            ModelTask.status == TaskStatus.SUCCESS,  # type: ignore[arg-type]
            ModelTask.has_durable_assets.is_(True),  # type: ignore[attr-defined]
        ]
        if generate_type is not None:
            conditions.append(ModelTask.type == generate_type)  # type: ignore[arg-type]
        return await self._paginate(*conditions, offset=offset, limit=limit)

    async def _paginate(self, *conditions, offset: int, limit: int) -> tuple[list[ModelTask], int]:
        # Query 1: Get total count
        count_result = await self.session.execute(
            select(func.count(ModelTask.id)).where(*conditions)  # type: ignore[arg-type]
        )
        total = count_result.scalar() or 0

        # Query 2: Get paginated data
        data_result = await self.session.execute(
            select(ModelTask)
            .where(*conditions)
            .order_by(ModelTask.create_time.desc(), ModelTask.id.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )
        return list(data_result.scalars().all()), total

    async def get_active_without_poll_job(self, limit: int | None = None) -> list[ModelTask]:
        """Retrieve submitted, still-active tasks that have no scheduled poll.

        These are tasks whose poll chain was lost (process crash between
        handling a job and scheduling its successor).
        """
        has_job = select(PollJob.id).where(PollJob.task_id == ModelTask.id).exists()  # type: ignore[arg-type]
        stmt = (
            select(ModelTask)
            .where(
                ModelTask.status.in_(list(ACTIVE_STATUSES)),  # type: ignore[attr-defined]
                ModelTask.provider_task_id.is_not(None),  # type: ignore[union-attr]
                ~has_job,
            )
            .order_by(ModelTask.create_time.asc())  # type: ignore[attr-defined]
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def record_observation(
        self,
        task: ModelTask,
        status: TaskStatus,
        progress: int,
        output: dict,
        error_msg: str | None = None,
    ) -> bool:
        """Set status, progress and output together while the task is still active.

        Args:
            task: Task entity (attached to this session) to update
            status: New persisted status
            progress: New progress (0-100)
            output: Complete merged output mapping
            error_msg: Diagnostic to store when status is failed

        Returns:
            True if the row was updated, False if it had already left the
            active statuses (a concurrent poll got there first)

        Raises:
            InvalidStateTransition: If status is unknown
        """
        task.ensure_transition(status)
        values: dict = {
            "status": status,
            "progress": max(0, min(100, progress)),
            "output": output,
            "update_time": now_seconds(),
        }
        if status == TaskStatus.FAILED:
            values["error_msg"] = (error_msg or "failed")[:1000]
        return await self._conditional_update(task, ACTIVE_STATUSES, values)

    async def save_relocated_output(self, task: ModelTask, output: dict) -> bool:
        """Write the merged output (with relocated URLs) back to a successful task.

        Returns:
            True if the row was updated, False if the task is no longer success
        """
        values = {
            "output": output,
            "has_durable_assets": bool(output.get("qiniu_output")),
            "update_time": now_seconds(),
        }
        return await self._conditional_update(task, (TaskStatus.SUCCESS,), values)

    async def mark_failed(self, task: ModelTask, error_message: str) -> bool:
        """Mark an active task as permanently failed with error message.

        The UPDATE only applies while the row is queued or running, so a task
        that reached a terminal status in the meantime (including success) is
        left untouched.

        Args:
            task: Task entity to update
            error_message: Error description (truncated to 1000 characters)

        Returns:
            True if the row was updated, False if the task was no longer active

        Raises:
            InvalidStateTransition: If the task is banned, expired or cancelled
        """
        if task.status == TaskStatus.FAILED:
            return False
        task.ensure_transition(TaskStatus.FAILED)
        return await self._conditional_update(
            task, ACTIVE_STATUSES, self._failed_values(error_message)
        )

    async def invalidate_success(self, task: ModelTask, error_message: str) -> bool:
        """Move a successful task to failed when its relocated output could not be saved.

        Returns:
            True if the row was updated, False if the task is no longer success
        """
        return await self._conditional_update(
            task, (TaskStatus.SUCCESS,), self._failed_values(error_message)
        )

    @staticmethod
    def _failed_values(error_message: str) -> dict:
        return {
            "status": TaskStatus.FAILED,
            "error_msg": error_message[:1000],
            "update_time": now_seconds(),
        }

    async def _conditional_update(
        self, task: ModelTask, expected: Iterable[TaskStatus], values: dict
    ) -> bool:
        result = await self.session.execute(
            update(ModelTask)
            .where(
                ModelTask.id == task.id,  # type: ignore[arg-type]
                ModelTask.status.in_(list(expected)),  # type: ignore[attr-defined]
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        await self.session.refresh(task)
        return result.rowcount == 1  # type: ignore[attr-defined]
