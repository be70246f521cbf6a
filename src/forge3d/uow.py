"""Unit of Work for the forge3d backend.

One UnitOfWork is one database transaction: the task pipeline opens one per
state change so that a task row and the poll job that follows it are written
or discarded together.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forge3d.repositories.model_task import ModelTaskRepository
from forge3d.repositories.poll_job import PollJobRepository
from forge3d.repositories.user import UserRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Transaction scope exposing the users, model_tasks and poll_jobs repositories.

    Example:
        async with await uow_factory() as uow:
            await uow.model_tasks.add(task)
            await uow.poll_jobs.add(first_poll)
        # committed here; an exception inside the block rolls both back
    """

    def __init__(self, session: AsyncSession):
        self.session = session

        self.users = UserRepository(session)
        self.model_tasks = ModelTaskRepository(session)
        self.poll_jobs = PollJobRepository(session)

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        """Commit when the block succeeded, roll back otherwise; never swallow the error."""
        try:
            if exc_type is not None:
                await self.session.rollback()
                logger.debug("transaction.rolled_back", exc_type=exc_type.__name__)
            else:
                await self.session.commit()
                logger.debug("transaction.committed")
        finally:
            await self.session.close()
        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Build the async factory the services use to open transactions.

    Args:
        session_factory: Session factory from setup_db_session()

    Returns:
        Coroutine function returning a UnitOfWork on a fresh session
    """

    async def _create_uow() -> UnitOfWork:
        return UnitOfWork(session_factory())

    return _create_uow
