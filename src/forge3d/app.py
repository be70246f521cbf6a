"""FastAPI application factory."""

# Import timezone enforcement (sets TZ=UTC)
import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forge3d.api.routes import model_tasks
from forge3d.core import timezone  # noqa: F401
from forge3d.core.config import Settings, configure_logging
from forge3d.core.database import init_db, setup_db_session
from forge3d.services.model_tasks.service import ModelTaskService
from forge3d.uow import create_uow_factory
from forge3d.workers.poll_worker import run_poll_worker

logger = structlog.get_logger()

WORKER_RESTART_DELAY_SECONDS = 1


def create_resilient_worker(
    start: Callable[[], Awaitable[None]], worker_name: str, shutdown_event: asyncio.Event
) -> asyncio.Task:
    """Run a long-lived worker coroutine, starting it again whenever it dies.

    Args:
        start: Zero-argument coroutine function running the worker loop
        worker_name: Name used in log events
        shutdown_event: Once set, a finished worker is not restarted

    Returns:
        Handle of the first worker task (restarts get their own tasks)
    """

    def spawn() -> asyncio.Task:
        worker = asyncio.create_task(start(), name=f"{worker_name}-worker")
        worker.add_done_callback(on_done)
        return worker

    def on_done(worker: asyncio.Task) -> None:
        if shutdown_event.is_set() or worker.cancelled():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        exc = worker.exception()
        if exc is not None:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=WORKER_RESTART_DELAY_SECONDS,
                exc_info=exc,
            )
        else:
            # The poll loop never returns on its own
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=WORKER_RESTART_DELAY_SECONDS,
            )

        async def restart() -> None:
            await asyncio.sleep(WORKER_RESTART_DELAY_SECONDS)
            if shutdown_event.is_set():
                return
            logger.info("worker.restarting", worker=worker_name)
            spawn()

        asyncio.create_task(restart())

    return spawn()


async def check_database(session_factory: async_sessionmaker[AsyncSession]) -> None:
    async with session_factory() as session:
        await session.execute(text("SELECT 1"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the pipeline on startup and tear it down on shutdown.

    Startup builds the orchestrator (Tripo3D client, Qiniu storage, relocator)
    on a fresh session factory, creates missing tables, and starts the poll
    worker. The worker's first action is re-enqueueing active tasks that lost
    their poll job.
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    engine = session_factory.kw["bind"]
    if settings.auto_create_tables:
        await init_db(engine)

    uow_factory = create_uow_factory(session_factory)
    service = ModelTaskService.from_settings(settings, uow_factory)

    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.model_task_service = service

    shutdown_event = asyncio.Event()
    poll_worker = create_resilient_worker(
        lambda: run_poll_worker(service, settings), "poll", shutdown_event
    )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    shutdown_event.set()
    poll_worker.cancel()
    await asyncio.gather(poll_worker, return_exceptions=True)
    await engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create the FastAPI application (routes, CORS, health check)."""
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="forge3d API",
        description="3D model generation task pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(model_tasks.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Report 200 when the database answers, 503 with the error otherwise."""
        try:
            await check_database(app.state.session_factory)
        except Exception as e:
            logger.error("health_check.failed", error=str(e), error_type=type(e).__name__)
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "unhealthy", "error": {"type": type(e).__name__, "message": str(e)}}

        logger.debug("health_check.success")
        return {"status": "healthy"}

    return app


# Create app instance for uvicorn
app = create_app()
