"""pytest fixtures for forge3d backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped SQLite (aiosqlite) database with all tables created
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- user / disabled_user: Seeded users
- provider / relocator / clock: Fakes for the orchestrator's collaborators
- service: ModelTaskService wired to the fakes
"""

import os

# Settings are read at import time by forge3d.app; run without real credentials
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel  # noqa: E402

import forge3d.models  # noqa: E402,F401
from forge3d.models.model_task import TaskStatus  # noqa: E402
from forge3d.models.user import User  # noqa: E402
from forge3d.services.exceptions import RelocationError  # noqa: E402
from forge3d.services.model_tasks.service import ModelTaskService  # noqa: E402
from forge3d.services.tripo.client import ProviderTaskStatus  # noqa: E402
from forge3d.uow import create_uow_factory  # noqa: E402
from forge3d.workers.poll_scheduler import PollPolicy  # noqa: E402

START_MS = 1_700_000_000_000


class FakeClock:
    """Settable wall clock in epoch milliseconds."""

    def __init__(self, now_ms: int = START_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class FakeProvider:
    """In-memory stand-in for TripoClient.

    get_status() returns the queued observations in order and repeats the
    last one once the queue is down to a single entry. Exceptions in the
    queue are raised instead of returned.
    """

    def __init__(self):
        self.statuses: list = [ProviderTaskStatus(status=TaskStatus.QUEUED)]
        self.submit_error: Exception | None = None
        self.upload_error: Exception | None = None
        self.next_task_id = "tripo-task-1"
        self.submitted: list[dict] = []
        self.uploads: list[dict] = []
        self.status_calls = 0

    async def submit(
        self, generate_type, prompt=None, image_token=None, style=None, model_version=None
    ) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(
            {
                "generate_type": generate_type,
                "prompt": prompt,
                "image_token": image_token,
                "style": style,
                "model_version": model_version,
            }
        )
        return self.next_task_id

    async def get_status(self, provider_task_id: str) -> ProviderTaskStatus:
        self.status_calls += 1
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def upload_image(self, data: bytes, mime_type: str, filename: str | None = None) -> str:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append({"size": len(data), "mime_type": mime_type, "filename": filename})
        return "image-token-1"


class FakeRelocator:
    """Records relocations; roles listed in fail_roles raise RelocationError."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.fail_roles: set[str] = set()

    async def relocate(self, source_url: str, destination_key: str) -> str:
        self.calls.append((source_url, destination_key))
        role = destination_key.rsplit("/", 1)[-1].split(".", 1)[0]
        if role in self.fail_roles:
            raise RelocationError(destination_key, ConnectionError("download failed"))
        return f"https://cdn.example.com/{destination_key}"


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a fresh SQLite database per test with every table created.

    A file database (rather than :memory:) gives each session its own
    connection, so concurrent sessions behave like separate clients.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'forge3d.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest_asyncio.fixture
async def user(uow_factory) -> User:
    async with await uow_factory() as uow:
        return await uow.users.add(User(name="alice"))


@pytest_asyncio.fixture
async def disabled_user(uow_factory) -> User:
    async with await uow_factory() as uow:
        return await uow.users.add(User(name="mallory", is_enabled=False))


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def relocator() -> FakeRelocator:
    return FakeRelocator()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(uow_factory, provider, relocator, clock) -> ModelTaskService:
    return ModelTaskService(
        uow_factory,
        provider,
        relocator,
        policy=PollPolicy(),
        clock=clock,
        default_model_version="v2.5-20250123",
    )
