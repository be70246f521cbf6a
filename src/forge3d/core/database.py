"""Database session factory setup."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel


def setup_db_session(db_url: str, pool_size: int = 50) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database URL (postgresql+psycopg://... in production,
            sqlite+aiosqlite://... for local runs, which needs the
            `sqlite` extra: pip install "forge3d[sqlite]")
        pool_size: Maximum number of connections in the pool (ignored for SQLite)

    Returns:
        Async session factory for creating database sessions
    """
    if db_url.startswith("sqlite"):
        engine = create_async_engine(db_url, echo=False)
    else:
        engine = create_async_engine(
            db_url,
            pool_size=pool_size,
            max_overflow=0,  # No overflow beyond pool_size
            pool_pre_ping=True,  # Verify connections before using
            echo=False,  # Don't log SQL queries (use structlog instead)
        )

    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables registered on the SQLModel metadata (no-op for existing tables)."""
    # Import registers every table on SQLModel.metadata
    import forge3d.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
