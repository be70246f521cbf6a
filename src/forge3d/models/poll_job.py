"""PollJob entity - scheduled status poll for one generation task."""

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, Column, DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PollJob(SQLModel, table=True):
    """PollJob is one delayed poll of a task, carrying the loop state forward.

    The payload (task ids, poll start, unknown counter) is copied into the
    successor job on every reschedule; the row itself is deleted once handled.
    """

    __tablename__ = "poll_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    task_id: UUID = Field(foreign_key="model_tasks.id", index=True)
    provider_task_id: str = Field(max_length=64)
    poll_start_ms: int = Field(sa_column=Column(BigInteger, nullable=False))
    unknown_retry_count: int = Field(default=0, ge=0)
    delay_ms: int = Field(default=0, ge=0)  # delay this job was scheduled with
    attempts: int = Field(default=0, ge=0)  # deliveries of this job (transport retries)
    last_error: str | None = Field(default=None, max_length=1000)
    run_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    created_at: datetime = Field(
        default_factory=utcnow, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
