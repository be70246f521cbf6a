"""ModelTask entity - 3D model generation request with lifecycle status tracking."""

import time
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, Column
from sqlmodel import Field, SQLModel


class ModelGenerateType(str, Enum):
    """Generation input kind (matches the provider's task type)."""

    TEXT_TO_MODEL = "text_to_model"
    IMAGE_TO_MODEL = "image_to_model"


class GenerateStyle(str, Enum):
    """Style selector, only meaningful for image_to_model."""

    CARTOON = "cartoon"
    CLAY = "clay"
    STEAMPUNK = "steampunk"
    VENOM = "venom"
    BARBIE = "barbie"
    CHRISTMAS = "christmas"
    GOLD = "gold"
    ANCIENT_BRONZE = "ancient_bronze"


class TaskStatus(str, Enum):
    """Task lifecycle status.

    UNKNOWN is a transient classification of provider responses and is never
    written to the database.
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    BANNED = "banned"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


ACTIVE_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.RUNNING})
TERMINAL_STATUSES = frozenset(
    {
        TaskStatus.SUCCESS,
        TaskStatus.FAILED,
        TaskStatus.BANNED,
        TaskStatus.EXPIRED,
        TaskStatus.CANCELLED,
    }
)

# Provider output keys that reference a downloadable model file
MODEL_OUTPUT_KEYS = ("model", "base_model", "pbr_model")
RELOCATED_OUTPUT_KEY = "qiniu_output"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid task state transition."""

    pass


def now_seconds() -> int:
    return int(time.time())


class ModelTask(SQLModel, table=True):
    """ModelTask tracks one generation request from submission to durable assets."""

    __tablename__ = "model_tasks"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="users.id", index=True)
    type: ModelGenerateType = Field()
    provider_task_id: Optional[str] = Field(default=None, max_length=64, index=True)
    status: TaskStatus = Field(default=TaskStatus.QUEUED, index=True)
    progress: int = Field(default=0, ge=0, le=100)
    prompt: Optional[str] = Field(default=None)
    image_token: Optional[str] = Field(default=None, max_length=255)
    style: Optional[GenerateStyle] = Field(default=None)
    model_version: Optional[str] = Field(default=None, max_length=64)
    output: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    has_durable_assets: bool = Field(default=False, index=True)
    error_msg: Optional[str] = Field(default=None)
    create_time: int = Field(
        default_factory=now_seconds, sa_column=Column(BigInteger, nullable=False, index=True)
    )
    update_time: int = Field(
        default_factory=now_seconds, sa_column=Column(BigInteger, nullable=False)
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def relocated_output(self) -> dict:
        """Durable artifact URLs (empty until relocation has succeeded for something)."""
        return dict(self.output.get(RELOCATED_OUTPUT_KEY) or {})

    def has_model_output(self) -> bool:
        return has_model_url(self.output)

    def ensure_transition(self, new_status: TaskStatus) -> None:
        """Check that moving to new_status keeps the lifecycle monotone.

        Active statuses may move to any persisted status. A terminal status is
        final, except that success may still be invalidated to failed when the
        local record of the success cannot be trusted.

        Raises:
            InvalidStateTransition: If the transition would revert a terminal state
        """
        if new_status == TaskStatus.UNKNOWN:
            raise InvalidStateTransition("unknown is a transient status and is never persisted.")
        if self.status in ACTIVE_STATUSES:
            return
        if self.status == TaskStatus.SUCCESS and new_status == TaskStatus.FAILED:
            return
        if new_status != self.status:
            raise InvalidStateTransition(
                f"Cannot move from terminal state {self.status.value} to {new_status.value}."
            )


def has_model_url(output: dict | None) -> bool:
    """True when a provider output mapping references at least one model file."""
    if not output:
        return False
    return any(isinstance(output.get(key), str) and output[key] for key in MODEL_OUTPUT_KEYS)
