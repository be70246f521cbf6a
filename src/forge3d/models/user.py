"""User entity - owner of generation tasks (managed by the account service)."""

import time
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, Column
from sqlmodel import Field, SQLModel


class User(SQLModel, table=True):
    """User as seen by the task pipeline: identity plus the enablement flag."""

    __tablename__ = "users"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(default="", max_length=50)
    is_enabled: bool = Field(default=True)
    create_time: int = Field(
        default_factory=lambda: int(time.time()), sa_column=Column(BigInteger, nullable=False)
    )
