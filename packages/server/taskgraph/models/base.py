"""Base mixins for SQLModel tables."""

from datetime import datetime, timezone
import sqlalchemy as sa
from sqlmodel import Field, SQLModel
import uuid


def utcnow() -> datetime:
    """Current time as naive UTC, the representation every timestamp column uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin(SQLModel):
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now()},
        sa_type=sa.DateTime(),
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now(), "onupdate": utcnow},
        sa_type=sa.DateTime(),
    )


class UUIDMixin(SQLModel):
    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
        nullable=False,
    )
