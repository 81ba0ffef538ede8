"""Task model: one row per task, template, or generated instance."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class Task(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "tasks"
    __table_args__ = (
        # At most one instance per template and timestamp. Rows without a
        # template (NULL lineage) are not constrained.
        sa.UniqueConstraint(
            "parent_recurrency_id", "scheduled_time", name="uq_tasks_instance_time"
        ),
    )

    owner_id: uuid.UUID = Field(nullable=False, index=True)
    title: str = Field(nullable=False)
    description: Optional[str] = None
    scheduled_time: datetime = Field(nullable=False, index=True, sa_type=sa.DateTime())
    completed: bool = Field(default=False, nullable=False)

    # Populated only on recurring templates
    recurrence_pattern: Optional[str] = None  # daily | weekly | monthly | yearly
    recurrence_interval: Optional[int] = None
    recurrence_end_date: Optional[datetime] = Field(default=None, sa_type=sa.DateTime())

    # Template this instance was generated from
    parent_recurrency_id: Optional[uuid.UUID] = Field(
        default=None, foreign_key="tasks.id", index=True
    )
    # Containing task in the hierarchy
    parent_task_id: Optional[uuid.UUID] = Field(
        default=None, foreign_key="tasks.id", index=True
    )

    @property
    def is_template(self) -> bool:
        return self.recurrence_pattern is not None and self.parent_recurrency_id is None

    @property
    def is_instance(self) -> bool:
        return self.parent_recurrency_id is not None
