"""Notification model: task lifecycle notices and scheduled reminders."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class Notification(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "notifications"

    owner_id: uuid.UUID = Field(nullable=False, index=True)
    task_id: Optional[uuid.UUID] = Field(default=None, foreign_key="tasks.id", index=True)
    type: str = Field(nullable=False)  # task_reminder | task_created | task_completed | task_overdue | task_updated
    title: str = Field(nullable=False)
    message: str = Field(nullable=False)
    priority: str = Field(nullable=False, default="medium")  # low | medium | high | urgent
    is_read: bool = Field(default=False, nullable=False)
    is_sent: bool = Field(default=False, nullable=False)
    scheduled_for: Optional[datetime] = Field(default=None, index=True, sa_type=sa.DateTime())
