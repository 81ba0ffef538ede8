"""Blocking edge model: ``blocking_task_id`` must complete before ``blocked_task_id``."""

import uuid

from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel


class TaskBlock(SQLModel, table=True):
    __tablename__ = "task_blocks"
    __table_args__ = (
        CheckConstraint("blocking_task_id != blocked_task_id", name="no_self_block"),
    )

    blocking_task_id: uuid.UUID = Field(foreign_key="tasks.id", primary_key=True)
    blocked_task_id: uuid.UUID = Field(foreign_key="tasks.id", primary_key=True, index=True)
    owner_id: uuid.UUID = Field(nullable=False, index=True)
