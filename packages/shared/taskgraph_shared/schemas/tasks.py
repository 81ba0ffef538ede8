"""Task-related Pydantic schemas for shared use across server and client codegen."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import UUID4, BaseModel, Field, field_validator

from .common import RecurrencePattern, to_naive_utc


# ---------------------------------------------------------------------------
# Task CRUD
# ---------------------------------------------------------------------------

class TaskBase(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    scheduled_time: datetime

    @field_validator("scheduled_time")
    @classmethod
    def _normalize_scheduled_time(cls, v: datetime) -> datetime:
        return to_naive_utc(v)


class TaskCreate(TaskBase):
    """Request body for creating a task, a subtask, or a recurring template.

    ``parent_task_id`` and ``recurrence_pattern`` are mutually exclusive.
    """
    parent_task_id: Optional[UUID4] = None
    recurrence_pattern: Optional[RecurrencePattern] = None
    recurrence_interval: int = Field(default=1, ge=1)
    recurrence_end_date: Optional[datetime] = None

    @field_validator("recurrence_end_date")
    @classmethod
    def _normalize_end_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class TaskUpdate(BaseModel):
    """Partial update. Only fields explicitly set are applied."""
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    scheduled_time: Optional[datetime] = None
    completed: Optional[bool] = None
    parent_task_id: Optional[UUID4] = None
    recurrence_pattern: Optional[RecurrencePattern] = None
    recurrence_interval: Optional[int] = Field(default=None, ge=1)
    recurrence_end_date: Optional[datetime] = None

    @field_validator("scheduled_time", "recurrence_end_date")
    @classmethod
    def _normalize_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class TaskRead(BaseModel):
    id: UUID4
    owner_id: UUID
    title: str
    description: Optional[str] = None
    scheduled_time: datetime
    completed: bool
    recurrence_pattern: Optional[RecurrencePattern] = None
    recurrence_interval: Optional[int] = None
    recurrence_end_date: Optional[datetime] = None
    parent_recurrency_id: Optional[UUID4] = None
    parent_task_id: Optional[UUID4] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class TaskNode(TaskRead):
    """A task with its descendants nested under ``children``."""
    children: List[TaskNode] = Field(default_factory=list)


TaskNode.model_rebuild()


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------

class TaskMove(BaseModel):
    """Request body for POST /tasks/{taskId}/move. ``None`` makes the task a root."""
    parent_task_id: Optional[UUID4] = None


# ---------------------------------------------------------------------------
# Blocking
# ---------------------------------------------------------------------------

class BlockingAdd(BaseModel):
    """Request body for POST /tasks/blocking."""
    blocking_task_id: UUID4
    blocked_task_id: UUID4


class TaskSummary(BaseModel):
    id: UUID4
    title: str
    completed: bool
    scheduled_time: datetime

    model_config = {"from_attributes": True}


class DependencyChainRead(BaseModel):
    task: TaskRead
    blocked_by: List[TaskSummary] = Field(default_factory=list)
    blocks: List[TaskSummary] = Field(default_factory=list)
    is_available: bool


class AvailabilityRead(BaseModel):
    task_id: UUID4
    is_available: bool
