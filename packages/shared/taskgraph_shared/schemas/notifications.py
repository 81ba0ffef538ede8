"""Notification inbox schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import UUID4, BaseModel

from .common import NotificationPriority, NotificationType


class NotificationRead(BaseModel):
    id: UUID4
    owner_id: UUID
    task_id: Optional[UUID4] = None
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    is_read: bool
    is_sent: bool
    scheduled_for: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UnreadCount(BaseModel):
    count: int


class MarkAllReadResult(BaseModel):
    updated: int
