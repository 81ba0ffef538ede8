"""
Notification inbox endpoints, scoped to the caller resolved from ``X-User-Id``.

Static paths are declared before ``/{notification_id}``.
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from taskgraph.core.auth import get_current_user_id
from taskgraph.core.database import get_session
from taskgraph.services.notifications import NotificationService
from taskgraph_shared.schemas.common import NotificationPriority, NotificationType
from taskgraph_shared.schemas.notifications import (
    MarkAllReadResult,
    NotificationRead,
    UnreadCount,
)

router = APIRouter()


def get_notification_service(
    session: AsyncSession = Depends(get_session),
) -> NotificationService:
    return NotificationService(session)


@router.get("/", response_model=List[NotificationRead])
async def list_notifications_endpoint(
    type: Optional[NotificationType] = None,
    priority: Optional[NotificationPriority] = None,
    is_read: Optional[bool] = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    notifications: NotificationService = Depends(get_notification_service),
):
    """The caller's notifications, newest first."""
    found = await notifications.list_notifications(
        user_id, type=type, priority=priority, is_read=is_read
    )
    return [NotificationRead.model_validate(n) for n in found]


@router.get("/unread-count", response_model=UnreadCount)
async def unread_count_endpoint(
    user_id: uuid.UUID = Depends(get_current_user_id),
    notifications: NotificationService = Depends(get_notification_service),
):
    return UnreadCount(count=await notifications.unread_count(user_id))


@router.patch("/mark-all-read", response_model=MarkAllReadResult)
async def mark_all_read_endpoint(
    user_id: uuid.UUID = Depends(get_current_user_id),
    notifications: NotificationService = Depends(get_notification_service),
):
    updated = await notifications.mark_all_as_read(user_id)
    await notifications.session.commit()
    return MarkAllReadResult(updated=updated)


@router.get("/{notification_id}", response_model=NotificationRead)
async def get_notification_endpoint(
    notification_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    notifications: NotificationService = Depends(get_notification_service),
):
    return NotificationRead.model_validate(
        await notifications.get_notification(notification_id, user_id)
    )


@router.patch("/{notification_id}/read", response_model=NotificationRead)
async def mark_read_endpoint(
    notification_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    notifications: NotificationService = Depends(get_notification_service),
):
    notification = await notifications.mark_as_read(notification_id, user_id)
    await notifications.session.commit()
    return NotificationRead.model_validate(notification)


@router.delete("/{notification_id}", status_code=204)
async def delete_notification_endpoint(
    notification_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    notifications: NotificationService = Depends(get_notification_service),
):
    await notifications.delete(notification_id, user_id)
    await notifications.session.commit()
    return Response(status_code=204)
