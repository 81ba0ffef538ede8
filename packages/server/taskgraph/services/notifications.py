"""
Notification collaborator: persists lifecycle notices and scheduled reminders,
and serves them back to their owner as an inbox.

Delivery is out of scope; a row with ``is_sent = false`` and a
``scheduled_for`` in the past is what the dispatch sweep picks up.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

import structlog
from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from taskgraph.core.config import get_settings
from taskgraph.core.errors import NotFound
from taskgraph.models.base import utcnow
from taskgraph.models.notification import Notification
from taskgraph.models.task import Task
from taskgraph_shared.schemas.common import NotificationPriority, NotificationType

log = structlog.get_logger()


class NotificationService:
    def __init__(
        self,
        session: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        offsets_minutes: Optional[Sequence[int]] = None,
    ):
        self.session = session
        self.clock = clock
        if offsets_minutes is None:
            offsets_minutes = get_settings().reminder_offsets_minutes
        self.offsets_minutes = list(offsets_minutes)

    async def _create(
        self,
        owner_id: uuid.UUID,
        task_id: Optional[uuid.UUID],
        type: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        scheduled_for: Optional[datetime] = None,
    ) -> Notification:
        notification = Notification(
            owner_id=owner_id,
            task_id=task_id,
            type=type.value,
            title=title,
            message=message,
            priority=priority.value,
            scheduled_for=scheduled_for,
        )
        self.session.add(notification)
        await self.session.flush()
        return notification

    # ------------------------------------------------------------------
    # Lifecycle notices
    # ------------------------------------------------------------------

    async def notify_created(
        self, task_id: uuid.UUID, owner_id: uuid.UUID, title: str
    ) -> Notification:
        return await self._create(
            owner_id,
            task_id,
            NotificationType.TASK_CREATED,
            "Task Created",
            f'New task "{title}" has been created',
            NotificationPriority.LOW,
        )

    async def notify_completed(
        self, task_id: uuid.UUID, owner_id: uuid.UUID, title: str
    ) -> Notification:
        return await self._create(
            owner_id,
            task_id,
            NotificationType.TASK_COMPLETED,
            "Task Completed",
            f'Task "{title}" has been completed',
        )

    async def notify_overdue(
        self, task_id: uuid.UUID, owner_id: uuid.UUID, title: str
    ) -> Notification:
        return await self._create(
            owner_id,
            task_id,
            NotificationType.TASK_OVERDUE,
            "Task Overdue",
            f'Task "{title}" is overdue',
            NotificationPriority.HIGH,
        )

    async def has_overdue_notification(self, task_id: uuid.UUID) -> bool:
        result = await self.session.execute(
            select(Notification.id)
            .where(
                Notification.task_id == task_id,
                Notification.type == NotificationType.TASK_OVERDUE.value,
            )
            .limit(1)
        )
        return result.first() is not None

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def remove_unsent_reminders(self, task_id: uuid.UUID) -> int:
        result = await self.session.execute(
            delete(Notification).where(
                Notification.task_id == task_id,
                Notification.type == NotificationType.TASK_REMINDER.value,
                Notification.is_sent.is_(False),
            )
        )
        return result.rowcount

    async def schedule_reminders(
        self, task: Task, offsets_minutes: Optional[Sequence[int]] = None
    ) -> list[Notification]:
        """Replace the task's unsent reminders with one per offset before it is due.

        Offsets whose reminder time has already passed are skipped.
        """
        if offsets_minutes is None:
            offsets_minutes = self.offsets_minutes
        await self.remove_unsent_reminders(task.id)

        now = self.clock()
        reminders = []
        for minutes in offsets_minutes:
            remind_at = task.scheduled_time - timedelta(minutes=minutes)
            if remind_at <= now:
                continue
            reminders.append(
                await self._create(
                    task.owner_id,
                    task.id,
                    NotificationType.TASK_REMINDER,
                    "Task Reminder",
                    "You have a task scheduled for this time",
                    scheduled_for=remind_at,
                )
            )
        log.debug("notifications.reminders_scheduled", task_id=str(task.id), count=len(reminders))
        return reminders

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def get_pending_scheduled(self, now: Optional[datetime] = None) -> list[Notification]:
        now = now or self.clock()
        result = await self.session.execute(
            select(Notification)
            .where(
                Notification.is_sent.is_(False),
                Notification.scheduled_for.is_not(None),
                Notification.scheduled_for <= now,
            )
            .order_by(Notification.scheduled_for.asc())
        )
        return list(result.scalars().all())

    async def mark_as_sent(self, notification_id: uuid.UUID) -> None:
        await self.session.execute(
            update(Notification)
            .where(Notification.id == notification_id)
            .values(is_sent=True, updated_at=utcnow())
        )

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    async def list_notifications(
        self,
        owner_id: uuid.UUID,
        *,
        type: Optional[NotificationType] = None,
        priority: Optional[NotificationPriority] = None,
        is_read: Optional[bool] = None,
    ) -> list[Notification]:
        """The owner's notifications, newest first."""
        stmt = select(Notification).where(Notification.owner_id == owner_id)
        if type is not None:
            stmt = stmt.where(Notification.type == type.value)
        if priority is not None:
            stmt = stmt.where(Notification.priority == priority.value)
        if is_read is not None:
            stmt = stmt.where(Notification.is_read.is_(is_read))
        stmt = stmt.order_by(Notification.created_at.desc())
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_notification(
        self, notification_id: uuid.UUID, owner_id: uuid.UUID
    ) -> Notification:
        notification = await self.session.get(Notification, notification_id)
        if notification is None or notification.owner_id != owner_id:
            raise NotFound(f"Notification with ID {notification_id} not found")
        return notification

    async def unread_count(self, owner_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(Notification)
            .where(Notification.owner_id == owner_id, Notification.is_read.is_(False))
        )
        return int(result.scalar_one())

    async def mark_as_read(
        self, notification_id: uuid.UUID, owner_id: uuid.UUID
    ) -> Notification:
        notification = await self.get_notification(notification_id, owner_id)
        if not notification.is_read:
            notification.is_read = True
            notification.updated_at = utcnow()
            await self.session.flush()
        return notification

    async def mark_all_as_read(self, owner_id: uuid.UUID) -> int:
        result = await self.session.execute(
            update(Notification)
            .where(Notification.owner_id == owner_id, Notification.is_read.is_(False))
            .values(is_read=True, updated_at=utcnow())
        )
        log.info("notifications.marked_all_read", owner_id=str(owner_id), count=result.rowcount)
        return result.rowcount

    async def delete(self, notification_id: uuid.UUID, owner_id: uuid.UUID) -> None:
        notification = await self.get_notification(notification_id, owner_id)
        await self.session.delete(notification)
        await self.session.flush()
