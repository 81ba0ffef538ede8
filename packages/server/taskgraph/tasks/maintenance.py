"""
ARQ background tasks: periodic recurrence and notification maintenance.

Four independent cadences:
- every minute: mark due scheduled notifications as sent
- every 5 minutes: create one overdue notice per overdue task
- hourly and daily: refill recurring templates whose buffer is low

Each item (notification, task, template) is handled in its own session, so a
failure rolls back and logs only that item and the sweep continues.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from arq import cron
from arq.connections import RedisSettings

from taskgraph.core.config import get_settings
from taskgraph.core.database import get_session_context
from taskgraph.core.logging import configure_logging
from taskgraph.models.base import utcnow
from taskgraph.services.notifications import NotificationService
from taskgraph.services.recurrence import RecurrenceService
from taskgraph.services.store import TaskStore

log = structlog.get_logger()


@dataclass
class SweepResult:
    processed: int = 0
    failed: int = 0


def _session_factory(ctx: dict):
    return ctx.get("session_factory", get_session_context)


def _clock(ctx: dict):
    return ctx.get("clock", utcnow)


async def dispatch_pending_notifications(ctx: dict) -> SweepResult:
    """Mark every scheduled notification whose time has come as sent."""
    session_factory, clock = _session_factory(ctx), _clock(ctx)
    now = clock()
    async with session_factory() as session:
        pending = await NotificationService(session, clock=clock).get_pending_scheduled(now)
        items = [(n.id, n.owner_id, n.title) for n in pending]

    result = SweepResult()
    for notification_id, owner_id, title in items:
        try:
            async with session_factory() as session:
                await NotificationService(session, clock=clock).mark_as_sent(notification_id)
        except Exception:
            result.failed += 1
            log.exception("maintenance.dispatch_failed", notification_id=str(notification_id))
            continue
        result.processed += 1
        log.info(
            "maintenance.notification_sent",
            notification_id=str(notification_id),
            owner_id=str(owner_id),
            title=title,
        )
    return result


async def check_overdue_tasks(ctx: dict) -> SweepResult:
    """Create an overdue notice for each overdue task that has none yet."""
    session_factory, clock = _session_factory(ctx), _clock(ctx)
    now = clock()
    async with session_factory() as session:
        overdue = await TaskStore(session).find_overdue(now)
        items = [(t.id, t.owner_id, t.title) for t in overdue]

    result = SweepResult()
    for task_id, owner_id, title in items:
        try:
            async with session_factory() as session:
                notifications = NotificationService(session, clock=clock)
                if await notifications.has_overdue_notification(task_id):
                    continue
                await notifications.notify_overdue(task_id, owner_id, title)
        except Exception:
            result.failed += 1
            log.exception("maintenance.overdue_failed", task_id=str(task_id))
            continue
        result.processed += 1

    if result.processed:
        log.info("maintenance.overdue_notified", count=result.processed)
    return result


def _recurrence(session, clock) -> RecurrenceService:
    return RecurrenceService(
        TaskStore(session), NotificationService(session, clock=clock), clock=clock
    )


async def _refill_templates(ctx: dict, sweep: str) -> SweepResult:
    session_factory, clock = _session_factory(ctx), _clock(ctx)
    async with session_factory() as session:
        templates = await _recurrence(session, clock).list_templates_for_maintenance()
        items = [(t.id, t.owner_id) for t in templates]

    result = SweepResult()
    for template_id, owner_id in items:
        try:
            async with session_factory() as session:
                recurrence = _recurrence(session, clock)
                template = await recurrence.store.get(template_id, owner_id)
                if template is None or not await recurrence.needs_more_instances(template):
                    continue
                await recurrence.generate_up_to_buffer(template)
        except Exception:
            result.failed += 1
            log.exception("maintenance.template_failed", sweep=sweep, template_id=str(template_id))
            continue
        result.processed += 1

    log.info(
        "maintenance.templates_refilled",
        sweep=sweep,
        refilled=result.processed,
        failed=result.failed,
        templates=len(items),
    )
    return result


async def hourly_buffer_check(ctx: dict) -> SweepResult:
    return await _refill_templates(ctx, "hourly")


async def daily_recurrence_maintenance(ctx: dict) -> SweepResult:
    return await _refill_templates(ctx, "daily")


async def startup(ctx: dict) -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    log.info("maintenance.worker_started")


# ARQ worker settings
class WorkerSettings:
    """ARQ worker configuration."""

    functions = [
        dispatch_pending_notifications,
        check_overdue_tasks,
        hourly_buffer_check,
        daily_recurrence_maintenance,
    ]
    cron_jobs = [
        # Every minute
        cron(dispatch_pending_notifications),
        # Every 5 minutes
        cron(check_overdue_tasks, minute=set(range(0, 60, 5))),
        # Top of every hour
        cron(hourly_buffer_check, minute=0),
        # Midnight
        cron(daily_recurrence_maintenance, hour=0, minute=0),
    ]
    on_startup = startup
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
