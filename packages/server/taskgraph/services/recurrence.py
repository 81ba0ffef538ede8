"""
Recurrence engine: generate instances from recurring templates.

A template keeps a pattern-specific window of future instances. The window
is refilled up to its optimal size whenever it drops below the minimum:

    pattern   optimal  minimum
    daily         3        1
    weekly       14        5
    monthly      60       18
    yearly      365      110

Instances are ordinary tasks with ``parent_recurrency_id`` pointing back to
the template.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Union

import structlog
from dateutil.relativedelta import relativedelta

from taskgraph.core.errors import InvalidRelationship
from taskgraph.models.base import utcnow
from taskgraph.models.task import Task
from taskgraph.services.notifications import NotificationService
from taskgraph.services.store import TaskStore
from taskgraph_shared.schemas.common import RecurrencePattern
from taskgraph_shared.schemas.tasks import TaskCreate

log = structlog.get_logger()

PatternLike = Union[RecurrencePattern, str]

OPTIMAL_BUFFER_DAYS = {
    RecurrencePattern.DAILY: 3,
    RecurrencePattern.WEEKLY: 14,
    RecurrencePattern.MONTHLY: 60,
    RecurrencePattern.YEARLY: 365,
}

# Fields whose change invalidates already generated future instances
SCHEDULE_FIELDS = (
    "scheduled_time",
    "recurrence_pattern",
    "recurrence_interval",
    "recurrence_end_date",
)


def optimal_buffer_days(pattern: PatternLike) -> int:
    return OPTIMAL_BUFFER_DAYS[RecurrencePattern(pattern)]


def min_buffer_days(pattern: PatternLike) -> int:
    """30% of the optimal buffer, rounded up."""
    return math.ceil(optimal_buffer_days(pattern) * 3 / 10)


def _add_months(value: datetime, months: int) -> datetime:
    # Days past the end of the target month roll over into the next one
    # (Jan 31 + 1 month lands on Mar 3 in a common year).
    return value.replace(day=1) + relativedelta(months=months) + timedelta(days=value.day - 1)


def next_scheduled_time(current: datetime, pattern: PatternLike, interval: Optional[int] = 1) -> datetime:
    """Advance ``current`` by one recurrence step."""
    interval = interval or 1
    pattern = RecurrencePattern(pattern)
    if pattern == RecurrencePattern.DAILY:
        return current + timedelta(days=interval)
    if pattern == RecurrencePattern.WEEKLY:
        return current + timedelta(weeks=interval)
    if pattern == RecurrencePattern.MONTHLY:
        return _add_months(current, interval)
    return _add_months(current, 12 * interval)


def schedule_changed(template: Task, changes: dict[str, Any]) -> bool:
    for name in SCHEDULE_FIELDS:
        if name in changes and changes[name] != getattr(template, name):
            return True
    return False


class RecurrenceService:
    def __init__(
        self,
        store: TaskStore,
        notifications: NotificationService,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifications = notifications
        self.clock = clock

    # ------------------------------------------------------------------
    # Buffer
    # ------------------------------------------------------------------

    async def count_upcoming_instances(self, template: Task) -> int:
        return await self.store.count_upcoming_instances(template, self.clock())

    async def needs_more_instances(self, template: Task) -> bool:
        count = await self.count_upcoming_instances(template)
        return count < min_buffer_days(template.recurrence_pattern)

    async def generate_up_to_buffer(self, template: Task) -> list[Task]:
        """Create every missing instance up to the end of the optimal buffer.

        Stepping starts at the latest existing instance (or the template
        itself) and stops past the horizon or the template's end date.
        Returns the instances this call created.
        """
        if not template.is_template:
            raise InvalidRelationship(
                "Task is not a recurring template", task_ids=[template.id], titles=[template.title]
            )

        now = self.clock()
        end_date = template.recurrence_end_date
        if end_date is not None and end_date < now:
            return []

        horizon = now + timedelta(days=optimal_buffer_days(template.recurrence_pattern))
        latest = await self.store.latest_instance(template)
        current = latest.scheduled_time if latest else template.scheduled_time

        created: list[Task] = []
        while True:
            current = next_scheduled_time(
                current, template.recurrence_pattern, template.recurrence_interval
            )
            if current > horizon:
                break
            if end_date is not None and current > end_date:
                break

            instance = await self.store.insert_instance(template, current)
            if instance is None:
                continue
            created.append(instance)
            await self.notifications.schedule_reminders(instance)

        if created:
            log.info(
                "recurrence.instances_generated",
                template_id=str(template.id),
                count=len(created),
            )
        return created

    # ------------------------------------------------------------------
    # Template lifecycle
    # ------------------------------------------------------------------

    async def create_template(self, data: TaskCreate, owner_id: uuid.UUID) -> Task:
        if data.recurrence_pattern is None:
            raise InvalidRelationship("A recurring task requires a recurrence pattern")
        template = Task(
            owner_id=owner_id,
            title=data.title,
            description=data.description,
            scheduled_time=data.scheduled_time,
            recurrence_pattern=RecurrencePattern(data.recurrence_pattern).value,
            recurrence_interval=data.recurrence_interval or 1,
            recurrence_end_date=data.recurrence_end_date,
        )
        await self.store.save(template)
        await self.generate_up_to_buffer(template)
        return template

    async def update_template(self, template: Task, changes: dict[str, Any]) -> list[Task]:
        """Apply ``changes`` to a template.

        When a schedule field changes, incomplete future instances are deleted
        first and the buffer is regenerated from the updated template.
        Returns the regenerated instances.
        """
        if changes.get("recurrence_pattern") is not None:
            changes["recurrence_pattern"] = RecurrencePattern(changes["recurrence_pattern"]).value
        regenerate = schedule_changed(template, changes)

        if regenerate:
            removed = await self.store.delete_future_instances(template, self.clock())
            log.info("recurrence.future_instances_removed", template_id=str(template.id), count=removed)

        for name, value in changes.items():
            setattr(template, name, value)
        await self.store.save(template)

        if regenerate and not template.completed:
            return await self.generate_up_to_buffer(template)
        return []

    async def on_instance_completed(self, instance: Task) -> list[Task]:
        if instance.parent_recurrency_id is None:
            return []
        template = await self.store.get(instance.parent_recurrency_id, instance.owner_id)
        if template is None or template.completed or not template.is_template:
            return []
        if await self.needs_more_instances(template):
            return await self.generate_up_to_buffer(template)
        return []

    async def delete_template(self, template: Task) -> None:
        instances = await self.store.find_instances(template)
        await self.store.delete_tasks([i.id for i in instances])
        await self.store.delete_tasks([template.id])
        log.info("recurrence.template_deleted", template_id=str(template.id), instances=len(instances))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_instances(self, template_id: uuid.UUID, owner_id: uuid.UUID) -> list[Task]:
        template = await self.store.get_or_raise(template_id, owner_id, "Recurring task")
        if not template.is_template:
            raise InvalidRelationship(
                "Task is not a recurring template", task_ids=[template.id], titles=[template.title]
            )
        return await self.store.find_instances(template)

    async def list_templates_for_maintenance(self) -> list[Task]:
        return await self.store.find_active_templates()
