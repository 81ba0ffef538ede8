from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class RecurrencePattern(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class NotificationType(str, Enum):
    TASK_REMINDER = "task_reminder"
    TASK_CREATED = "task_created"
    TASK_COMPLETED = "task_completed"
    TASK_OVERDUE = "task_overdue"
    TASK_UPDATED = "task_updated"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class BlockingOrderPolicy(str, Enum):
    """What to do when a blocking task is scheduled after the task it blocks."""
    REJECT = "reject"
    WARN = "warn"


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC; convert aware values on the way in."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
