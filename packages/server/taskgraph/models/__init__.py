# SQLModel definitions, imported here so metadata is populated for create_all.
from .base import UUIDMixin, TimestampMixin, utcnow  # noqa: F401
from .task import Task  # noqa: F401
from .dependency import TaskBlock  # noqa: F401
from .notification import Notification  # noqa: F401
