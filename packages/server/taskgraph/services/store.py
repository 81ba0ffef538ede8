"""
Graph store: persistence access to tasks and blocking edges, scoped by owner.

The engines never build SQL themselves; they go through this class. Every
read that feeds a validation decision is owner-scoped, and every write is a
single statement so it is atomic on its own.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import delete, func, or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from taskgraph.core.errors import NotFound
from taskgraph.models.base import utcnow
from taskgraph.models.dependency import TaskBlock
from taskgraph.models.notification import Notification
from taskgraph.models.task import Task
from taskgraph.services.graph import TaskGraph

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class TaskStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(
        self, task_id: uuid.UUID, owner_id: uuid.UUID, *, refresh: bool = False
    ) -> Optional[Task]:
        task = await self.session.get(Task, task_id, populate_existing=refresh)
        if task is None or task.owner_id != owner_id:
            return None
        return task

    async def get_or_raise(
        self, task_id: uuid.UUID, owner_id: uuid.UUID, label: str = "Task"
    ) -> Task:
        task = await self.get(task_id, owner_id)
        if task is None:
            raise NotFound(f"{label} with ID {task_id} not found", task_ids=[task_id])
        return task

    async def lock(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> Optional[Task]:
        """Re-read ``task_id`` under a row lock held until the transaction ends.

        Backends without ``FOR UPDATE`` (SQLite) serialize writers on their own,
        and the clause is dropped when compiling for them.
        """
        result = await self.session.execute(
            select(Task)
            .where(Task.id == task_id, Task.owner_id == owner_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def find_many(
        self,
        owner_id: uuid.UUID,
        *criteria: Any,
        order_by: Optional[Sequence[Any]] = None,
        refresh: bool = False,
    ) -> list[Task]:
        stmt = select(Task).where(Task.owner_id == owner_id, *criteria)
        stmt = stmt.order_by(*(order_by or (Task.scheduled_time.asc(),)))
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_all(self, owner_id: uuid.UUID) -> list[Task]:
        return await self.find_many(owner_id)

    async def find_children(
        self, parent_id: uuid.UUID, owner_id: uuid.UUID, *, refresh: bool = False
    ) -> list[Task]:
        return await self.find_many(
            owner_id, Task.parent_task_id == parent_id, refresh=refresh
        )

    async def find_roots(self, owner_id: uuid.UUID) -> list[Task]:
        return await self.find_many(owner_id, Task.parent_task_id.is_(None))

    async def find_by_completed(self, owner_id: uuid.UUID, completed: bool) -> list[Task]:
        return await self.find_many(owner_id, Task.completed.is_(completed))

    async def find_in_range(
        self, owner_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[Task]:
        return await self.find_many(
            owner_id, Task.scheduled_time >= start, Task.scheduled_time <= end
        )

    async def find_instances(self, template: Task) -> list[Task]:
        return await self.find_many(
            template.owner_id, Task.parent_recurrency_id == template.id
        )

    async def latest_instance(self, template: Task) -> Optional[Task]:
        result = await self.session.execute(
            select(Task)
            .where(Task.parent_recurrency_id == template.id)
            .order_by(Task.scheduled_time.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def find_instance_at(
        self, template_id: uuid.UUID, scheduled_time: datetime
    ) -> Optional[Task]:
        result = await self.session.execute(
            select(Task).where(
                Task.parent_recurrency_id == template_id,
                Task.scheduled_time == scheduled_time,
            )
        )
        return result.scalars().first()

    async def count_upcoming_instances(self, template: Task, now: datetime) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(Task)
            .where(
                Task.parent_recurrency_id == template.id,
                Task.completed.is_(False),
                Task.scheduled_time > now,
            )
        )
        return int(result.scalar_one())

    async def find_active_templates(self) -> list[Task]:
        """Incomplete recurring templates across all owners (maintenance sweeps)."""
        result = await self.session.execute(
            select(Task)
            .where(
                Task.recurrence_pattern.is_not(None),
                Task.parent_recurrency_id.is_(None),
                Task.completed.is_(False),
            )
            .order_by(Task.created_at.asc())
        )
        return list(result.scalars().all())

    async def find_overdue(self, now: datetime) -> list[Task]:
        """Incomplete, non-template tasks due at or before ``now`` across all owners."""
        result = await self.session.execute(
            select(Task)
            .where(
                Task.completed.is_(False),
                Task.scheduled_time <= now,
                or_(Task.recurrence_pattern.is_(None), Task.parent_recurrency_id.is_not(None)),
            )
            .order_by(Task.scheduled_time.asc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save(self, task: Task) -> Task:
        task.updated_at = utcnow()
        self.session.add(task)
        await self.session.flush()
        return task

    async def update_fields(
        self,
        task_id: uuid.UUID,
        owner_id: uuid.UUID,
        values: dict[str, Any],
        *,
        only_if: Iterable[Any] = (),
    ) -> int:
        """Atomic partial update. Returns the number of rows changed.

        ``only_if`` adds conditions to the WHERE clause, which turns the update
        into a compare-and-set (e.g. ``Task.completed.is_(False)``).
        """
        result = await self.session.execute(
            update(Task)
            .where(Task.id == task_id, Task.owner_id == owner_id, *only_if)
            .values(**values, updated_at=utcnow())
        )
        return result.rowcount

    async def insert_instance(
        self, template: Task, scheduled_time: datetime
    ) -> Optional[Task]:
        """Insert one generated instance unless one already exists at that time.

        The existence check is enforced by the database through the
        ``(parent_recurrency_id, scheduled_time)`` unique constraint, so two
        generation passes racing on the same template cannot both insert.
        Returns ``None`` when the row already existed.
        """
        now = utcnow()
        table = Task.__table__
        dialect = self.session.get_bind().dialect.name
        insert_fn = _UPSERT_DIALECTS.get(dialect)
        if insert_fn is None:
            raise RuntimeError(f"Unsupported database dialect for instance upsert: {dialect}")

        stmt = (
            insert_fn(table)
            .values(
                id=uuid.uuid4(),
                owner_id=template.owner_id,
                title=template.title,
                description=template.description,
                scheduled_time=scheduled_time,
                completed=False,
                parent_recurrency_id=template.id,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["parent_recurrency_id", "scheduled_time"])
            .returning(table.c.id)
        )
        result = await self.session.execute(stmt)
        new_id = result.scalar_one_or_none()
        if new_id is None:
            return None
        return await self.session.get(Task, new_id)

    async def delete_tasks(self, task_ids: Sequence[uuid.UUID]) -> int:
        """Delete tasks along with their blocking edges and notifications."""
        ids = list(task_ids)
        if not ids:
            return 0
        await self.session.execute(
            delete(TaskBlock).where(
                or_(TaskBlock.blocking_task_id.in_(ids), TaskBlock.blocked_task_id.in_(ids))
            )
        )
        await self.session.execute(delete(Notification).where(Notification.task_id.in_(ids)))
        result = await self.session.execute(delete(Task).where(Task.id.in_(ids)))
        return result.rowcount

    async def delete_future_instances(self, template: Task, now: datetime) -> int:
        """Delete incomplete instances of ``template`` scheduled after ``now``."""
        result = await self.session.execute(
            select(Task.id).where(
                Task.parent_recurrency_id == template.id,
                Task.completed.is_(False),
                Task.scheduled_time > now,
            )
        )
        return await self.delete_tasks([row[0] for row in result.all()])

    # ------------------------------------------------------------------
    # Blocking edges
    # ------------------------------------------------------------------

    async def edge_exists(self, blocking_id: uuid.UUID, blocked_id: uuid.UUID) -> bool:
        edge = await self.session.get(TaskBlock, (blocking_id, blocked_id))
        return edge is not None

    async def add_block_edge(
        self, blocking_id: uuid.UUID, blocked_id: uuid.UUID, owner_id: uuid.UUID
    ) -> TaskBlock:
        edge = TaskBlock(
            blocking_task_id=blocking_id, blocked_task_id=blocked_id, owner_id=owner_id
        )
        self.session.add(edge)
        await self.session.flush()
        return edge

    async def remove_block_edge(
        self, blocking_id: uuid.UUID, blocked_id: uuid.UUID, owner_id: uuid.UUID
    ) -> bool:
        result = await self.session.execute(
            delete(TaskBlock).where(
                TaskBlock.blocking_task_id == blocking_id,
                TaskBlock.blocked_task_id == blocked_id,
                TaskBlock.owner_id == owner_id,
            )
        )
        return result.rowcount > 0

    async def list_blockers(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> list[Task]:
        """Tasks that block ``task_id`` (its ``blockedBy`` set)."""
        result = await self.session.execute(
            select(Task)
            .join(TaskBlock, TaskBlock.blocking_task_id == Task.id)
            .where(TaskBlock.blocked_task_id == task_id, TaskBlock.owner_id == owner_id)
            .order_by(Task.scheduled_time.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_blocked(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> list[Task]:
        """Tasks that ``task_id`` blocks (its ``blocks`` set)."""
        result = await self.session.execute(
            select(Task)
            .join(TaskBlock, TaskBlock.blocked_task_id == Task.id)
            .where(TaskBlock.blocking_task_id == task_id, TaskBlock.owner_id == owner_id)
            .order_by(Task.scheduled_time.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def has_block_edges(self, task_id: uuid.UUID) -> bool:
        result = await self.session.execute(
            select(TaskBlock.blocking_task_id)
            .where(
                or_(TaskBlock.blocking_task_id == task_id, TaskBlock.blocked_task_id == task_id)
            )
            .limit(1)
        )
        return result.first() is not None

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    async def load_graph(self, owner_id: uuid.UUID) -> TaskGraph:
        """Load every task and edge of ``owner_id`` into an adjacency snapshot."""
        tasks = await self.find_many(owner_id, refresh=True)
        result = await self.session.execute(
            select(TaskBlock).where(TaskBlock.owner_id == owner_id)
        )
        return TaskGraph.from_rows(tasks, result.scalars().all())
