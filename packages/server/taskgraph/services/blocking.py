"""
Blocking engine: "A must complete before B" dependency edges.

Edges form a DAG per owner. Cycle detection runs against an adjacency snapshot
(``TaskGraph``) loaded once per call.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Optional

import structlog

from taskgraph.core.config import get_settings
from taskgraph.core.errors import (
    BlockedByDependency,
    CircularDependency,
    DuplicateRelationship,
    InvalidRelationship,
    NotFound,
    SelfReference,
)
from taskgraph.models.dependency import TaskBlock
from taskgraph.models.task import Task
from taskgraph.services.graph import TaskGraph
from taskgraph.services.store import TaskStore
from taskgraph_shared.schemas.common import BlockingOrderPolicy

log = structlog.get_logger()


@dataclass
class DependencyChain:
    task: Task
    blocked_by: list[Task] = field(default_factory=list)
    blocks: list[Task] = field(default_factory=list)
    is_available: bool = True


class BlockingService:
    def __init__(self, store: TaskStore, order_policy: Optional[BlockingOrderPolicy] = None):
        self.store = store
        self.order_policy = order_policy or get_settings().blocking_order_policy

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    async def add_edge(
        self, blocking_id: uuid.UUID, blocked_id: uuid.UUID, owner_id: uuid.UUID
    ) -> TaskBlock:
        if blocking_id == blocked_id:
            raise SelfReference("A task cannot block itself", task_ids=[blocking_id])

        graph = await self.store.load_graph(owner_id)
        blocking = graph.tasks.get(blocking_id)
        if blocking is None:
            raise NotFound(f"Blocking task with ID {blocking_id} not found", task_ids=[blocking_id])
        blocked = graph.tasks.get(blocked_id)
        if blocked is None:
            raise NotFound(f"Blocked task with ID {blocked_id} not found", task_ids=[blocked_id])

        if graph.has_edge(blocking_id, blocked_id):
            raise DuplicateRelationship(
                f'"{blocking.title}" already blocks "{blocked.title}"',
                task_ids=[blocking_id, blocked_id],
                titles=[blocking.title, blocked.title],
            )

        if graph.eventually_blocks(blocked_id, blocking_id):
            raise CircularDependency(
                f'"{blocked.title}" already blocks "{blocking.title}" directly or '
                "transitively; adding this edge would create a cycle",
                task_ids=[blocking_id, blocked_id],
                titles=[blocking.title, blocked.title],
            )

        self._validate_pair(graph, blocking, blocked)
        self._check_logical_order(blocking, blocked)

        edge = await self.store.add_block_edge(blocking_id, blocked_id, owner_id)
        log.info("blocking.edge_added", blocking_task_id=str(blocking_id), blocked_task_id=str(blocked_id))
        return edge

    def _validate_pair(self, graph: TaskGraph, blocking: Task, blocked: Task) -> None:
        ids = [blocking.id, blocked.id]
        titles = [blocking.title, blocked.title]

        if blocking.completed:
            raise InvalidRelationship(
                f'Completed task "{blocking.title}" cannot block other tasks',
                task_ids=ids, titles=titles,
            )
        if blocked.completed:
            raise InvalidRelationship(
                f'Completed task "{blocked.title}" cannot be blocked',
                task_ids=ids, titles=titles,
            )
        if blocking.is_instance or blocked.is_instance:
            raise InvalidRelationship(
                "Recurring task instances cannot participate in blocking relationships",
                task_ids=ids, titles=titles,
            )
        if blocking.is_template or blocked.is_template:
            raise InvalidRelationship(
                "Recurring task templates cannot participate in blocking relationships",
                task_ids=ids, titles=titles,
            )
        if graph.is_ancestor(blocking.id, blocked.id) or graph.is_ancestor(blocked.id, blocking.id):
            raise InvalidRelationship(
                "Tasks in a parent/subtask relationship cannot block each other",
                task_ids=ids, titles=titles,
            )

    def _check_logical_order(self, blocking: Task, blocked: Task) -> None:
        if blocking.scheduled_time <= blocked.scheduled_time:
            return
        if self.order_policy == BlockingOrderPolicy.WARN:
            log.warning(
                "blocking.order_inverted",
                blocking_task_id=str(blocking.id),
                blocked_task_id=str(blocked.id),
            )
            return
        raise InvalidRelationship(
            f'Blocking task "{blocking.title}" is scheduled after the task it blocks '
            f'"{blocked.title}"',
            task_ids=[blocking.id, blocked.id],
            titles=[blocking.title, blocked.title],
        )

    async def remove_edge(
        self, blocking_id: uuid.UUID, blocked_id: uuid.UUID, owner_id: uuid.UUID
    ) -> bool:
        removed = await self.store.remove_block_edge(blocking_id, blocked_id, owner_id)
        if removed:
            log.info(
                "blocking.edge_removed",
                blocking_task_id=str(blocking_id),
                blocked_task_id=str(blocked_id),
            )
        return removed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_blocking_tasks(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> list[Task]:
        """Tasks that must complete before ``task_id``."""
        await self.store.get_or_raise(task_id, owner_id)
        return await self.store.list_blockers(task_id, owner_id)

    async def get_blocked_tasks(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> list[Task]:
        """Tasks waiting on ``task_id``."""
        await self.store.get_or_raise(task_id, owner_id)
        return await self.store.list_blocked(task_id, owner_id)

    async def is_available(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> bool:
        blockers = await self.get_blocking_tasks(task_id, owner_id)
        return all(b.completed for b in blockers)

    async def get_available_tasks(self, owner_id: uuid.UUID) -> list[Task]:
        graph = await self.store.load_graph(owner_id)
        return [
            task
            for task in graph.tasks.values()
            if not task.completed
            and all(graph.tasks[b].completed for b in graph.blocked_by_of(task.id))
        ]

    async def get_dependency_chain(
        self, task_id: uuid.UUID, owner_id: uuid.UUID
    ) -> DependencyChain:
        task = await self.store.get_or_raise(task_id, owner_id)
        blocked_by = await self.store.list_blockers(task_id, owner_id)
        blocks = await self.store.list_blocked(task_id, owner_id)
        return DependencyChain(
            task=task,
            blocked_by=blocked_by,
            blocks=blocks,
            is_available=all(b.completed for b in blocked_by),
        )

    async def validate_completable(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> None:
        blockers = await self.store.list_blockers(task_id, owner_id)
        incomplete = [b for b in blockers if not b.completed]
        if incomplete:
            raise BlockedByDependency(
                "Cannot complete task while blocking tasks are incomplete: "
                + ", ".join(b.title for b in incomplete),
                task_ids=[b.id for b in incomplete],
                titles=[b.title for b in incomplete],
            )
