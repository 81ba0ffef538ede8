"""
Hierarchy engine: parent/child containment.

Handles:
- Due-date constraint (a child is never due after its parent)
- Cycle rejection when re-parenting
- Completion gate (a parent completes only after all its children)
- Cascade-complete of ancestors once their last child completes
- Tree and subtree assembly
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Iterable, Optional

import structlog

from taskgraph.core.errors import (
    BlockedByChildren,
    InvalidRelationship,
    InvariantViolation,
    SelfReference,
)
from taskgraph.models.task import Task
from taskgraph.services.graph import TaskGraph
from taskgraph.services.store import TaskStore
from taskgraph_shared.schemas.tasks import TaskNode

log = structlog.get_logger()


def assemble_forest(tasks: Iterable[Task], root_ids: Optional[set] = None) -> list[TaskNode]:
    """Nest ``tasks`` under their parents.

    ``tasks`` must already be ordered by scheduled time; that order is kept at
    every level. A task whose parent is not among ``tasks`` becomes a root,
    unless ``root_ids`` is given, in which case only those ids are returned.
    """
    tasks = list(tasks)
    nodes = {t.id: TaskNode.model_validate(t) for t in tasks}
    roots = []
    for task in tasks:
        node = nodes[task.id]
        parent = nodes.get(task.parent_task_id) if task.parent_task_id else None
        if parent is not None and task.id not in (root_ids or ()):
            parent.children.append(node)
        elif root_ids is None or task.id in root_ids:
            roots.append(node)
    return roots


class HierarchyService:
    def __init__(self, store: TaskStore):
        self.store = store

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate_child_due_date(
        self, child_time: datetime, parent_id: uuid.UUID, owner_id: uuid.UUID
    ) -> Task:
        """Return the parent, or raise if ``child_time`` falls after its due date."""
        parent = await self.store.get_or_raise(parent_id, owner_id, "Parent task")
        if child_time > parent.scheduled_time:
            raise InvalidRelationship(
                f'Subtask cannot be due after its parent task "{parent.title}"',
                task_ids=[parent.id],
                titles=[parent.title],
            )
        return parent

    async def validate_no_cycle(
        self,
        task_id: uuid.UUID,
        proposed_parent_id: uuid.UUID,
        owner_id: uuid.UUID,
        graph: Optional[TaskGraph] = None,
    ) -> None:
        if task_id == proposed_parent_id:
            raise SelfReference("A task cannot be its own parent", task_ids=[task_id])

        graph = graph or await self.store.load_graph(owner_id)
        if graph.is_ancestor(task_id, proposed_parent_id):
            raise InvalidRelationship(
                "Cannot move a task under one of its own descendants",
                task_ids=[task_id, proposed_parent_id],
            )

    async def validate_parent_completion(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> None:
        children = await self.store.find_children(task_id, owner_id, refresh=True)
        incomplete = [c for c in children if not c.completed]
        if incomplete:
            raise BlockedByChildren(
                "Cannot complete task while subtasks are incomplete: "
                + ", ".join(c.title for c in incomplete),
                task_ids=[c.id for c in incomplete],
                titles=[c.title for c in incomplete],
            )

    # ------------------------------------------------------------------
    # Cascade
    # ------------------------------------------------------------------

    async def cascade_complete(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> list[uuid.UUID]:
        """Complete each ancestor whose children are now all complete.

        Walks upward one level at a time. Each parent row is locked before its
        children are read, so two children completing concurrently are checked
        one after the other and the later check sees both completions. The
        parent is completed with a conditional update, so completing it twice
        is a no-op. Returns the ids of the ancestors this call completed.
        """
        task = await self.store.get_or_raise(task_id, owner_id)
        completed_ids: list[uuid.UUID] = []
        visited = {task.id}
        parent_id = task.parent_task_id

        while parent_id is not None:
            if parent_id in visited:
                raise InvariantViolation(
                    "Ancestor chain revisits a task; the hierarchy contains a cycle",
                    task_ids=[task_id, parent_id],
                )
            visited.add(parent_id)

            parent = await self.store.lock(parent_id, owner_id)
            if parent is None or parent.completed:
                break

            siblings = await self.store.find_children(parent_id, owner_id, refresh=True)
            if any(not s.completed for s in siblings):
                break

            blockers = await self.store.list_blockers(parent_id, owner_id)
            if any(not b.completed for b in blockers):
                log.info("hierarchy.cascade_held_by_dependency", task_id=str(parent_id))
                break

            changed = await self.store.update_fields(
                parent_id, owner_id, {"completed": True}, only_if=(Task.completed.is_(False),)
            )
            if changed:
                completed_ids.append(parent_id)
                log.info("hierarchy.cascade_completed", task_id=str(parent_id))

            parent_id = parent.parent_task_id

        return completed_ids

    # ------------------------------------------------------------------
    # Move
    # ------------------------------------------------------------------

    async def move(
        self,
        task_id: uuid.UUID,
        new_parent_id: Optional[uuid.UUID],
        owner_id: uuid.UUID,
        graph: Optional[TaskGraph] = None,
    ) -> Task:
        task = await self.store.get_or_raise(task_id, owner_id)
        if new_parent_id is not None:
            await self.validate_no_cycle(task_id, new_parent_id, owner_id, graph=graph)
            await self.validate_child_due_date(task.scheduled_time, new_parent_id, owner_id)

        task.parent_task_id = new_parent_id
        await self.store.save(task)
        log.info(
            "hierarchy.task_moved",
            task_id=str(task_id),
            parent_task_id=str(new_parent_id) if new_parent_id else None,
        )
        return task

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_children(self, parent_id: uuid.UUID, owner_id: uuid.UUID) -> list[Task]:
        await self.store.get_or_raise(parent_id, owner_id)
        return await self.store.find_children(parent_id, owner_id)

    async def get_root_tasks(self, owner_id: uuid.UUID) -> list[Task]:
        return await self.store.find_roots(owner_id)

    async def get_tree(self, owner_id: uuid.UUID) -> list[TaskNode]:
        return assemble_forest(await self.store.find_all(owner_id))

    async def get_hierarchy(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> TaskNode:
        task = await self.store.get_or_raise(task_id, owner_id)
        graph = await self.store.load_graph(owner_id)
        subtree = [graph.tasks[tid] for tid in graph.descendants(task.id)]
        subtree.sort(key=lambda t: t.scheduled_time)
        (root,) = assemble_forest([task, *subtree], root_ids={task.id})
        return root
