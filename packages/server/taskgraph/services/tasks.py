"""
Task orchestrator: the single entry point for task mutations.

Handles:
- Cross-graph exclusivity between hierarchy, blocking, and recurrence
- Completion gates (children and blockers) before a task completes
- Delegation to the hierarchy, blocking, and recurrence engines
- Post-update effects (notifications, recurrence refill, cascade-complete)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from taskgraph.core.config import Settings, get_settings
from taskgraph.core.errors import DuplicateRelationship, InvalidRelationship
from taskgraph.models.base import utcnow
from taskgraph.models.dependency import TaskBlock
from taskgraph.models.task import Task
from taskgraph.services.blocking import BlockingService, DependencyChain
from taskgraph.services.effects import EffectPipeline
from taskgraph.services.graph import TaskGraph
from taskgraph.services.hierarchy import HierarchyService
from taskgraph.services.notifications import NotificationService
from taskgraph.services.recurrence import RecurrenceService
from taskgraph.services.store import TaskStore
from taskgraph_shared.schemas.common import RecurrencePattern
from taskgraph_shared.schemas.tasks import TaskCreate, TaskNode, TaskUpdate

log = structlog.get_logger()

# Columns that may not be set to NULL through an update
_NON_NULLABLE = ("title", "scheduled_time", "completed", "recurrence_interval")


class TaskOrchestrator:
    def __init__(
        self,
        session: AsyncSession,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.session = session
        self.clock = clock
        self.store = TaskStore(session)
        self.notifications = NotificationService(
            session, clock=clock, offsets_minutes=settings.reminder_offsets_minutes
        )
        self.hierarchy = HierarchyService(self.store)
        self.blocking = BlockingService(self.store, order_policy=settings.blocking_order_policy)
        self.recurrence = RecurrenceService(self.store, self.notifications, clock=clock)

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(self, data: TaskCreate, owner_id: uuid.UUID) -> Task:
        if data.recurrence_pattern is not None and data.parent_task_id is not None:
            raise InvalidRelationship("Recurring tasks cannot be subtasks")

        if data.parent_task_id is not None:
            parent = await self.hierarchy.validate_child_due_date(
                data.scheduled_time, data.parent_task_id, owner_id
            )
            self._check_parent(parent, child_completed=False)

        effects = EffectPipeline(self.session)
        if data.recurrence_pattern is not None:
            task = await self.recurrence.create_template(data, owner_id)
        else:
            task = Task(
                owner_id=owner_id,
                title=data.title,
                description=data.description,
                scheduled_time=data.scheduled_time,
                parent_task_id=data.parent_task_id,
            )
            await self.store.save(task)
            effects.add("schedule_reminders", lambda: self.notifications.schedule_reminders(task))

        effects.add(
            "notify_created",
            lambda: self.notifications.notify_created(task.id, owner_id, task.title),
        )
        await effects.run()

        log.info(
            "tasks.created",
            task_id=str(task.id),
            template=task.is_template,
            parent_task_id=str(task.parent_task_id) if task.parent_task_id else None,
        )
        return task

    async def get(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> Task:
        return await self.store.get_or_raise(task_id, owner_id)

    async def list_tasks(
        self, owner_id: uuid.UUID, completed: Optional[bool] = None
    ) -> list[Task]:
        if completed is None:
            return await self.store.find_all(owner_id)
        return await self.list_by_status(owner_id, completed)

    async def list_by_status(self, owner_id: uuid.UUID, completed: bool) -> list[Task]:
        return await self.store.find_by_completed(owner_id, completed)

    async def list_scheduled_between(
        self, owner_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[Task]:
        if end < start:
            raise InvalidRelationship("Range end must not be before its start")
        return await self.store.find_in_range(owner_id, start, end)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update(self, task_id: uuid.UUID, owner_id: uuid.UUID, data: TaskUpdate) -> Task:
        task = await self.store.get_or_raise(task_id, owner_id)
        changes = data.model_dump(exclude_unset=True)
        for name in _NON_NULLABLE:
            if name in changes and changes[name] is None:
                del changes[name]
        if changes.get("recurrence_pattern") is not None:
            changes["recurrence_pattern"] = RecurrencePattern(changes["recurrence_pattern"]).value

        await self._validate_update(task, changes, owner_id)

        completing = changes.get("completed") is True and not task.completed
        time_changed = (
            "scheduled_time" in changes and changes["scheduled_time"] != task.scheduled_time
        )
        becomes_template = (
            not task.is_template
            and not task.is_instance
            and changes.get("recurrence_pattern") is not None
        )

        if task.is_template:
            await self.recurrence.update_template(task, changes)
        else:
            if becomes_template and task.recurrence_interval is None:
                changes.setdefault("recurrence_interval", 1)
            for name, value in changes.items():
                setattr(task, name, value)
            await self.store.save(task)
            if becomes_template:
                await self.recurrence.generate_up_to_buffer(task)

        await self.build_effects(task, completed_now=completing, time_changed=time_changed).run()

        log.info("tasks.updated", task_id=str(task.id), fields=sorted(changes))
        return task

    def build_effects(
        self, task: Task, *, completed_now: bool, time_changed: bool
    ) -> EffectPipeline:
        """Queue the follow-up work of an update, in execution order."""
        effects = EffectPipeline(self.session)
        if completed_now:
            effects.add(
                "notify_completed",
                lambda: self.notifications.notify_completed(task.id, task.owner_id, task.title),
            )
            effects.add(
                "recurrence_on_completed",
                lambda: self.recurrence.on_instance_completed(task),
            )
            effects.add(
                "cascade_complete",
                lambda: self.hierarchy.cascade_complete(task.id, task.owner_id),
                best_effort=False,
            )
        if time_changed and not task.completed and not task.is_template:
            effects.add(
                "reschedule_reminders",
                lambda: self.notifications.schedule_reminders(task),
            )
        return effects

    async def _validate_update(
        self, task: Task, changes: dict[str, Any], owner_id: uuid.UUID
    ) -> None:
        new_parent_id = changes.get("parent_task_id", task.parent_task_id)
        new_pattern = changes.get("recurrence_pattern", task.recurrence_pattern)
        new_time = changes.get("scheduled_time", task.scheduled_time)
        new_completed = changes.get("completed", task.completed)
        parent_changing = new_parent_id != task.parent_task_id

        # Recurrence structure
        if task.is_template and "recurrence_pattern" in changes and changes["recurrence_pattern"] is None:
            raise InvalidRelationship(
                "The recurrence pattern of a recurring task cannot be removed",
                task_ids=[task.id], titles=[task.title],
            )
        if task.is_instance and changes.get("recurrence_pattern") is not None:
            raise InvalidRelationship(
                "Recurring task instances cannot be converted into recurring tasks",
                task_ids=[task.id], titles=[task.title],
            )
        if new_pattern is not None and not task.is_instance:
            if new_parent_id is not None:
                raise InvalidRelationship(
                    "Recurring tasks cannot have a parent task"
                    if task.is_template
                    else "Subtasks cannot be converted into recurring tasks",
                    task_ids=[task.id], titles=[task.title],
                )
            if not task.is_template:
                await self._validate_template_conversion(task, owner_id)

        # Hierarchy
        if parent_changing and new_parent_id is not None:
            graph = await self.store.load_graph(owner_id)
            await self.hierarchy.validate_no_cycle(task.id, new_parent_id, owner_id, graph=graph)
            parent = await self.hierarchy.validate_child_due_date(new_time, new_parent_id, owner_id)
            self._check_parent(parent, child_completed=new_completed)
            self._check_blocking_conflicts(graph, task.id, new_parent_id)

        if new_time != task.scheduled_time:
            if task.is_instance:
                await self._validate_instance_slot(task, new_time)
            if not parent_changing and task.parent_task_id is not None:
                await self.hierarchy.validate_child_due_date(new_time, task.parent_task_id, owner_id)
            await self._validate_children_due_before(task, new_time, owner_id)

        # Completion gates
        if new_completed and not task.completed:
            await self.hierarchy.validate_parent_completion(task.id, owner_id)
            await self.blocking.validate_completable(task.id, owner_id)
        if not new_completed and task.completed:
            await self._validate_reopen(task, new_parent_id, owner_id)

    async def _validate_template_conversion(self, task: Task, owner_id: uuid.UUID) -> None:
        children = await self.store.find_children(task.id, owner_id)
        if children:
            raise InvalidRelationship(
                "Tasks with subtasks cannot be converted into recurring tasks",
                task_ids=[task.id], titles=[task.title],
            )
        if await self.store.has_block_edges(task.id):
            raise InvalidRelationship(
                "Tasks with blocking relationships cannot be converted into recurring tasks",
                task_ids=[task.id], titles=[task.title],
            )

    async def _validate_instance_slot(self, task: Task, new_time: datetime) -> None:
        # At most one instance per template and scheduled time
        clash = await self.store.find_instance_at(task.parent_recurrency_id, new_time)
        if clash is not None and clash.id != task.id:
            raise DuplicateRelationship(
                "Another instance of this recurring task is already scheduled at that time",
                task_ids=[task.id, clash.id],
                titles=[task.title],
            )

    async def _validate_children_due_before(
        self, task: Task, new_time: datetime, owner_id: uuid.UUID
    ) -> None:
        children = await self.store.find_children(task.id, owner_id)
        late = [c for c in children if c.scheduled_time > new_time]
        if late:
            raise InvalidRelationship(
                "Task cannot be due before its subtasks: " + ", ".join(c.title for c in late),
                task_ids=[c.id for c in late],
                titles=[c.title for c in late],
            )

    async def _validate_reopen(
        self, task: Task, parent_id: Optional[uuid.UUID], owner_id: uuid.UUID
    ) -> None:
        if parent_id is not None:
            parent = await self.store.get(parent_id, owner_id)
            if parent is not None and parent.completed:
                raise InvalidRelationship(
                    f'Cannot reopen a subtask of completed task "{parent.title}"',
                    task_ids=[parent.id], titles=[parent.title],
                )
        dependents = await self.store.list_blocked(task.id, owner_id)
        completed = [d for d in dependents if d.completed]
        if completed:
            raise InvalidRelationship(
                "Cannot reopen a task that completed tasks depend on: "
                + ", ".join(d.title for d in completed),
                task_ids=[d.id for d in completed],
                titles=[d.title for d in completed],
            )

    @staticmethod
    def _check_parent(parent: Task, *, child_completed: bool) -> None:
        if parent.is_template:
            raise InvalidRelationship(
                "Recurring tasks cannot have subtasks", task_ids=[parent.id], titles=[parent.title]
            )
        if parent.is_instance:
            raise InvalidRelationship(
                "Recurring task instances cannot have subtasks",
                task_ids=[parent.id], titles=[parent.title],
            )
        if parent.completed and not child_completed:
            raise InvalidRelationship(
                f'Cannot add an incomplete subtask to completed task "{parent.title}"',
                task_ids=[parent.id], titles=[parent.title],
            )

    @staticmethod
    def _check_blocking_conflicts(graph: TaskGraph, task_id: uuid.UUID, parent_id: uuid.UUID) -> None:
        subtree = [task_id, *graph.descendants(task_id)]
        ancestors = [parent_id, *graph.ancestors(parent_id)]
        conflicts = graph.blocking_conflicts(subtree, ancestors)
        if conflicts:
            ids = list(dict.fromkeys(tid for pair in conflicts for tid in pair))
            raise InvalidRelationship(
                "Tasks that block each other cannot be placed in a parent/subtask relationship",
                task_ids=ids,
                titles=[graph.tasks[tid].title for tid in ids if tid in graph.tasks],
            )

    # ------------------------------------------------------------------
    # Delete / complete / move
    # ------------------------------------------------------------------

    async def delete(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> None:
        task = await self.store.get_or_raise(task_id, owner_id)
        if task.is_template:
            await self.recurrence.delete_template(task)
            return

        graph = await self.store.load_graph(owner_id)
        ids = [task.id, *graph.descendants(task.id)]
        await self.store.delete_tasks(ids)
        log.info("tasks.deleted", task_id=str(task_id), count=len(ids))

    async def mark_completed(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> Task:
        return await self.update(task_id, owner_id, TaskUpdate(completed=True))

    async def mark_incomplete(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> Task:
        return await self.update(task_id, owner_id, TaskUpdate(completed=False))

    async def move(
        self, task_id: uuid.UUID, new_parent_id: Optional[uuid.UUID], owner_id: uuid.UUID
    ) -> Task:
        task = await self.store.get_or_raise(task_id, owner_id)
        if new_parent_id == task.parent_task_id:
            return task
        if new_parent_id is None:
            return await self.hierarchy.move(task_id, None, owner_id)

        if task.is_template:
            raise InvalidRelationship(
                "Recurring tasks cannot have a parent task", task_ids=[task.id], titles=[task.title]
            )
        graph = await self.store.load_graph(owner_id)
        await self.hierarchy.validate_no_cycle(task.id, new_parent_id, owner_id, graph=graph)
        parent = graph.tasks.get(new_parent_id)
        if parent is not None:
            self._check_parent(parent, child_completed=task.completed)
            self._check_blocking_conflicts(graph, task.id, new_parent_id)
        return await self.hierarchy.move(task_id, new_parent_id, owner_id, graph=graph)

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------

    async def link(
        self, blocking_id: uuid.UUID, blocked_id: uuid.UUID, owner_id: uuid.UUID
    ) -> TaskBlock:
        return await self.blocking.add_edge(blocking_id, blocked_id, owner_id)

    async def unlink(
        self, blocking_id: uuid.UUID, blocked_id: uuid.UUID, owner_id: uuid.UUID
    ) -> bool:
        return await self.blocking.remove_edge(blocking_id, blocked_id, owner_id)

    async def get_blocking_tasks(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> list[Task]:
        return await self.blocking.get_blocking_tasks(task_id, owner_id)

    async def get_blocked_tasks(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> list[Task]:
        return await self.blocking.get_blocked_tasks(task_id, owner_id)

    async def get_available_tasks(self, owner_id: uuid.UUID) -> list[Task]:
        return await self.blocking.get_available_tasks(owner_id)

    async def get_dependency_chain(
        self, task_id: uuid.UUID, owner_id: uuid.UUID
    ) -> DependencyChain:
        return await self.blocking.get_dependency_chain(task_id, owner_id)

    async def is_available(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> bool:
        return await self.blocking.is_available(task_id, owner_id)

    # ------------------------------------------------------------------
    # Hierarchy / recurrence queries
    # ------------------------------------------------------------------

    async def get_children(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> list[Task]:
        return await self.hierarchy.get_children(task_id, owner_id)

    async def get_root_tasks(self, owner_id: uuid.UUID) -> list[Task]:
        return await self.hierarchy.get_root_tasks(owner_id)

    async def get_tree(self, owner_id: uuid.UUID) -> list[TaskNode]:
        return await self.hierarchy.get_tree(owner_id)

    async def get_hierarchy(self, task_id: uuid.UUID, owner_id: uuid.UUID) -> TaskNode:
        return await self.hierarchy.get_hierarchy(task_id, owner_id)

    async def get_instances(self, template_id: uuid.UUID, owner_id: uuid.UUID) -> list[Task]:
        return await self.recurrence.get_instances(template_id, owner_id)
