"""
Task endpoints: CRUD, completion, hierarchy, blocking, recurrence.

Every route is scoped to the caller resolved from ``X-User-Id``.
- Hierarchy: children are never due after their parent; a parent completes
  only once all its children have, and completes itself when the last one does.
- Blocking: edges form a DAG; a blocked task cannot be completed until its
  blockers are.
- Recurrence: templates keep a rolling buffer of generated instances.

Static paths are declared before ``/{task_id}`` so they are not captured by it.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from taskgraph.core.auth import get_current_user_id
from taskgraph.core.database import get_session
from taskgraph.services.tasks import TaskOrchestrator
from taskgraph_shared.schemas.common import to_naive_utc
from taskgraph_shared.schemas.tasks import (
    AvailabilityRead,
    BlockingAdd,
    DependencyChainRead,
    TaskCreate,
    TaskMove,
    TaskNode,
    TaskRead,
    TaskSummary,
    TaskUpdate,
)

router = APIRouter()


def get_orchestrator(session: AsyncSession = Depends(get_session)) -> TaskOrchestrator:
    return TaskOrchestrator(session)


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


@router.post("/", response_model=TaskRead, status_code=201)
async def create_task_endpoint(
    task_in: TaskCreate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """Create a task, a subtask (``parent_task_id``), or a recurring template."""
    task = await tasks.create(task_in, user_id)
    await tasks.session.commit()
    return TaskRead.model_validate(task)


@router.get("/", response_model=List[TaskRead])
async def list_tasks_endpoint(
    completed: Optional[bool] = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """List tasks ordered by scheduled time, optionally filtered by completion."""
    return [TaskRead.model_validate(t) for t in await tasks.list_tasks(user_id, completed)]


@router.get("/scheduled", response_model=List[TaskRead])
async def list_scheduled_endpoint(
    start: datetime = Query(...),
    end: datetime = Query(...),
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """Tasks scheduled between ``start`` and ``end`` inclusive."""
    found = await tasks.list_scheduled_between(user_id, to_naive_utc(start), to_naive_utc(end))
    return [TaskRead.model_validate(t) for t in found]


@router.get("/roots", response_model=List[TaskRead])
async def list_root_tasks_endpoint(
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    return [TaskRead.model_validate(t) for t in await tasks.get_root_tasks(user_id)]


@router.get("/tree", response_model=List[TaskNode])
async def task_tree_endpoint(
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """Full task forest, every level ordered by scheduled time."""
    return await tasks.get_tree(user_id)


@router.get("/available", response_model=List[TaskRead])
async def available_tasks_endpoint(
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """Incomplete tasks whose blockers are all complete."""
    return [TaskRead.model_validate(t) for t in await tasks.get_available_tasks(user_id)]


# ---------------------------------------------------------------------------
# Blocking edges
# ---------------------------------------------------------------------------


@router.post("/blocking", status_code=201)
async def add_blocking_endpoint(
    body: BlockingAdd,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """``blocking_task_id`` must complete before ``blocked_task_id``."""
    await tasks.link(body.blocking_task_id, body.blocked_task_id, user_id)
    await tasks.session.commit()
    return {
        "blocking_task_id": str(body.blocking_task_id),
        "blocked_task_id": str(body.blocked_task_id),
    }


@router.delete("/blocking/{blocking_id}/{blocked_id}", status_code=204)
async def remove_blocking_endpoint(
    blocking_id: uuid.UUID,
    blocked_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """Remove a blocking edge. Succeeds whether or not the edge existed."""
    await tasks.unlink(blocking_id, blocked_id, user_id)
    await tasks.session.commit()
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Single task
# ---------------------------------------------------------------------------


@router.get("/{task_id}", response_model=TaskRead)
async def get_task_endpoint(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    return TaskRead.model_validate(await tasks.get(task_id, user_id))


@router.patch("/{task_id}", response_model=TaskRead)
async def update_task_endpoint(
    task_id: uuid.UUID,
    task_in: TaskUpdate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """Partial update. Completion, re-parenting and rescheduling are validated."""
    task = await tasks.update(task_id, user_id, task_in)
    await tasks.session.commit()
    return TaskRead.model_validate(task)


@router.delete("/{task_id}", status_code=204)
async def delete_task_endpoint(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """Delete a task with its subtasks, or a recurring template with its instances."""
    await tasks.delete(task_id, user_id)
    await tasks.session.commit()
    return Response(status_code=204)


@router.post("/{task_id}/complete", response_model=TaskRead)
async def complete_task_endpoint(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    task = await tasks.mark_completed(task_id, user_id)
    await tasks.session.commit()
    return TaskRead.model_validate(task)


@router.post("/{task_id}/incomplete", response_model=TaskRead)
async def reopen_task_endpoint(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    task = await tasks.mark_incomplete(task_id, user_id)
    await tasks.session.commit()
    return TaskRead.model_validate(task)


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


@router.post("/{task_id}/move", response_model=TaskRead)
async def move_task_endpoint(
    task_id: uuid.UUID,
    body: TaskMove,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """Re-parent a task. ``parent_task_id: null`` makes it a root task."""
    task = await tasks.move(task_id, body.parent_task_id, user_id)
    await tasks.session.commit()
    return TaskRead.model_validate(task)


@router.get("/{task_id}/children", response_model=List[TaskRead])
async def task_children_endpoint(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    return [TaskRead.model_validate(t) for t in await tasks.get_children(task_id, user_id)]


@router.get("/{task_id}/hierarchy", response_model=TaskNode)
async def task_hierarchy_endpoint(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """The task with all its descendants nested under ``children``."""
    return await tasks.get_hierarchy(task_id, user_id)


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


@router.get("/{task_id}/instances", response_model=List[TaskRead])
async def task_instances_endpoint(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """Instances generated from a recurring template, by scheduled time."""
    return [TaskRead.model_validate(t) for t in await tasks.get_instances(task_id, user_id)]


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


@router.get("/{task_id}/blocking", response_model=List[TaskSummary])
async def task_blockers_endpoint(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """Tasks that must complete before this one."""
    return [TaskSummary.model_validate(t) for t in await tasks.get_blocking_tasks(task_id, user_id)]


@router.get("/{task_id}/blocked", response_model=List[TaskSummary])
async def task_blocked_endpoint(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    """Tasks waiting on this one."""
    return [TaskSummary.model_validate(t) for t in await tasks.get_blocked_tasks(task_id, user_id)]


@router.get("/{task_id}/dependencies", response_model=DependencyChainRead)
async def task_dependencies_endpoint(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    chain = await tasks.get_dependency_chain(task_id, user_id)
    return DependencyChainRead(
        task=TaskRead.model_validate(chain.task),
        blocked_by=[TaskSummary.model_validate(t) for t in chain.blocked_by],
        blocks=[TaskSummary.model_validate(t) for t in chain.blocks],
        is_available=chain.is_available,
    )


@router.get("/{task_id}/availability", response_model=AvailabilityRead)
async def task_availability_endpoint(
    task_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    tasks: TaskOrchestrator = Depends(get_orchestrator),
):
    return AvailabilityRead(task_id=task_id, is_available=await tasks.is_available(task_id, user_id))
