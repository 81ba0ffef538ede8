"""
Shared fixtures: in-memory SQLite database, fixed clock, orchestrator.
"""

import os

# Must be set before taskgraph.core.database builds its engine
os.environ["TASKGRAPH_DATABASE_URL"] = "sqlite+aiosqlite://"

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

import taskgraph.models  # noqa: F401
from taskgraph.core.config import Settings
from taskgraph.models.task import Task
from taskgraph.services.store import TaskStore
from taskgraph.services.tasks import TaskOrchestrator
from taskgraph_shared.schemas.common import BlockingOrderPolicy
from taskgraph_shared.schemas.tasks import TaskCreate

DAY0 = datetime(2025, 1, 6, 9, 0)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def session_factory(session_maker):
    """Same contract as ``get_session_context``: commit on success, rollback on error."""

    @asynccontextmanager
    async def factory():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return factory


@pytest.fixture
async def session(session_maker):
    async with session_maker() as s:
        yield s


@pytest.fixture
def clock():
    return FixedClock(DAY0)


@pytest.fixture
def owner():
    return uuid.uuid4()


@pytest.fixture
def settings():
    return Settings(
        reminder_offsets_minutes=[30, 10, 5],
        blocking_order_policy=BlockingOrderPolicy.REJECT,
    )


@pytest.fixture
def orchestrator(session, clock, settings):
    return TaskOrchestrator(session, clock=clock, settings=settings)


@pytest.fixture
def make_task(orchestrator, owner):
    """Create a plain task due ``days``/``hours`` after DAY0."""

    async def _make(
        title: str,
        *,
        days: float = 0,
        hours: float = 0,
        parent: Optional[Task] = None,
        **fields,
    ) -> Task:
        data = TaskCreate(
            title=title,
            scheduled_time=DAY0 + timedelta(days=days, hours=hours),
            parent_task_id=parent.id if parent else None,
            **fields,
        )
        return await orchestrator.create(data, owner)

    return _make


@pytest.fixture
def assert_consistent(session):
    """Check every graph invariant for one owner's tasks."""

    async def _check(owner_id: uuid.UUID) -> None:
        store = TaskStore(session)
        graph = await store.load_graph(owner_id)

        for task in graph.tasks.values():
            graph.ancestors(task.id)
            children = [graph.tasks[c] for c in graph.children_of(task.id)]
            blockers = [graph.tasks[b] for b in graph.blocked_by_of(task.id)]

            if task.completed:
                assert all(c.completed for c in children), task.title
                assert all(b.completed for b in blockers), task.title
            for child in children:
                assert child.scheduled_time <= task.scheduled_time, child.title
                assert not graph.is_ancestor(child.id, task.id)
            assert not graph.eventually_blocks(task.id, task.id), task.title

            if task.is_template:
                assert task.parent_task_id is None
                assert not children
            if task.is_instance:
                assert not children
                assert not blockers and not graph.blocks_of(task.id)
            for other in graph.blocks_of(task.id):
                assert not graph.is_ancestor(task.id, other)
                assert not graph.is_ancestor(other, task.id)

    return _check
