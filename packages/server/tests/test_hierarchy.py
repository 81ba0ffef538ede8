"""
Hierarchy engine tests: due dates, cycles, completion gate, cascade, tree.
"""

from __future__ import annotations

import uuid
import pytest

from taskgraph.core.errors import (
    BlockedByChildren,
    InvalidRelationship,
    InvariantViolation,
    NotFound,
    SelfReference,
)
from taskgraph.models.task import Task
from taskgraph_shared.schemas.tasks import TaskCreate

from conftest import DAY0


def _shape(nodes):
    return [(n.id, _shape(n.children)) for n in nodes]


class TestDueDate:
    @pytest.mark.asyncio
    async def test_child_due_after_parent_rejected(self, orchestrator, make_task, owner):
        parent = await make_task("Parent", days=1)
        with pytest.raises(InvalidRelationship) as exc:
            await make_task("Child", days=2, parent=parent)
        assert "Parent" in exc.value.titles

    @pytest.mark.asyncio
    async def test_child_due_same_time_as_parent_allowed(self, make_task):
        parent = await make_task("Parent", days=1)
        child = await make_task("Child", days=1, parent=parent)
        assert child.parent_task_id == parent.id

    @pytest.mark.asyncio
    async def test_missing_parent(self, orchestrator, owner):
        data = TaskCreate(title="Orphan", scheduled_time=DAY0, parent_task_id=uuid.uuid4())
        with pytest.raises(NotFound):
            await orchestrator.create(data, owner)

    @pytest.mark.asyncio
    async def test_other_owners_parent_is_not_found(self, orchestrator, make_task):
        parent = await make_task("Parent", days=1)
        data = TaskCreate(title="Child", scheduled_time=DAY0, parent_task_id=parent.id)
        with pytest.raises(NotFound):
            await orchestrator.create(data, uuid.uuid4())


class TestCycles:
    @pytest.mark.asyncio
    async def test_move_under_own_descendant_rejected(self, orchestrator, make_task, owner):
        root = await make_task("Root", days=3)
        mid = await make_task("Mid", days=2, parent=root)
        leaf = await make_task("Leaf", days=1, parent=mid)

        with pytest.raises(InvalidRelationship):
            await orchestrator.move(root.id, leaf.id, owner)

    @pytest.mark.asyncio
    async def test_move_under_itself_rejected(self, orchestrator, make_task, owner):
        task = await make_task("Task", days=1)
        with pytest.raises(SelfReference):
            await orchestrator.move(task.id, task.id, owner)

    @pytest.mark.asyncio
    async def test_move_to_root_and_back(self, orchestrator, make_task, owner, assert_consistent):
        parent = await make_task("Parent", days=2)
        child = await make_task("Child", days=1, parent=parent)
        before = await orchestrator.get_tree(owner)

        await orchestrator.move(child.id, None, owner)
        assert (await orchestrator.get(child.id, owner)).parent_task_id is None
        await orchestrator.move(child.id, parent.id, owner)

        after = await orchestrator.get_tree(owner)
        assert _shape(after) == _shape(before)
        await assert_consistent(owner)

    @pytest.mark.asyncio
    async def test_move_checks_due_date(self, orchestrator, make_task, owner):
        early = await make_task("Early", days=1)
        late = await make_task("Late", days=2)
        with pytest.raises(InvalidRelationship):
            await orchestrator.move(late.id, early.id, owner)


class TestCompletionGate:
    @pytest.mark.asyncio
    async def test_parent_with_incomplete_children_cannot_complete(
        self, orchestrator, make_task, owner
    ):
        parent = await make_task("Parent", days=2)
        await make_task("Write report", days=1, parent=parent)
        await make_task("Review report", days=1, parent=parent)

        with pytest.raises(BlockedByChildren) as exc:
            await orchestrator.mark_completed(parent.id, owner)
        assert sorted(exc.value.titles) == ["Review report", "Write report"]


class TestCascadeComplete:
    @pytest.mark.asyncio
    async def test_last_child_completes_parent(self, orchestrator, make_task, owner, assert_consistent):
        parent = await make_task("Parent", days=2)
        a = await make_task("A", days=1, parent=parent)
        b = await make_task("B", days=1, parent=parent)

        await orchestrator.mark_completed(a.id, owner)
        assert not (await orchestrator.store.get(parent.id, owner, refresh=True)).completed

        await orchestrator.mark_completed(b.id, owner)
        assert (await orchestrator.store.get(parent.id, owner, refresh=True)).completed
        await assert_consistent(owner)

    @pytest.mark.asyncio
    async def test_cascade_reaches_grandparent(self, orchestrator, make_task, owner, assert_consistent):
        grandparent = await make_task("Grandparent", days=3)
        parent = await make_task("Parent", days=2, parent=grandparent)
        leaf = await make_task("Leaf", days=1, parent=parent)

        await orchestrator.mark_completed(leaf.id, owner)

        assert (await orchestrator.store.get(parent.id, owner, refresh=True)).completed
        assert (await orchestrator.store.get(grandparent.id, owner, refresh=True)).completed
        await assert_consistent(owner)

    @pytest.mark.asyncio
    async def test_cascade_returns_completed_ancestors(self, orchestrator, make_task, owner):
        grandparent = await make_task("Grandparent", days=3)
        parent = await make_task("Parent", days=2, parent=grandparent)
        leaf = await make_task("Leaf", days=1, parent=parent)
        await orchestrator.store.update_fields(leaf.id, owner, {"completed": True})

        completed = await orchestrator.hierarchy.cascade_complete(leaf.id, owner)
        assert completed == [parent.id, grandparent.id]

        # A second pass finds everything already complete
        assert await orchestrator.hierarchy.cascade_complete(leaf.id, owner) == []

    @pytest.mark.asyncio
    async def test_cascade_stops_at_incomplete_sibling(self, orchestrator, make_task, owner):
        grandparent = await make_task("Grandparent", days=3)
        parent = await make_task("Parent", days=2, parent=grandparent)
        await make_task("Uncle", days=2, parent=grandparent)
        leaf = await make_task("Leaf", days=1, parent=parent)

        await orchestrator.mark_completed(leaf.id, owner)

        assert (await orchestrator.store.get(parent.id, owner, refresh=True)).completed
        assert not (await orchestrator.store.get(grandparent.id, owner, refresh=True)).completed

    @pytest.mark.asyncio
    async def test_cascade_holds_parent_with_incomplete_blocker(
        self, orchestrator, make_task, owner, assert_consistent
    ):
        blocker = await make_task("Blocker", days=1)
        parent = await make_task("Parent", days=2)
        child = await make_task("Child", days=1, parent=parent)
        await orchestrator.link(blocker.id, parent.id, owner)

        await orchestrator.mark_completed(child.id, owner)

        assert not (await orchestrator.store.get(parent.id, owner, refresh=True)).completed
        await assert_consistent(owner)

    @pytest.mark.asyncio
    async def test_parent_locked_before_children_are_read(
        self, orchestrator, make_task, owner, monkeypatch
    ):
        grandparent = await make_task("Grandparent", days=3)
        parent = await make_task("Parent", days=2, parent=grandparent)
        leaf = await make_task("Leaf", days=1, parent=parent)

        calls = []
        store = orchestrator.store
        real_lock, real_children = store.lock, store.find_children

        async def lock(task_id, owner_id):
            calls.append(("lock", task_id))
            return await real_lock(task_id, owner_id)

        async def find_children(parent_id, owner_id, **kwargs):
            calls.append(("children", parent_id))
            return await real_children(parent_id, owner_id, **kwargs)

        monkeypatch.setattr(store, "lock", lock)
        monkeypatch.setattr(store, "find_children", find_children)

        await orchestrator.mark_completed(leaf.id, owner)

        for ancestor in (parent, grandparent):
            assert ("lock", ancestor.id) in calls
            assert ("children", ancestor.id) in calls
            assert calls.index(("lock", ancestor.id)) < calls.index(("children", ancestor.id))
        assert (await orchestrator.store.get(grandparent.id, owner, refresh=True)).completed


class TestTree:
    @pytest.mark.asyncio
    async def test_tree_nested_and_ordered(self, orchestrator, make_task, owner):
        second_root = await make_task("Second root", days=5)
        first_root = await make_task("First root", days=4)
        late_child = await make_task("Late child", days=3, parent=first_root)
        early_child = await make_task("Early child", days=1, parent=first_root)
        await make_task("Grandchild", hours=12, parent=early_child)

        tree = await orchestrator.get_tree(owner)

        assert [n.title for n in tree] == ["First root", "Second root"]
        assert [n.title for n in tree[0].children] == ["Early child", "Late child"]
        assert [n.title for n in tree[0].children[0].children] == ["Grandchild"]
        assert tree[1].id == second_root.id
        assert tree[0].children[1].id == late_child.id

    @pytest.mark.asyncio
    async def test_hierarchy_of_subtree(self, orchestrator, make_task, owner):
        root = await make_task("Root", days=3)
        child = await make_task("Child", days=2, parent=root)
        await make_task("Grandchild", days=1, parent=child)
        await make_task("Elsewhere", days=1)

        node = await orchestrator.get_hierarchy(child.id, owner)

        assert node.id == child.id
        assert [n.title for n in node.children] == ["Grandchild"]

    @pytest.mark.asyncio
    async def test_children_and_roots(self, orchestrator, make_task, owner):
        root = await make_task("Root", days=3)
        await make_task("B", days=2, parent=root)
        await make_task("A", days=1, parent=root)

        children = await orchestrator.get_children(root.id, owner)
        assert [c.title for c in children] == ["A", "B"]
        roots = await orchestrator.get_root_tasks(owner)
        assert [r.id for r in roots] == [root.id]

    @pytest.mark.asyncio
    async def test_children_of_unknown_task(self, orchestrator, owner):
        with pytest.raises(NotFound):
            await orchestrator.get_children(uuid.uuid4(), owner)


class TestCorruptedStore:
    @pytest.mark.asyncio
    async def test_hierarchy_cycle_in_store_fails_closed(self, session, orchestrator, owner):
        """Rows written around the engine that form a parent loop are reported, not looped on."""
        a = Task(owner_id=owner, title="A", scheduled_time=DAY0)
        b = Task(owner_id=owner, title="B", scheduled_time=DAY0)
        session.add_all([a, b])
        await session.flush()
        a.parent_task_id = b.id
        b.parent_task_id = a.id
        await session.flush()

        with pytest.raises(InvariantViolation):
            await orchestrator.get_hierarchy(a.id, owner)
        with pytest.raises(InvariantViolation):
            await orchestrator.hierarchy.validate_no_cycle(
                uuid.uuid4(), a.id, owner
            )
        await orchestrator.store.update_fields(a.id, owner, {"completed": True})
        with pytest.raises(InvariantViolation):
            await orchestrator.hierarchy.cascade_complete(a.id, owner)
