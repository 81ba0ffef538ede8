"""
In-memory adjacency view of one owner's tasks.

Loaded once per validating operation (see ``TaskStore.load_graph``) so that
ancestor walks and cycle searches run against a consistent snapshot instead
of issuing one query per visited node. Every traversal is iterative and
bounded by the number of tasks in the snapshot; exceeding the bound means the
store holds a cycle the invariants forbid, and raises ``InvariantViolation``.
"""

from __future__ import annotations

from collections import defaultdict, deque
from typing import Hashable, Iterable, Mapping, Optional, TypeVar

from taskgraph.core.errors import InvariantViolation

NodeId = TypeVar("NodeId", bound=Hashable)


class TaskGraph:
    """Hierarchy and blocking adjacency for a single owner.

    ``parents`` maps every known task id to its parent id (or ``None``).
    ``edges`` are ``(blocking_id, blocked_id)`` pairs.
    ``tasks`` optionally maps ids to the loaded task rows.
    """

    def __init__(
        self,
        parents: Mapping[NodeId, Optional[NodeId]],
        edges: Iterable[tuple[NodeId, NodeId]] = (),
        tasks: Optional[Mapping] = None,
    ) -> None:
        self.tasks = dict(tasks or {})
        self._parent: dict = {}
        self._children: dict = defaultdict(list)
        self._blocks: dict = defaultdict(list)
        self._blocked_by: dict = defaultdict(list)
        nodes = set(parents)

        for child_id, parent_id in parents.items():
            if parent_id is not None:
                self._parent[child_id] = parent_id
                self._children[parent_id].append(child_id)
                nodes.add(parent_id)

        for blocking_id, blocked_id in edges:
            self._blocks[blocking_id].append(blocked_id)
            self._blocked_by[blocked_id].append(blocking_id)
            nodes.update((blocking_id, blocked_id))

        self._node_count = len(nodes)

    @classmethod
    def from_rows(cls, tasks: Iterable, edges: Iterable) -> TaskGraph:
        """Build a snapshot from ``Task`` rows and ``TaskBlock`` rows."""
        task_map = {t.id: t for t in tasks}
        return cls(
            parents={tid: t.parent_task_id for tid, t in task_map.items()},
            edges=[(e.blocking_task_id, e.blocked_task_id) for e in edges],
            tasks=task_map,
        )

    @property
    def node_limit(self) -> int:
        """Upper bound on any simple path or ancestor chain in this snapshot."""
        return max(self._node_count, 1)

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------

    def parent_of(self, task_id):
        return self._parent.get(task_id)

    def children_of(self, task_id) -> list:
        return list(self._children.get(task_id, ()))

    def ancestors(self, task_id) -> list:
        """Parent, grandparent, ... of ``task_id``, nearest first."""
        chain = []
        current = self._parent.get(task_id)
        while current is not None:
            if len(chain) >= self.node_limit:
                raise InvariantViolation(
                    "Ancestor chain exceeds the number of tasks; the hierarchy contains a cycle",
                    task_ids=[task_id],
                )
            chain.append(current)
            current = self._parent.get(current)
        return chain

    def is_ancestor(self, ancestor_id, task_id) -> bool:
        return ancestor_id in self.ancestors(task_id)

    def descendants(self, task_id) -> list:
        """All tasks below ``task_id``, breadth first."""
        found = []
        seen = {task_id}
        queue = deque(self._children.get(task_id, ()))
        while queue:
            current = queue.popleft()
            if current in seen or len(found) >= self.node_limit:
                raise InvariantViolation(
                    "Descendant walk revisited a task; the hierarchy contains a cycle",
                    task_ids=[task_id, current],
                )
            seen.add(current)
            found.append(current)
            queue.extend(self._children.get(current, ()))
        return found

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------

    def blocks_of(self, task_id) -> list:
        """Tasks that ``task_id`` blocks."""
        return list(self._blocks.get(task_id, ()))

    def blocked_by_of(self, task_id) -> list:
        """Tasks blocking ``task_id``."""
        return list(self._blocked_by.get(task_id, ()))

    def has_edge(self, blocking_id, blocked_id) -> bool:
        return blocked_id in self._blocks.get(blocking_id, ())

    def eventually_blocks(self, start_id, target_id) -> bool:
        """True if a path of ``blocks`` edges leads from ``start_id`` to ``target_id``.

        Each stack frame carries its own visited set, so a node reached twice
        along different branches (a diamond) is explored again on every path.
        That makes the worst case exponential in pathological graphs; it is
        kept that way so multi-path cycles are never under-reported. A
        strongly-connected-components check is the replacement if this ever
        becomes a bottleneck.
        """
        stack = [(start_id, frozenset())]
        while stack:
            node, path = stack.pop()
            if node in path:
                continue
            if len(path) >= self.node_limit:
                raise InvariantViolation(
                    "Blocking path exceeds the number of tasks",
                    task_ids=[start_id, target_id],
                )
            successors = self._blocks.get(node, ())
            if target_id in successors:
                return True
            on_path = path | {node}
            for nxt in successors:
                stack.append((nxt, on_path))
        return False

    def blocking_conflicts(self, subtree_ids: Iterable, ancestor_ids: Iterable) -> list:
        """Blocking edges (either direction) between two sets of tasks."""
        ancestors = set(ancestor_ids)
        conflicts = []
        for node in subtree_ids:
            for other in self._blocks.get(node, ()):
                if other in ancestors:
                    conflicts.append((node, other))
            for other in self._blocked_by.get(node, ()):
                if other in ancestors:
                    conflicts.append((other, node))
        return conflicts
