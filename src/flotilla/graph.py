"""Dependency Graph Engine: answers "how much work is ready right now".

The graph keeps an in-memory, hash-indexed view of every work item and edge
loaded from the :class:`~flotilla.store.WorkItemStore`:

- readiness is recomputed on demand in a single pass over the index;
- ``depends_on`` insertions run a bounded depth-first reachability check and
  are rejected when they would close a cycle;
- connected components come from union-find over all edge types.

Index updates are copy-on-write under a short ``threading.Lock``; readers
grab a snapshot under the lock and compute outside it. Async mutations are
additionally serialised so that validation and persistence see a consistent
graph.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from flotilla.errors import CycleError, EdgeError
from flotilla.models import Edge, EdgeType, WorkItem, WorkStatus

if TYPE_CHECKING:
    from flotilla.store import WorkItemStore

logger = logging.getLogger(__name__)

READY_STATUSES = frozenset({WorkStatus.PENDING, WorkStatus.IN_PROGRESS})

DEFAULT_CYCLE_SEARCH_LIMIT = 100_000


# ── Union-Find ───────────────────────────────────────────────────────────────


class UnionFind:
    """Disjoint sets with path compression and union by rank."""

    def __init__(self, elements=()):
        self._parent: dict[str, str] = {}
        self._rank: dict[str, int] = {}
        for element in elements:
            self.add(element)

    def add(self, x: str) -> None:
        if x not in self._parent:
            self._parent[x] = x
            self._rank[x] = 0

    def find(self, x: str) -> str:
        self.add(x)
        root = x
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[x] != root:
            self._parent[x], x = root, self._parent[x]
        return root

    def union(self, a: str, b: str) -> bool:
        """Merge the sets holding a and b. Returns False if already joined."""
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return False
        if self._rank[ra] < self._rank[rb]:
            ra, rb = rb, ra
        self._parent[rb] = ra
        if self._rank[ra] == self._rank[rb]:
            self._rank[ra] += 1
        return True

    def groups(self) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        for x in self._parent:
            out.setdefault(self.find(x), []).append(x)
        return out


@dataclass
class ComponentInfo:
    """One connected component of the work graph."""

    members: list[str] = field(default_factory=list)
    roots: list[str] = field(default_factory=list)

    @property
    def task_count(self) -> int:
        return len(self.members)


@dataclass(frozen=True)
class _Snapshot:
    items: dict[str, WorkItem]
    deps: dict[str, frozenset[str]]


# ── Graph ────────────────────────────────────────────────────────────────────


class DependencyGraph:
    """In-memory work graph backed by an optional persistent store."""

    def __init__(
        self,
        store: WorkItemStore | None = None,
        cycle_search_limit: int = DEFAULT_CYCLE_SEARCH_LIMIT,
    ):
        self.store = store
        self.cycle_search_limit = cycle_search_limit
        self._items: dict[str, WorkItem] = {}
        self._edges: dict[tuple[str, str, str], Edge] = {}
        self._deps: dict[str, frozenset[str]] = {}
        self._lock = threading.Lock()
        self._write_lock = asyncio.Lock()
        self._store_version: int | None = None

    @classmethod
    async def load(cls, store: WorkItemStore, **kwargs) -> DependencyGraph:
        """Build a graph from everything the store holds."""
        graph = cls(store, **kwargs)
        items, edges = await graph._reload()
        logger.info("Dependency graph loaded: %d items, %d edges", len(items), len(edges))
        return graph

    async def _reload(self) -> tuple[list[WorkItem], list[Edge]]:
        # Version first: a commit racing the load shows up on the next refresh
        self._store_version = await self.store.data_version()
        items, edges = await self.store.load_all()
        self.load_snapshot(items, edges)
        return items, edges

    async def refresh(self) -> bool:
        """Reload from the store if another process has written to it since.

        Returns whether the graph was reloaded.
        """
        if self.store is None:
            return False
        async with self._write_lock:
            if await self.store.data_version() == self._store_version:
                return False
            items, edges = await self._reload()
        logger.info("Dependency graph reloaded: %d items, %d edges", len(items), len(edges))
        return True

    def load_snapshot(self, items: list[WorkItem], edges: list[Edge]) -> None:
        """Replace the in-memory index wholesale (no validation)."""
        item_map = {item.id: item for item in items}
        edge_map = {edge.key: edge for edge in edges}
        deps: dict[str, set[str]] = {}
        for edge in edges:
            if edge.edge_type is EdgeType.DEPENDS_ON:
                deps.setdefault(edge.source, set()).add(edge.target)
        with self._lock:
            self._items = item_map
            self._edges = edge_map
            self._deps = {k: frozenset(v) for k, v in deps.items()}

    def _snapshot(self) -> _Snapshot:
        with self._lock:
            return _Snapshot(items=dict(self._items), deps=dict(self._deps))

    # ── Reads ────────────────────────────────────────────────────────────

    def get(self, item_id: str) -> WorkItem | None:
        with self._lock:
            return self._items.get(item_id)

    def items(self) -> list[WorkItem]:
        with self._lock:
            return list(self._items.values())

    def edges(self) -> list[Edge]:
        with self._lock:
            return list(self._edges.values())

    def edges_for(self, item_id: str) -> list[Edge]:
        """Outgoing edges of an item, with bidirectional edges hydrated both ways."""
        with self._lock:
            edges = list(self._edges.values())
        out = [e for e in edges if e.source == item_id]
        out.extend(e.flipped() for e in edges if e.bidirectional and e.target == item_id)
        return out

    @staticmethod
    def _unresolved(item_id: str, snap: _Snapshot) -> list[str]:
        unresolved = []
        for target_id in snap.deps.get(item_id, ()):
            target = snap.items.get(target_id)
            if target is None or not target.status.is_terminal:
                unresolved.append(target_id)
        return unresolved

    def _ready_items(self, group: str | None, snap: _Snapshot) -> list[WorkItem]:
        ready = []
        for item in snap.items.values():
            if item.status not in READY_STATUSES:
                continue
            if group is not None and item.group is not None and item.group != group:
                continue
            if self._unresolved(item.id, snap):
                continue
            ready.append(item)
        return ready

    def ready(self, group: str | None = None) -> list[WorkItem]:
        """Ready items, highest priority (lowest number) first, then oldest."""
        items = self._ready_items(group, self._snapshot())
        return sorted(items, key=lambda i: (i.priority, i.created_at))

    def ready_count(self, group: str | None = None) -> int:
        """Number of non-terminal items whose every ``depends_on`` target is terminal.

        With a group filter, items tagged for another group are not counted;
        untagged items count for every group.
        """
        return len(self._ready_items(group, self._snapshot()))

    def blockers(self, item_id: str) -> list[str]:
        snap = self._snapshot()
        if item_id not in snap.items:
            raise KeyError(f"Unknown work item: {item_id}")
        return sorted(self._unresolved(item_id, snap))

    def is_blocked(self, item_id: str) -> bool:
        return bool(self.blockers(item_id))

    def components(self) -> list[ComponentInfo]:
        """Connected components over every edge type, largest first."""
        snap = self._snapshot()
        with self._lock:
            edges = list(self._edges.values())

        uf = UnionFind(snap.items)
        for edge in edges:
            if edge.source in snap.items and edge.target in snap.items:
                uf.union(edge.source, edge.target)

        components = []
        for members in uf.groups().values():
            members.sort()
            roots = [m for m in members if not self._unresolved(m, snap)]
            components.append(ComponentInfo(members=members, roots=roots))
        components.sort(key=lambda c: (-c.task_count, c.members[0]))
        return components

    def find_dependency_path(self, start: str, goal: str) -> tuple[str, ...] | None:
        """Depth-first search for a ``depends_on`` path from start to goal.

        Returns the path, or None when no path exists. Raises CycleError when
        the search limit is exhausted, since a cycle can then not be ruled out.
        """
        deps = self._snapshot().deps
        stack: list[tuple[str, tuple[str, ...]]] = [(start, (start,))]
        visited: set[str] = set()
        while stack:
            node, path = stack.pop()
            if node == goal:
                return path
            if node in visited:
                continue
            visited.add(node)
            if len(visited) > self.cycle_search_limit:
                raise CycleError(
                    f"dependency search exceeded {self.cycle_search_limit} nodes", path
                )
            for nxt in deps.get(node, ()):
                if nxt not in visited:
                    stack.append((nxt, path + (nxt,)))
        return None

    def would_cycle(self, edge: Edge) -> bool:
        """Whether adding ``edge`` would close a cycle in the ``depends_on`` subgraph."""
        if edge.edge_type is not EdgeType.DEPENDS_ON:
            return False
        if edge.source == edge.target:
            return True
        try:
            return self.find_dependency_path(edge.target, edge.source) is not None
        except CycleError:
            return True

    # ── Mutations ────────────────────────────────────────────────────────

    async def add_item(self, item: WorkItem) -> WorkItem:
        async with self._write_lock:
            if self.store is not None:
                await self.store.put(item)
            with self._lock:
                self._items = {**self._items, item.id: item}
        return item

    async def set_status(self, item_id: str, status: WorkStatus) -> WorkItem:
        async with self._write_lock:
            current = self.get(item_id)
            if current is None:
                raise KeyError(f"Unknown work item: {item_id}")
            if self.store is not None:
                await self.store.put_status(item_id, status)
            updated = current.model_copy(update={"status": status})
            with self._lock:
                self._items = {**self._items, item_id: updated}
        return updated

    def validate_edge(self, edge: Edge) -> None:
        """Raise EdgeError/CycleError if the edge may not be inserted."""
        if edge.source == edge.target:
            raise EdgeError(f"{edge.source}: an item cannot link to itself")
        source, target = self.get(edge.source), self.get(edge.target)
        if source is None:
            raise EdgeError(f"Unknown work item: {edge.source}")
        if target is None:
            raise EdgeError(f"Unknown work item: {edge.target}")

        problem = edge.edge_type.rule.check(source.kind, target.kind)
        if problem:
            raise EdgeError(
                f"{edge.edge_type.value} edge {edge.source} -> {edge.target}: {problem}"
            )

        with self._lock:
            existing = set(self._edges)
        if edge.key in existing or (
            edge.bidirectional and (edge.target, edge.source, edge.edge_type.value) in existing
        ):
            raise EdgeError(
                f"{edge.edge_type.value} edge {edge.source} -> {edge.target} already exists"
            )

        if edge.edge_type is EdgeType.DEPENDS_ON:
            try:
                path = self.find_dependency_path(edge.target, edge.source)
            except CycleError as exc:
                raise CycleError(
                    f"Refusing {edge.source} -> {edge.target}: cycle check inconclusive",
                    exc.path,
                ) from exc
            if path is not None:
                chain = " -> ".join((edge.source,) + path)
                raise CycleError(f"Dependency cycle: {chain}", (edge.source,) + path)

    async def add_edge(self, edge: Edge) -> Edge:
        """Validate, persist, then index an edge. The graph is unchanged on failure."""
        async with self._write_lock:
            self.validate_edge(edge)
            if self.store is not None:
                await self.store.put_edge(edge)
            with self._lock:
                self._edges = {**self._edges, edge.key: edge}
                if edge.edge_type is EdgeType.DEPENDS_ON:
                    current = self._deps.get(edge.source, frozenset())
                    self._deps = {**self._deps, edge.source: current | {edge.target}}
        return edge

    async def remove_edge(self, source: str, target: str, edge_type: EdgeType) -> None:
        async with self._write_lock:
            key = (source, target, edge_type.value)
            if key not in self._edges and edge_type.is_bidirectional:
                key = (target, source, edge_type.value)
                source, target = target, source
            if key not in self._edges:
                raise EdgeError(f"No {edge_type.value} edge {source} -> {target}")
            if self.store is not None:
                await self.store.delete_edge(source, target, edge_type)
            with self._lock:
                edges = dict(self._edges)
                del edges[key]
                self._edges = edges
                if edge_type is EdgeType.DEPENDS_ON:
                    self._deps = {**self._deps, source: self._deps[source] - {target}}
