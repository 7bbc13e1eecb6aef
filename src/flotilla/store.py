"""Work-item storage: append log plus SQLite cache.

Every mutation is appended to ``work-log.ndjson`` first and then applied to
the ``work.db`` cache. The cache can always be rebuilt by replaying the log,
so the log is the source of truth and the database only answers queries.

Like the agent registry, the DB is expected to live on local disk, not on a
network filesystem.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from flotilla.models import Edge, EdgeType, WorkItem, WorkKind, WorkStatus

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS work_items (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    kind TEXT NOT NULL DEFAULT 'task',
    status TEXT NOT NULL DEFAULT 'pending',
    priority INTEGER NOT NULL DEFAULT 2,
    grp TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS edges (
    source TEXT NOT NULL,
    target TEXT NOT NULL,
    edge_type TEXT NOT NULL,
    weight REAL NOT NULL DEFAULT 1.0,
    reason TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (source, target, edge_type)
);

CREATE INDEX IF NOT EXISTS idx_work_items_status ON work_items(status);
CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target);
"""


def generate_work_id(title: str, existing: set[str] | frozenset[str] = frozenset()) -> str:
    """Short ``fl-xxxx`` id; grows by one hex digit on each collision."""
    seed = f"{title}:{datetime.now(timezone.utc).isoformat()}"
    digest = hashlib.sha256(seed.encode()).hexdigest()
    length = 4
    while f"fl-{digest[:length]}" in existing:
        length += 1
    return f"fl-{digest[:length]}"


class WorkItemStore:
    """Append-log-plus-cache storage consumed by the dependency graph."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.db_path = str(data_dir / "work.db")
        self.log_path = data_dir / "work-log.ndjson"
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the cache, create tables, and rebuild from the log if the cache is new."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        fresh = not Path(self.db_path).exists()
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        if fresh and self.log_path.exists():
            await self.rebuild_cache()
        logger.info("Work item store initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized; call initialize() first")
        return self._db

    # ── Change log ───────────────────────────────────────────────────────

    def _append(self, op: str, payload: dict) -> None:
        entry = {"op": op, "ts": datetime.now(timezone.utc).isoformat(), **payload}
        with open(self.log_path, "a") as fh:
            fh.write(json.dumps(entry, sort_keys=True) + "\n")

    async def rebuild_cache(self) -> int:
        """Drop the cache and replay the change log. Returns entries applied."""
        await self.db.execute("DELETE FROM work_items")
        await self.db.execute("DELETE FROM edges")
        applied = 0
        if self.log_path.exists():
            with open(self.log_path) as fh:
                for lineno, line in enumerate(fh, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning("Skipping corrupt work log line %d", lineno)
                        continue
                    await self._apply(entry)
                    applied += 1
        await self.db.commit()
        logger.info("Rebuilt work item cache from %d log entries", applied)
        return applied

    async def _apply(self, entry: dict) -> None:
        op = entry.get("op")
        if op == "put":
            await self._upsert_item(WorkItem.model_validate(entry["item"]))
        elif op == "status":
            await self.db.execute(
                "UPDATE work_items SET status = ?, updated_at = ? WHERE id = ?",
                (entry["status"], entry["ts"], entry["id"]),
            )
        elif op == "edge":
            await self._insert_edge(Edge.model_validate(entry["edge"]))
        elif op == "unlink":
            await self.db.execute(
                "DELETE FROM edges WHERE source = ? AND target = ? AND edge_type = ?",
                (entry["source"], entry["target"], entry["edge_type"]),
            )
        else:
            logger.warning("Unknown work log op: %s", op)

    # ── Queries ──────────────────────────────────────────────────────────

    async def load_all(self) -> tuple[list[WorkItem], list[Edge]]:
        cursor = await self.db.execute("SELECT * FROM work_items ORDER BY created_at")
        items = [self._row_to_item(r) for r in await cursor.fetchall()]
        cursor = await self.db.execute("SELECT * FROM edges ORDER BY created_at")
        edges = [self._row_to_edge(r) for r in await cursor.fetchall()]
        return items, edges

    async def get(self, item_id: str) -> WorkItem | None:
        cursor = await self.db.execute("SELECT * FROM work_items WHERE id = ?", (item_id,))
        row = await cursor.fetchone()
        return self._row_to_item(row) if row else None

    async def data_version(self) -> int:
        """Counter that moves whenever another connection commits to the cache.

        Commits made through this store's own connection leave it unchanged.
        """
        cursor = await self.db.execute("PRAGMA data_version")
        row = await cursor.fetchone()
        return row[0]

    async def ids(self) -> set[str]:
        cursor = await self.db.execute("SELECT id FROM work_items")
        return {row["id"] for row in await cursor.fetchall()}

    # ── Mutations ────────────────────────────────────────────────────────

    async def put(self, item: WorkItem) -> WorkItem:
        """Insert or replace a work item."""
        item.updated_at = datetime.now(timezone.utc)
        self._append("put", {"item": item.model_dump(mode="json")})
        await self._upsert_item(item)
        await self.db.commit()
        logger.info("Stored work item %s (%s, %s)", item.id, item.kind.value, item.status.value)
        return item

    async def put_status(self, item_id: str, status: WorkStatus) -> None:
        if await self.get(item_id) is None:
            raise KeyError(f"Unknown work item: {item_id}")
        now = datetime.now(timezone.utc).isoformat()
        self._append("status", {"id": item_id, "status": status.value})
        await self.db.execute(
            "UPDATE work_items SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, now, item_id),
        )
        await self.db.commit()
        logger.info("Work item %s → %s", item_id, status.value)

    async def put_edge(self, edge: Edge) -> None:
        self._append("edge", {"edge": edge.model_dump(mode="json")})
        await self._insert_edge(edge)
        await self.db.commit()
        logger.info("Linked %s -[%s]-> %s", edge.source, edge.edge_type.value, edge.target)

    async def delete_edge(self, source: str, target: str, edge_type: EdgeType) -> None:
        self._append(
            "unlink", {"source": source, "target": target, "edge_type": edge_type.value}
        )
        await self.db.execute(
            "DELETE FROM edges WHERE source = ? AND target = ? AND edge_type = ?",
            (source, target, edge_type.value),
        )
        await self.db.commit()
        logger.info("Unlinked %s -[%s]-> %s", source, edge_type.value, target)

    async def _upsert_item(self, item: WorkItem) -> None:
        await self.db.execute(
            """INSERT OR REPLACE INTO work_items
               (id, title, kind, status, priority, grp, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                item.id,
                item.title,
                item.kind.value,
                item.status.value,
                item.priority,
                item.group,
                item.created_at.isoformat(),
                item.updated_at.isoformat(),
            ),
        )

    async def _insert_edge(self, edge: Edge) -> None:
        await self.db.execute(
            """INSERT OR REPLACE INTO edges
               (source, target, edge_type, weight, reason, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                edge.source,
                edge.target,
                edge.edge_type.value,
                edge.weight,
                edge.reason,
                edge.created_at.isoformat(),
            ),
        )

    @staticmethod
    def _row_to_item(row: aiosqlite.Row) -> WorkItem:
        return WorkItem(
            id=row["id"],
            title=row["title"],
            kind=WorkKind(row["kind"]),
            status=WorkStatus(row["status"]),
            priority=row["priority"],
            group=row["grp"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_edge(row: aiosqlite.Row) -> Edge:
        return Edge(
            source=row["source"],
            target=row["target"],
            edge_type=EdgeType(row["edge_type"]),
            weight=row["weight"],
            reason=row["reason"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
