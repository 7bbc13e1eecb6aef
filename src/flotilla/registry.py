"""Agent Registry: SQLite-backed agent identity and health tracking.

The registry exclusively owns agent records. The reconciliation loop reads
them through ``list()`` and requests changes through the methods below; the
lifecycle manager registers agents before launching their container and
deregisters them once termination is confirmed.

- Agent ids are ``<agent_type>-<n>`` where ``n`` comes from an AUTOINCREMENT
  table, so an id is never handed out twice, even after deregistration.
- Staleness is evaluated lazily inside ``list()``; there is no timer.
- Every mutation appends an entry to the action log.
- Mutations are serialised by one asyncio.Lock which is never held while a
  container runtime subprocess runs. The read that a mutation checks and the
  write it makes happen under the same hold of the lock.

The DB is expected to live on local disk, NOT on a network filesystem.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

import aiosqlite

from flotilla.errors import RegistryError
from flotilla.models import LIVE_STATUSES, AgentRecord, AgentStatus, LaunchInfo

if TYPE_CHECKING:
    from flotilla.action_log import ActionLog

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS agent_ids (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_type TEXT NOT NULL,
    issued_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agents (
    agent_id TEXT PRIMARY KEY,
    agent_type TEXT NOT NULL,
    grp TEXT,
    definition TEXT,
    container_id TEXT,
    container_name TEXT,
    status TEXT NOT NULL DEFAULT 'spawning',
    created_at TEXT NOT NULL,
    last_heartbeat_at TEXT NOT NULL,
    goodbye_at TEXT,
    claimed TEXT NOT NULL DEFAULT '[]',
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_agents_type ON agents(agent_type);
CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status);
"""

DEFAULT_STALE_AFTER = 1800


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentRegistry:
    """SQLite-backed agent registry with async access."""

    def __init__(
        self,
        db_path: str,
        action_log: ActionLog | None = None,
        stale_after: int = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db_path = db_path
        self.action_log = action_log
        self.stale_after = stale_after
        self._clock = clock
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Agent registry initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized; call initialize() first")
        return self._db

    async def _audit(self, action: str, agent_id: str, success: bool = True, **detail) -> None:
        if self.action_log is not None:
            await self.action_log.append(
                "registry", action, success, {"agent_id": agent_id, **detail}
            )

    # ── Registration ─────────────────────────────────────────────────────

    async def register(
        self,
        agent_type: str,
        launch_info: LaunchInfo | None = None,
        status: AgentStatus = AgentStatus.SPAWNING,
    ) -> str:
        """Create a record for a new agent and return its never-reused id."""
        launch_info = launch_info or LaunchInfo()
        now = self._clock().isoformat()
        async with self._lock:
            cursor = await self.db.execute(
                "INSERT INTO agent_ids (agent_type, issued_at) VALUES (?, ?)",
                (agent_type, now),
            )
            agent_id = f"{agent_type}-{cursor.lastrowid}"
            await self.db.execute(
                """INSERT INTO agents
                   (agent_id, agent_type, grp, definition, container_name,
                    status, created_at, last_heartbeat_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    agent_id,
                    agent_type,
                    launch_info.group,
                    launch_info.definition,
                    launch_info.container_name,
                    status.value,
                    now,
                    now,
                ),
            )
            await self.db.commit()
        logger.info("Registered agent: %s (type=%s, status=%s)", agent_id, agent_type, status.value)
        await self._audit(
            "register",
            agent_id,
            agent_type=agent_type,
            definition=launch_info.definition,
            image=launch_info.image,
        )
        return agent_id

    async def deregister(self, agent_id: str) -> None:
        """Remove an agent record. Unknown or already-removed ids raise RegistryError."""
        async with self._lock:
            cursor = await self.db.execute("DELETE FROM agents WHERE agent_id = ?", (agent_id,))
            await self.db.commit()
            removed = cursor.rowcount
        if not removed:
            await self._audit("deregister", agent_id, success=False, error="unknown agent")
            raise RegistryError(f"Agent not registered: {agent_id}")
        logger.info("Deregistered agent: %s", agent_id)
        await self._audit("deregister", agent_id)

    # ── Queries ──────────────────────────────────────────────────────────

    async def get(self, agent_id: str) -> AgentRecord | None:
        cursor = await self.db.execute("SELECT * FROM agents WHERE agent_id = ?", (agent_id,))
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def _require(self, agent_id: str) -> AgentRecord:
        record = await self.get(agent_id)
        if record is None:
            raise RegistryError(f"Agent not registered: {agent_id}")
        return record

    async def list(self, agent_type: str | None = None, mark_stale: bool = True) -> list[AgentRecord]:
        """List agents, oldest first, with lapsed heartbeats reported as stale.

        With ``mark_stale`` the stale transition is also persisted and
        audited; without it the records are only relabelled in memory.
        """
        if agent_type is None:
            cursor = await self.db.execute("SELECT * FROM agents ORDER BY created_at, rowid")
        else:
            cursor = await self.db.execute(
                "SELECT * FROM agents WHERE agent_type = ? ORDER BY created_at, rowid",
                (agent_type,),
            )
        records = [self._row_to_record(r) for r in await cursor.fetchall()]

        cutoff = self._clock() - timedelta(seconds=self.stale_after)
        for i, record in enumerate(records):
            if record.status not in LIVE_STATUSES or record.last_heartbeat_at >= cutoff:
                continue
            if not mark_stale:
                record.status = AgentStatus.STALE
                continue
            if not await self._mark_stale(record):
                # A heartbeat landed since the read; report the fresh row
                fresh = await self.get(record.agent_id)
                if fresh is not None:
                    records[i] = fresh
                continue
            logger.warning(
                "Agent %s is stale (last heartbeat %s)",
                record.agent_id,
                record.last_heartbeat_at.isoformat(),
            )
            await self._audit(
                "stale",
                record.agent_id,
                last_heartbeat_at=record.last_heartbeat_at.isoformat(),
            )
            record.status = AgentStatus.STALE
        return records

    async def _mark_stale(self, record: AgentRecord) -> bool:
        """Flip ``record`` to stale only if its row is unchanged since it was read."""
        async with self._lock:
            cursor = await self.db.execute(
                """UPDATE agents SET status = ?
                   WHERE agent_id = ? AND status = ? AND last_heartbeat_at = ?""",
                (
                    AgentStatus.STALE.value,
                    record.agent_id,
                    record.status.value,
                    record.last_heartbeat_at.isoformat(),
                ),
            )
            await self.db.commit()
            return cursor.rowcount > 0

    # ── Status changes ───────────────────────────────────────────────────

    async def _write(self, agent_id: str, status: AgentStatus, **columns) -> None:
        """Update one row; callers hold ``self._lock``."""
        assignments = ", ".join(["status = ?"] + [f"{col} = ?" for col in columns])
        await self.db.execute(
            f"UPDATE agents SET {assignments} WHERE agent_id = ?",
            (status.value, *columns.values(), agent_id),
        )
        await self.db.commit()

    async def mark_running(
        self, agent_id: str, container_id: str, container_name: str | None = None
    ) -> None:
        """Record a successful launch."""
        async with self._lock:
            record = await self._require(agent_id)
            await self._write(
                agent_id,
                AgentStatus.RUNNING,
                container_id=container_id,
                container_name=container_name or record.container_name,
                last_heartbeat_at=self._clock().isoformat(),
            )
        logger.info("Agent %s running (container=%s)", agent_id, container_id[:12])
        await self._audit("running", agent_id, container_id=container_id)

    async def mark_stopped(self, agent_id: str, error: str | None = None) -> None:
        """Record that the agent's container is gone (or never started)."""
        async with self._lock:
            await self._require(agent_id)
            await self._write(agent_id, AgentStatus.STOPPED, last_error=error)
        logger.info("Agent %s stopped%s", agent_id, f": {error}" if error else "")
        await self._audit("stopped", agent_id, success=error is None, error=error)

    async def heartbeat(self, agent_id: str, status: AgentStatus | None = None) -> AgentRecord:
        """Refresh liveness. Moves running/idle/stale agents to active (or ``status``).

        Agents that said goodbye keep their goodbye status.
        """
        if status is not None and status not in (AgentStatus.ACTIVE, AgentStatus.IDLE):
            raise RegistryError(f"Heartbeat status must be active or idle, got {status.value}")
        async with self._lock:
            record = await self._require(agent_id)
            if record.status in (AgentStatus.STOPPED, AgentStatus.SPAWNING):
                raise RegistryError(f"Agent {agent_id} is {record.status.value}, cannot heartbeat")

            old_status = record.status
            if record.status is not AgentStatus.GOODBYE:
                record.status = status or AgentStatus.ACTIVE
            record.last_heartbeat_at = self._clock()
            await self._write(
                agent_id, record.status, last_heartbeat_at=record.last_heartbeat_at.isoformat()
            )
        if record.status != old_status:
            logger.info("Agent %s %s → %s", agent_id, old_status.value, record.status.value)
        await self._audit("heartbeat", agent_id, status=record.status.value)
        return record

    async def mark_goodbye(self, agent_id: str) -> AgentRecord:
        """Flag the agent as finished. Calling it again changes nothing."""
        async with self._lock:
            record = await self._require(agent_id)
            if record.goodbye_at is not None:
                logger.debug("Agent %s already said goodbye", agent_id)
                return record
            record.status = AgentStatus.GOODBYE
            record.goodbye_at = self._clock()
            await self._write(agent_id, record.status, goodbye_at=record.goodbye_at.isoformat())
        logger.info("Agent %s said goodbye", agent_id)
        await self._audit("goodbye", agent_id)
        return record

    # ── Work claims ──────────────────────────────────────────────────────

    async def claim(self, agent_id: str, work_id: str) -> None:
        async with self._lock:
            record = await self._require(agent_id)
            if work_id in record.claimed:
                return
            await self._write(agent_id, record.status, claimed=json.dumps(record.claimed + [work_id]))
        await self._audit("claim", agent_id, work_id=work_id)

    async def release(self, agent_id: str, work_id: str) -> None:
        async with self._lock:
            record = await self._require(agent_id)
            if work_id not in record.claimed:
                return
            claimed = [w for w in record.claimed if w != work_id]
            await self._write(agent_id, record.status, claimed=json.dumps(claimed))
        await self._audit("release", agent_id, work_id=work_id)

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> AgentRecord:
        """Convert a database row to an AgentRecord."""
        return AgentRecord(
            agent_id=row["agent_id"],
            agent_type=row["agent_type"],
            group=row["grp"],
            definition=row["definition"],
            container_id=row["container_id"],
            container_name=row["container_name"],
            status=AgentStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            last_heartbeat_at=datetime.fromisoformat(row["last_heartbeat_at"]),
            goodbye_at=datetime.fromisoformat(row["goodbye_at"]) if row["goodbye_at"] else None,
            claimed=json.loads(row["claimed"]),
            last_error=row["last_error"],
        )
