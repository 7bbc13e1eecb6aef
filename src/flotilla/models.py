"""Core data models for Flotilla."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Work Items ───────────────────────────────────────────────────────────────


class WorkStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkStatus.DONE, WorkStatus.CANCELLED)


class WorkKind(str, enum.Enum):
    TASK = "task"
    BUG = "bug"
    MILESTONE = "milestone"
    TEST = "test"


class WorkItem(BaseModel):
    """A task, bug, milestone or test tracked in the dependency graph."""

    id: str = Field(description="Short identifier, e.g. 'fl-a1b2'")
    title: str = ""
    kind: WorkKind = WorkKind.TASK
    status: WorkStatus = WorkStatus.PENDING
    priority: int = Field(default=2, ge=0, le=4, description="0 = highest, 4 = lowest")
    group: str | None = Field(
        default=None, description="Agent type expected to pick this item up (None = any)"
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ── Edges ────────────────────────────────────────────────────────────────────


class EdgeType(str, enum.Enum):
    DEPENDS_ON = "depends_on"
    BLOCKS = "blocks"
    RELATED_TO = "related_to"
    DUPLICATES = "duplicates"
    FIXES = "fixes"
    CAUSED_BY = "caused_by"
    SUPERSEDES = "supersedes"
    PARENT_OF = "parent_of"
    CHILD_OF = "child_of"
    TESTS = "tests"

    @property
    def rule(self) -> EdgeRule:
        return EDGE_RULES[self]

    @property
    def is_bidirectional(self) -> bool:
        return self.rule.bidirectional

    @property
    def is_blocking(self) -> bool:
        return self in (EdgeType.DEPENDS_ON, EdgeType.BLOCKS)


_ANY = frozenset(WorkKind)
_TASK_OR_BUG = frozenset({WorkKind.TASK, WorkKind.BUG})


@dataclass(frozen=True)
class EdgeRule:
    """Which work-item kinds an edge type may connect."""

    sources: frozenset[WorkKind]
    targets: frozenset[WorkKind]
    bidirectional: bool = False
    same_kind: bool = False

    def check(self, source: WorkKind, target: WorkKind) -> str | None:
        """Return a reason string when the pair is not allowed, else None."""
        if source not in self.sources:
            return f"source kind '{source.value}' not allowed"
        if target not in self.targets:
            return f"target kind '{target.value}' not allowed"
        if self.same_kind and source != target:
            return f"both ends must be the same kind (got {source.value} -> {target.value})"
        return None


EDGE_RULES: dict[EdgeType, EdgeRule] = {
    EdgeType.DEPENDS_ON: EdgeRule(_ANY, _ANY),
    EdgeType.BLOCKS: EdgeRule(_TASK_OR_BUG, _TASK_OR_BUG | {WorkKind.MILESTONE}),
    EdgeType.RELATED_TO: EdgeRule(_ANY, _ANY, bidirectional=True),
    EdgeType.DUPLICATES: EdgeRule(_TASK_OR_BUG, _TASK_OR_BUG, same_kind=True),
    EdgeType.FIXES: EdgeRule(frozenset({WorkKind.TASK}), frozenset({WorkKind.BUG})),
    EdgeType.CAUSED_BY: EdgeRule(frozenset({WorkKind.BUG}), frozenset({WorkKind.TASK})),
    EdgeType.SUPERSEDES: EdgeRule(_TASK_OR_BUG, _TASK_OR_BUG, same_kind=True),
    EdgeType.PARENT_OF: EdgeRule(
        frozenset({WorkKind.TASK, WorkKind.MILESTONE}), _TASK_OR_BUG
    ),
    EdgeType.CHILD_OF: EdgeRule(
        _TASK_OR_BUG, frozenset({WorkKind.TASK, WorkKind.MILESTONE})
    ),
    EdgeType.TESTS: EdgeRule(frozenset({WorkKind.TEST}), _TASK_OR_BUG),
}


class Edge(BaseModel):
    """A typed edge between two work items.

    Bidirectional edges are stored once; ``flipped()`` gives the reverse view
    when the graph hydrates them for the target side.
    """

    source: str
    target: str
    edge_type: EdgeType
    weight: float = 1.0
    reason: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def bidirectional(self) -> bool:
        return self.edge_type.is_bidirectional

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source, self.target, self.edge_type.value)

    def flipped(self) -> Edge:
        return self.model_copy(update={"source": self.target, "target": self.source})


# ── Container Definitions ────────────────────────────────────────────────────


class MountMode(str, enum.Enum):
    RO = "ro"
    RW = "rw"


class EntrypointMode(str, enum.Enum):
    REPLACE = "replace"
    BEFORE = "before"
    AFTER = "after"


class Mount(BaseModel):
    name: str
    source: str | None = Field(
        default=None, description="Host path; defaults to the mount name for special mounts"
    )
    target: str
    mode: MountMode = MountMode.RW
    optional: bool = False


class ResourceDefaults(BaseModel):
    cpus: float | None = None
    memory: str | None = Field(default=None, description="Runtime memory string, e.g. '4g'")

    def merged(self, override: ResourceDefaults | None) -> ResourceDefaults:
        """Field-by-field override; unset fields in ``override`` keep our value."""
        if override is None:
            return self.model_copy()
        return ResourceDefaults(
            cpus=override.cpus if override.cpus is not None else self.cpus,
            memory=override.memory if override.memory is not None else self.memory,
        )


class DefinitionSource(str, enum.Enum):
    PROJECT = "project"
    HOST = "host"
    EMBEDDED = "embedded"


class ContainerDefinition(BaseModel):
    """A raw container/agent launch template as written in a config layer."""

    name: str
    description: str | None = None
    parent: str | None = None
    entrypoint: str | None = None
    entrypoint_mode: EntrypointMode = EntrypointMode.AFTER
    defaults: ResourceDefaults | None = None
    mounts: list[Mount] = Field(default_factory=list)


class FlatDefinition(BaseModel):
    """A definition after parent-chain merge and entrypoint composition."""

    name: str
    source: DefinitionSource
    description: str | None = None
    chain: list[str] = Field(description="Definition names, root first")
    entrypoint: list[str] = Field(default_factory=list)
    defaults: ResourceDefaults = Field(default_factory=ResourceDefaults)
    mounts: list[Mount] = Field(default_factory=list)
    image: str = ""


# ── Agents ───────────────────────────────────────────────────────────────────


class AgentStatus(str, enum.Enum):
    """Agent lifecycle states.

    spawning → running → (active ⇄ idle) → goodbye → stopped, with
    running|active|idle → stale → stopped when heartbeats lapse and
    spawning → stopped on launch failure.
    """

    SPAWNING = "spawning"
    RUNNING = "running"
    ACTIVE = "active"
    IDLE = "idle"
    GOODBYE = "goodbye"
    STALE = "stale"
    STOPPED = "stopped"


LIVE_STATUSES = frozenset({AgentStatus.RUNNING, AgentStatus.ACTIVE, AgentStatus.IDLE})


class LaunchInfo(BaseModel):
    """What the lifecycle manager knows about a container when registering it."""

    definition: str | None = None
    container_name: str | None = None
    image: str | None = None
    group: str | None = None


class AgentRecord(BaseModel):
    """A tracked agent instance in the registry."""

    agent_id: str = Field(description="Unique agent identifier, e.g. 'worker-7'")
    agent_type: str
    group: str | None = Field(default=None, description="Desired-state group the agent counts toward")
    definition: str | None = None
    container_id: str | None = Field(default=None, description="Runtime container handle")
    container_name: str | None = None
    status: AgentStatus = AgentStatus.SPAWNING
    created_at: datetime = Field(default_factory=_utcnow)
    last_heartbeat_at: datetime = Field(default_factory=_utcnow)
    goodbye_at: datetime | None = Field(default=None, description="When the agent said goodbye")
    claimed: list[str] = Field(default_factory=list, description="Work item ids held by the agent")
    last_error: str | None = None


class AgentHandle(BaseModel):
    """Returned by a successful spawn; passed back to ``stop``."""

    agent_id: str
    container_id: str
    container_name: str


# ── Scaling & Actions ────────────────────────────────────────────────────────


class ScalingPolicy(BaseModel):
    """Per agent type (min, max, work_aware) bounds consumed every tick."""

    min: int = Field(default=0, ge=0)
    max: int = Field(default=1, ge=0)
    work_aware: bool = False
    definition: str | None = Field(
        default=None, description="Container definition used to launch this type"
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> ScalingPolicy:
        if self.min > self.max:
            raise ValueError(f"min ({self.min}) must not exceed max ({self.max})")
        return self

    def desired(self, ready: int) -> int:
        if self.work_aware:
            if ready == 0:
                return 0
            return max(self.min, min(ready, self.max))
        return self.min


class ActionKind(str, enum.Enum):
    SPAWN = "spawn"
    STOP = "stop"

    @property
    def sign(self) -> int:
        return 1 if self is ActionKind.SPAWN else -1


class ActionReason(str, enum.Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    GOODBYE = "goodbye"
    STALE = "stale"
    MANUAL = "manual"


class FleetAction(BaseModel):
    """One spawn or stop decided by the reconciliation loop or a manual override."""

    kind: ActionKind
    agent_type: str
    agent_id: str | None = None
    reason: ActionReason
    force: bool = False
    executed: bool = False
    success: bool | None = None
    error: str | None = None

    @field_validator("agent_type")
    @classmethod
    def _non_empty_type(cls, v: str) -> str:
        if not v:
            raise ValueError("agent_type must not be empty")
        return v

    @property
    def bypasses_cooldown(self) -> bool:
        return self.force or self.reason in (
            ActionReason.GOODBYE,
            ActionReason.STALE,
            ActionReason.MANUAL,
        )
