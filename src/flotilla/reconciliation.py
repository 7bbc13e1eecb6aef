"""Fleet Reconciliation Loop: converges running agents on the desired fleet.

Every tick (default every 30 s, or on demand) and for every agent type:

1. current = agents of that type in running/active/idle
2. desired = policy.desired(ready work for that type)
3. hard stops: goodbye older than the grace window, stale agents
4. deficit → Spawn, excess → Stop (idle first, then oldest); agents that said
   goodbye are left to the hard stop once their grace window ends
5. a per-type cooldown suppresses scale actions of the opposite sign

Agents stuck in ``spawning`` past the spawn deadline no longer count toward
the deficit, and a real tick marks them stopped so the failed-spawn purge
picks them up. Before planning, each tick reloads the work graph when another
process has written to the store, and the scaling policies when config.yaml
has changed.

Planning is a pure function of a FleetState, the agent records and the ready
counts, so it can be exercised without a runtime. Applying runs different
agent types concurrently and one type sequentially. Ticks are single-flight:
a tick requested while one runs is coalesced into one rerun.

The loop never raises to its caller on action failure; failed actions are
logged, recorded on the action and retried by the next tick.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable

import yaml
from pydantic import BaseModel, Field

from flotilla.config import RESERVED_DEFINITION, load_config
from flotilla.errors import FlotillaError
from flotilla.models import (
    LIVE_STATUSES,
    ActionKind,
    ActionReason,
    AgentRecord,
    AgentStatus,
    FleetAction,
    ScalingPolicy,
)

if TYPE_CHECKING:
    from flotilla.action_log import ActionLog
    from flotilla.config import FleetConfig
    from flotilla.containers.definitions import DefinitionResolver
    from flotilla.containers.lifecycle import ContainerLifecycleManager
    from flotilla.graph import DependencyGraph
    from flotilla.registry import AgentRegistry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Slack on top of the runtime's spawn timeout before a spawning record is abandoned
SPAWN_DEADLINE_MARGIN = 60.0


# ── Fleet state ──────────────────────────────────────────────────────────────


@dataclass
class CooldownEntry:
    sign: int
    at: datetime


@dataclass
class FleetState:
    """Everything the planner needs besides live registry and graph data."""

    policies: dict[str, ScalingPolicy] = field(default_factory=dict)
    cooldown: float = 60.0
    goodbye_grace: float = 15.0
    failed_spawn_retention: float = 300.0
    spawn_deadline: float = 120.0
    last_action: dict[str, CooldownEntry] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: FleetConfig) -> FleetState:
        state = cls()
        state.apply_config(config)
        return state

    def apply_config(self, config: FleetConfig) -> None:
        """Take policies and timings from ``config``; the cooldown ledger is kept."""
        rec = config.reconciliation
        self.policies = {name: config.policy_for(name) for name in config.agents}
        self.cooldown = rec.cooldown
        self.goodbye_grace = rec.goodbye_grace
        self.failed_spawn_retention = rec.failed_spawn_retention
        self.spawn_deadline = config.runtime.spawn_timeout + SPAWN_DEADLINE_MARGIN

    def policy_for(self, agent_type: str) -> ScalingPolicy:
        return self.policies.get(agent_type) or ScalingPolicy(definition=RESERVED_DEFINITION)

    def in_cooldown(self, agent_type: str, sign: int, now: datetime) -> bool:
        """Whether an action of ``sign`` is suppressed by a recent opposite action."""
        entry = self.last_action.get(agent_type)
        if entry is None or entry.sign == sign:
            return False
        return (now - entry.at).total_seconds() < self.cooldown

    def allows(self, action: FleetAction, now: datetime) -> bool:
        return action.bypasses_cooldown or not self.in_cooldown(
            action.agent_type, action.kind.sign, now
        )

    def record(self, agent_type: str, sign: int, now: datetime) -> None:
        self.last_action[agent_type] = CooldownEntry(sign=sign, at=now)


# ── Reports ──────────────────────────────────────────────────────────────────


class TypeSummary(BaseModel):
    current: int
    desired: int
    ready: int
    min: int
    max: int
    work_aware: bool
    suppressed: int = Field(default=0, description="Scale actions held back by cooldown")


class ReconcileReport(BaseModel):
    started_at: datetime = Field(default_factory=_utcnow)
    dry_run: bool = False
    work_count: int = 0
    types: dict[str, TypeSummary] = Field(default_factory=dict)
    actions: list[FleetAction] = Field(default_factory=list)
    purged: list[str] = Field(default_factory=list, description="Failed-spawn records removed")

    @property
    def success(self) -> bool:
        return all(a.success is not False for a in self.actions)


# ── Planning ─────────────────────────────────────────────────────────────────


def stop_priority(agent: AgentRecord) -> tuple[int, datetime]:
    """Sort key for scale-down candidates: goodbye/stale, then idle, then oldest."""
    if agent.status in (AgentStatus.GOODBYE, AgentStatus.STALE):
        rank = 0
    elif agent.status is AgentStatus.IDLE:
        rank = 1
    else:
        rank = 2
    return (rank, agent.created_at)


def plan_actions(
    state: FleetState,
    agents: list[AgentRecord],
    ready_counts: dict[str, int],
    now: datetime,
) -> tuple[list[FleetAction], dict[str, TypeSummary]]:
    """Compute the actions that move the fleet toward its desired size.

    Pure: reads ``state`` but does not record cooldowns; the caller does that
    for actions it actually executes.
    """
    by_type: dict[str, list[AgentRecord]] = {}
    for agent in agents:
        by_type.setdefault(agent.agent_type, []).append(agent)

    grace = timedelta(seconds=state.goodbye_grace)
    actions: list[FleetAction] = []
    summaries: dict[str, TypeSummary] = {}

    for agent_type in sorted(set(state.policies) | set(by_type)):
        policy = state.policy_for(agent_type)
        records = by_type.get(agent_type, [])
        ready = ready_counts.get(agent_type, 0)

        for agent in records:
            if agent.status is AgentStatus.GOODBYE:
                if agent.goodbye_at is not None and now - agent.goodbye_at > grace:
                    actions.append(
                        FleetAction(
                            kind=ActionKind.STOP,
                            agent_type=agent_type,
                            agent_id=agent.agent_id,
                            reason=ActionReason.GOODBYE,
                        )
                    )
            elif agent.status is AgentStatus.STALE:
                actions.append(
                    FleetAction(
                        kind=ActionKind.STOP,
                        agent_type=agent_type,
                        agent_id=agent.agent_id,
                        reason=ActionReason.STALE,
                    )
                )

        live = [a for a in records if a.status in LIVE_STATUSES]
        stuck = {a.agent_id for a in stuck_spawns(records, state.spawn_deadline, now)}
        spawning = sum(
            1 for a in records if a.status is AgentStatus.SPAWNING and a.agent_id not in stuck
        )
        current = len(live)
        desired = policy.desired(ready)
        summary = TypeSummary(
            current=current,
            desired=desired,
            ready=ready,
            min=policy.min,
            max=policy.max,
            work_aware=policy.work_aware,
        )
        summaries[agent_type] = summary

        deficit = desired - current - spawning
        if deficit > 0:
            trial = FleetAction(kind=ActionKind.SPAWN, agent_type=agent_type, reason=ActionReason.SCALE_UP)
            if not state.allows(trial, now):
                summary.suppressed = deficit
                logger.debug("%s: %d spawn(s) held back by cooldown", agent_type, deficit)
            else:
                actions.extend(
                    FleetAction(kind=ActionKind.SPAWN, agent_type=agent_type, reason=ActionReason.SCALE_UP)
                    for _ in range(deficit)
                )
        elif current > desired:
            excess = current - desired
            trial = FleetAction(kind=ActionKind.STOP, agent_type=agent_type, reason=ActionReason.SCALE_DOWN)
            if not state.allows(trial, now):
                summary.suppressed = excess
                logger.debug("%s: %d stop(s) held back by cooldown", agent_type, excess)
            else:
                # Only live agents make up ``current``
                candidates = sorted(live, key=stop_priority)
                actions.extend(
                    FleetAction(
                        kind=ActionKind.STOP,
                        agent_type=agent_type,
                        agent_id=a.agent_id,
                        reason=ActionReason.SCALE_DOWN,
                    )
                    for a in candidates[:excess]
                )

    return actions, summaries


def stuck_spawns(agents: list[AgentRecord], deadline: float, now: datetime) -> list[AgentRecord]:
    """Records still ``spawning`` longer after registration than ``deadline`` allows."""
    cutoff = now - timedelta(seconds=deadline)
    return [a for a in agents if a.status is AgentStatus.SPAWNING and a.created_at < cutoff]


def expired_failures(agents: list[AgentRecord], retention: float, now: datetime) -> list[str]:
    """Stopped records whose failure has been visible for longer than ``retention``."""
    cutoff = now - timedelta(seconds=retention)
    return [
        a.agent_id
        for a in agents
        if a.status is AgentStatus.STOPPED and a.created_at < cutoff
    ]


# ── Loop ─────────────────────────────────────────────────────────────────────


class ReconciliationLoop:
    """Periodic, single-flight fleet reconciliation."""

    def __init__(
        self,
        config: FleetConfig,
        state: FleetState,
        registry: AgentRegistry,
        graph: DependencyGraph,
        resolver: DefinitionResolver,
        lifecycle: ContainerLifecycleManager,
        action_log: ActionLog | None = None,
        clock: Callable[[], datetime] = _utcnow,
        config_dir: Path | None = None,
    ):
        self.config = config
        self.state = state
        self.registry = registry
        self.graph = graph
        self.resolver = resolver
        self.lifecycle = lifecycle
        self.action_log = action_log
        self._clock = clock
        # .flotilla/ directory whose config.yaml is re-read before each pass
        self.config_dir = config_dir
        self._config_text = self._read_config_text()

        self.interval = config.reconciliation.interval
        self.last_report: ReconcileReport | None = None
        self.last_preview: ReconcileReport | None = None
        self._running = False
        self._task: asyncio.Task | None = None
        self._requested: asyncio.Task | None = None
        # Serialises ticks and manual overrides
        self._lock = asyncio.Lock()
        self._ticking = False
        self._rerun = False

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="reconciliation")
        logger.info("Reconciliation loop started (interval=%ds)", self.interval)

    async def stop(self) -> None:
        self._running = False
        for task in (self._task, self._requested):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        logger.info("Reconciliation loop stopped")

    async def _loop(self) -> None:
        """Main reconciliation loop."""
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Reconciliation error")
                await asyncio.sleep(self.interval)

    def request_tick(self) -> None:
        """Schedule an on-demand tick; requests during a running tick coalesce."""
        if self._requested is not None and not self._requested.done():
            if self._ticking:
                self._rerun = True
            return
        self._requested = asyncio.create_task(self.tick(), name="reconciliation-request")

    # ── Tick ─────────────────────────────────────────────────────────────

    async def tick(self, dry_run: bool = False) -> list[FleetAction]:
        """Run one reconciliation pass and return the actions it decided on.

        A dry run plans without applying or persisting anything; its report
        goes to ``last_preview``. A tick requested while another is running
        returns an empty list and makes the running tick go round once more.
        """
        if dry_run:
            report = await self._pass(dry_run=True)
            self.last_preview = report
            return report.actions

        if self._ticking:
            self._rerun = True
            logger.debug("Tick already running; coalescing")
            return []

        self._ticking = True
        actions: list[FleetAction] = []
        try:
            while True:
                self._rerun = False
                async with self._lock:
                    report = await self._pass(dry_run=False)
                self.last_report = report
                actions.extend(report.actions)
                if not self._rerun:
                    break
        finally:
            self._ticking = False
        return actions

    def _ready_counts(self) -> tuple[int, dict[str, int]]:
        counts = {
            agent_type: self.graph.ready_count(agent_type)
            for agent_type, policy in self.state.policies.items()
            if policy.work_aware
        }
        return self.graph.ready_count(), counts

    # ── Refresh ──────────────────────────────────────────────────────────

    def _read_config_text(self) -> bytes | None:
        if self.config_dir is None:
            return None
        try:
            return (self.config_dir / "config.yaml").read_bytes()
        except OSError:
            return None

    def _reload_policies(self) -> bool:
        """Re-apply config.yaml when its content changed. A broken edit is skipped."""
        text = self._read_config_text()
        if text is None or text == self._config_text:
            return False
        self._config_text = text
        try:
            config = load_config(self.config_dir)
        except (ValueError, yaml.YAMLError, OSError) as exc:
            logger.warning("Ignoring config change, keeping current policies: %s", exc)
            return False
        self.config = config
        self.state.apply_config(config)
        self.interval = config.reconciliation.interval
        logger.info("Scaling policies reloaded: %s", sorted(self.state.policies))
        return True

    async def _refresh(self) -> None:
        self._reload_policies()
        await self.graph.refresh()

    async def _fail_stuck_spawns(self, agents: list[AgentRecord], now: datetime) -> None:
        for record in stuck_spawns(agents, self.state.spawn_deadline, now):
            error = f"spawn did not finish within {self.state.spawn_deadline:.0f}s"
            try:
                await self.registry.mark_stopped(record.agent_id, error=error)
            except FlotillaError as exc:
                logger.warning("Could not fail stuck spawn %s: %s", record.agent_id, exc)
                continue
            logger.warning("Agent %s stuck in spawning; marked stopped", record.agent_id)

    # ── Pass ─────────────────────────────────────────────────────────────

    async def _pass(self, dry_run: bool) -> ReconcileReport:
        await self._refresh()
        now = self._clock()
        agents = await self.registry.list(mark_stale=not dry_run)
        work_count, ready_counts = self._ready_counts()
        actions, summaries = plan_actions(self.state, agents, ready_counts, now)
        report = ReconcileReport(
            started_at=now, dry_run=dry_run, work_count=work_count, types=summaries, actions=actions
        )

        if not dry_run:
            await self._fail_stuck_spawns(agents, now)
            report.purged = await self._purge_failures(agents, now)
            await self._apply(actions)
            failed = [a for a in actions if a.success is False]
            if actions:
                logger.info(
                    "Reconciliation: %d action(s), %d failed (ready work=%d)",
                    len(actions),
                    len(failed),
                    work_count,
                )
        return report

    async def _purge_failures(self, agents: list[AgentRecord], now: datetime) -> list[str]:
        purged = []
        for agent_id in expired_failures(agents, self.state.failed_spawn_retention, now):
            try:
                await self.registry.deregister(agent_id)
            except FlotillaError as exc:
                logger.warning("Could not purge %s: %s", agent_id, exc)
                continue
            purged.append(agent_id)
        return purged

    # ── Applying ─────────────────────────────────────────────────────────

    async def _apply(self, actions: list[FleetAction]) -> None:
        by_type: dict[str, list[FleetAction]] = {}
        for action in actions:
            by_type.setdefault(action.agent_type, []).append(action)
        await asyncio.gather(*(self._apply_type(acts) for acts in by_type.values()))

    async def _apply_type(self, actions: list[FleetAction]) -> None:
        for action in actions:
            await self._execute(action)

    async def _execute(self, action: FleetAction) -> FleetAction:
        action.executed = True
        try:
            if action.kind is ActionKind.SPAWN:
                await self._spawn(action)
            else:
                await self._stop(action)
        except (FlotillaError, OSError, asyncio.TimeoutError) as exc:
            action.success = False
            action.error = str(exc)
            logger.warning(
                "%s %s (%s) failed: %s",
                action.kind.value,
                action.agent_id or action.agent_type,
                action.reason.value,
                exc,
            )
        else:
            action.success = True
            if action.reason in (ActionReason.SCALE_UP, ActionReason.SCALE_DOWN, ActionReason.MANUAL):
                self.state.record(action.agent_type, action.kind.sign, self._clock())

        if self.action_log is not None:
            await self.action_log.append(
                "reconciler",
                action.kind.value,
                bool(action.success),
                {
                    "agent_type": action.agent_type,
                    "agent_id": action.agent_id,
                    "reason": action.reason.value,
                    "force": action.force,
                    "error": action.error,
                },
            )
        return action

    async def _spawn(self, action: FleetAction) -> None:
        policy = self.state.policy_for(action.agent_type)
        flat = self.resolver.resolve(policy.definition or RESERVED_DEFINITION)
        handle = await self.lifecycle.spawn(flat, action.agent_type, group=action.agent_type)
        action.agent_id = handle.agent_id

    async def _stop(self, action: FleetAction) -> None:
        record = await self.registry.get(action.agent_id) if action.agent_id else None
        if record is None:
            logger.info("Agent %s already gone", action.agent_id)
            return
        await self.lifecycle.stop(record, force=action.force)

    # ── Manual overrides ─────────────────────────────────────────────────

    async def spawn_now(self, agent_type: str, force: bool = False) -> FleetAction:
        """Spawn one agent outside desired-count math. Refuses past ``max`` unless forced."""
        action = FleetAction(
            kind=ActionKind.SPAWN, agent_type=agent_type, reason=ActionReason.MANUAL, force=force
        )
        async with self._lock:
            policy = self.state.policy_for(agent_type)
            agents = await self.registry.list(agent_type)
            live = sum(1 for a in agents if a.status in LIVE_STATUSES or a.status is AgentStatus.SPAWNING)
            if live >= policy.max and not force:
                action.success = False
                action.error = f"{agent_type} already at max ({policy.max}); use force to exceed"
                return action
            return await self._execute(action)

    async def stop_now(
        self,
        agent_id: str | None = None,
        agent_type: str | None = None,
        force: bool = False,
    ) -> FleetAction:
        """Stop one agent by id, or the best candidate of a type."""
        if agent_id is None and agent_type is None:
            raise ValueError("stop_now needs an agent_id or an agent_type")

        async with self._lock:
            if agent_id is not None:
                record = await self.registry.get(agent_id)
                agent_type = record.agent_type if record else agent_type or agent_id.rsplit("-", 1)[0]
            else:
                candidates = [
                    a
                    for a in await self.registry.list(agent_type)
                    if a.status not in (AgentStatus.STOPPED, AgentStatus.SPAWNING)
                ]
                candidates.sort(key=stop_priority)
                record = candidates[0] if candidates else None

            action = FleetAction(
                kind=ActionKind.STOP,
                agent_type=agent_type,
                agent_id=record.agent_id if record else agent_id,
                reason=ActionReason.MANUAL,
                force=force,
            )
            if record is None:
                action.success = False
                action.error = (
                    f"Agent not registered: {agent_id}" if agent_id else f"No running {agent_type} agents"
                )
                return action
            return await self._execute(action)
