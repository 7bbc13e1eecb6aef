"""Flotilla Server: FastAPI application that ties all components together.

Startup sequence:
1. Load .flotilla/ config
2. Open the action log
3. Open the work-item store and load the dependency graph
4. Initialize the agent registry (SQLite)
5. Load container definitions (parse-tier errors are fatal)
6. Start the reconciliation loop

Shutdown runs the same steps in reverse.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from flotilla.action_log import ActionLog
from flotilla.config import FleetConfig, load_config
from flotilla.containers.definitions import DefinitionResolver
from flotilla.containers.lifecycle import ContainerLifecycleManager
from flotilla.errors import RegistryError
from flotilla.graph import DependencyGraph
from flotilla.models import AgentStatus
from flotilla.reconciliation import FleetState, ReconciliationLoop
from flotilla.registry import AgentRegistry
from flotilla.store import WorkItemStore

logger = logging.getLogger(__name__)


class FleetServer:
    """Encapsulates all fleet components and their lifecycle."""

    def __init__(self, repo_root: Path | None = None):
        self.repo_root = repo_root or Path.cwd()
        self.flotilla_dir = self.repo_root / ".flotilla"

        # Components (initialized in start())
        self.config: FleetConfig | None = None
        self.data_dir: Path | None = None
        self.action_log: ActionLog | None = None
        self.store: WorkItemStore | None = None
        self.graph: DependencyGraph | None = None
        self.registry: AgentRegistry | None = None
        self.resolver: DefinitionResolver | None = None
        self.lifecycle: ContainerLifecycleManager | None = None
        self.state: FleetState | None = None
        self.reconciliation: ReconciliationLoop | None = None

    async def start(self, run_loop: bool = True) -> None:
        """Initialize all components; ``run_loop`` also starts periodic ticks."""
        logger.info("Flotilla starting (repo=%s)", self.repo_root)

        # 1. Config
        self.config = load_config(self.flotilla_dir)
        self.data_dir = self.config.resolve_data_dir(self.repo_root)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        # 2. Action log
        self.action_log = ActionLog(
            self.data_dir / "logs",
            enabled=self.config.action_log.enabled,
            sanitize=self.config.action_log.sanitize,
        )
        await self.action_log.start()

        # 3. Work items
        self.store = WorkItemStore(self.data_dir)
        await self.store.initialize()
        self.graph = await DependencyGraph.load(self.store)

        # 4. Registry (local disk, NOT a network mount)
        db_path = str(self.data_dir / "registry.db")
        self.registry = AgentRegistry(
            db_path,
            action_log=self.action_log,
            stale_after=self.config.registry.stale_after,
        )
        await self.registry.initialize()

        # 5. Definitions
        self.resolver = DefinitionResolver(self.repo_root)
        self.resolver.load()
        for name in self.resolver.detect_conflicts():
            logger.warning(self.resolver.conflict_message(name))

        # 6. Lifecycle + reconciliation
        self.lifecycle = ContainerLifecycleManager(
            self.config, self.registry, self.repo_root, action_log=self.action_log
        )
        self.state = FleetState.from_config(self.config)
        self.reconciliation = ReconciliationLoop(
            self.config,
            self.state,
            self.registry,
            self.graph,
            self.resolver,
            self.lifecycle,
            action_log=self.action_log,
            config_dir=self.flotilla_dir,
        )
        if run_loop:
            await self.reconciliation.start()

        logger.info("Flotilla started")

    async def stop(self) -> None:
        """Graceful shutdown of all components."""
        logger.info("Flotilla shutting down")

        if self.reconciliation:
            await self.reconciliation.stop()
        if self.registry:
            await self.registry.close()
        if self.store:
            await self.store.close()

        logger.info("Flotilla stopped")


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = FleetServer()


class SpawnRequest(BaseModel):
    agent_type: str
    force: bool = False


class StopRequest(BaseModel):
    force: bool = False


class HeartbeatRequest(BaseModel):
    status: AgentStatus | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(repo_root: Path | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = FleetServer(repo_root)

    app = FastAPI(
        title="Flotilla",
        version="0.1.0",
        description="Task-graph tracker and container fleet supervisor for coding agents",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health():
        """Health check with fleet counts."""
        counts: dict[str, int] = {}
        if _server.registry:
            for agent in await _server.registry.list():
                counts[agent.status.value] = counts.get(agent.status.value, 0) + 1
        report = _server.reconciliation.last_report if _server.reconciliation else None
        return {
            "status": "ok",
            "project": _server.config.project.name if _server.config else None,
            "agents": counts,
            "ready_work": _server.graph.ready_count() if _server.graph else 0,
            "last_reconcile": report.started_at.isoformat() if report else None,
        }

    @app.get("/agents")
    async def list_agents(agent_type: str | None = None):
        """List all tracked agents."""
        if not _server.registry:
            return {"agents": []}
        agents = await _server.registry.list(agent_type)
        return {"agents": [a.model_dump(mode="json") for a in agents]}

    @app.get("/work/ready")
    async def ready_work(group: str | None = None):
        if not _server.graph:
            return {"count": 0, "items": []}
        items = _server.graph.ready(group)
        return {"count": len(items), "items": [i.model_dump(mode="json") for i in items]}

    @app.post("/reconcile")
    async def reconcile(dry_run: bool = False):
        loop = _server.reconciliation
        actions = await loop.tick(dry_run=dry_run)
        report = loop.last_preview if dry_run else loop.last_report
        return {
            "report": report.model_dump(mode="json") if report else None,
            "actions": [a.model_dump(mode="json") for a in actions],
        }

    @app.post("/agents/spawn")
    async def spawn_agent(request: SpawnRequest):
        action = await _server.reconciliation.spawn_now(request.agent_type, force=request.force)
        return action.model_dump(mode="json")

    @app.post("/agents/{agent_id}/stop")
    async def stop_agent(agent_id: str, request: StopRequest | None = None):
        force = request.force if request else False
        action = await _server.reconciliation.stop_now(agent_id=agent_id, force=force)
        return action.model_dump(mode="json")

    @app.post("/agents/{agent_id}/heartbeat")
    async def heartbeat(agent_id: str, request: HeartbeatRequest | None = None):
        if await _server.registry.get(agent_id) is None:
            raise HTTPException(status_code=404, detail=f"Agent not registered: {agent_id}")
        try:
            record = await _server.registry.heartbeat(
                agent_id, request.status if request else None
            )
        except RegistryError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return record.model_dump(mode="json")

    @app.post("/agents/{agent_id}/goodbye")
    async def goodbye(agent_id: str):
        try:
            record = await _server.registry.mark_goodbye(agent_id)
        except RegistryError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        _server.reconciliation.request_tick()
        return record.model_dump(mode="json")

    return app
