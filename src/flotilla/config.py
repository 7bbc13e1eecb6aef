"""Configuration loading for Flotilla.

Reads .flotilla/config.yaml. Pydantic models validate the schema; a handful of
environment variables override deployment-specific values.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from flotilla.models import ScalingPolicy

logger = logging.getLogger(__name__)

RESERVED_DEFINITION = "flotilla"
DEFAULT_DEFINITION = "default"


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str = "flotilla"
    merge_target: str = "main"  # branch agents merge their work into


class RuntimeConfig(BaseModel):
    """External container runtime settings."""

    engine: Literal["containerd", "podman"] = "containerd"
    binary: str | None = None  # default: nerdctl for containerd, podman for podman
    namespace: str = "flotilla"
    allow_privileged: bool = False  # never escalate unless explicitly set
    rootless_socket: str | None = None  # override the detected per-user socket
    connect_timeout: float = 2.0
    spawn_timeout: float = 60.0
    stop_timeout: float = 10.0
    builder: str | None = None  # default: buildah when installed, else the runtime

    @field_validator("namespace")
    @classmethod
    def _validate_namespace(cls, v: str) -> str:
        if not v or not all(c.isalnum() or c in "-_." for c in v):
            raise ValueError(f"invalid runtime namespace: {v!r}")
        return v

    @property
    def resolved_binary(self) -> str:
        if self.binary:
            return self.binary
        return "nerdctl" if self.engine == "containerd" else "podman"


class ReconciliationConfig(BaseModel):
    interval: int = 30  # seconds between automatic ticks
    cooldown: int = 60  # opposite-sign suppression window per agent type
    goodbye_grace: int = 15  # seconds after goodbye before a stop is forced
    failed_spawn_retention: int = 300  # how long a failed spawn stays listed


class RegistryConfig(BaseModel):
    stale_after: int = 1800  # no heartbeat for this long → stale


class ActionLogConfig(BaseModel):
    enabled: bool = True
    sanitize: bool = True


def _default_agents() -> dict[str, ScalingPolicy]:
    return {
        "worker": ScalingPolicy(min=0, max=1, work_aware=True, definition=RESERVED_DEFINITION),
        "planner": ScalingPolicy(min=0, max=1),
        "buddy": ScalingPolicy(min=0, max=1),
    }


class FleetConfig(BaseModel):
    """Top-level Flotilla configuration (.flotilla/config.yaml)."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    data_dir: str | None = None  # default: <repo>/.flotilla/data
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    action_log: ActionLogConfig = Field(default_factory=ActionLogConfig)
    agents: dict[str, ScalingPolicy] = Field(default_factory=_default_agents)

    def policy_for(self, agent_type: str) -> ScalingPolicy:
        """Get the scaling policy for an agent type.

        Types that are not configured scale between 0 and 1, never work-aware.
        A configured type without a definition launches the reserved worker
        definition.
        """
        policy = self.agents.get(agent_type)
        if policy is None:
            return ScalingPolicy()
        if policy.definition is None:
            return policy.model_copy(update={"definition": RESERVED_DEFINITION})
        return policy

    def resolve_data_dir(self, repo_root: Path) -> Path:
        if self.data_dir:
            return Path(self.data_dir).expanduser()
        return repo_root / ".flotilla" / "data"


# ── Loading ──────────────────────────────────────────────────────────────────


def _truthy(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


def load_config(flotilla_dir: Path) -> FleetConfig:
    """Load Flotilla configuration from a .flotilla/ directory.

    Args:
        flotilla_dir: Path to the .flotilla/ directory.

    Returns:
        Validated FleetConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ValueError: If config validation fails.
    """
    config_path = flotilla_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Flotilla config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if "agents" in raw and raw["agents"] is not None:
        # Configured types extend the built-in ones instead of replacing them
        agents = {name: p.model_dump() for name, p in _default_agents().items()}
        for name, policy in raw["agents"].items():
            agents[name] = {**agents.get(name, {}), **(policy or {})}
        raw["agents"] = agents
    else:
        raw.pop("agents", None)

    config = FleetConfig(**raw)

    data_dir = os.environ.get("FLOTILLA_DATA_DIR")
    if data_dir:
        config.data_dir = data_dir

    engine = os.environ.get("FLOTILLA_RUNTIME")
    if engine:
        config.runtime = RuntimeConfig(**{**config.runtime.model_dump(), "engine": engine})

    allow_privileged = os.environ.get("FLOTILLA_ALLOW_PRIVILEGED")
    if allow_privileged is not None:
        config.runtime.allow_privileged = _truthy(allow_privileged)

    logger.info(
        "Loaded Flotilla config: project=%s agent_types=%s",
        config.project.name,
        sorted(config.agents),
    )
    return config


def save_scaling_policy(
    flotilla_dir: Path,
    agent_type: str,
    min_count: int | None = None,
    max_count: int | None = None,
    work_aware: bool | None = None,
) -> ScalingPolicy:
    """Update one agent type's scaling policy in config.yaml.

    Unspecified fields keep their current value. The merged policy is
    validated (min <= max) before anything is written.
    """
    config_path = flotilla_dir / "config.yaml"
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    if config_path.exists():
        current = load_config(flotilla_dir).policy_for(agent_type)
    else:
        current = _default_agents().get(agent_type, ScalingPolicy())

    updates: dict = {}
    if min_count is not None:
        updates["min"] = min_count
    if max_count is not None:
        updates["max"] = max_count
    if work_aware is not None:
        updates["work_aware"] = work_aware
    policy = ScalingPolicy(**{**current.model_dump(), **updates})

    agents = raw.get("agents") or {}
    entry = dict(agents.get(agent_type) or {})
    entry.update({"min": policy.min, "max": policy.max, "work_aware": policy.work_aware})
    agents[agent_type] = entry
    raw["agents"] = agents

    flotilla_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(yaml.safe_dump(raw, sort_keys=False))
    logger.info(
        "Scaling policy for %s set to min=%d max=%d work_aware=%s",
        agent_type,
        policy.min,
        policy.max,
        policy.work_aware,
    )
    return policy
