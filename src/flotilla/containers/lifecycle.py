"""Container Lifecycle Manager: launches and terminates agent containers.

The only component that talks to the container runtime. Callers hand it a
resolved FlatDefinition; it runs launch-tier validation, registers the agent,
runs the container and reports the outcome back to the registry.

Spawn:
    validate_run → registry.register(spawning) → ``run -d`` → mark_running
    Any failure after registration → mark_stopped(error) and LaunchError.

Stop:
    SIGTERM → wait until the container leaves ``ps`` → SIGKILL on timeout
    → ``rm -f`` → registry.deregister. ``force`` skips straight to SIGKILL.

The registry lock is never held while a runtime subprocess runs; every call
into the registry is a short, self-contained mutation.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from flotilla.containers.runtime import RuntimeEndpoint, detect_runtime, run_command
from flotilla.containers.validation import ValidatedMount, validate_run
from flotilla.errors import GracefulStopTimeout, LaunchError, ResolutionError
from flotilla.models import (
    AgentHandle,
    AgentRecord,
    DefinitionSource,
    FlatDefinition,
    LaunchInfo,
    ResourceDefaults,
)

if TYPE_CHECKING:
    from flotilla.action_log import ActionLog
    from flotilla.config import FleetConfig
    from flotilla.containers.definitions import DefinitionResolver
    from flotilla.registry import AgentRegistry

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "flotilla-"
AGENT_LABEL = "flotilla.agent"
TYPE_LABEL = "flotilla.type"

STOP_POLL_INTERVAL = 0.5


def container_name(agent_id: str) -> str:
    return f"{CONTAINER_PREFIX}{agent_id}"


def entrypoint_script(chain: list[str]) -> str:
    """Run every entrypoint in order; the last one replaces the shell."""
    if not chain:
        return ""
    return " && ".join(chain[:-1] + [f"exec {chain[-1]}"])


class ContainerLifecycleManager:
    """Spawns and stops agent containers through the external runtime."""

    def __init__(
        self,
        config: FleetConfig,
        registry: AgentRegistry,
        repo_root: Path,
        action_log: ActionLog | None = None,
        endpoint: RuntimeEndpoint | None = None,
    ):
        self.runtime_config = config.runtime
        self.registry = registry
        self.repo_root = repo_root
        self.data_dir = config.resolve_data_dir(repo_root)
        self.merge_target = config.project.merge_target
        self.action_log = action_log
        self._endpoint = endpoint
        self._endpoint_lock = asyncio.Lock()

    async def endpoint(self) -> RuntimeEndpoint:
        """The runtime endpoint, detected once and then reused."""
        async with self._endpoint_lock:
            if self._endpoint is None:
                self._endpoint = await detect_runtime(self.runtime_config)
            return self._endpoint

    async def _runtime(self, *args: str, timeout: float) -> tuple[int, str, str]:
        endpoint = await self.endpoint()
        return await run_command(*endpoint.command(*args), timeout=timeout)

    async def _audit(self, action: str, success: bool = True, **detail) -> None:
        if self.action_log is not None:
            await self.action_log.append("lifecycle", action, success, detail)

    # ── Queries ──────────────────────────────────────────────────────────

    async def running_containers(self) -> dict[str, str]:
        """Map of container name → id for every running flotilla container."""
        endpoint = await self.endpoint()
        rc, out, err = await self._runtime(
            "ps",
            "--filter",
            f"label={AGENT_LABEL}",
            *endpoint.scope_filter(),
            "--format",
            "{{.Names}} {{.ID}}",
            timeout=self.runtime_config.stop_timeout,
        )
        if rc != 0:
            raise LaunchError(f"Listing containers failed: {err.strip()}")
        running: dict[str, str] = {}
        for line in out.splitlines():
            parts = line.split()
            if len(parts) >= 2:
                running[parts[0]] = parts[1]
        return running

    async def is_running(self, ref: str) -> bool:
        running = await self.running_containers()
        if ref in running:
            return True
        return any(ref.startswith(cid) or cid.startswith(ref) for cid in running.values())

    async def image_available(self, image: str) -> bool:
        rc, _out, _err = await self._runtime(
            "image", "inspect", image, timeout=self.runtime_config.connect_timeout * 5
        )
        return rc == 0

    # ── Spawn ────────────────────────────────────────────────────────────

    def environment(
        self,
        flat: FlatDefinition,
        agent_id: str,
        agent_type: str,
        env_overrides: dict[str, str] | None = None,
    ) -> dict[str, str]:
        targets = {m.name: m.target for m in flat.mounts}
        env = {
            "FLOTILLA_AGENT_ID": agent_id,
            "FLOTILLA_AGENT_TYPE": agent_type,
            "FLOTILLA_MERGE_TARGET": self.merge_target,
            "FLOTILLA_DATA_DIR": targets.get("flotilla", "/flotilla"),
            "FLOTILLA_REPO_ROOT": targets.get("workspace", "/workspace"),
            "FLOTILLA_ENTRYPOINT_CHAIN": ":".join(flat.entrypoint),
        }
        env.update(env_overrides or {})
        return env

    def run_args(
        self,
        endpoint: RuntimeEndpoint,
        flat: FlatDefinition,
        agent_id: str,
        agent_type: str,
        mounts: list[ValidatedMount],
        env: dict[str, str],
        resource_limits: ResourceDefaults | None = None,
    ) -> list[str]:
        """Arguments for ``<runtime> run`` that launch one agent container."""
        args = [
            "run",
            "-d",
            "--name",
            container_name(agent_id),
            "--label",
            f"{AGENT_LABEL}={agent_id}",
            "--label",
            f"{TYPE_LABEL}={agent_type}",
            *endpoint.scope_args(),
        ]
        limits = flat.defaults.merged(resource_limits)
        if limits.cpus is not None:
            args += ["--cpus", f"{limits.cpus:g}"]
        if limits.memory is not None:
            args += ["--memory", limits.memory]
        for mount in mounts:
            args += ["-v", mount.volume_flag()]
        for key in sorted(env):
            args += ["-e", f"{key}={env[key]}"]
        if flat.entrypoint:
            args += ["--entrypoint", "/bin/sh", flat.image, "-c", entrypoint_script(flat.entrypoint)]
        else:
            args.append(flat.image)
        return args

    async def spawn(
        self,
        flat: FlatDefinition,
        agent_type: str,
        env_overrides: dict[str, str] | None = None,
        resource_limits: ResourceDefaults | None = None,
        group: str | None = None,
    ) -> AgentHandle:
        """Launch one agent container.

        Raises:
            LaunchError: validation failed, the runtime is unavailable or
                the container did not start. The agent record, if one was
                created, is left in ``stopped`` with the error recorded.
        """
        endpoint = await self.endpoint()
        image_ok = await self.image_available(flat.image)
        result, mounts = validate_run(flat, self.repo_root, self.data_dir, image_ok)
        for warning in result.warnings:
            logger.warning(warning)
        if not result.ok:
            error = "\n\n".join(result.errors)
            await self._audit("spawn", False, definition=flat.name, error=error)
            raise LaunchError(error)

        agent_id = await self.registry.register(
            agent_type,
            LaunchInfo(definition=flat.name, image=flat.image, group=group),
        )
        name = container_name(agent_id)
        env = self.environment(flat, agent_id, agent_type, env_overrides)
        args = self.run_args(endpoint, flat, agent_id, agent_type, mounts, env, resource_limits)

        try:
            rc, out, err = await run_command(
                *endpoint.command(*args), timeout=self.runtime_config.spawn_timeout
            )
        except asyncio.TimeoutError:
            rc, out, err = -1, "", f"run timed out after {self.runtime_config.spawn_timeout:.0f}s"
        except OSError as exc:
            rc, out, err = -1, "", str(exc)
        except asyncio.CancelledError:
            await self.registry.mark_stopped(agent_id, error="spawn cancelled")
            raise

        if rc != 0:
            error = err.strip() or f"runtime exited with {rc}"
            await self.registry.mark_stopped(agent_id, error=error)
            await self._audit("spawn", False, agent_id=agent_id, definition=flat.name, error=error)
            # Drop whatever half-created container the runtime may have left.
            await self._remove(name)
            raise LaunchError(f"Failed to start {name}: {error}")

        container_id = out.strip().splitlines()[-1] if out.strip() else name
        await self.registry.mark_running(agent_id, container_id, container_name=name)
        await self._audit(
            "spawn", agent_id=agent_id, definition=flat.name, image=flat.image, container_id=container_id
        )
        logger.info("Spawned %s (%s) from %s", agent_id, container_id[:12], flat.name)
        return AgentHandle(agent_id=agent_id, container_id=container_id, container_name=name)

    # ── Stop ─────────────────────────────────────────────────────────────

    async def _signal(self, ref: str, signal: str) -> None:
        rc, _out, err = await self._runtime(
            "kill", "--signal", signal, ref, timeout=self.runtime_config.stop_timeout
        )
        if rc != 0:
            logger.debug("kill %s %s exited %d: %s", signal, ref, rc, err.strip())

    async def _remove(self, ref: str) -> None:
        try:
            rc, _out, err = await self._runtime("rm", "-f", ref, timeout=self.runtime_config.stop_timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning("Removing %s failed: %s", ref, exc)
            return
        if rc != 0:
            logger.debug("rm -f %s exited %d: %s", ref, rc, err.strip())

    async def _wait_gone(self, ref: str, timeout: float) -> None:
        async def poll() -> None:
            while await self.is_running(ref):
                await asyncio.sleep(STOP_POLL_INTERVAL)

        try:
            await asyncio.wait_for(poll(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise GracefulStopTimeout(ref, timeout) from exc

    async def stop(
        self,
        handle: AgentHandle | AgentRecord,
        force: bool = False,
        timeout: float | None = None,
    ) -> None:
        """Terminate an agent's container and deregister it.

        A container that is already gone counts as stopped.
        """
        timeout = self.runtime_config.stop_timeout if timeout is None else timeout
        agent_id = handle.agent_id
        ref = handle.container_id or handle.container_name or container_name(agent_id)

        if await self.is_running(ref):
            if force:
                await self._signal(ref, "SIGKILL")
            else:
                await self._signal(ref, "SIGTERM")
                try:
                    await self._wait_gone(ref, timeout)
                except GracefulStopTimeout as exc:
                    logger.warning("Graceful stop of %s timed out (%s); killing", agent_id, exc)
                    await self._signal(ref, "SIGKILL")
        else:
            logger.info("Container for %s already gone", agent_id)
        await self._remove(ref)

        if await self.registry.get(agent_id) is not None:
            await self.registry.deregister(agent_id)
        await self._audit("stop", agent_id=agent_id, container=ref, force=force)
        logger.info("Stopped %s%s", agent_id, " (forced)" if force else "")

    # ── Build ────────────────────────────────────────────────────────────

    def builder(self) -> str | None:
        if self.runtime_config.builder:
            return self.runtime_config.builder
        return "buildah" if shutil.which("buildah") else None

    async def build(self, resolver: DefinitionResolver, names: list[str] | None = None) -> list[str]:
        """Build images for ``names`` (and their parents), parents first.

        Returns the image names that were built. Embedded definitions have no
        build context and are skipped.
        """
        builder = self.builder()
        result = resolver.validate_build(names, builder)
        for warning in result.raise_for(ResolutionError):
            logger.warning(warning)

        built: list[str] = []
        for name in resolver.build_order(names):
            entry = resolver.lookup(name)
            if entry.source is DefinitionSource.EMBEDDED:
                logger.info("Skipping embedded definition %s", name)
                continue
            flat = resolver.resolve(name)
            build_args = ["-t", flat.image, "-f", str(entry.containerfile)]
            if entry.definition.parent:
                parent_image = resolver.resolve(entry.definition.parent).image
                build_args += ["--build-arg", f"PARENT_IMAGE={parent_image}"]
            build_args.append(str(entry.context_dir))

            if builder and Path(builder).name == "buildah":
                cmd = [builder, "bud", *build_args]
            else:
                cmd = (await self.endpoint()).command("build", *build_args)
            logger.info("Building %s", flat.image)
            rc, _out, err = await run_command(*cmd, timeout=self.runtime_config.spawn_timeout * 30)
            await self._audit("build", rc == 0, definition=name, image=flat.image)
            if rc != 0:
                raise LaunchError(f"Building {flat.image} failed: {err.strip()}")
            built.append(flat.image)
        return built
