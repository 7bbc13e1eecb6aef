"""Tests for container runtime detection and the lifecycle manager."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
import yaml

from flotilla.config import FleetConfig, RuntimeConfig
from flotilla.containers import lifecycle as lifecycle_mod
from flotilla.containers import runtime as runtime_mod
from flotilla.containers.definitions import DefinitionResolver
from flotilla.containers.lifecycle import (
    ContainerLifecycleManager,
    container_name,
    entrypoint_script,
)
from flotilla.containers.runtime import RuntimeEndpoint, detect_runtime, privileged_socket
from flotilla.errors import LaunchError
from flotilla.models import AgentStatus, Mount, ResourceDefaults
from flotilla.registry import AgentRegistry

SOCKET = Path("/run/user/1000/containerd/containerd.sock")


class FakeRuntime:
    """Stands in for ``run_command``; keeps a table of running containers."""

    def __init__(self):
        self.calls: list[list[str]] = []
        self.running: dict[str, str] = {}
        self.images_present = True
        self.run_error: str | None = None
        self.ignore_sigterm = False
        self.run_gate: asyncio.Event | None = None
        self._next_id = 1

    @staticmethod
    def _verb_args(cmd: list[str]) -> list[str]:
        if cmd[0] == "sudo":
            cmd = cmd[2:]
        if cmd[0] == "nerdctl":
            return cmd[5:]
        if cmd[0] == "podman":
            return cmd[3:]
        return cmd[1:]

    def _drop(self, ref: str) -> None:
        for name, cid in list(self.running.items()):
            if ref in (name, cid):
                del self.running[name]

    def verbs(self) -> list[list[str]]:
        return [self._verb_args(c) for c in self.calls]

    def calls_for(self, verb: str) -> list[list[str]]:
        return [args for args in self.verbs() if args and args[0] == verb]

    async def __call__(self, *cmd: str, timeout: float = 60) -> tuple[int, str, str]:
        self.calls.append(list(cmd))
        args = self._verb_args(list(cmd))
        verb = args[0]
        if verb == "image":
            return (0 if self.images_present else 1), "", ""
        if verb == "run":
            if self.run_gate is not None:
                await self.run_gate.wait()
            if self.run_error:
                return 125, "", self.run_error
            name = args[args.index("--name") + 1]
            cid = f"{self._next_id:04d}cafebabe{self._next_id:04d}"
            self._next_id += 1
            self.running[name] = cid
            return 0, cid + "\n", ""
        if verb == "ps":
            return 0, "".join(f"{n} {c}\n" for n, c in self.running.items()), ""
        if verb == "kill":
            signal, ref = args[2], args[3]
            if signal == "SIGKILL" or not self.ignore_sigterm:
                self._drop(ref)
            return 0, "", ""
        if verb == "rm":
            self._drop(args[-1])
            return 0, "", ""
        return 0, "", ""


@pytest.fixture
def fake_runtime(monkeypatch):
    fake = FakeRuntime()
    monkeypatch.setattr(lifecycle_mod, "run_command", fake)
    monkeypatch.setattr(lifecycle_mod, "STOP_POLL_INTERVAL", 0.01)
    return fake


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def config(tmp_path: Path) -> FleetConfig:
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return FleetConfig(data_dir=str(data_dir), runtime=RuntimeConfig(stop_timeout=0.2))


@pytest_asyncio.fixture
async def registry(tmp_path):
    reg = AgentRegistry(str(tmp_path / "registry.db"))
    await reg.initialize()
    yield reg
    await reg.close()


@pytest.fixture
def resolver(repo, tmp_path) -> DefinitionResolver:
    r = DefinitionResolver(repo, host_dir=tmp_path / "host")
    r.load()
    return r


@pytest.fixture
def manager(config, registry, repo, fake_runtime) -> ContainerLifecycleManager:
    endpoint = RuntimeEndpoint("containerd", "nerdctl", SOCKET, "flotilla")
    return ContainerLifecycleManager(config, registry, repo, endpoint=endpoint)


class TestSpawn:
    async def test_spawn_runs_container_and_marks_running(self, manager, resolver, registry, repo, config, fake_runtime):
        flat = resolver.resolve("flotilla")
        handle = await manager.spawn(flat, "worker", group="worker")

        assert handle.agent_id == "worker-1"
        assert handle.container_name == "flotilla-worker-1"
        record = await registry.get("worker-1")
        assert record.status == AgentStatus.RUNNING
        assert record.container_id == handle.container_id
        assert record.container_name == "flotilla-worker-1"
        assert record.definition == "flotilla"
        assert record.group == "worker"

        (run,) = [c for c in fake_runtime.calls if c[5:6] == ["run"]]
        assert run[:5] == ["nerdctl", "--address", str(SOCKET), "--namespace", "flotilla"]
        args = run[5:]
        assert args[:4] == ["run", "-d", "--name", "flotilla-worker-1"]
        assert "flotilla.agent=worker-1" in args
        assert args[args.index("--cpus") + 1] == "2"
        assert args[args.index("--memory") + 1] == "4g"
        data_dir = config.resolve_data_dir(repo)
        assert f"{repo}:/workspace:rw" in args
        assert f"{data_dir}:/flotilla:rw" in args
        assert "FLOTILLA_AGENT_ID=worker-1" in args
        assert "FLOTILLA_AGENT_TYPE=worker" in args
        assert args[-3:] == [flat.image, "-c", entrypoint_script(flat.entrypoint)]
        assert args[args.index("--entrypoint") + 1] == "/bin/sh"

    async def test_resource_limits_override_definition(self, manager, resolver, fake_runtime):
        await manager.spawn(
            resolver.resolve("flotilla"), "worker", resource_limits=ResourceDefaults(memory="1g")
        )
        (run,) = fake_runtime.calls_for("run")
        assert run[run.index("--memory") + 1] == "1g"
        assert run[run.index("--cpus") + 1] == "2"

    async def test_env_overrides(self, manager, resolver, fake_runtime):
        await manager.spawn(resolver.resolve("flotilla"), "worker", env_overrides={"EXTRA": "1"})
        (run,) = fake_runtime.calls_for("run")
        assert "EXTRA=1" in run

    async def test_run_failure_leaves_stopped_record(self, manager, resolver, registry, fake_runtime):
        fake_runtime.run_error = "no space left on device"
        with pytest.raises(LaunchError, match="no space left"):
            await manager.spawn(resolver.resolve("flotilla"), "worker")

        (record,) = await registry.list()
        assert record.status == AgentStatus.STOPPED
        assert record.last_error == "no space left on device"
        assert fake_runtime.calls_for("rm")[-1][-1] == "flotilla-worker-1"

    async def test_cancelled_spawn_leaves_stopped_record(self, manager, resolver, registry, fake_runtime):
        fake_runtime.run_gate = asyncio.Event()
        task = asyncio.create_task(manager.spawn(resolver.resolve("flotilla"), "worker"))
        while not fake_runtime.calls_for("run"):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        (record,) = await registry.list()
        assert record.status == AgentStatus.STOPPED
        assert record.last_error == "spawn cancelled"

    async def test_missing_image_fails_before_register(self, manager, resolver, registry, fake_runtime):
        fake_runtime.images_present = False
        with pytest.raises(LaunchError, match="image not found"):
            await manager.spawn(resolver.resolve("flotilla"), "worker")
        assert await registry.list() == []
        assert fake_runtime.calls_for("run") == []

    async def test_missing_mount_fails_before_register(self, manager, resolver, registry):
        flat = resolver.resolve("flotilla")
        flat = flat.model_copy(
            update={"mounts": flat.mounts + [Mount(name="keys", source="/nonexistent/keys", target="/keys")]}
        )
        with pytest.raises(LaunchError, match="mount source not found"):
            await manager.spawn(flat, "worker")
        assert await registry.list() == []

    async def test_optional_missing_mount_is_skipped(self, manager, resolver, fake_runtime):
        flat = resolver.resolve("flotilla")
        flat = flat.model_copy(
            update={
                "mounts": flat.mounts
                + [Mount(name="keys", source="/nonexistent/keys", target="/keys", optional=True)]
            }
        )
        await manager.spawn(flat, "worker")
        (run,) = fake_runtime.calls_for("run")
        assert not any("/keys" in arg for arg in run)


class TestStop:
    async def test_graceful_stop(self, manager, resolver, registry, fake_runtime):
        handle = await manager.spawn(resolver.resolve("flotilla"), "worker")
        await manager.stop(handle)

        signals = [args[2] for args in fake_runtime.calls_for("kill")]
        assert signals == ["SIGTERM"]
        assert fake_runtime.running == {}
        assert await registry.get(handle.agent_id) is None

    async def test_timeout_escalates_to_kill(self, manager, resolver, registry, fake_runtime):
        fake_runtime.ignore_sigterm = True
        handle = await manager.spawn(resolver.resolve("flotilla"), "worker")
        await manager.stop(handle, timeout=0.05)

        signals = [args[2] for args in fake_runtime.calls_for("kill")]
        assert signals == ["SIGTERM", "SIGKILL"]
        assert fake_runtime.running == {}
        assert await registry.get(handle.agent_id) is None

    async def test_force_kills_immediately(self, manager, resolver, fake_runtime):
        handle = await manager.spawn(resolver.resolve("flotilla"), "worker")
        await manager.stop(handle, force=True)
        assert [args[2] for args in fake_runtime.calls_for("kill")] == ["SIGKILL"]

    async def test_already_gone_counts_as_stopped(self, manager, resolver, registry, fake_runtime):
        handle = await manager.spawn(resolver.resolve("flotilla"), "worker")
        fake_runtime.running.clear()

        await manager.stop(handle)
        assert fake_runtime.calls_for("kill") == []
        assert await registry.get(handle.agent_id) is None

    async def test_stop_by_record(self, manager, resolver, registry, fake_runtime):
        handle = await manager.spawn(resolver.resolve("flotilla"), "worker")
        record = await registry.get(handle.agent_id)
        await manager.stop(record)
        assert await registry.get(handle.agent_id) is None

    async def test_stop_after_deregistration(self, manager, resolver, registry, fake_runtime):
        handle = await manager.spawn(resolver.resolve("flotilla"), "worker")
        await registry.deregister(handle.agent_id)
        await manager.stop(handle)
        assert fake_runtime.running == {}


class TestBuild:
    async def test_build_parents_first(self, repo, tmp_path, registry, fake_runtime):
        layer = repo / ".flotilla" / "containers"
        layer.mkdir(parents=True)
        (layer / "config.yaml").write_text(
            yaml.dump({"containers": {"base": {}, "child": {"parent": "base"}}})
        )
        for name in ("base", "child"):
            (layer / name).mkdir()
            (layer / name / "Containerfile").write_text("FROM scratch\n")
        resolver = DefinitionResolver(repo, host_dir=tmp_path / "host")
        resolver.load()

        data_dir = tmp_path / "data"
        data_dir.mkdir()
        config = FleetConfig(data_dir=str(data_dir), runtime=RuntimeConfig(builder="nerdctl"))
        endpoint = RuntimeEndpoint("containerd", "nerdctl", SOCKET, "flotilla")
        manager = ContainerLifecycleManager(config, registry, repo, endpoint=endpoint)

        built = await manager.build(resolver, ["child"])
        base_image = resolver.resolve("base").image
        assert built == [base_image, resolver.resolve("child").image]

        builds = fake_runtime.calls_for("build")
        assert len(builds) == 2
        assert f"PARENT_IMAGE={base_image}" in builds[1]
        assert builds[0][-1] == str(layer / "base")

    async def test_embedded_definitions_skipped(self, manager, resolver, fake_runtime):
        manager.runtime_config.builder = "nerdctl"
        assert await manager.build(resolver, ["flotilla"]) == []
        assert fake_runtime.calls_for("build") == []


class TestRuntimeEndpoint:
    def test_containerd_command(self):
        endpoint = RuntimeEndpoint("containerd", "nerdctl", SOCKET, "team-a")
        assert endpoint.command("ps") == [
            "nerdctl", "--address", str(SOCKET), "--namespace", "team-a", "ps"
        ]
        assert endpoint.scope_args() == []

    def test_podman_uses_labels_for_namespace(self):
        endpoint = RuntimeEndpoint("podman", "podman", Path("/run/user/1000/podman/podman.sock"), "team-a")
        assert endpoint.command("ps")[:3] == ["podman", "--url", "unix:///run/user/1000/podman/podman.sock"]
        assert endpoint.scope_args() == ["--label", "flotilla.namespace=team-a"]
        assert endpoint.scope_filter() == ["--filter", "label=flotilla.namespace=team-a"]

    def test_privileged_prefixes_sudo(self):
        endpoint = RuntimeEndpoint("containerd", "nerdctl", SOCKET, "flotilla", privileged=True)
        assert endpoint.command("ps")[:3] == ["sudo", "-n", "nerdctl"]


class TestRunCommand:
    async def test_returns_exit_code_and_output(self):
        rc, out, err = await runtime_mod.run_command("sh", "-c", "echo hi; echo oops >&2; exit 3")
        assert (rc, out, err) == (3, "hi\n", "oops\n")

    async def test_timeout_propagates(self):
        with pytest.raises(asyncio.TimeoutError):
            await runtime_mod.run_command("sleep", "30", timeout=0.1)

    async def test_cancel_kills_and_reaps_child(self, monkeypatch):
        procs = []
        real_exec = asyncio.create_subprocess_exec

        async def tracking_exec(*args, **kwargs):
            proc = await real_exec(*args, **kwargs)
            procs.append(proc)
            return proc

        monkeypatch.setattr(runtime_mod.asyncio, "create_subprocess_exec", tracking_exec)
        task = asyncio.create_task(runtime_mod.run_command("sleep", "30"))
        while not procs:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert procs[0].returncode is not None


class TestHelpers:
    def test_container_name(self):
        assert container_name("worker-3") == "flotilla-worker-3"

    def test_entrypoint_script(self):
        assert entrypoint_script([]) == ""
        assert entrypoint_script(["/a"]) == "exec /a"
        assert entrypoint_script(["/a", "/b", "/c"]) == "/a && /b && exec /c"


class TestDetectRuntime:
    async def test_missing_binary(self, monkeypatch):
        monkeypatch.setattr(runtime_mod.shutil, "which", lambda name: None)
        with pytest.raises(LaunchError, match="not found on PATH"):
            await detect_runtime(RuntimeConfig())

    async def test_rootless_socket_preferred(self, monkeypatch, tmp_path):
        monkeypatch.setattr(runtime_mod.shutil, "which", lambda name: f"/usr/bin/{name}")
        privileged = AsyncMock(return_value=True)
        monkeypatch.setattr(runtime_mod, "_privileged_answers", privileged)
        sock = tmp_path / "rt.sock"
        server = await asyncio.start_unix_server(lambda r, w: w.close(), path=str(sock))
        try:
            endpoint = await detect_runtime(
                RuntimeConfig(rootless_socket=str(sock), allow_privileged=True)
            )
        finally:
            server.close()
            await server.wait_closed()

        assert endpoint.socket == sock
        assert endpoint.privileged is False
        assert endpoint.binary == "nerdctl"
        privileged.assert_not_awaited()

    async def test_no_privileged_fallback_unless_allowed(self, monkeypatch, tmp_path):
        monkeypatch.setattr(runtime_mod.shutil, "which", lambda name: f"/usr/bin/{name}")
        privileged = AsyncMock(return_value=True)
        monkeypatch.setattr(runtime_mod, "_privileged_answers", privileged)
        config = RuntimeConfig(rootless_socket=str(tmp_path / "missing.sock"))

        with pytest.raises(LaunchError, match="allow_privileged"):
            await detect_runtime(config)
        privileged.assert_not_awaited()

    async def test_privileged_fallback_when_allowed(self, monkeypatch, tmp_path):
        monkeypatch.setattr(runtime_mod.shutil, "which", lambda name: f"/usr/bin/{name}")
        monkeypatch.setattr(runtime_mod, "_privileged_answers", AsyncMock(return_value=True))
        config = RuntimeConfig(
            engine="podman", rootless_socket=str(tmp_path / "missing.sock"), allow_privileged=True
        )

        endpoint = await detect_runtime(config)
        assert endpoint.privileged is True
        assert endpoint.socket == privileged_socket("podman")
        assert endpoint.command("ps")[:3] == ["sudo", "-n", "podman"]
