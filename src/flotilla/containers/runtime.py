"""Container runtime detection and command execution.

Flotilla drives an external runtime through its CLI (``nerdctl`` for
containerd, ``podman``). The rootless per-user socket is always preferred;
the privileged system socket is used, with a ``sudo`` prefix, only when
``runtime.allow_privileged`` is set.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from flotilla.containers import messages
from flotilla.errors import LaunchError

if TYPE_CHECKING:
    from flotilla.config import RuntimeConfig

logger = logging.getLogger(__name__)

NAMESPACE_LABEL = "flotilla.namespace"

_SOCKET_NAMES = {
    "containerd": Path("containerd") / "containerd.sock",
    "podman": Path("podman") / "podman.sock",
}

_PRIVILEGED_SOCKETS = {
    "containerd": Path("/run/containerd/containerd.sock"),
    "podman": Path("/run/podman/podman.sock"),
}


def user_runtime_dir() -> Path:
    xdg = os.environ.get("XDG_RUNTIME_DIR", "").strip()
    if xdg:
        return Path(xdg)
    return Path("/run/user") / str(os.getuid())


def rootless_socket(engine: str) -> Path:
    return user_runtime_dir() / _SOCKET_NAMES[engine]


def privileged_socket(engine: str) -> Path:
    return _PRIVILEGED_SOCKETS[engine]


async def run_command(*cmd: str, timeout: float = 60) -> tuple[int, str, str]:
    """Run a command without blocking the event loop.

    Returns (returncode, stdout, stderr). The process is killed and reaped
    when ``timeout`` expires or the caller is cancelled, and the error
    propagates.
    """
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except BaseException:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        raise
    return (
        proc.returncode or 0,
        (stdout_bytes or b"").decode(errors="replace"),
        (stderr_bytes or b"").decode(errors="replace"),
    )


@dataclass
class RuntimeEndpoint:
    """A reachable runtime: which binary to call and how to address it."""

    engine: str
    binary: str
    socket: Path
    namespace: str
    privileged: bool = False

    def command(self, *args: str) -> list[str]:
        cmd = ["sudo", "-n"] if self.privileged else []
        cmd.append(self.binary)
        if self.engine == "containerd":
            cmd += ["--address", str(self.socket), "--namespace", self.namespace]
        else:
            cmd += ["--url", f"unix://{self.socket}"]
        return cmd + list(args)

    def scope_args(self) -> list[str]:
        """Extra ``run`` arguments that place a container in our namespace."""
        if self.engine == "podman":
            return ["--label", f"{NAMESPACE_LABEL}={self.namespace}"]
        return []

    def scope_filter(self) -> list[str]:
        """Extra ``ps`` arguments restricting output to our namespace."""
        if self.engine == "podman":
            return ["--filter", f"label={NAMESPACE_LABEL}={self.namespace}"]
        return []


async def socket_answers(path: Path, timeout: float) -> bool:
    """Whether something accepts connections on a unix socket within ``timeout``."""
    if not path.exists():
        return False
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(str(path)), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("Socket check failed for %s: %s", path, exc)
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def _privileged_answers(binary: str, socket: Path, timeout: float) -> bool:
    if not socket.exists() or shutil.which("sudo") is None:
        return False
    try:
        rc, _out, err = await run_command("sudo", "-n", binary, "version", timeout=timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("Privileged check failed: %s", exc)
        return False
    if rc != 0:
        logger.debug("Privileged check exited %d: %s", rc, err.strip())
    return rc == 0


async def detect_runtime(config: RuntimeConfig) -> RuntimeEndpoint:
    """Find a usable runtime endpoint, rootless first.

    Raises:
        LaunchError: no endpoint answered.
    """
    binary = config.resolved_binary
    if shutil.which(binary) is None:
        raise LaunchError(
            messages.runtime_unavailable(f"'{binary}' not found on PATH", config.allow_privileged)
        )

    rootless = Path(config.rootless_socket) if config.rootless_socket else rootless_socket(config.engine)
    if await socket_answers(rootless, config.connect_timeout):
        logger.info("Using rootless %s runtime at %s", config.engine, rootless)
        return RuntimeEndpoint(config.engine, binary, rootless, config.namespace)

    tried = [f"rootless: {rootless}"]
    if config.allow_privileged:
        privileged = privileged_socket(config.engine)
        tried.append(f"privileged: {privileged}")
        if await _privileged_answers(binary, privileged, config.connect_timeout):
            logger.warning("Rootless runtime unavailable; using privileged socket %s", privileged)
            return RuntimeEndpoint(config.engine, binary, privileged, config.namespace, privileged=True)

    raise LaunchError(
        messages.runtime_unavailable(
            "No runtime socket answered:\n" + "\n".join(f"  - {t}" for t in tried),
            config.allow_privileged,
        )
    )
