"""Error taxonomy for Flotilla.

Definition and resolution errors abort a single reconciliation action, launch
errors are retried on the next tick, registry errors flag programming mistakes.
``GracefulStopTimeout`` never reaches callers of ``stop()``; the lifecycle
manager catches it and escalates to a forceful kill.
"""

from __future__ import annotations


class FlotillaError(Exception):
    """Base class for all Flotilla errors."""


class DefinitionError(FlotillaError):
    """Malformed container definition (schema, reserved name, parent cycle)."""


class ResolutionError(FlotillaError):
    """A definition references a parent or build artifact that does not exist."""


class LaunchError(FlotillaError):
    """The container could not be launched (runtime, mount or image missing)."""


class RegistryError(FlotillaError):
    """Unknown agent id, double deregistration or another misuse of the registry."""


class GracefulStopTimeout(FlotillaError):
    """The container did not exit within the graceful-stop window."""

    def __init__(self, handle: str, timeout: float):
        super().__init__(f"{handle} still running after {timeout:.1f}s")
        self.handle = handle
        self.timeout = timeout


class EdgeError(FlotillaError, ValueError):
    """An edge violates the compatibility table or references unknown items."""


class CycleError(EdgeError):
    """Adding a ``depends_on`` edge would close a dependency cycle."""

    def __init__(self, message: str, path: tuple[str, ...] = ()):
        super().__init__(message)
        self.path = path
