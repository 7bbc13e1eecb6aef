"""Container definitions and agent container lifecycle.

- Layered definitions (project, host, embedded) flattened by the resolver
- Tiered validation: parse, build, launch
- Rootless-first runtime detection (containerd via nerdctl, podman)
- Spawn/stop of agent containers with graceful-then-forceful termination
"""

from .definitions import (
    EMBEDDED_DEFINITIONS,
    DefinitionResolver,
    SourcedDefinition,
    SourcePreference,
    image_name,
)
from .lifecycle import ContainerLifecycleManager, container_name
from .runtime import RuntimeEndpoint, detect_runtime
from .validation import ValidationResult, validate_build, validate_parse, validate_run

__all__ = [
    "ContainerLifecycleManager",
    "DefinitionResolver",
    "EMBEDDED_DEFINITIONS",
    "RuntimeEndpoint",
    "SourcePreference",
    "SourcedDefinition",
    "ValidationResult",
    "container_name",
    "detect_runtime",
    "image_name",
    "validate_build",
    "validate_parse",
    "validate_run",
]
