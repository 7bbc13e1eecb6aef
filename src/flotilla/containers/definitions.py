"""Definition Resolver: layered container definitions to flat launch specs.

Definitions come from three layers, innermost first:

1. project: ``<repo>/.flotilla/containers/config.yaml``
2. host/session: ``$FLOTILLA_HOST_DIR`` or ``~/.local/share/flotilla/containers/config.yaml``
3. embedded: the built-in ``default`` root and the reserved ``flotilla`` worker

Each layer file holds a ``containers:`` mapping of name → definition; the
build context for a definition lives next to it in ``<layer>/<name>/``.

Resolving a name walks its ``parent`` chain to the root and merges root to
leaf: mounts accumulate by name (children override), resource defaults
override field by field, and each node's entrypoint is composed according to
its ``entrypoint_mode``. Resolution is a pure read; results are cached for the
lifetime of the resolver.
"""

from __future__ import annotations

import enum
import hashlib
import logging
import os
from collections import deque
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import ValidationError

from flotilla.containers import messages
from flotilla.containers.validation import (
    RESERVED_NAME,
    ValidationResult,
    validate_build,
    validate_parse,
)
from flotilla.errors import DefinitionError, ResolutionError
from flotilla.models import (
    ContainerDefinition,
    DefinitionSource,
    EntrypointMode,
    FlatDefinition,
    Mount,
    MountMode,
    ResourceDefaults,
)

logger = logging.getLogger(__name__)

EMBEDDED_DEFAULT = "default"

EMBEDDED_DEFINITIONS: dict[str, ContainerDefinition] = {
    EMBEDDED_DEFAULT: ContainerDefinition(
        name=EMBEDDED_DEFAULT,
        description="Base image with git and common build tools",
        entrypoint="/usr/local/bin/flotilla-init",
        defaults=ResourceDefaults(cpus=2, memory="4g"),
        mounts=[Mount(name="workspace", target="/workspace", mode=MountMode.RW)],
    ),
    RESERVED_NAME: ContainerDefinition(
        name=RESERVED_NAME,
        description="Agent worker with the flotilla client installed",
        parent=EMBEDDED_DEFAULT,
        entrypoint="/usr/local/bin/flotilla-agent",
        entrypoint_mode=EntrypointMode.AFTER,
        mounts=[Mount(name=RESERVED_NAME, target="/flotilla", mode=MountMode.RW)],
    ),
}


class SourcePreference(str, enum.Enum):
    PROJECT = "project"
    HOST = "host"


@dataclass
class SourcedDefinition:
    """A raw definition together with the layer it was loaded from."""

    definition: ContainerDefinition
    source: DefinitionSource
    path: Path  # layer directory

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def context_dir(self) -> Path | None:
        if self.source is DefinitionSource.EMBEDDED:
            return None
        return self.path / self.name

    @property
    def containerfile(self) -> Path | None:
        context = self.context_dir
        return context / "Containerfile" if context else None


# ── Loading ──────────────────────────────────────────────────────────────────


def default_host_dir() -> Path:
    env_dir = os.environ.get("FLOTILLA_HOST_DIR", "").strip()
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".local" / "share" / "flotilla" / "containers"


def parse_definitions(raw: dict, origin: str = "<config>") -> dict[str, ContainerDefinition]:
    """Parse a layer's ``containers:`` mapping and run parse-tier validation.

    Raises:
        DefinitionError: listing every problem found in the layer.
    """
    containers = raw.get("containers") or {}
    if not isinstance(containers, dict):
        raise DefinitionError(
            messages.config_parse_failed(origin, "'containers' must be a mapping of name → definition")
        )

    result = ValidationResult()
    definitions: dict[str, ContainerDefinition] = {}
    for key, body in containers.items():
        body = dict(body or {})
        body.setdefault("name", key)
        bad_modes = [
            m.get("mode")
            for m in body.get("mounts") or []
            if isinstance(m, dict) and m.get("mode") not in (None, "ro", "rw")
        ]
        if bad_modes:
            for mode in bad_modes:
                result.add_error(messages.invalid_mount_mode(str(mode)))
            continue
        try:
            definitions[str(key)] = ContainerDefinition.model_validate(body)
        except ValidationError as exc:
            result.add_error(messages.invalid_definition(str(key), str(exc)))

    result.merge(validate_parse(definitions))
    result.raise_for(DefinitionError)
    return definitions


def load_layer(directory: Path) -> dict[str, ContainerDefinition]:
    """Load one layer directory. A missing config file is an empty layer."""
    config_path = directory / "config.yaml"
    if not config_path.exists():
        return {}
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise DefinitionError(messages.config_parse_failed(str(config_path), str(exc))) from exc
    if not isinstance(raw, dict):
        raise DefinitionError(
            messages.config_parse_failed(str(config_path), "top level must be a mapping")
        )
    definitions = parse_definitions(raw, str(config_path))
    logger.info("Loaded %d container definitions from %s", len(definitions), config_path)
    return definitions


# ── Image naming ─────────────────────────────────────────────────────────────


def compute_repo_hash(repo_root: Path) -> str:
    canonical = str(repo_root.resolve())
    return hashlib.sha256(canonical.encode()).hexdigest()[:12]


def image_name(
    repo_root: Path,
    name: str,
    source: DefinitionSource | None = None,
    tag: str = "latest",
) -> str:
    """``localhost/flotilla-<repo-hash>-<name>:<tag>``; embedded images are repo-independent."""
    if source is DefinitionSource.EMBEDDED:
        return f"localhost/flotilla-{name}:{tag}"
    return f"localhost/flotilla-{compute_repo_hash(repo_root)}-{name}:{tag}"


# ── Resolver ─────────────────────────────────────────────────────────────────


def compose_entrypoint(chain: list[ContainerDefinition]) -> list[str]:
    """Compose entrypoints root → leaf according to each node's mode."""
    composed: list[str] = []
    for definition in chain:
        if definition.entrypoint is None:
            continue
        mode = definition.entrypoint_mode
        if mode is EntrypointMode.REPLACE:
            composed = [definition.entrypoint]
        elif mode is EntrypointMode.BEFORE:
            composed = [definition.entrypoint] + composed
        else:
            composed = composed + [definition.entrypoint]
    return composed


def merge_mounts(chain: list[ContainerDefinition]) -> list[Mount]:
    """Accumulate mounts root → leaf; a later mount with the same name replaces in place."""
    merged: dict[str, Mount] = {}
    for definition in chain:
        for mount in definition.mounts:
            merged[mount.name] = mount
    return list(merged.values())


class DefinitionResolver:
    """Resolves definition names to FlatDefinitions across the three layers."""

    def __init__(
        self,
        repo_root: Path,
        host_dir: Path | None = None,
        preference: SourcePreference | None = None,
    ):
        self.repo_root = repo_root
        self.project_dir = repo_root / ".flotilla" / "containers"
        self.host_dir = host_dir or default_host_dir()
        self.preference = preference
        self._layers: dict[DefinitionSource, dict[str, SourcedDefinition]] | None = None
        self._cache: dict[tuple[str, SourcePreference | None], FlatDefinition] = {}
        self._warned_conflicts: set[str] = set()

    # ── Layers ───────────────────────────────────────────────────────────

    def load(self) -> None:
        """(Re)load every layer. Parse-tier errors raise DefinitionError."""
        project = load_layer(self.project_dir)
        host = load_layer(self.host_dir)
        self._layers = {
            DefinitionSource.PROJECT: {
                n: SourcedDefinition(d, DefinitionSource.PROJECT, self.project_dir)
                for n, d in project.items()
            },
            DefinitionSource.HOST: {
                n: SourcedDefinition(d, DefinitionSource.HOST, self.host_dir)
                for n, d in host.items()
            },
            DefinitionSource.EMBEDDED: {
                n: SourcedDefinition(d, DefinitionSource.EMBEDDED, Path("<embedded>"))
                for n, d in EMBEDDED_DEFINITIONS.items()
            },
        }
        self._cache.clear()

    @property
    def layers(self) -> dict[DefinitionSource, dict[str, SourcedDefinition]]:
        if self._layers is None:
            self.load()
        return self._layers

    def discover(self) -> list[SourcedDefinition]:
        """Every definition in every layer, shadowed ones included."""
        return [entry for layer in self.layers.values() for entry in layer.values()]

    def names(self) -> set[str]:
        return {entry.name for entry in self.discover()}

    def detect_conflicts(self) -> list[str]:
        """Names defined in both the project and the host layer."""
        project = self.layers[DefinitionSource.PROJECT]
        host = self.layers[DefinitionSource.HOST]
        return sorted(set(project) & set(host))

    def conflict_message(self, name: str) -> str:
        project = self.layers[DefinitionSource.PROJECT][name]
        host = self.layers[DefinitionSource.HOST][name]
        return messages.ambiguous_definition(
            name,
            str(project.path / "config.yaml"),
            str(host.path / "config.yaml"),
            project.definition.description,
            host.definition.description,
        )

    def lookup(self, name: str, preference: SourcePreference | None = None) -> SourcedDefinition:
        """Find the definition a name refers to. Innermost layer wins by default."""
        project = self.layers[DefinitionSource.PROJECT].get(name)
        host = self.layers[DefinitionSource.HOST].get(name)
        if project and host:
            if preference is SourcePreference.HOST:
                return host
            if preference is None and name not in self._warned_conflicts:
                self._warned_conflicts.add(name)
                logger.warning(
                    "Container '%s' is defined in both project and host layers; using project",
                    name,
                )
            return project
        for entry in (project, host, self.layers[DefinitionSource.EMBEDDED].get(name)):
            if entry is not None:
                return entry
        raise ResolutionError(
            messages.definition_not_found(name, [str(self.project_dir), str(self.host_dir)])
        )

    def chain(self, name: str, preference: SourcePreference | None = None) -> list[SourcedDefinition]:
        """The parent chain of ``name``, root first."""
        entry = self.lookup(name, preference)
        chain = [entry]
        seen = {entry.name}
        while entry.definition.parent:
            parent = entry.definition.parent
            if parent in seen:
                raise DefinitionError(
                    messages.circular_dependency([e.name for e in chain] + [parent])
                )
            if parent not in self.names():
                raise ResolutionError(
                    messages.missing_parent(
                        entry.name, parent, [str(self.project_dir), str(self.host_dir)]
                    )
                )
            entry = self.lookup(parent)
            chain.append(entry)
            seen.add(parent)
        chain.reverse()
        return chain

    # ── Resolution ───────────────────────────────────────────────────────

    def resolve(self, name: str, preference: SourcePreference | None = None) -> FlatDefinition:
        """Flatten ``name`` into a launch spec.

        Raises:
            DefinitionError: malformed layer or parent cycle.
            ResolutionError: the name or one of its parents does not exist.
        """
        preference = preference or self.preference
        key = (name, preference)
        if key in self._cache:
            return self._cache[key]

        chain = self.chain(name, preference)
        definitions = [entry.definition for entry in chain]
        leaf = chain[-1]

        defaults = ResourceDefaults()
        for definition in definitions:
            defaults = defaults.merged(definition.defaults)

        flat = FlatDefinition(
            name=leaf.name,
            source=leaf.source,
            description=leaf.definition.description,
            chain=[entry.name for entry in chain],
            entrypoint=compose_entrypoint(definitions),
            defaults=defaults,
            mounts=merge_mounts(definitions),
            image=image_name(self.repo_root, leaf.name, leaf.source),
        )
        self._cache[key] = flat
        logger.debug("Resolved %s via %s", name, " → ".join(flat.chain))
        return flat

    def build_order(self, names: list[str] | None = None) -> list[str]:
        """Kahn topological order (parents first) of the effective definitions.

        With ``names``, only those definitions and their ancestors are included.
        """
        if names is None:
            selected = {n: self.lookup(n) for n in self.names()}
        else:
            selected = {}
            for name in names:
                for entry in self.chain(name):
                    selected[entry.name] = entry

        in_degree = {name: 0 for name in selected}
        children: dict[str, list[str]] = {name: [] for name in selected}
        for name, entry in selected.items():
            parent = entry.definition.parent
            if parent is None:
                continue
            if parent not in selected:
                raise ResolutionError(messages.missing_parent(name, parent))
            in_degree[name] += 1
            children[parent].append(name)

        queue = deque(sorted(n for n, d in in_degree.items() if d == 0))
        order: list[str] = []
        while queue:
            name = queue.popleft()
            order.append(name)
            for child in sorted(children[name]):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(order) != len(selected):
            remaining = sorted(set(selected) - set(order))
            raise DefinitionError(messages.circular_dependency(remaining))
        return order

    def validate_build(self, names: list[str] | None = None, build_tool: str | None = None) -> ValidationResult:
        """Build-tier validation of the effective definitions (or ``names`` and ancestors)."""
        if names is None:
            entries = [self.lookup(n) for n in sorted(self.names())]
        else:
            entries = []
            result = ValidationResult()
            for name in names:
                try:
                    entries.extend(self.chain(name))
                except ResolutionError as exc:
                    result.add_error(str(exc))
            if not result.ok:
                return result
        return validate_build(entries, self.names(), build_tool)
