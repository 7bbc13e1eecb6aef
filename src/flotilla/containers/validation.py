"""Tiered validation of container definitions.

- parse tier: schema well-formedness, reserved names, parent cycles. Runs
  on load; any error is fatal (DefinitionError).
- build tier: parents exist, Containerfiles exist, build tool present.
- launch tier: mount sources exist (unless optional), image available.

Each tier returns a ValidationResult so callers can collect every problem
before deciding whether to fail.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from flotilla.containers import messages
from flotilla.models import ContainerDefinition, DefinitionSource, FlatDefinition, Mount

if TYPE_CHECKING:
    from flotilla.containers.definitions import SourcedDefinition

RESERVED_NAME = "flotilla"
SPECIAL_SOURCES = frozenset({"workspace", RESERVED_NAME})

_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)

    @property
    def ok(self) -> bool:
        return not self.errors

    def merge(self, other: ValidationResult) -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def raise_for(self, exc_type: type[Exception]) -> list[str]:
        """Raise ``exc_type`` with every error joined, else return the warnings."""
        if self.errors:
            raise exc_type("\n\n".join(self.errors))
        return list(self.warnings)


def is_valid_name(name: str) -> bool:
    return bool(_NAME_RE.match(name))


# ── Parse tier ───────────────────────────────────────────────────────────────


def find_parent_cycle(definitions: dict[str, ContainerDefinition]) -> list[str] | None:
    """Return the first parent cycle found (as a closed chain), else None."""
    for start in sorted(definitions):
        seen: list[str] = []
        current: str | None = start
        while current is not None and current in definitions:
            if current in seen:
                return seen[seen.index(current):] + [current]
            seen.append(current)
            current = definitions[current].parent
    return None


def validate_parse(
    definitions: dict[str, ContainerDefinition],
    allow_reserved: bool = False,
) -> ValidationResult:
    result = ValidationResult()
    for key, definition in definitions.items():
        if key == RESERVED_NAME and not allow_reserved:
            result.add_error(messages.reserved_name(RESERVED_NAME))
        if not definition.name:
            result.add_error(messages.empty_name())
        elif key != definition.name:
            result.add_error(messages.name_mismatch(key, definition.name))
        elif not is_valid_name(definition.name):
            result.add_error(messages.invalid_name_characters(definition.name))

        seen_mounts: set[str] = set()
        for mount in definition.mounts:
            if mount.name in seen_mounts:
                result.add_error(messages.duplicate_mount(key, mount.name))
            seen_mounts.add(mount.name)
            if not mount.target.startswith("/"):
                result.add_error(messages.mount_target_not_absolute(key, mount.name, mount.target))

    cycle = find_parent_cycle(definitions)
    if cycle:
        result.add_error(messages.circular_dependency(cycle))
    return result


# ── Build tier ───────────────────────────────────────────────────────────────


def validate_build(
    entries: Iterable[SourcedDefinition],
    known_names: set[str],
    build_tool: str | None = None,
) -> ValidationResult:
    """Check parents and build contexts for the given definitions.

    ``build_tool`` is the builder binary that was found, or None when no
    builder is installed (reported as a warning, not an error).
    """
    result = ValidationResult()
    for entry in entries:
        parent = entry.definition.parent
        if parent and parent not in known_names:
            result.add_error(messages.missing_parent(entry.name, parent, [str(entry.path)]))
        if entry.source is not DefinitionSource.EMBEDDED:
            containerfile = entry.containerfile
            if containerfile is None or not containerfile.exists():
                result.add_error(
                    messages.missing_containerfile(entry.name, str(containerfile or entry.path))
                )
    if build_tool is None:
        result.add_warning(messages.build_tool_missing("buildah"))
    return result


# ── Launch tier ──────────────────────────────────────────────────────────────


def expand_home(path: str) -> Path | None:
    """Expand ``~`` / ``$HOME`` prefixes. Returns None when no expansion applies."""
    for prefix in ("~", "$HOME"):
        if path == prefix or path.startswith(prefix + "/"):
            home = os.environ.get("HOME") or str(Path.home())
            if not home:
                raise ValueError(messages.home_expansion_failed(prefix))
            rest = path[len(prefix) + 1:]
            return Path(home) / rest if rest else Path(home)
    return None


def resolve_mount_source(source: str, repo_root: Path) -> Path:
    """Resolve a mount source to a host path.

    Special names ("workspace", "flotilla") are returned unchanged and mapped
    at launch time; absolute paths are kept; ``~`` and ``$HOME`` expand;
    anything else is relative to the repository root.
    """
    if source in SPECIAL_SOURCES:
        return Path(source)
    if source.startswith("/"):
        return Path(source)
    expanded = expand_home(source)
    if expanded is not None:
        return expanded
    return repo_root / source


@dataclass
class ValidatedMount:
    mount: Mount
    host_path: Path

    def volume_flag(self) -> str:
        return f"{self.host_path}:{self.mount.target}:{self.mount.mode.value}"


def validate_run(
    flat: FlatDefinition,
    repo_root: Path,
    data_dir: Path,
    image_available: bool | None = None,
) -> tuple[ValidationResult, list[ValidatedMount]]:
    """Launch-time checks. Returns the result and the mounts that will be used.

    Missing optional mounts are dropped with a warning. ``image_available``
    of None skips the image check.
    """
    result = ValidationResult()
    mounts: list[ValidatedMount] = []
    for mount in flat.mounts:
        source = mount.source or mount.name
        try:
            host_path = resolve_mount_source(source, repo_root)
        except ValueError as exc:
            result.add_error(str(exc))
            continue
        if str(host_path) == "workspace":
            host_path = repo_root
        elif str(host_path) == RESERVED_NAME:
            host_path = data_dir

        if not host_path.exists():
            if mount.optional:
                result.add_warning(messages.optional_mount_skipped(mount.name, str(host_path)))
                continue
            result.add_error(messages.mount_source_not_found(mount.name, str(host_path)))
            continue
        mounts.append(ValidatedMount(mount=mount, host_path=host_path))

    if image_available is False:
        result.add_error(messages.image_not_found(flat.image, flat.name))
    return result, mounts
