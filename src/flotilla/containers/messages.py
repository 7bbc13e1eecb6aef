"""User-facing container error and warning messages.

Every message follows the same shape::

    flotilla: error: <category>: <brief>

      <details, indented>

      <suggestion, indented>
"""

from __future__ import annotations

import enum
from collections.abc import Iterable

PREFIX = "flotilla"


class Category(str, enum.Enum):
    CONFIG = "config"
    BUILD = "build"
    RUN = "run"
    MOUNT = "mount"
    CONFLICT = "conflict"


def _indent(block: str) -> str:
    return "\n".join(f"  {line}" if line else "" for line in block.splitlines())


def format_error(
    category: Category,
    brief: str,
    details: str | None = None,
    suggestion: str | None = None,
) -> str:
    msg = f"{PREFIX}: error: {category.value}: {brief}"
    if details:
        msg += "\n\n" + _indent(details)
    if suggestion:
        msg += "\n\n" + _indent(suggestion)
    return msg


def format_warning(category: Category, brief: str, details: str | None = None) -> str:
    msg = f"{PREFIX}: warning: {category.value}: {brief}"
    if details:
        msg += "\n\n" + _indent(details)
    return msg


def _searched(paths: Iterable[str]) -> str:
    paths = list(paths)
    if not paths:
        return ""
    return "\n\nSearched:\n" + "\n".join(f"  - {p}" for p in paths)


# ── Parse tier ───────────────────────────────────────────────────────────────


def config_parse_failed(path: str, error: str) -> str:
    return format_error(
        Category.CONFIG,
        "failed to parse container config",
        f"Failed to parse {path}:\n  {error}",
        "Check the YAML syntax of the file.",
    )


def reserved_name(name: str) -> str:
    return format_error(
        Category.CONFIG,
        f"'{name}' is a reserved container name",
        f"The '{name}' definition is built in and cannot be redefined.",
        "Pick another name and set it as the parent if you want to extend it.",
    )


def name_mismatch(key: str, def_name: str) -> str:
    return format_error(
        Category.CONFIG,
        "container name mismatch",
        f"Definition stored under '{key}' declares name '{def_name}'.",
        "Make the 'name' field match its key, or drop the field.",
    )


def empty_name() -> str:
    return format_error(
        Category.CONFIG,
        "container name cannot be empty",
        suggestion="Give the container a non-empty name.",
    )


def invalid_name_characters(name: str) -> str:
    return format_error(
        Category.CONFIG,
        "invalid container name",
        f"Name '{name}' contains invalid characters.",
        "Use letters, digits, hyphens and underscores only.",
    )


def mount_target_not_absolute(container: str, mount_name: str, target: str) -> str:
    return format_error(
        Category.CONFIG,
        "mount target must be absolute",
        f"Container '{container}' mount '{mount_name}' has target '{target}'.",
        "Mount targets are paths inside the container and must start with '/'.",
    )


def duplicate_mount(container: str, mount_name: str) -> str:
    return format_error(
        Category.CONFIG,
        "duplicate mount name",
        f"Container '{container}' declares mount '{mount_name}' more than once.",
    )


def invalid_mount_mode(mode: str) -> str:
    return format_error(
        Category.CONFIG,
        "invalid mount mode",
        f"Unknown mount mode: '{mode}'.",
        "Valid modes are: 'ro' (read-only), 'rw' (read-write).",
    )


def circular_dependency(cycle: Iterable[str]) -> str:
    chain = " → ".join(cycle)
    return format_error(
        Category.CONFIG,
        "circular parent chain",
        f"Dependency chain forms a cycle:\n  {chain}",
        "Remove one of the 'parent' references to break the cycle.",
    )


def invalid_definition(key: str, error: str) -> str:
    return format_error(
        Category.CONFIG,
        f"invalid container definition '{key}'",
        error,
    )


# ── Build tier ───────────────────────────────────────────────────────────────


def missing_parent(container: str, parent: str, searched: Iterable[str] = ()) -> str:
    return format_error(
        Category.BUILD,
        "parent container not found",
        f"Container '{container}' requires parent '{parent}', but '{parent}' is not defined."
        + _searched(searched),
        f"Create the parent '{parent}' or remove 'parent: {parent}'.",
    )


def missing_containerfile(container: str, path: str) -> str:
    return format_error(
        Category.BUILD,
        "Containerfile not found",
        f"Container '{container}' has no Containerfile at:\n  {path}",
        "Add a Containerfile to the definition directory.",
    )


def build_tool_missing(tool: str) -> str:
    return format_warning(
        Category.BUILD,
        f"'{tool}' not found on PATH",
        "Images cannot be built on this host until it is installed.",
    )


def definition_not_found(name: str, searched: Iterable[str] = ()) -> str:
    return format_error(
        Category.BUILD,
        "container definition not found",
        f"Container definition '{name}' was not found." + _searched(searched),
        "List available definitions with: flotilla container list",
    )


# ── Run tier ─────────────────────────────────────────────────────────────────


def mount_source_not_found(mount_name: str, source_path: str) -> str:
    return format_error(
        Category.MOUNT,
        "mount source not found",
        f"Mount '{mount_name}' requires: {source_path}",
        "Create the path, or mark the mount 'optional: true'.",
    )


def optional_mount_skipped(mount_name: str, source_path: str) -> str:
    return format_warning(
        Category.MOUNT,
        f"skipping optional mount '{mount_name}'",
        f"Source does not exist: {source_path}",
    )


def home_expansion_failed(path: str) -> str:
    return format_error(
        Category.MOUNT,
        "cannot expand home directory",
        f"Could not determine the home directory while expanding '{path}'.",
        "Set HOME or use an absolute path.",
    )


def image_not_found(image: str, container: str) -> str:
    return format_error(
        Category.RUN,
        "image not found",
        f"Image '{image}' not found.",
        f"Build first: flotilla container build {container}",
    )


def runtime_unavailable(details: str, privileged_allowed: bool) -> str:
    suggestion = (
        "Start the rootless runtime for this user."
        if privileged_allowed
        else "Start the rootless runtime, or set runtime.allow_privileged: true "
        "to permit the privileged socket."
    )
    return format_error(Category.RUN, "container runtime unavailable", details, suggestion)


# ── Conflicts ────────────────────────────────────────────────────────────────


def ambiguous_definition(
    name: str,
    project_path: str,
    host_path: str,
    project_desc: str | None = None,
    host_desc: str | None = None,
) -> str:
    details = f"Container '{name}' exists in multiple locations:\n\n  --project  {project_path}"
    if project_desc:
        details += f'\n             Description: "{project_desc}"'
    details += f"\n\n  --host     {host_path}"
    if host_desc:
        details += f'\n             Description: "{host_desc}"'
    return format_error(
        Category.CONFLICT,
        "ambiguous container definition",
        details,
        "Re-run with --project or --host to specify which definition to use.",
    )
