"""Flotilla CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from flotilla.errors import FlotillaError


# ── Default templates for `flotilla init` ────────────────────────────────────

_DEFAULT_CONFIG = """\
# .flotilla/config.yaml: Flotilla project configuration

project:
  name: "{project_name}"
  merge_target: main

runtime:
  engine: containerd        # or: podman
  allow_privileged: false   # never fall back to the system socket unless true

reconciliation:
  interval: 30
  cooldown: 60
  goodbye_grace: 15

registry:
  stale_after: 1800

agents:
  worker:
    min: 0
    max: 1
    work_aware: true
  planner:
    min: 0
    max: 1
  buddy:
    min: 0
    max: 1
"""

_DEFAULT_CONTAINERS = """\
# .flotilla/containers/config.yaml: project container definitions
#
# Each definition may extend another through `parent` (the built-in
# definitions are `default` and `flotilla`). Build contexts live in
# .flotilla/containers/<name>/Containerfile.
#
# containers:
#   rust-worker:
#     parent: flotilla
#     description: Worker with a Rust toolchain
#     entrypoint: /usr/local/bin/rust-setup
#     entrypoint_mode: before
#     defaults:
#       cpus: 4
#       memory: 8g
#     mounts:
#       - name: cargo-cache
#         source: ~/.cargo/registry
#         target: /root/.cargo/registry
#         mode: rw
#         optional: true
containers: {}
"""


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _fail(message: str) -> None:
    if not message.startswith("flotilla:"):
        message = f"flotilla: error: {message}"
    print(message, file=sys.stderr)
    sys.exit(1)


def _init_project(repo_root: Path) -> None:
    """Scaffold a .flotilla/ directory with default configuration."""
    flotilla_dir = repo_root / ".flotilla"
    if flotilla_dir.exists():
        _fail(f"{flotilla_dir} already exists; remove it first to re-initialize")

    containers_dir = flotilla_dir / "containers"
    containers_dir.mkdir(parents=True)
    (flotilla_dir / "config.yaml").write_text(_DEFAULT_CONFIG.format(project_name=repo_root.name))
    (containers_dir / "config.yaml").write_text(_DEFAULT_CONTAINERS)
    (flotilla_dir / "data").mkdir()

    print(f"Initialized Flotilla project at {flotilla_dir}")
    print()
    print("Next steps:")
    print(f"  1. Review {flotilla_dir / 'config.yaml'}")
    print("  2. Add work: flotilla work add 'First task'")
    print(f"  3. Run: flotilla serve --repo-root {repo_root}")


# ── Commands that need the full component stack ──────────────────────────────


async def _with_server(repo_root: Path, fn):
    from flotilla.server import FleetServer

    server = FleetServer(repo_root)
    await server.start(run_loop=False)
    try:
        return await fn(server)
    finally:
        await server.stop()


async def _reconcile(server, args):
    loop = server.reconciliation
    await loop.tick(dry_run=args.dry_run)
    report = loop.last_preview if args.dry_run else loop.last_report
    return report.model_dump(mode="json")


async def _agents(server, args):
    agents = await server.registry.list(args.type)
    return [a.model_dump(mode="json") for a in agents]


async def _spawn(server, args):
    return (await server.reconciliation.spawn_now(args.agent_type, force=args.force)).model_dump(
        mode="json"
    )


async def _stop(server, args):
    action = await server.reconciliation.stop_now(
        agent_id=args.agent_id, agent_type=args.type, force=args.force
    )
    return action.model_dump(mode="json")


async def _goodbye(server, args):
    return (await server.registry.mark_goodbye(args.agent_id)).model_dump(mode="json")


async def _heartbeat(server, args):
    from flotilla.models import AgentStatus

    status = AgentStatus(args.status) if args.status else None
    return (await server.registry.heartbeat(args.agent_id, status)).model_dump(mode="json")


async def _work(server, args):
    from flotilla.models import Edge, EdgeType, WorkItem, WorkKind, WorkStatus
    from flotilla.store import generate_work_id

    graph = server.graph
    if args.work_command == "add":
        item_id = generate_work_id(args.title, {i.id for i in graph.items()})
        item = WorkItem(
            id=item_id,
            title=args.title,
            kind=WorkKind(args.kind),
            priority=args.priority,
            group=args.group,
        )
        return (await graph.add_item(item)).model_dump(mode="json")
    if args.work_command == "status":
        return (await graph.set_status(args.item_id, WorkStatus(args.status))).model_dump(mode="json")
    if args.work_command == "link":
        edge = Edge(
            source=args.source,
            target=args.target,
            edge_type=EdgeType(args.edge_type),
            reason=args.reason,
        )
        return (await graph.add_edge(edge)).model_dump(mode="json")
    if args.work_command == "ready":
        items = graph.ready(args.group)
        return {"count": len(items), "items": [i.model_dump(mode="json") for i in items]}
    if args.work_command == "components":
        return [
            {"task_count": c.task_count, "members": c.members, "roots": c.roots}
            for c in graph.components()
        ]
    raise ValueError(f"unknown work command: {args.work_command}")


async def _container_build(server, args):
    return {"built": await server.lifecycle.build(server.resolver, args.names or None)}


# ── Commands that only read configuration ────────────────────────────────────


def _resolver(args):
    from flotilla.containers.definitions import DefinitionResolver, SourcePreference

    preference = None
    if getattr(args, "project", False):
        preference = SourcePreference.PROJECT
    elif getattr(args, "host", False):
        preference = SourcePreference.HOST
    return DefinitionResolver(args.repo_root, preference=preference)


def _container(args):
    if args.container_command == "list":
        resolver = _resolver(args)
        conflicts = set(resolver.detect_conflicts())
        return [
            {
                "name": entry.name,
                "source": entry.source.value,
                "parent": entry.definition.parent,
                "description": entry.definition.description,
                "conflict": entry.name in conflicts,
            }
            for entry in sorted(resolver.discover(), key=lambda e: (e.name, e.source.value))
        ]
    if args.container_command == "resolve":
        resolver = _resolver(args)
        return resolver.resolve(args.name).model_dump(mode="json")
    if args.container_command == "validate":
        from flotilla.config import load_config
        from flotilla.containers.validation import validate_run

        resolver = _resolver(args)
        config = load_config(args.repo_root / ".flotilla")
        result = resolver.validate_build(args.names or None)

        launch_errors: dict[str, list[str]] = {}
        for name in args.names or sorted(resolver.names()):
            try:
                flat = resolver.resolve(name)
            except FlotillaError as exc:
                launch_errors[name] = [str(exc)]
                continue
            run_result, _mounts = validate_run(
                flat, args.repo_root, config.resolve_data_dir(args.repo_root)
            )
            result.warnings.extend(run_result.warnings)
            if run_result.errors:
                launch_errors[name] = run_result.errors
        return {
            "ok": result.ok and not launch_errors,
            "build_errors": result.errors,
            "launch_errors": launch_errors,
            "warnings": result.warnings,
        }
    raise ValueError(f"unknown container command: {args.container_command}")


def _scale(args):
    from flotilla.config import load_config, save_scaling_policy
    from flotilla.containers.validation import is_valid_name

    flotilla_dir = args.repo_root / ".flotilla"
    changing = any(v is not None for v in (args.min, args.max, args.work_aware))
    if args.agent_type is None:
        if changing:
            raise ValueError("scale needs an agent type when changing min/max")
        config = load_config(flotilla_dir)
        return {name: config.policy_for(name).model_dump() for name in sorted(config.agents)}
    if not is_valid_name(args.agent_type):
        raise ValueError(f"invalid agent type: {args.agent_type!r}")
    if not changing:
        return load_config(flotilla_dir).policy_for(args.agent_type).model_dump()
    policy = save_scaling_policy(flotilla_dir, args.agent_type, args.min, args.max, args.work_aware)
    return {args.agent_type: policy.model_dump()}


# ── Argument parsing ─────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    common.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING; serve defaults to INFO)",
    )

    parser = argparse.ArgumentParser(
        prog="flotilla",
        description="Flotilla: task graph and container fleet for coding agents",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init", parents=[common], help="Initialize a new Flotilla project")

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Run the fleet server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")

    reconcile_parser = subparsers.add_parser("reconcile", parents=[common], help="Run one reconciliation tick")
    reconcile_parser.add_argument("--dry-run", action="store_true", help="Plan only, change nothing")

    scale_parser = subparsers.add_parser("scale", parents=[common], help="Show or set scaling policy")
    scale_parser.add_argument("agent_type", nargs="?")
    scale_parser.add_argument("--min", type=int)
    scale_parser.add_argument("--max", type=int)
    scale_parser.add_argument("--work-aware", action=argparse.BooleanOptionalAction, default=None)

    agents_parser = subparsers.add_parser("agents", parents=[common], help="List agents")
    agents_parser.add_argument("--type")

    spawn_parser = subparsers.add_parser("spawn", parents=[common], help="Spawn an agent now")
    spawn_parser.add_argument("agent_type")
    spawn_parser.add_argument("--force", action="store_true", help="Spawn even past max")

    stop_parser = subparsers.add_parser("stop", parents=[common], help="Stop an agent now")
    stop_parser.add_argument("agent_id", nargs="?")
    stop_parser.add_argument("--type", help="Stop the best candidate of this type instead")
    stop_parser.add_argument("--force", action="store_true", help="Kill without a graceful wait")

    goodbye_parser = subparsers.add_parser("goodbye", parents=[common], help="Signal an agent is finished")
    goodbye_parser.add_argument("agent_id")

    heartbeat_parser = subparsers.add_parser("heartbeat", parents=[common], help="Record agent liveness")
    heartbeat_parser.add_argument("agent_id")
    heartbeat_parser.add_argument("--status", choices=["active", "idle"])

    work_parser = subparsers.add_parser("work", help="Manage work items")
    work_sub = work_parser.add_subparsers(dest="work_command", required=True)
    add = work_sub.add_parser("add", parents=[common])
    add.add_argument("title")
    add.add_argument("--kind", default="task", choices=["task", "bug", "milestone", "test"])
    add.add_argument("--priority", type=int, default=2, choices=range(5))
    add.add_argument("--group", help="Agent type expected to pick this up")
    status = work_sub.add_parser("status", parents=[common])
    status.add_argument("item_id")
    status.add_argument("status", choices=["pending", "in_progress", "blocked", "done", "cancelled"])
    link = work_sub.add_parser("link", parents=[common])
    link.add_argument("source")
    link.add_argument("target")
    link.add_argument("--type", dest="edge_type", default="depends_on")
    link.add_argument("--reason")
    ready = work_sub.add_parser("ready", parents=[common])
    ready.add_argument("--group")
    work_sub.add_parser("components", parents=[common])

    container_parser = subparsers.add_parser("container", help="Container definitions")
    container_sub = container_parser.add_subparsers(dest="container_command", required=True)
    container_sub.add_parser("list", parents=[common])
    resolve = container_sub.add_parser("resolve", parents=[common])
    resolve.add_argument("name")
    source = resolve.add_mutually_exclusive_group()
    source.add_argument("--project", action="store_true", help="Use the project definition")
    source.add_argument("--host", action="store_true", help="Use the host definition")
    for name in ("build", "validate"):
        sub = container_sub.add_parser(name, parents=[common])
        sub.add_argument("names", nargs="*")

    return parser


def main(argv: list[str] | None = None):
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    level = "INFO" if args.command == "serve" and args.log_level == "WARNING" else args.log_level
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "init":
        _init_project(args.repo_root)
        return

    flotilla_dir = args.repo_root / ".flotilla"
    if not flotilla_dir.exists():
        _fail(f".flotilla/ directory not found at {flotilla_dir}; run 'flotilla init' first")

    if args.command == "serve":
        import uvicorn

        from flotilla.server import create_app

        app = create_app(repo_root=args.repo_root)
        uvicorn.run(app, host=args.host, port=args.port, log_level=level.lower())
        return

    handlers = {
        "reconcile": _reconcile,
        "agents": _agents,
        "spawn": _spawn,
        "stop": _stop,
        "goodbye": _goodbye,
        "heartbeat": _heartbeat,
        "work": _work,
    }
    try:
        if args.command == "scale":
            result = _scale(args)
        elif args.command == "container" and args.container_command != "build":
            result = _container(args)
        elif args.command == "container":
            result = asyncio.run(_with_server(args.repo_root, lambda s: _container_build(s, args)))
        else:
            if args.command == "stop" and args.agent_id is None and args.type is None:
                _fail("stop needs an agent id or --type")
            handler = handlers[args.command]
            result = asyncio.run(_with_server(args.repo_root, lambda s: handler(s, args)))
    except KeyError as exc:
        _fail(exc.args[0] if exc.args else str(exc))
        return
    except (FlotillaError, ValueError, FileNotFoundError) as exc:
        _fail(str(exc))
        return

    _emit(result)
    if isinstance(result, dict) and result.get("success") is False:
        sys.exit(1)


if __name__ == "__main__":
    main()
