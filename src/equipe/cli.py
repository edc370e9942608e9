"""Command line entry point for equipe."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from . import metrics
from .config import EquipeConfig
from .config import load_config
from .config import write_default_config
from .context import AppContext
from .context import build_context
from .errors import EquipeError
from .errors import OperationResult
from .processes.registry import ProcessRegistry
from .processes.shutdown import ShutdownCoordinator
from .workspace.models import AgentType
from .workspace.models import Workspace


AGENT_CHOICES = [agent.value for agent in AgentType]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="equipe", description="Run coding agents side by side in git worktrees")
    parser.add_argument("--config", type=Path, default=None, help="Path to config YAML")
    parser.add_argument("--repo", type=Path, default=None, help="Repository root (default: current git repository)")
    parser.add_argument("--log-level", type=str, default=os.getenv("LOG_LEVEL"))
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Write a default config file")
    sub.add_parser("workspaces", help="Reconcile with git worktrees and list workspaces")

    create_cmd = sub.add_parser("create", help="Create a worktree-backed workspace")
    create_cmd.add_argument("branch", help="New branch name")
    create_cmd.add_argument("--agent", choices=AGENT_CHOICES, default=None)
    create_cmd.add_argument("--name", default=None, help="Display name (default: branch)")
    create_cmd.add_argument("--base", default=None, help="Base branch (default: detected)")

    delete_cmd = sub.add_parser("delete", help="Delete a workspace")
    delete_cmd.add_argument("workspace", help="Workspace id, name or branch")
    delete_cmd.add_argument("--folder", action="store_true", help="Also remove the worktree folder")
    delete_cmd.add_argument("--branch", action="store_true", help="Also delete the git branch")

    agent_cmd = sub.add_parser("set-agent", help="Change the agent used by a workspace")
    agent_cmd.add_argument("workspace")
    agent_cmd.add_argument("agent", choices=AGENT_CHOICES)

    start_cmd = sub.add_parser("start", help="Start the agent of a workspace")
    start_cmd.add_argument("workspace")
    start_cmd.add_argument("--attach", action="store_true", help="Attach right after starting")

    for name, help_text in (
        ("stop", "Stop the agent of a workspace"),
        ("restart", "Restart the agent of a workspace"),
        ("attach", "Attach to a running agent session"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("workspace")

    output_cmd = sub.add_parser("output", help="Print recent agent output")
    output_cmd.add_argument("workspace")
    output_cmd.add_argument("-n", "--lines", type=int, default=50)

    send_cmd = sub.add_parser("send", help="Type text into an agent session")
    send_cmd.add_argument("workspace")
    send_cmd.add_argument("text")
    send_cmd.add_argument("--no-enter", action="store_true", help="Do not press enter after the text")

    sessions_cmd = sub.add_parser("sessions", help="List agent sessions, including orphans")
    sessions_cmd.add_argument("--prune", action="store_true", help="Kill sessions without a workspace")
    return parser


# Commands ---------------------------------------------------------------
def cmd_workspaces(ctx: AppContext, args: argparse.Namespace) -> int:
    manager = ctx.require_workspaces()
    result = manager.sync()
    if result.failed:
        print("warning: could not list git worktrees, showing saved workspaces", file=sys.stderr)
    for workspace in result.to_remove:
        print(f"- removed {workspace.name} ({workspace.path} no longer exists)")
    workspaces = result.workspaces
    ctx.controller.adopt(workspaces)
    ctx.controller.tick(force=True)
    if not workspaces:
        print("No workspaces yet. Create one with `equipe create <branch>`.")
        return 0
    for workspace in workspaces:
        status = ctx.controller.status(workspace.id).value
        print(
            f"{workspace.id}  {workspace.name:<20} {workspace.branch:<24} "
            f"{workspace.agent_type.value:<9} {status:<8} {workspace.path}"
        )
    return 0


def cmd_create(ctx: AppContext, args: argparse.Namespace) -> int:
    manager = ctx.require_workspaces()
    workspace = manager.create_workspace(args.branch, args.agent, name=args.name, base=args.base)
    print(f"Created {workspace.name} ({workspace.id}) at {workspace.path}")
    return 0


def cmd_delete(ctx: AppContext, args: argparse.Namespace) -> int:
    manager = ctx.require_workspaces()
    workspace = _find(ctx, args.workspace)
    manager.delete_workspace(workspace, delete_folder=args.folder, delete_branch=args.branch)
    print(f"Deleted {workspace.name}")
    return 0


def cmd_set_agent(ctx: AppContext, args: argparse.Namespace) -> int:
    workspace = _find(ctx, args.workspace)
    updated = ctx.require_workspaces().set_agent_type(workspace.id, args.agent)
    print(f"{updated.name} now uses {updated.agent_type.value}")
    return 0


def cmd_start(ctx: AppContext, args: argparse.Namespace) -> int:
    workspace = _find(ctx, args.workspace)
    result = ctx.controller.start(workspace.id, workspace.path, workspace.agent_type)
    if not _report(result, f"Started {workspace.agent_type.value} in {workspace.name}"):
        return 1
    ctx.require_workspaces().touch(workspace.id)
    # pty sessions die with this process, so they are only useful attached
    if args.attach or not ctx.backend.durable:
        return 0 if _report(ctx.controller.attach(workspace.id)) else 1
    return 0


def cmd_stop(ctx: AppContext, args: argparse.Namespace) -> int:
    workspace = _find(ctx, args.workspace)
    return 0 if _report(ctx.controller.stop(workspace.id), f"Stopped agent in {workspace.name}") else 1


def cmd_restart(ctx: AppContext, args: argparse.Namespace) -> int:
    workspace = _find(ctx, args.workspace)
    if ctx.controller.get(workspace.id) is None:
        result = ctx.controller.start(workspace.id, workspace.path, workspace.agent_type)
    else:
        result = ctx.controller.restart(workspace.id, workspace.agent_type)
    return 0 if _report(result, f"Restarted agent in {workspace.name}") else 1


def cmd_attach(ctx: AppContext, args: argparse.Namespace) -> int:
    workspace = _find(ctx, args.workspace)
    ctx.require_workspaces().touch(workspace.id)
    return 0 if _report(ctx.controller.attach(workspace.id)) else 1


def cmd_output(ctx: AppContext, args: argparse.Namespace) -> int:
    workspace = _find(ctx, args.workspace)
    print(ctx.controller.capture_output(workspace.id, args.lines))
    return 0


def cmd_send(ctx: AppContext, args: argparse.Namespace) -> int:
    workspace = _find(ctx, args.workspace)
    text = args.text if args.no_enter else args.text + "\n"
    return 0 if _report(ctx.controller.send_input(workspace.id, text)) else 1


def cmd_sessions(ctx: AppContext, args: argparse.Namespace) -> int:
    workspaces = ctx.workspaces.list() if ctx.workspaces is not None else []
    orphans = ctx.controller.adopt(workspaces)
    names = {workspace.id: workspace.name for workspace in workspaces}
    instances = [instance for instance in ctx.controller.instances() if instance.status.value == "running"]
    if not instances and not orphans:
        print("No agent sessions")
        return 0
    for instance in instances:
        print(f"{instance.session_name}  {names.get(instance.workspace_id, '?'):<20} {instance.agent_type.value}")
    for workspace_id in orphans:
        print(f"{ctx.backend.session_name(workspace_id)}  (orphaned)")
    if args.prune and orphans:
        pruned = ctx.controller.prune_orphans(orphans)
        print(f"Pruned {pruned} orphaned session(s)")
    return 0


COMMANDS = {
    "workspaces": cmd_workspaces,
    "create": cmd_create,
    "delete": cmd_delete,
    "set-agent": cmd_set_agent,
    "start": cmd_start,
    "stop": cmd_stop,
    "restart": cmd_restart,
    "attach": cmd_attach,
    "output": cmd_output,
    "send": cmd_send,
    "sessions": cmd_sessions,
}


# Helpers ----------------------------------------------------------------
def _find(ctx: AppContext, key: str) -> Workspace:
    manager = ctx.require_workspaces()
    workspace = manager.find(key)
    if workspace is None:
        raise EquipeError(f"no workspace matches {key!r}")
    ctx.controller.adopt([workspace])
    return workspace


def _report(result: OperationResult, success: str | None = None) -> bool:
    if result.error is not None:
        print(f"error: {result.error}", file=sys.stderr)
        return False
    if success:
        print(success)
    return True


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        path = write_default_config(args.config)
        print(f"Config written to {path}")
        return 0

    try:
        config: EquipeConfig = load_config(args.config)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    _configure_logging(args.log_level or config.log_level)
    if config.metrics_port:
        metrics.start_server(config.metrics_port)

    registry = ProcessRegistry()
    ctx: AppContext | None = None
    coordinator = ShutdownCoordinator(
        registry,
        cleanup=lambda: ctx.close() if ctx is not None else None,
        timeout=config.shutdown_timeout_s,
    )
    coordinator.install()
    try:
        ctx = build_context(
            config,
            registry=registry,
            repo_root=str(args.repo) if args.repo else None,
        )
        return COMMANDS[args.command](ctx, args)
    except (EquipeError, RuntimeError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        if ctx is not None:
            ctx.close()
        registry.cleanup()
        coordinator.uninstall()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
