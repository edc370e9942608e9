"""Application wiring built once at start-up."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .agents.backends import PtySessionBackend
from .agents.backends import SessionBackend
from .agents.backends import TmuxSessionBackend
from .agents.controller import AgentLifecycleController
from .agents.ticker import StatusTicker
from .config import EquipeConfig
from .errors import EquipeError
from .processes.registry import ProcessRegistry
from .state import open_stores
from .tmux import TmuxAdapter
from .workspace.git import GitRepository
from .workspace.git import detect_repo_root
from .workspace.manager import WorkspaceManager


logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    config: EquipeConfig
    registry: ProcessRegistry
    backend: SessionBackend
    controller: AgentLifecycleController
    repo_root: Optional[str] = None
    workspaces: Optional[WorkspaceManager] = None

    def require_workspaces(self) -> WorkspaceManager:
        if self.workspaces is None:
            raise EquipeError("not inside a git repository")
        return self.workspaces

    def close(self) -> None:
        self.controller.close()


def build_backend(
    config: EquipeConfig,
    registry: ProcessRegistry,
    adapter: TmuxAdapter | None = None,
) -> SessionBackend:
    if config.backend == "pty":
        return PtySessionBackend(
            registry,
            prefix=config.tmux.prefix,
            cols=config.terminal_cols,
            rows=config.terminal_rows,
        )
    adapter = adapter or TmuxAdapter(tmux_bin=config.tmux.bin, socket=config.tmux.socket)
    adapter.check_available()
    return TmuxSessionBackend(adapter, prefix=config.tmux.prefix)


def build_context(
    config: EquipeConfig,
    *,
    registry: ProcessRegistry | None = None,
    repo_root: str | None = None,
    adapter: TmuxAdapter | None = None,
) -> AppContext:
    registry = registry or ProcessRegistry()
    backend = build_backend(config, registry, adapter)
    ticker = StatusTicker(
        config.polling.focused_ms / 1000.0,
        config.polling.background_ms / 1000.0,
    )
    controller = AgentLifecycleController(
        backend,
        config.command_for,
        ticker=ticker,
        stop_timeout=config.stop_timeout_s,
        poll_interval=config.stop_poll_interval_s,
    )
    root = repo_root or detect_repo_root()
    manager: WorkspaceManager | None = None
    if root is not None:
        repository = GitRepository(root)
        store, metadata = open_stores(config.expanded_state_dir(), str(repository.repo_root))
        manager = WorkspaceManager(
            repository,
            store,
            metadata,
            default_agent=config.default_agent,
            controller=controller,
        )
    else:
        logger.debug("No git repository detected, workspace commands are unavailable")
    return AppContext(
        config=config,
        registry=registry,
        backend=backend,
        controller=controller,
        repo_root=root,
        workspaces=manager,
    )


__all__ = ["AppContext", "build_backend", "build_context"]
