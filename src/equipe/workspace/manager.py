"""Workspace creation, deletion and bookkeeping."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from typing import List
from typing import Optional

from ..errors import EquipeError
from ..errors import SessionNotFoundError
from ..state import WorkspaceMetadataStore
from ..state import WorkspaceStore
from .git import GitRepository
from .git import worktree_path_for
from .models import AgentType
from .models import Workspace
from .models import utc_now
from .reconcile import ReconcileResult
from .reconcile import WorkspaceReconciler
from .reconcile import new_workspace_id

if TYPE_CHECKING:  # pragma: no cover
    from ..agents.controller import AgentLifecycleController


logger = logging.getLogger(__name__)


class WorkspaceManager:
    def __init__(
        self,
        repository: GitRepository,
        store: WorkspaceStore,
        metadata: WorkspaceMetadataStore,
        *,
        default_agent: AgentType = AgentType.CLAUDE,
        controller: "AgentLifecycleController | None" = None,
        reconciler: WorkspaceReconciler | None = None,
    ) -> None:
        self.repository = repository
        self.store = store
        self.metadata = metadata
        self.default_agent = AgentType(default_agent)
        self.controller = controller
        self.reconciler = reconciler or WorkspaceReconciler(repository, metadata, self.default_agent)

    # Queries ----------------------------------------------------------
    def list(self) -> List[Workspace]:
        return self.store.list()

    def find(self, key: str) -> Optional[Workspace]:
        """Look a workspace up by id, then name, then branch."""
        workspaces = self.store.list()
        for attr in ("id", "name", "branch"):
            for workspace in workspaces:
                if getattr(workspace, attr) == key:
                    return workspace
        return None

    def sync(self) -> ReconcileResult:
        result = self.reconciler.reconcile(self.store.list())
        self.reconciler.apply(result, self.store)
        return result

    # Mutations --------------------------------------------------------
    def create_workspace(
        self,
        branch: str,
        agent_type: AgentType | str | None = None,
        *,
        name: str | None = None,
        base: str | None = None,
    ) -> Workspace:
        """Create a worktree for a new branch next to the repository and record it."""
        agent = AgentType(agent_type) if agent_type else self.default_agent
        target = worktree_path_for(self.repository.repo_root, branch)
        path = self.repository.add_worktree(target, branch, base)
        now = utc_now()
        workspace = Workspace(
            id=new_workspace_id(),
            name=name or branch,
            path=path,
            branch=branch,
            agent_type=agent,
            created_at=now,
            last_active_at=now,
        )
        self.store.upsert(workspace)
        self.metadata.set(path, agent)
        logger.info("Created workspace %s for %s at %s", workspace.id, branch, path)
        return workspace

    def delete_workspace(
        self,
        workspace: Workspace,
        *,
        delete_folder: bool = False,
        delete_branch: bool = False,
    ) -> None:
        """Stop its agent, optionally remove the folder and branch, then forget it."""
        if self.controller is not None:
            result = self.controller.stop(workspace.id)
            if result.error is not None and not isinstance(result.error, SessionNotFoundError):
                raise result.error
            self.controller.forget(workspace.id)
        if delete_folder:
            self.repository.remove_worktree(workspace.path)
        if delete_branch:
            self.repository.delete_branch(workspace.branch, force=True)
        self.metadata.delete(workspace.path)
        self.store.remove(workspace.id)
        logger.info("Deleted workspace %s (%s)", workspace.id, workspace.branch)

    def set_agent_type(self, workspace_id: str, agent_type: AgentType | str) -> Workspace:
        workspace = self._require(workspace_id)
        updated = workspace.model_copy(update={"agent_type": AgentType(agent_type)})
        self.store.upsert(updated)
        self.metadata.set(updated.path, updated.agent_type)
        return updated

    def touch(self, workspace_id: str) -> Workspace:
        workspace = self._require(workspace_id)
        updated = workspace.model_copy(update={"last_active_at": utc_now()})
        self.store.upsert(updated)
        return updated

    def _require(self, workspace_id: str) -> Workspace:
        workspace = self.store.get(workspace_id)
        if workspace is None:
            raise EquipeError("unknown workspace", workspace_id=workspace_id)
        return workspace


__all__ = ["WorkspaceManager"]
