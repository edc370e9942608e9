"""Keep the persisted workspace list in step with the worktrees on disk."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from dataclasses import field
from typing import Callable
from typing import Iterable
from typing import List
from typing import Mapping
from typing import Optional

from .. import metrics
from ..errors import GitCommandError
from ..state import WorkspaceMetadataStore
from ..state import WorkspaceStore
from .git import GitRepository
from .models import AgentType
from .models import GitWorktree
from .models import WorkspaceMetadata
from .models import Workspace
from .models import utc_now


logger = logging.getLogger(__name__)


def new_workspace_id() -> str:
    return uuid.uuid4().hex[:10]


@dataclass
class ReconcileResult:
    to_add: List[Workspace] = field(default_factory=list)
    to_remove: List[Workspace] = field(default_factory=list)
    unchanged: List[Workspace] = field(default_factory=list)
    # set when the worktree listing failed and nothing was compared
    failed: bool = False

    @property
    def workspaces(self) -> List[Workspace]:
        """The authoritative list after applying this result."""
        return [*self.unchanged, *self.to_add]

    @property
    def changed(self) -> bool:
        return bool(self.to_add or self.to_remove)


class WorkspaceReconciler:
    """Three-way diff between known workspaces and live git worktrees.

    Worktrees are matched to workspaces by symlink-resolved path. The main
    checkout, bare entries and prunable entries (folder deleted behind git's
    back) never count as live. New workspaces take their agent type from the
    metadata store when it has an entry for the exact path, otherwise from
    ``default_agent``.
    """

    def __init__(
        self,
        repository: GitRepository,
        metadata: WorkspaceMetadataStore,
        default_agent: AgentType = AgentType.CLAUDE,
        *,
        id_factory: Callable[[], str] = new_workspace_id,
    ) -> None:
        self.repository = repository
        self.metadata = metadata
        self.default_agent = AgentType(default_agent)
        self._id_factory = id_factory

    def live_worktrees(self) -> List[GitWorktree]:
        worktrees = self.repository.list_worktrees()
        # git always lists the main working tree first
        return [
            worktree
            for worktree in worktrees[1:]
            if not worktree.bare and not worktree.prunable and worktree.exists_on_disk()
        ]

    def reconcile(self, workspaces: Iterable[Workspace]) -> ReconcileResult:
        known = list(workspaces)
        try:
            live = self.live_worktrees()
        except GitCommandError as exc:
            logger.warning("Worktree listing failed, keeping current workspaces: %s", exc)
            metrics.record_reconcile("failed")
            return ReconcileResult(unchanged=known, failed=True)
        result = self.diff(live, known)
        metrics.record_reconcile("changed" if result.changed else "unchanged")
        if result.changed:
            logger.info(
                "Reconciled workspaces: %d added, %d removed, %d unchanged",
                len(result.to_add),
                len(result.to_remove),
                len(result.unchanged),
            )
        return result

    def diff(self, worktrees: Iterable[GitWorktree], workspaces: Iterable[Workspace]) -> ReconcileResult:
        live: dict[str, GitWorktree] = {}
        for worktree in worktrees:
            live.setdefault(worktree.resolved_path, worktree)

        result = ReconcileResult()
        seen: set[str] = set()
        for workspace in workspaces:
            path = workspace.resolved_path
            if path in seen:
                logger.warning("Dropping duplicate workspace %s for %s", workspace.id, path)
                continue
            seen.add(path)
            if path in live:
                result.unchanged.append(workspace)
            else:
                result.to_remove.append(workspace)

        added = [worktree for path, worktree in live.items() if path not in seen]
        if added:
            entries = self.metadata.all()
            result.to_add = [self.to_workspace(worktree, entries) for worktree in added]
        return result

    def to_workspace(
        self,
        worktree: GitWorktree,
        entries: Optional[Mapping[str, WorkspaceMetadata]] = None,
    ) -> Workspace:
        path = worktree.resolved_path
        branch = worktree.branch_name
        if worktree.branch:
            name = branch.rsplit("/", 1)[-1]
        else:
            name = path.rstrip("/").rsplit("/", 1)[-1]
        metadata = entries.get(path) if entries is not None else self.metadata.get(path)
        agent_type = metadata.agent_type if metadata is not None else self.default_agent
        now = utc_now()
        return Workspace(
            id=self._id_factory(),
            name=name,
            path=path,
            branch=branch,
            agent_type=agent_type,
            created_at=now,
            last_active_at=now,
        )

    def apply(self, result: ReconcileResult, store: WorkspaceStore) -> List[Workspace]:
        """Persist the reconciled list; a failed pass leaves the store untouched."""
        if result.failed or not result.changed:
            return result.workspaces
        workspaces = result.workspaces
        store.replace_all(workspaces)
        return workspaces


__all__ = ["ReconcileResult", "WorkspaceReconciler", "new_workspace_id"]
