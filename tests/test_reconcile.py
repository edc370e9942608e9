import shutil
from pathlib import Path

import pytest

from equipe.errors import GitCommandError
from equipe.state import JsonStorage
from equipe.state import WorkspaceMetadataStore
from equipe.state import WorkspaceStore
from equipe.workspace.git import GitRepository
from equipe.workspace.git import worktree_path_for
from equipe.workspace.models import AgentType
from equipe.workspace.models import GitWorktree
from equipe.workspace.models import Workspace
from equipe.workspace.reconcile import WorkspaceReconciler


@pytest.fixture()
def metadata(tmp_path: Path) -> WorkspaceMetadataStore:
    return WorkspaceMetadataStore(JsonStorage(tmp_path / "state" / "workspace-metadata.json"))


def _workspace(path: str, workspace_id: str = "w") -> Workspace:
    return Workspace(id=workspace_id, name=Path(path).name, path=path, branch=Path(path).name)


def _worktree(path: str, branch: str | None = None) -> GitWorktree:
    return GitWorktree(path=path, head="abc", branch=f"refs/heads/{branch}" if branch else None)


class BrokenRepository:
    def list_worktrees(self):
        raise GitCommandError("failed to list worktrees: not a git repository")


def test_diff_partitions_paths(metadata: WorkspaceMetadataStore, tmp_path: Path) -> None:
    reconciler = WorkspaceReconciler(None, metadata)
    paths = {name: str(tmp_path / name) for name in ("a", "b", "c", "d")}
    worktrees = [_worktree(paths["a"], "a"), _worktree(paths["b"], "feature/b"), _worktree(paths["b"], "feature/b")]
    workspaces = [_workspace(paths["b"], "wb"), _workspace(paths["c"], "wc"), _workspace(paths["d"], "wd")]

    result = reconciler.diff(worktrees, workspaces)

    added = [workspace.path for workspace in result.to_add]
    removed = [workspace.path for workspace in result.to_remove]
    unchanged = [workspace.path for workspace in result.unchanged]
    assert added == [paths["a"]]
    assert sorted(removed) == [paths["c"], paths["d"]]
    assert unchanged == [paths["b"]]
    every = added + removed + unchanged
    assert sorted(every) == sorted(paths.values())
    assert len(every) == len(set(every))


def test_diff_matches_symlinked_paths(metadata: WorkspaceMetadataStore, tmp_path: Path) -> None:
    real = tmp_path / "real"
    real.mkdir()
    link = tmp_path / "link"
    link.symlink_to(real)
    reconciler = WorkspaceReconciler(None, metadata)

    result = reconciler.diff([_worktree(str(real), "x")], [_workspace(str(link))])

    assert result.to_add == [] and result.to_remove == []
    assert len(result.unchanged) == 1


def test_new_workspace_fields(metadata: WorkspaceMetadataStore, tmp_path: Path) -> None:
    reconciler = WorkspaceReconciler(None, metadata, AgentType.CLAUDE, id_factory=lambda: "fixed")

    workspace = reconciler.to_workspace(_worktree(str(tmp_path / "repo-feature-x"), "feature/x"))

    assert workspace.id == "fixed"
    assert workspace.branch == "feature/x"
    assert workspace.name == "x"
    assert workspace.agent_type == AgentType.CLAUDE

    detached = reconciler.to_workspace(_worktree(str(tmp_path / "repo-detached")))
    assert detached.branch == "detached"
    assert detached.name == "repo-detached"


def test_metadata_survives_reconciliation(metadata: WorkspaceMetadataStore, tmp_path: Path) -> None:
    path = str(tmp_path / "repo-feature-x")
    metadata.set(path, "opencode")
    reconciler = WorkspaceReconciler(None, metadata, AgentType.CLAUDE)

    for _ in range(2):
        result = reconciler.diff([_worktree(path, "feature/x")], [])
        assert result.to_add[0].agent_type == AgentType.OPENCODE


def test_listing_failure_is_fail_open(metadata: WorkspaceMetadataStore, tmp_path: Path) -> None:
    reconciler = WorkspaceReconciler(BrokenRepository(), metadata)
    known = [_workspace(str(tmp_path / "a"), "wa")]

    result = reconciler.reconcile(known)

    assert result.failed
    assert result.to_add == [] and result.to_remove == []
    assert result.unchanged == known


def test_orphaned_workspace_is_removed_once(git_repo: Path, metadata: WorkspaceMetadataStore, tmp_path: Path) -> None:
    repo = GitRepository(git_repo)
    store = WorkspaceStore(JsonStorage(tmp_path / "state" / "workspaces.json"), str(git_repo))
    reconciler = WorkspaceReconciler(repo, metadata)
    keep = repo.add_worktree(worktree_path_for(repo.repo_root, "keep"), "keep")
    gone = repo.add_worktree(worktree_path_for(repo.repo_root, "gone"), "gone")

    first = reconciler.reconcile(store.list())
    assert sorted(workspace.branch for workspace in first.to_add) == ["gone", "keep"]
    reconciler.apply(first, store)

    # folder deleted behind the app's back
    shutil.rmtree(gone)
    second = reconciler.reconcile(store.list())
    assert [workspace.path for workspace in second.to_remove] == [gone]
    assert [workspace.path for workspace in second.unchanged] == [keep]
    reconciler.apply(second, store)

    third = reconciler.reconcile(store.list())
    assert third.to_remove == []
    assert third.to_add == []
    assert [workspace.path for workspace in store.list()] == [keep]


class CountingStorage(JsonStorage):
    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self.loads = 0

    def load(self):
        self.loads += 1
        return super().load()


def test_diff_reads_metadata_once(tmp_path: Path) -> None:
    storage = CountingStorage(tmp_path / "state" / "workspace-metadata.json")
    store = WorkspaceMetadataStore(storage)
    paths = [str(tmp_path / f"repo-{idx}") for idx in range(3)]
    store.set(paths[1], "opencode")
    storage.loads = 0
    reconciler = WorkspaceReconciler(None, store, AgentType.CLAUDE)

    result = reconciler.diff([_worktree(path, f"feature/{idx}") for idx, path in enumerate(paths)], [])

    assert storage.loads == 1
    assert [workspace.agent_type for workspace in result.to_add] == [
        AgentType.CLAUDE,
        AgentType.OPENCODE,
        AgentType.CLAUDE,
    ]

    assert reconciler.diff([], []).to_add == []
    assert storage.loads == 1
