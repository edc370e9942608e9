"""Git worktree and branch helpers."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Iterable
from typing import List
from typing import Optional

from ..errors import GitCommandError
from ..errors import UncommittedChangesError
from ..errors import WorktreeConflictError
from .models import GitWorktree
from .models import resolve_path


logger = logging.getLogger(__name__)

PREFERRED_DEFAULT_BRANCHES = ("main", "master", "preprod", "develop", "trunk")

_CONFLICT_MARKERS = ("already exists", "is already checked out", "already used by worktree")


def parse_worktree_porcelain(output: str) -> List[GitWorktree]:
    """Parse `git worktree list --porcelain` output into GitWorktree entries."""
    worktrees: list[GitWorktree] = []
    for block in output.strip().split("\n\n"):
        if not block.strip():
            continue
        fields: dict = {}
        for line in block.splitlines():
            line = line.rstrip("\r")
            if line.startswith("worktree "):
                fields["path"] = line[len("worktree "):]
            elif line.startswith("HEAD "):
                fields["head"] = line[len("HEAD "):]
            elif line.startswith("branch "):
                fields["branch"] = line[len("branch "):]
            elif line == "bare":
                fields["bare"] = True
            elif line == "detached":
                fields["detached"] = True
            elif line.startswith("locked"):
                fields["locked"] = True
            elif line.startswith("prunable"):
                fields["prunable"] = True
        if "path" in fields:
            worktrees.append(GitWorktree(**fields))
    return worktrees


def detect_repo_root(cwd: str | os.PathLike[str] | None = None) -> Optional[str]:
    """Resolved top-level directory of the repository containing `cwd`, or None."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=cwd,
            check=True,
            text=True,
            capture_output=True,
        )
    except (subprocess.CalledProcessError, OSError):
        return None
    root = result.stdout.strip()
    return resolve_path(root) if root else None


def worktree_path_for(repo_root: str | os.PathLike[str], branch: str) -> str:
    """Sibling directory for a branch: /src/repo + feature/x -> /src/repo-feature-x."""
    safe_branch = branch.replace("/", "-")
    return f"{os.fspath(repo_root).rstrip(os.sep)}-{safe_branch}"


class GitRepository:
    """Thin wrapper around the git CLI for one repository."""

    def __init__(self, repo_root: str | os.PathLike[str], git_bin: str = "git") -> None:
        self.repo_root = Path(resolve_path(repo_root))
        self.git_bin = git_bin

    # Worktrees --------------------------------------------------------
    def list_worktrees(self) -> List[GitWorktree]:
        output = self._run_git(["worktree", "list", "--porcelain"], action="list worktrees")
        return parse_worktree_porcelain(output)

    def add_worktree(self, path: str | os.PathLike[str], branch: str, base: str | None = None) -> str:
        """Create `branch` from `base` in a new worktree at `path`; returns the resolved path."""
        base = base or self.detect_default_branch()
        if self.has_remote("origin"):
            try:
                self._run_git(["fetch", "origin"], action="fetch origin")
            except GitCommandError as exc:
                # offline or unreachable remote: fall back to local refs
                logger.warning("git fetch failed: %s", exc.stderr.strip() or exc)
        base_ref = f"origin/{base}" if self._ref_exists(f"refs/remotes/origin/{base}") else base
        target = os.fspath(path)
        try:
            self._run_git(["worktree", "add", "-b", branch, target, base_ref], action="create worktree")
        except GitCommandError as exc:
            stderr = exc.stderr
            if "is already checked out" in stderr or "already used by worktree" in stderr:
                raise WorktreeConflictError(
                    f"branch '{branch}' is already checked out in another worktree",
                    command=exc.command,
                ) from exc
            if any(marker in stderr for marker in _CONFLICT_MARKERS):
                raise WorktreeConflictError(
                    f"branch '{branch}' already exists",
                    command=exc.command,
                ) from exc
            if "invalid reference" in stderr:
                raise GitCommandError(
                    f"base branch '{base_ref}' does not exist",
                    stderr=stderr,
                    returncode=exc.returncode,
                    command=exc.command,
                ) from exc
            raise
        return resolve_path(target)

    def remove_worktree(self, path: str | os.PathLike[str], *, force: bool = False) -> None:
        args = ["worktree", "remove", os.fspath(path)]
        if force:
            args.append("--force")
        try:
            self._run_git(args, action="remove worktree")
        except GitCommandError as exc:
            if "contains modified or untracked files" in exc.stderr:
                raise UncommittedChangesError(
                    f"{os.fspath(path)} contains uncommitted changes; commit or discard them first",
                    command=exc.command,
                ) from exc
            raise

    # Branches ---------------------------------------------------------
    def list_branches(self, remote: bool = False) -> List[str]:
        args = ["branch", "--format=%(refname:short)"]
        if remote:
            args.insert(1, "-r")
        output = self._run_git(args, action="list branches")
        branches = []
        for line in output.splitlines():
            name = line.strip()
            if not name or name.endswith("/HEAD") or name == "origin":
                continue
            branches.append(name)
        return branches

    def branch_exists(self, branch: str) -> bool:
        return self._ref_exists(f"refs/heads/{branch}")

    def delete_branch(self, branch: str, *, force: bool = True) -> None:
        self._run_git(["branch", "-D" if force else "-d", branch], action="delete branch")

    def current_branch(self) -> Optional[str]:
        try:
            name = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], action="read HEAD").strip()
        except GitCommandError:
            return None
        return None if not name or name == "HEAD" else name

    def detect_default_branch(self) -> str:
        """Best guess at the branch new worktrees should start from."""
        try:
            ref = self._run_git(
                ["symbolic-ref", "refs/remotes/origin/HEAD"], action="read origin/HEAD"
            ).strip()
        except GitCommandError:
            ref = ""
        if ref.startswith("refs/remotes/origin/"):
            return ref[len("refs/remotes/origin/"):]

        try:
            remote = [name.split("/", 1)[1] for name in self.list_branches(remote=True) if "/" in name]
        except GitCommandError:
            remote = []
        choice = _prefer(remote)
        if choice:
            return choice

        try:
            local = self.list_branches()
        except GitCommandError:
            local = []
        choice = _prefer(local)
        if choice:
            return choice
        return self.current_branch() or "main"

    # Remotes ----------------------------------------------------------
    def has_remote(self, name: str) -> bool:
        try:
            output = self._run_git(["remote"], action="list remotes")
        except GitCommandError:
            return False
        return name in output.split()

    # Internals --------------------------------------------------------
    def _ref_exists(self, ref: str) -> bool:
        try:
            self._run_git(["show-ref", "--verify", "--quiet", ref], action="check ref")
        except GitCommandError:
            return False
        return True

    def _run_git(self, args: Iterable[str], *, action: str) -> str:
        cmd = [self.git_bin, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.repo_root,
                check=True,
                text=True,
                capture_output=True,
            )
        except subprocess.CalledProcessError as exc:
            stderr = exc.stderr or ""
            raise GitCommandError(
                f"failed to {action}: {stderr.strip() or exc}",
                stderr=stderr,
                returncode=exc.returncode,
                command=cmd,
            ) from exc
        except OSError as exc:
            raise GitCommandError(f"failed to {action}: {exc}", command=cmd) from exc
        return result.stdout


def _prefer(branches: List[str]) -> Optional[str]:
    for candidate in PREFERRED_DEFAULT_BRANCHES:
        if candidate in branches:
            return candidate
    return branches[0] if branches else None


__all__ = [
    "GitRepository",
    "detect_repo_root",
    "parse_worktree_porcelain",
    "worktree_path_for",
]
