"""Workspace data model."""
from __future__ import annotations

import os
from datetime import datetime
from datetime import timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel
from pydantic import Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_path(path: str | os.PathLike[str]) -> str:
    """Symlink-resolved absolute path used as workspace identity."""
    return os.path.realpath(os.path.expanduser(str(path)))


class AgentType(str, Enum):
    CLAUDE = "claude"
    OPENCODE = "opencode"


class Workspace(BaseModel):
    """An isolated git worktree the app runs an agent in."""

    id: str
    name: str
    path: str = Field(alias="absolutePath")
    branch: str = Field(alias="branchName")
    agent_type: AgentType = Field(default=AgentType.CLAUDE, alias="agentType")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    last_active_at: datetime = Field(default_factory=utc_now, alias="lastActiveAt")

    model_config = {"populate_by_name": True}

    @property
    def resolved_path(self) -> str:
        return resolve_path(self.path)


class WorkspaceMetadata(BaseModel):
    """Out-of-band per-path data that must survive reconciliation."""

    agent_type: AgentType = Field(alias="agentType")

    model_config = {"populate_by_name": True}


class GitWorktree(BaseModel):
    """Read-only view of one `git worktree list --porcelain` entry."""

    path: str
    head: str = ""
    branch: Optional[str] = None
    bare: bool = False
    detached: bool = False
    locked: bool = False
    prunable: bool = False

    model_config = {"frozen": True}

    @property
    def resolved_path(self) -> str:
        return resolve_path(self.path)

    @property
    def branch_name(self) -> str:
        """Branch without its `refs/heads/` namespace, or `detached`."""
        if not self.branch:
            return "detached"
        prefix = "refs/heads/"
        return self.branch[len(prefix):] if self.branch.startswith(prefix) else self.branch

    def exists_on_disk(self) -> bool:
        return Path(self.path).exists()


__all__ = [
    "AgentType",
    "Workspace",
    "WorkspaceMetadata",
    "GitWorktree",
    "resolve_path",
    "utc_now",
]
