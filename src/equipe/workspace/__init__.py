"""Workspaces backed by git worktrees."""

from .models import AgentType
from .models import GitWorktree
from .models import Workspace
from .models import WorkspaceMetadata

__all__ = ["AgentType", "GitWorktree", "Workspace", "WorkspaceMetadata"]
