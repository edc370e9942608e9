"""Error taxonomy shared by the session and workspace layers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from typing import Optional
from typing import Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .agents.controller import AgentInstance


class EquipeError(Exception):
    """Base error carrying the command and workspace that produced it."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] | str | None = None,
        workspace_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if command is not None and not isinstance(command, str):
            command = " ".join(str(part) for part in command)
        self.command = command
        self.workspace_id = workspace_id

    def __str__(self) -> str:
        parts = [self.message]
        if self.workspace_id:
            parts.append(f"workspace={self.workspace_id}")
        if self.command:
            parts.append(f"command={self.command!r}")
        if len(parts) == 1:
            return self.message
        return f"{parts[0]} ({', '.join(parts[1:])})"


class SessionNotFoundError(EquipeError):
    """No live session exists for the workspace."""


class AlreadyRunningError(EquipeError):
    """An agent is already running in the workspace."""


class SpawnFailureError(EquipeError):
    """The agent command could not be executed."""


class WorktreeConflictError(EquipeError):
    """The branch already exists or is checked out in another worktree."""


class UncommittedChangesError(EquipeError):
    """Worktree removal was refused because the tree is dirty."""


class ShutdownTimeoutError(EquipeError):
    """Shutdown cleanup exceeded its deadline."""


class OperationInProgressError(EquipeError):
    """Another lifecycle operation for the workspace has not finished yet."""


class GitCommandError(EquipeError):
    """A git invocation failed for a reason without a dedicated error type."""

    def __init__(self, message: str, *, stderr: str = "", returncode: int | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.stderr = stderr
        self.returncode = returncode


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a controller operation: an instance snapshot or an error."""

    instance: Optional["AgentInstance"] = None
    error: EquipeError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> "AgentInstance | None":
        if self.error is not None:
            raise self.error
        return self.instance


__all__ = [
    "EquipeError",
    "SessionNotFoundError",
    "AlreadyRunningError",
    "SpawnFailureError",
    "WorktreeConflictError",
    "UncommittedChangesError",
    "ShutdownTimeoutError",
    "OperationInProgressError",
    "GitCommandError",
    "OperationResult",
]
