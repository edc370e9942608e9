"""Persistent JSON state for workspaces and their metadata."""
from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import ValidationError

from .workspace.models import AgentType
from .workspace.models import Workspace
from .workspace.models import WorkspaceMetadata
from .workspace.models import resolve_path


logger = logging.getLogger(__name__)

WORKSPACES_FILE = "workspaces.json"
METADATA_FILE = "workspace-metadata.json"


class JsonStorage:
    """One JSON document on disk, replaced atomically on every save."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Ignoring unreadable state file %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.error("Ignoring state file %s: expected an object", self.path)
            return {}
        return data

    def save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.stem}_", suffix=".tmp", text=True)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(temp_path)
            raise


class WorkspaceStore:
    """Workspaces the app knows about, grouped by repository root."""

    def __init__(self, storage: JsonStorage, repo_root: str) -> None:
        self.storage = storage
        self.repo_root = resolve_path(repo_root)

    def list(self) -> List[Workspace]:
        raw = self.storage.load().get(self.repo_root, [])
        workspaces: list[Workspace] = []
        for entry in raw:
            try:
                workspaces.append(Workspace.model_validate(entry))
            except ValidationError as exc:
                logger.warning("Skipping invalid workspace record in %s: %s", self.storage.path, exc)
        return workspaces

    def get(self, workspace_id: str) -> Optional[Workspace]:
        for workspace in self.list():
            if workspace.id == workspace_id:
                return workspace
        return None

    def replace_all(self, workspaces: List[Workspace]) -> None:
        data = self.storage.load()
        data[self.repo_root] = [workspace.model_dump(mode="json", by_alias=True) for workspace in workspaces]
        self.storage.save(data)

    def upsert(self, workspace: Workspace) -> None:
        workspaces = [item for item in self.list() if item.id != workspace.id]
        workspaces.append(workspace)
        self.replace_all(workspaces)

    def remove(self, workspace_id: str) -> bool:
        workspaces = self.list()
        kept = [item for item in workspaces if item.id != workspace_id]
        if len(kept) == len(workspaces):
            return False
        self.replace_all(kept)
        return True


class WorkspaceMetadataStore:
    """Sparse map of resolved worktree path -> {agentType}."""

    def __init__(self, storage: JsonStorage) -> None:
        self.storage = storage

    def all(self) -> Dict[str, WorkspaceMetadata]:
        entries: dict[str, WorkspaceMetadata] = {}
        for path, raw in self.storage.load().items():
            try:
                entries[path] = WorkspaceMetadata.model_validate(raw)
            except ValidationError:
                logger.warning("Skipping invalid metadata for %s", path)
        return entries

    def get(self, path: str) -> Optional[WorkspaceMetadata]:
        return self.all().get(resolve_path(path))

    def set(self, path: str, agent_type: AgentType | str) -> None:
        data = self.storage.load()
        data[resolve_path(path)] = WorkspaceMetadata(agent_type=AgentType(agent_type)).model_dump(
            mode="json", by_alias=True
        )
        self.storage.save(data)

    def delete(self, path: str) -> bool:
        data = self.storage.load()
        if data.pop(resolve_path(path), None) is None:
            return False
        self.storage.save(data)
        return True


def open_stores(state_dir: Path, repo_root: str) -> tuple[WorkspaceStore, WorkspaceMetadataStore]:
    state_dir = Path(state_dir).expanduser()
    return (
        WorkspaceStore(JsonStorage(state_dir / WORKSPACES_FILE), repo_root),
        WorkspaceMetadataStore(JsonStorage(state_dir / METADATA_FILE)),
    )


__all__ = [
    "JsonStorage",
    "WorkspaceMetadataStore",
    "WorkspaceStore",
    "open_stores",
]
