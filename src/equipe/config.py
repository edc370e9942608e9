"""Configuration loading for equipe."""
from __future__ import annotations

import os
import textwrap
from pathlib import Path
from typing import Any
from typing import Literal

import yaml
from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError
from pydantic import model_validator

from .workspace.models import AgentType


CONFIG_ENV = "EQUIPE_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/equipe/config.yaml")


class TmuxSettings(BaseModel):
    """tmux interaction options."""

    bin: str = "tmux"
    socket: str | None = None
    prefix: str = "equipe-"


class PollingSettings(BaseModel):
    """Status polling cadence for focused and background views."""

    focused_ms: int = 1000
    background_ms: int = 5000


class EquipeConfig(BaseModel):
    """Top-level configuration."""

    default_agent: AgentType = Field(default=AgentType.CLAUDE, alias="defaultAgent")
    ide_command: str = Field(default="code", alias="ideCommand")
    backend: Literal["tmux", "pty"] = "tmux"
    agent_commands: dict[str, str] = Field(
        default_factory=lambda: {agent.value: agent.value for agent in AgentType}
    )
    state_dir: Path = Path("~/.equipe/state")
    stop_timeout_s: float = 5.0
    stop_poll_interval_ms: int = 100
    shutdown_timeout_s: float = 5.0
    terminal_cols: int = 80
    terminal_rows: int = 24
    log_level: str = "INFO"
    metrics_port: int | None = None
    tmux: TmuxSettings = Field(default_factory=TmuxSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _fill_agent_commands(self) -> "EquipeConfig":
        for agent in AgentType:
            self.agent_commands.setdefault(agent.value, agent.value)
        return self

    def command_for(self, agent_type: AgentType | str) -> str:
        key = agent_type.value if isinstance(agent_type, AgentType) else str(agent_type)
        return self.agent_commands.get(key) or key

    def expanded_state_dir(self) -> Path:
        return self.state_dir.expanduser()

    @property
    def stop_poll_interval_s(self) -> float:
        return max(self.stop_poll_interval_ms, 10) / 1000.0


def default_config_path() -> Path:
    override = os.getenv(CONFIG_ENV)
    return Path(override).expanduser() if override else DEFAULT_CONFIG_PATH.expanduser()


def load_yaml(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


def load_config(path: Path | None = None) -> EquipeConfig:
    config_path = path or default_config_path()
    if not config_path.exists():
        return EquipeConfig()
    try:
        raw = load_yaml(config_path)
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid config at {config_path}: {exc}") from exc
    try:
        return EquipeConfig.model_validate(raw or {})
    except ValidationError as exc:
        raise ValueError(f"Invalid config at {config_path}: {exc}") from exc


def write_default_config(path: Path | None = None) -> Path:
    config_path = path or default_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    if not config_path.exists():
        payload = textwrap.dedent(
            """
            # Agent used for workspaces that have no explicit choice.
            default_agent: claude
            ide_command: code
            # tmux keeps sessions alive after equipe exits; pty ties them to the process.
            backend: tmux
            agent_commands:
              claude: claude
              opencode: opencode
            state_dir: ~/.equipe/state
            stop_timeout_s: 5.0
            log_level: INFO

            tmux:
              bin: tmux
              prefix: equipe-

            polling:
              focused_ms: 1000
              background_ms: 5000
            """
        ).strip()
        config_path.write_text(payload + "\n", encoding="utf-8")
    return config_path
