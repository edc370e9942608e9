"""Adapter around the tmux CLI for agent sessions."""
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from typing import Sequence


@dataclass
class PaneInfo:
    pane_id: str
    session_name: str
    pid: int | None = None


@dataclass
class CaptureResult:
    target: str
    content: str


class TmuxAdapter:
    """Wrapper around tmux commands."""

    def __init__(self, tmux_bin: str = "tmux", socket: str | None = None) -> None:
        self.tmux_bin = tmux_bin
        self.socket = socket

    def check_available(self) -> None:
        if shutil.which(self.tmux_bin) is None:
            raise RuntimeError(
                "tmux is not installed. Please install it:\n"
                "  macOS: brew install tmux\n"
                "  Ubuntu/Debian: sudo apt install tmux\n"
                "  Fedora: sudo dnf install tmux"
            )

    def _tmux_command(self, args: list[str]) -> list[str]:
        cmd = [self.tmux_bin]
        if self.socket and self.socket != "default":
            cmd += ["-L", self.socket]
        cmd.extend(args)
        return cmd

    def _run(self, args: list[str]) -> subprocess.CompletedProcess:
        return subprocess.run(self._tmux_command(args), check=True, text=True, capture_output=True)

    def list_panes(self, target: str) -> list[PaneInfo]:
        proc = self._run(
            [
                "list-panes",
                "-t",
                target,
                "-F",
                "#{pane_id}\t#{session_name}\t#{pane_pid}",
            ]
        )
        panes: list[PaneInfo] = []
        for line in proc.stdout.strip().splitlines():
            if not line:
                continue
            parts = line.split("\t", 2)
            if len(parts) < 3:
                parts += [""] * (3 - len(parts))
            pane_id, session_name, pane_pid = parts
            panes.append(
                PaneInfo(
                    pane_id=pane_id,
                    session_name=session_name,
                    pid=int(pane_pid) if pane_pid.isdigit() else None,
                )
            )
        return panes

    def pane_pids(self, target: str) -> list[int]:
        return [pane.pid for pane in self.list_panes(target) if pane.pid is not None]

    def capture_pane(self, target: str, capture_lines: int = 50) -> CaptureResult:
        proc = self._run(["capture-pane", "-p", "-t", target, "-S", f"-{capture_lines}"])
        return CaptureResult(target=target, content=proc.stdout)

    def send_keys(self, target: str, keys: str | Sequence[str], enter: bool = True) -> None:
        if isinstance(keys, str):
            chunks = keys.split("\n")
            for idx, chunk in enumerate(chunks):
                if chunk:
                    self._run(["send-keys", "-t", target, "-l", chunk])
                # newline between chunks, final enter only when requested
                is_last_chunk = idx == len(chunks) - 1
                if not is_last_chunk or enter:
                    self._run(["send-keys", "-t", target, "C-m"])
            return

        args = ["send-keys", "-t", target]
        args.extend(keys)
        if enter:
            args.append("C-m")
        self._run(args)

    def resize_window(self, target: str, cols: int, rows: int) -> None:
        self._run(["resize-window", "-t", target, "-x", str(cols), "-y", str(rows)])

    def attach_session(self, session_name: str) -> int:
        """Hand the controlling terminal to tmux until the user detaches."""
        proc = subprocess.run(self._tmux_command(["attach-session", "-t", session_name]), check=False)
        return proc.returncode

    # Session helpers ---------------------------------------------------
    def new_session(self, session_name: str, *, start_directory: str | None = None) -> None:
        args = ["new-session", "-d", "-s", session_name]
        if start_directory:
            args += ["-c", start_directory]
        self._run(args)

    def kill_session(self, session_name: str) -> None:
        self._run(["kill-session", "-t", session_name])

    def session_exists(self, session_name: str) -> bool:
        try:
            self._run(["has-session", "-t", f"={session_name}"])
        except subprocess.CalledProcessError:
            return False
        return True

    def list_sessions(self) -> list[str]:
        try:
            proc = self._run(["list-sessions", "-F", "#{session_name}"])
        except subprocess.CalledProcessError:
            # no server running means no sessions
            return []
        return [line.strip() for line in proc.stdout.splitlines() if line.strip()]


class FakeTmuxAdapter(TmuxAdapter):
    """Testing double that keeps session buffers in memory."""

    def __init__(self) -> None:
        super().__init__(tmux_bin="tmux")
        self._buffers: dict[str, str] = {}
        self._directories: dict[str, str | None] = {}
        self._pids: dict[str, list[int]] = {}
        self.sizes: dict[str, tuple[int, int]] = {}
        self.attached: list[str] = []
        self.fail_new_session: str | None = None

    def check_available(self) -> None:
        return

    def append_output(self, session_name: str, text: str) -> None:
        self._buffers[session_name] = self._buffers.get(session_name, "") + text

    def set_pane_pids(self, session_name: str, pids: list[int]) -> None:
        self._pids[session_name] = list(pids)

    def start_directory(self, session_name: str) -> str | None:
        return self._directories.get(session_name)

    def buffer(self, session_name: str) -> str:
        return self._buffers.get(session_name, "")

    def _require(self, target: str, command: str) -> None:
        if target not in self._buffers:
            raise subprocess.CalledProcessError(
                1,
                ["tmux", command, "-t", target],
                stderr=f"can't find session: {target}",
            )

    def list_panes(self, target: str) -> list[PaneInfo]:
        self._require(target, "list-panes")
        pids = self._pids.get(target) or [None]
        return [
            PaneInfo(pane_id=f"%{idx}", session_name=target, pid=pid)
            for idx, pid in enumerate(pids)
        ]

    def capture_pane(self, target: str, capture_lines: int = 50) -> CaptureResult:
        self._require(target, "capture-pane")
        lines = self._buffers[target].split("\n")
        return CaptureResult(target=target, content="\n".join(lines[-capture_lines:]))

    def send_keys(self, target: str, keys: str | Sequence[str], enter: bool = True) -> None:
        self._require(target, "send-keys")
        if isinstance(keys, str):
            suffix = keys
        else:
            suffix = "|".join(keys)
        suffix += "\n" if enter else ""
        self.append_output(target, suffix)

    def resize_window(self, target: str, cols: int, rows: int) -> None:
        self._require(target, "resize-window")
        self.sizes[target] = (cols, rows)

    def attach_session(self, session_name: str) -> int:
        self._require(session_name, "attach-session")
        self.attached.append(session_name)
        return 0

    # Session helpers ---------------------------------------------------
    def new_session(self, session_name: str, *, start_directory: str | None = None) -> None:
        if session_name == self.fail_new_session:
            raise subprocess.CalledProcessError(
                1,
                ["tmux", "new-session", "-d", "-s", session_name],
                stderr="create session failed",
            )
        if session_name in self._buffers:
            raise subprocess.CalledProcessError(
                1,
                ["tmux", "new-session", "-d", "-s", session_name],
                stderr=f"duplicate session: {session_name}",
            )
        self._buffers[session_name] = ""
        self._directories[session_name] = start_directory

    def kill_session(self, session_name: str) -> None:
        self._require(session_name, "kill-session")
        self._buffers.pop(session_name, None)
        self._directories.pop(session_name, None)
        self._pids.pop(session_name, None)

    def end_session(self, session_name: str) -> None:
        """Simulate the session's shell exiting on its own."""
        self._buffers.pop(session_name, None)
        self._pids.pop(session_name, None)

    def session_exists(self, session_name: str) -> bool:
        return session_name in self._buffers

    def list_sessions(self) -> list[str]:
        return sorted(self._buffers.keys())
