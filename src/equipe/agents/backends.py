"""Durable per-workspace terminal sessions (direct pty or tmux)."""
from __future__ import annotations

import logging
import os
import re
import select
import shlex
import shutil
import signal
import subprocess
import sys
import termios
import tty
from dataclasses import dataclass
from typing import BinaryIO
from typing import Callable
from typing import Optional
from typing import TextIO

import psutil

from ..errors import EquipeError
from ..errors import SessionNotFoundError
from ..errors import SpawnFailureError
from ..processes.pty import BufferedSessionProcess
from ..processes.pty import DataEvent
from ..processes.pty import SessionEvent
from ..processes.registry import ProcessRegistry
from ..processes.registry import collect_tree
from ..processes.registry import is_live
from ..processes.registry import signal_processes
from ..processes.registry import terminate_tree
from ..tmux import TmuxAdapter


logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "equipe-"
CLEAR_SCREEN = "\x1b[2J\x1b[H"
DETACH_KEY = b"\x1d"  # Ctrl-]

_CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_CONTROL_RE = re.compile(r"[\x00-\x09\x0b-\x1f]")


def strip_control_sequences(text: str) -> str:
    """Drop cursor movement, OSC sequences and every control byte except newline."""
    text = _CSI_RE.sub("", text)
    text = _OSC_RE.sub("", text)
    return _CONTROL_RE.sub("", text)


def session_name(workspace_id: str, prefix: str = DEFAULT_PREFIX) -> str:
    safe = workspace_id.replace(".", "-").replace(":", "-").replace("/", "-")
    return f"{prefix}{safe}"


@dataclass(frozen=True)
class SessionHandle:
    session_name: str
    pid: int | None = None


class SessionBackend:
    """Operations every session implementation provides."""

    kind = "abstract"
    # whether sessions outlive this process
    durable = False

    def __init__(self, prefix: str = DEFAULT_PREFIX) -> None:
        self.prefix = prefix

    def session_name(self, workspace_id: str) -> str:
        return session_name(workspace_id, self.prefix)

    def exists(self, workspace_id: str) -> bool:
        raise NotImplementedError

    def create(self, workspace_id: str, cwd: str, command: str) -> SessionHandle:
        raise NotImplementedError

    def destroy(self, workspace_id: str) -> None:
        raise NotImplementedError

    def send_input(self, workspace_id: str, text: str) -> None:
        raise NotImplementedError

    def capture_output(self, workspace_id: str, max_lines: int = 50) -> str:
        raise NotImplementedError

    def resize(self, workspace_id: str, cols: int, rows: int) -> None:
        raise NotImplementedError

    def attach_interactive(self, workspace_id: str) -> None:
        raise NotImplementedError

    def signal(self, workspace_id: str, sig: int) -> None:
        """Send `sig` to the agent processes of the session."""
        raise NotImplementedError

    def is_alive(self, workspace_id: str) -> bool:
        """Whether the agent processes of the session are still running."""
        raise NotImplementedError

    def exit_status(self, workspace_id: str) -> Optional[tuple[Optional[int], Optional[int]]]:
        """(exit_code, signal) of an agent that exited, when the backend can observe it."""
        return None

    def sessions(self) -> list[str]:
        """Workspace ids that currently own a live session."""
        raise NotImplementedError


Spawner = Callable[..., BufferedSessionProcess]


class PtySessionBackend(SessionBackend):
    """Runs the agent directly on a pseudo-terminal owned by this process."""

    kind = "pty"

    def __init__(
        self,
        registry: ProcessRegistry,
        *,
        prefix: str = DEFAULT_PREFIX,
        cols: int = 80,
        rows: int = 24,
        spawner: Spawner | None = None,
    ) -> None:
        super().__init__(prefix)
        self._registry = registry
        self._cols = cols
        self._rows = rows
        self._spawner = spawner or BufferedSessionProcess.spawn
        self._processes: dict[str, BufferedSessionProcess] = {}

    def process(self, workspace_id: str) -> BufferedSessionProcess | None:
        return self._processes.get(workspace_id)

    def exists(self, workspace_id: str) -> bool:
        proc = self._processes.get(workspace_id)
        if proc is None:
            return False
        proc.pump()
        return not proc.has_exited

    def create(self, workspace_id: str, cwd: str, command: str) -> SessionHandle:
        if workspace_id in self._processes:
            self.destroy(workspace_id)
        argv = shlex.split(command)
        if not argv:
            raise SpawnFailureError("empty agent command", command=command, workspace_id=workspace_id)
        try:
            proc = self._spawner(
                argv[0],
                argv[1:],
                registry=self._registry,
                cwd=cwd,
                cols=self._cols,
                rows=self._rows,
            )
        except SpawnFailureError as exc:
            raise SpawnFailureError(exc.message, command=command, workspace_id=workspace_id) from exc
        self._processes[workspace_id] = proc
        logger.info("Spawned %s for workspace %s (PID %d)", argv[0], workspace_id, proc.pid)
        return SessionHandle(session_name=self.session_name(workspace_id), pid=proc.pid)

    def destroy(self, workspace_id: str) -> None:
        proc = self._processes.pop(workspace_id, None)
        if proc is None:
            return
        if not proc.has_exited:
            try:
                terminate_tree(proc.pid, signal.SIGKILL)
            except (psutil.Error, OSError) as exc:
                logger.debug("SIGKILL of PID %d failed: %s", proc.pid, exc)
        proc.close()

    def send_input(self, workspace_id: str, text: str) -> None:
        proc = self._require(workspace_id)
        proc.write(text)

    def drain_events(self, workspace_id: str) -> list[SessionEvent]:
        proc = self._processes.get(workspace_id)
        if proc is None:
            return []
        proc.pump()
        return proc.drain_events()

    def capture_output(self, workspace_id: str, max_lines: int = 50) -> str:
        proc = self._processes.get(workspace_id)
        if proc is None:
            return ""
        proc.pump()
        lines = strip_control_sequences(proc.text.replace("\r\n", "\n")).split("\n")
        return "\n".join(lines[-max_lines:])

    def resize(self, workspace_id: str, cols: int, rows: int) -> None:
        proc = self._processes.get(workspace_id)
        if proc is not None:
            proc.resize(cols, rows)

    def attach_interactive(
        self,
        workspace_id: str,
        *,
        stdin_fd: int | None = None,
        stdout: BinaryIO | None = None,
    ) -> None:
        """Forward keystrokes to the agent until it exits or Ctrl-] is pressed."""
        proc = self._require(workspace_id)
        in_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        out = stdout or sys.stdout.buffer
        saved = termios.tcgetattr(in_fd) if os.isatty(in_fd) else None
        try:
            if saved is not None:
                tty.setraw(in_fd)
                cols, rows = shutil.get_terminal_size((self._cols, self._rows))
                proc.resize(cols, rows)
            out.write(CLEAR_SCREEN.encode())
            out.write(proc.output)
            out.flush()
            proc.drain_events()
            while True:
                proc.pump()
                for event in proc.drain_events():
                    if isinstance(event, DataEvent):
                        out.write(event.data)
                out.flush()
                if proc.has_exited:
                    break
                ready, _, _ = select.select([in_fd], [], [], 0.05)
                if not ready:
                    continue
                data = os.read(in_fd, 1024)
                if not data:
                    break
                if DETACH_KEY in data:
                    head = data.split(DETACH_KEY, 1)[0]
                    if head:
                        proc.write(head)
                    break
                proc.write(data)
        finally:
            if saved is not None:
                termios.tcsetattr(in_fd, termios.TCSADRAIN, saved)
            out.write(CLEAR_SCREEN.encode())
            out.flush()

    def signal(self, workspace_id: str, sig: int) -> None:
        proc = self._require(workspace_id)
        try:
            terminate_tree(proc.pid, sig)
        except psutil.NoSuchProcess:
            proc.pump()
        except (psutil.Error, OSError) as exc:
            logger.warning("Signalling process tree %d failed (%s), signalling child only", proc.pid, exc)
            proc.kill(sig)

    def is_alive(self, workspace_id: str) -> bool:
        return self.exists(workspace_id)

    def exit_status(self, workspace_id: str) -> Optional[tuple[Optional[int], Optional[int]]]:
        proc = self._processes.get(workspace_id)
        if proc is None or not proc.has_exited:
            return None
        return proc.exit_code, proc.exit_signal

    def sessions(self) -> list[str]:
        return [workspace_id for workspace_id in list(self._processes) if self.exists(workspace_id)]

    def _require(self, workspace_id: str) -> BufferedSessionProcess:
        if not self.exists(workspace_id):
            raise SessionNotFoundError("no live session", workspace_id=workspace_id)
        return self._processes[workspace_id]


class TmuxSessionBackend(SessionBackend):
    """Runs the agent inside a detached tmux session that outlives this process."""

    kind = "tmux"
    durable = True

    def __init__(
        self,
        adapter: TmuxAdapter,
        *,
        prefix: str = DEFAULT_PREFIX,
        stdout: TextIO | None = None,
    ) -> None:
        super().__init__(prefix)
        self._adapter = adapter
        self._stdout = stdout
        self._signalled: dict[str, list[psutil.Process]] = {}

    @property
    def adapter(self) -> TmuxAdapter:
        return self._adapter

    def exists(self, workspace_id: str) -> bool:
        return self._adapter.session_exists(self.session_name(workspace_id))

    def create(self, workspace_id: str, cwd: str, command: str) -> SessionHandle:
        name = self.session_name(workspace_id)
        if self._adapter.session_exists(name):
            logger.warning("Replacing stale tmux session %s", name)
            self.destroy(workspace_id)
        self._signalled.pop(workspace_id, None)
        try:
            self._adapter.new_session(name, start_directory=cwd)
        except subprocess.CalledProcessError as exc:
            raise SpawnFailureError(
                f"failed to create tmux session {name}: {(exc.stderr or '').strip() or exc}",
                command=exc.cmd,
                workspace_id=workspace_id,
            ) from exc
        try:
            self._adapter.send_keys(name, command, enter=True)
        except subprocess.CalledProcessError as exc:
            self.destroy(workspace_id)
            raise SpawnFailureError(
                f"failed to start agent in {name}: {(exc.stderr or '').strip() or exc}",
                command=command,
                workspace_id=workspace_id,
            ) from exc
        pids = self._pane_pids(name)
        return SessionHandle(session_name=name, pid=pids[0] if pids else None)

    def destroy(self, workspace_id: str) -> None:
        name = self.session_name(workspace_id)
        self._signalled.pop(workspace_id, None)
        if not self._adapter.session_exists(name):
            return
        try:
            self._adapter.kill_session(name)
        except subprocess.CalledProcessError as exc:
            # the session may have exited between the check and the kill
            logger.debug("kill-session %s failed: %s", name, (exc.stderr or "").strip())

    def send_input(self, workspace_id: str, text: str) -> None:
        name = self._require(workspace_id)
        try:
            self._adapter.send_keys(name, text, enter=False)
        except subprocess.CalledProcessError as exc:
            raise EquipeError(
                f"send-keys failed: {(exc.stderr or '').strip() or exc}",
                command=exc.cmd,
                workspace_id=workspace_id,
            ) from exc

    def capture_output(self, workspace_id: str, max_lines: int = 50) -> str:
        name = self.session_name(workspace_id)
        if not self._adapter.session_exists(name):
            return ""
        try:
            capture = self._adapter.capture_pane(name, max_lines)
        except subprocess.CalledProcessError as exc:
            logger.debug("capture-pane %s failed: %s", name, (exc.stderr or "").strip())
            return ""
        return strip_control_sequences(capture.content)

    def resize(self, workspace_id: str, cols: int, rows: int) -> None:
        name = self.session_name(workspace_id)
        if not self._adapter.session_exists(name):
            return
        try:
            self._adapter.resize_window(name, cols, rows)
        except subprocess.CalledProcessError as exc:
            logger.debug("resize-window %s failed: %s", name, (exc.stderr or "").strip())

    def attach_interactive(self, workspace_id: str) -> None:
        """Block until the user detaches; the terminal must be redrawn afterwards."""
        name = self._require(workspace_id)
        cols, rows = shutil.get_terminal_size((80, 24))
        self.resize(workspace_id, cols, rows)
        self._clear_screen()
        try:
            self._adapter.attach_session(name)
        finally:
            self._clear_screen()

    def signal(self, workspace_id: str, sig: int) -> None:
        name = self._require(workspace_id)
        procs = self._agent_processes(name)
        tracked = self._signalled.setdefault(workspace_id, [])
        known = {proc.pid for proc in tracked}
        tracked.extend(proc for proc in procs if proc.pid not in known)
        sent = signal_processes(procs, sig)
        logger.debug("Sent signal %d to %d process(es) in %s", sig, sent, name)

    def is_alive(self, workspace_id: str) -> bool:
        if not self.exists(workspace_id):
            return False
        tracked = self._signalled.get(workspace_id)
        if tracked is None:
            return True
        return any(is_live(proc) for proc in tracked)

    def sessions(self) -> list[str]:
        return [
            name[len(self.prefix):]
            for name in self._adapter.list_sessions()
            if name.startswith(self.prefix) and len(name) > len(self.prefix)
        ]

    # Internals --------------------------------------------------------
    def _require(self, workspace_id: str) -> str:
        name = self.session_name(workspace_id)
        if not self._adapter.session_exists(name):
            raise SessionNotFoundError(f"no tmux session {name}", workspace_id=workspace_id)
        return name

    def _pane_pids(self, name: str) -> list[int]:
        try:
            return self._adapter.pane_pids(name)
        except subprocess.CalledProcessError:
            return []

    def _agent_processes(self, name: str) -> list[psutil.Process]:
        """Descendants of each pane shell, or the shell itself when it has none."""
        procs: list[psutil.Process] = []
        for pid in self._pane_pids(name):
            try:
                tree = collect_tree(pid)
            except psutil.NoSuchProcess:
                continue
            procs.extend(tree[1:] or tree[:1])
        return procs

    def _clear_screen(self) -> None:
        out = self._stdout or sys.stdout
        out.write(CLEAR_SCREEN)
        out.flush()


__all__ = [
    "PtySessionBackend",
    "SessionBackend",
    "SessionHandle",
    "TmuxSessionBackend",
    "session_name",
    "strip_control_sequences",
]
