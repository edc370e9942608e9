"""Pseudo-terminal process wrapper that never loses output racing the exit."""
from __future__ import annotations

import logging
import os
import signal
from collections import deque
from dataclasses import dataclass
from typing import Iterable
from typing import Mapping
from typing import Optional
from typing import Protocol
from typing import Union

import pexpect

from ..errors import SpawnFailureError
from .registry import ProcessRegistry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataEvent:
    data: bytes


@dataclass(frozen=True)
class ExitEvent:
    exit_code: Optional[int]
    signal: Optional[int] = None


SessionEvent = Union[DataEvent, ExitEvent]


class PtyHandle(Protocol):
    """Minimal pseudo-terminal surface BufferedSessionProcess relies on."""

    pid: int

    def read(self, size: int) -> Optional[bytes]:
        """Return available bytes, b"" when nothing is ready, None at EOF."""

    def write(self, data: bytes) -> None: ...

    def setwinsize(self, rows: int, cols: int) -> None: ...

    def kill(self, sig: int) -> None: ...

    def poll(self) -> Optional[tuple[Optional[int], Optional[int]]]:
        """(exit_code, signal) once the child is gone, None while it runs."""

    def close(self) -> None: ...


class PexpectHandle:
    """PtyHandle backed by pexpect.spawn."""

    def __init__(self, child: pexpect.spawn) -> None:
        self._child = child
        self.pid = child.pid

    @classmethod
    def spawn(
        cls,
        command: str,
        args: Iterable[str] = (),
        *,
        cwd: str | None = None,
        cols: int = 80,
        rows: int = 24,
        env: Mapping[str, str] | None = None,
    ) -> "PexpectHandle":
        spawn_env = dict(os.environ if env is None else env)
        spawn_env.setdefault("TERM", "xterm-256color")
        argv = list(args)
        try:
            child = pexpect.spawn(
                command,
                argv,
                cwd=cwd,
                env=spawn_env,
                dimensions=(rows, cols),
                echo=False,
            )
        except (pexpect.ExceptionPexpect, OSError) as exc:
            raise SpawnFailureError(
                f"failed to spawn {command}: {exc}",
                command=[command, *argv],
            ) from exc
        return cls(child)

    def read(self, size: int) -> Optional[bytes]:
        try:
            return self._child.read_nonblocking(size=size, timeout=0)
        except pexpect.TIMEOUT:
            return b""
        except pexpect.EOF:
            return None

    def write(self, data: bytes) -> None:
        self._child.send(data)

    def setwinsize(self, rows: int, cols: int) -> None:
        self._child.setwinsize(rows, cols)

    def kill(self, sig: int) -> None:
        self._child.kill(sig)

    def poll(self) -> Optional[tuple[Optional[int], Optional[int]]]:
        if self._child.isalive():
            return None
        return self._child.exitstatus, self._child.signalstatus

    def close(self) -> None:
        self._child.close(force=True)


class FakePtyHandle:
    """Testing double that replays scripted output and exit."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self._pending: deque[Optional[bytes]] = deque()
        self._exit: Optional[tuple[Optional[int], Optional[int]]] = None
        self.written: list[bytes] = []
        self.sizes: list[tuple[int, int]] = []
        self.signals: list[int] = []
        self.closed = False

    def feed(self, data: bytes) -> None:
        self._pending.append(data)

    def finish(self, exit_code: Optional[int] = 0, sig: Optional[int] = None) -> None:
        self._exit = (exit_code, sig)
        self._pending.append(None)

    def read(self, size: int) -> Optional[bytes]:
        if not self._pending:
            return b""
        item = self._pending.popleft()
        if item is None:
            return None
        if len(item) > size:
            self._pending.appendleft(item[size:])
            item = item[:size]
        return item

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def setwinsize(self, rows: int, cols: int) -> None:
        self.sizes.append((cols, rows))

    def kill(self, sig: int) -> None:
        self.signals.append(sig)
        if sig in (signal.SIGTERM, signal.SIGKILL) and self._exit is None:
            self.finish(None, sig)

    def poll(self) -> Optional[tuple[Optional[int], Optional[int]]]:
        return self._exit

    def close(self) -> None:
        self.closed = True
        if self._exit is None:
            self._exit = (None, signal.SIGKILL)


class BufferedSessionProcess:
    """One agent process attached to a pseudo-terminal.

    Every chunk read from the terminal is kept in an internal buffer and queued
    as a DataEvent straight away. The pty layer can hand over a last chunk
    after the child has already been reaped; such chunks are still buffered and
    queued after the ExitEvent, so concatenating every DataEvent in queue order
    always reproduces the complete output. ``write`` and ``resize`` are ignored
    once the exit has been observed.

    The PID is registered with the ProcessRegistry on construction and
    unregistered when the exit is observed.
    """

    READ_SIZE = 4096

    def __init__(
        self,
        handle: PtyHandle,
        registry: ProcessRegistry,
        *,
        description: str = "pty",
    ) -> None:
        self._handle = handle
        self._registry = registry
        self._buffer: list[bytes] = []
        self._events: deque[SessionEvent] = deque()
        self._exit_received = False
        self._exit_code: Optional[int] = None
        self._exit_signal: Optional[int] = None
        self.description = description
        registry.register(handle.pid, description)

    @classmethod
    def spawn(
        cls,
        command: str,
        args: Iterable[str] = (),
        *,
        registry: ProcessRegistry,
        cwd: str | None = None,
        cols: int = 80,
        rows: int = 24,
        env: Mapping[str, str] | None = None,
    ) -> "BufferedSessionProcess":
        argv = list(args)
        handle = PexpectHandle.spawn(command, argv, cwd=cwd, cols=cols, rows=rows, env=env)
        return cls(handle, registry, description=f"PTY: {' '.join([command, *argv])}")

    # Properties -------------------------------------------------------
    @property
    def pid(self) -> int:
        return self._handle.pid

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    @property
    def exit_signal(self) -> Optional[int]:
        return self._exit_signal

    @property
    def has_exited(self) -> bool:
        return self._exit_received

    @property
    def output(self) -> bytes:
        return b"".join(self._buffer)

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")

    # Event channel ----------------------------------------------------
    def pump(self, max_reads: int = 64) -> int:
        """Move whatever the terminal has produced into the event channel."""
        reads = 0
        while reads < max_reads:
            chunk = self._handle.read(self.READ_SIZE)
            if chunk is None:
                break
            if not chunk:
                break
            reads += 1
            self._on_data(chunk)
        if not self._exit_received:
            status = self._handle.poll()
            if status is not None:
                self._on_exit(*status)
        return reads

    def drain_events(self) -> list[SessionEvent]:
        events = list(self._events)
        self._events.clear()
        return events

    # Control ----------------------------------------------------------
    def write(self, data: bytes | str) -> None:
        if self._exit_received:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._handle.write(data)

    def resize(self, cols: int, rows: int) -> None:
        if self._exit_received:
            return
        self._handle.setwinsize(rows, cols)

    def kill(self, sig: int = signal.SIGTERM) -> None:
        if self._exit_received:
            return
        self._handle.kill(sig)

    def close(self) -> None:
        """Release the terminal, killing the child if it is still running."""
        self.pump()
        self._handle.close()
        if not self._exit_received:
            status = self._handle.poll() or (None, signal.SIGKILL)
            self._on_exit(*status)

    # Internals --------------------------------------------------------
    def _on_data(self, chunk: bytes) -> None:
        if self._exit_received:
            logger.debug("Data received after exit for PID %d", self.pid)
        self._buffer.append(chunk)
        self._events.append(DataEvent(chunk))

    def _on_exit(self, exit_code: Optional[int], sig: Optional[int]) -> None:
        if self._exit_received:
            return
        self._exit_received = True
        self._exit_code = exit_code
        self._exit_signal = sig
        self._registry.unregister(self.pid)
        self._events.append(ExitEvent(exit_code, sig))


__all__ = [
    "BufferedSessionProcess",
    "DataEvent",
    "ExitEvent",
    "FakePtyHandle",
    "PexpectHandle",
    "PtyHandle",
    "SessionEvent",
]
