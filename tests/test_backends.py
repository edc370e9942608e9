import io
import signal
import subprocess
from pathlib import Path

import pytest

from equipe.agents.backends import CLEAR_SCREEN
from equipe.agents.backends import PtySessionBackend
from equipe.agents.backends import TmuxSessionBackend
from equipe.agents.backends import session_name
from equipe.agents.backends import strip_control_sequences
from equipe.errors import SessionNotFoundError
from equipe.errors import SpawnFailureError
from equipe.processes.pty import BufferedSessionProcess
from equipe.processes.pty import DataEvent
from equipe.processes.pty import ExitEvent
from equipe.processes.pty import FakePtyHandle
from equipe.processes.registry import ProcessRegistry
from equipe.tmux import FakeTmuxAdapter


def test_strip_control_sequences() -> None:
    raw = "\x1b[1;32mgreen\x1b[0m\x1b]0;title\x07 done\r\n\x07next\tline"
    assert strip_control_sequences(raw) == "green done\nnextline"


def test_strip_private_and_tilde_csi_sequences() -> None:
    raw = "\x1b[>4;1mkeys\x1b[2~\x1b[3@ok\x1b[<0;1;1M"
    assert strip_control_sequences(raw) == "keysok"


def test_session_name_is_prefixed_and_safe() -> None:
    assert session_name("ab12") == "equipe-ab12"
    assert session_name("a.b:c", prefix="x-") == "x-a-b-c"


# tmux backend -------------------------------------------------------------
def test_tmux_create_injects_command(adapter: FakeTmuxAdapter, tmp_path: Path) -> None:
    backend = TmuxSessionBackend(adapter)

    handle = backend.create("ws1", str(tmp_path), "claude --resume")

    assert handle.session_name == "equipe-ws1"
    assert backend.exists("ws1")
    assert adapter.start_directory("equipe-ws1") == str(tmp_path)
    assert adapter.buffer("equipe-ws1") == "claude --resume\n"


def test_tmux_capture_strips_escape_codes(adapter: FakeTmuxAdapter, tmp_path: Path) -> None:
    backend = TmuxSessionBackend(adapter)
    backend.create("ws1", str(tmp_path), "claude")
    adapter.append_output("equipe-ws1", "\x1b[31mError\x1b[0m: boom\nline2\nline3")

    assert backend.capture_output("ws1", 2) == "line2\nline3"
    assert "Error: boom" in backend.capture_output("ws1", 50)
    assert backend.capture_output("missing") == ""


def test_tmux_send_and_destroy(adapter: FakeTmuxAdapter, tmp_path: Path) -> None:
    backend = TmuxSessionBackend(adapter)
    backend.create("ws1", str(tmp_path), "claude")

    backend.send_input("ws1", "yes")
    assert adapter.buffer("equipe-ws1").endswith("yes")

    backend.destroy("ws1")
    backend.destroy("ws1")
    assert not backend.exists("ws1")
    with pytest.raises(SessionNotFoundError):
        backend.send_input("ws1", "again")


def test_tmux_create_failure_is_spawn_failure(adapter: FakeTmuxAdapter, tmp_path: Path) -> None:
    adapter.fail_new_session = "equipe-ws1"
    backend = TmuxSessionBackend(adapter)

    with pytest.raises(SpawnFailureError) as excinfo:
        backend.create("ws1", str(tmp_path), "claude")

    assert excinfo.value.workspace_id == "ws1"
    assert "new-session" in excinfo.value.command


def test_tmux_create_replaces_stale_session(adapter: FakeTmuxAdapter, tmp_path: Path) -> None:
    backend = TmuxSessionBackend(adapter)
    backend.create("ws1", str(tmp_path), "old")
    backend.create("ws1", str(tmp_path), "new")

    assert adapter.buffer("equipe-ws1") == "new\n"


def test_tmux_sessions_lists_prefixed_only(adapter: FakeTmuxAdapter) -> None:
    adapter.new_session("equipe-ws1")
    adapter.new_session("equipe-ws2")
    adapter.new_session("personal")

    assert TmuxSessionBackend(adapter).sessions() == ["ws1", "ws2"]


def test_tmux_signal_targets_pane_processes(adapter: FakeTmuxAdapter, tmp_path: Path) -> None:
    backend = TmuxSessionBackend(adapter)
    backend.create("ws1", str(tmp_path), "sleep 30")
    agent = subprocess.Popen(["sleep", "30"])
    try:
        adapter.set_pane_pids("equipe-ws1", [agent.pid])
        assert backend.is_alive("ws1")

        backend.signal("ws1", signal.SIGTERM)
        agent.wait(timeout=5)

        assert not backend.is_alive("ws1")
        assert backend.exists("ws1")
    finally:
        if agent.poll() is None:
            agent.kill()


def test_tmux_attach_resizes_and_clears(adapter: FakeTmuxAdapter, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("COLUMNS", "132")
    monkeypatch.setenv("LINES", "43")
    out = io.StringIO()
    backend = TmuxSessionBackend(adapter, stdout=out)
    backend.create("ws1", str(tmp_path), "claude")

    backend.attach_interactive("ws1")

    assert adapter.attached == ["equipe-ws1"]
    assert adapter.sizes["equipe-ws1"] == (132, 43)
    assert out.getvalue() == CLEAR_SCREEN * 2
    with pytest.raises(SessionNotFoundError):
        backend.attach_interactive("other")


# pty backend --------------------------------------------------------------
class _Spawner:
    def __init__(self) -> None:
        self.handles: list[FakePtyHandle] = []
        self.calls: list[tuple] = []

    def __call__(self, command, args, *, registry, cwd=None, cols=80, rows=24):
        self.calls.append((command, list(args), cwd, cols, rows))
        handle = FakePtyHandle(pid=5000 + len(self.handles))
        self.handles.append(handle)
        return BufferedSessionProcess(handle, registry)


def test_pty_backend_lifecycle(registry: ProcessRegistry, tmp_path: Path) -> None:
    spawner = _Spawner()
    backend = PtySessionBackend(registry, cols=100, rows=30, spawner=spawner)

    handle = backend.create("ws1", str(tmp_path), "claude --model 'big one'")

    assert spawner.calls == [("claude", ["--model", "big one"], str(tmp_path), 100, 30)]
    assert handle.pid == 5000
    assert registry.has(5000)
    assert backend.exists("ws1")
    assert backend.sessions() == ["ws1"]

    spawner.handles[0].feed(b"\x1b[2Jhello\r\nworld")
    assert backend.capture_output("ws1") == "hello\nworld"
    backend.send_input("ws1", "hi\n")
    assert spawner.handles[0].written == [b"hi\n"]

    spawner.handles[0].finish(1)
    assert not backend.exists("ws1")
    assert backend.exit_status("ws1") == (1, None)
    events = backend.drain_events("ws1")
    assert isinstance(events[-1], ExitEvent)
    assert [event.data for event in events if isinstance(event, DataEvent)] == [b"\x1b[2Jhello\r\nworld"]

    backend.destroy("ws1")
    assert backend.exit_status("ws1") is None
    assert registry.count == 0


def test_pty_backend_rejects_empty_command(registry: ProcessRegistry, tmp_path: Path) -> None:
    backend = PtySessionBackend(registry, spawner=_Spawner())
    with pytest.raises(SpawnFailureError):
        backend.create("ws1", str(tmp_path), "   ")


def test_pty_backend_missing_binary(registry: ProcessRegistry, tmp_path: Path) -> None:
    backend = PtySessionBackend(registry)

    with pytest.raises(SpawnFailureError) as excinfo:
        backend.create("ws1", str(tmp_path), "definitely-not-a-real-agent-binary")

    assert excinfo.value.workspace_id == "ws1"
    assert not backend.exists("ws1")
    assert registry.count == 0
