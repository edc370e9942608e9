import signal
import time

from equipe.processes.pty import BufferedSessionProcess
from equipe.processes.pty import DataEvent
from equipe.processes.pty import ExitEvent
from equipe.processes.pty import FakePtyHandle
from equipe.processes.registry import ProcessRegistry


def _joined(events) -> bytes:
    return b"".join(event.data for event in events if isinstance(event, DataEvent))


def test_output_arriving_after_exit_is_kept(registry: ProcessRegistry) -> None:
    handle = FakePtyHandle()
    proc = BufferedSessionProcess(handle, registry)

    handle.feed(b"hello ")
    proc.pump()
    handle.finish(0)
    proc.pump()
    # the pty hands over a final chunk after the exit was reported
    handle.feed(b"world")
    proc.pump()

    events = proc.drain_events()
    assert _joined(events) == b"hello world"
    assert proc.output == b"hello world"
    assert ExitEvent(0, None) in events
    assert proc.has_exited
    assert proc.exit_code == 0


def test_data_is_forwarded_before_exit_in_one_pump(registry: ProcessRegistry) -> None:
    handle = FakePtyHandle()
    proc = BufferedSessionProcess(handle, registry)
    handle.feed(b"a" * 5000)
    handle.feed(b"tail")
    handle.finish(2)

    proc.pump()
    events = proc.drain_events()

    assert isinstance(events[-1], ExitEvent)
    assert _joined(events) == b"a" * 5000 + b"tail"
    assert proc.exit_code == 2


def test_pid_registered_until_exit(registry: ProcessRegistry) -> None:
    handle = FakePtyHandle(pid=9001)
    proc = BufferedSessionProcess(handle, registry, description="agent")
    assert registry.has(9001)

    handle.finish(0)
    proc.pump()
    proc.pump()

    assert not registry.has(9001)
    exits = [event for event in proc.drain_events() if isinstance(event, ExitEvent)]
    assert len(exits) == 1


def test_write_and_resize_ignored_after_exit(registry: ProcessRegistry) -> None:
    handle = FakePtyHandle()
    proc = BufferedSessionProcess(handle, registry)
    proc.write("ls\n")
    proc.resize(120, 40)

    proc.kill(signal.SIGTERM)
    proc.pump()
    proc.write("more")
    proc.resize(10, 10)
    proc.kill(signal.SIGKILL)

    assert handle.written == [b"ls\n"]
    assert handle.sizes == [(120, 40)]
    assert handle.signals == [signal.SIGTERM]
    assert proc.exit_signal == signal.SIGTERM


def test_close_reports_kill(registry: ProcessRegistry) -> None:
    handle = FakePtyHandle()
    proc = BufferedSessionProcess(handle, registry)

    proc.close()

    assert handle.closed
    assert proc.has_exited
    assert proc.exit_signal == signal.SIGKILL
    assert registry.count == 0


def test_real_pty_round_trip(registry: ProcessRegistry) -> None:
    proc = BufferedSessionProcess.spawn("sh", ["-c", "printf 'ready\\n'; exit 3"], registry=registry)
    assert registry.has(proc.pid)

    deadline = time.monotonic() + 10
    while not proc.has_exited and time.monotonic() < deadline:
        proc.pump()
        time.sleep(0.02)
    proc.pump()

    assert proc.has_exited
    assert proc.exit_code == 3
    assert b"ready" in proc.output
    assert not registry.has(proc.pid)
    proc.close()
