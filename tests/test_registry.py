import signal
import subprocess
import time

import psutil
import pytest

from equipe.processes import registry as registry_module
from equipe.processes.registry import ProcessRegistry
from equipe.processes.registry import collect_tree
from equipe.processes.registry import is_live


def _sleeper() -> subprocess.Popen:
    return subprocess.Popen(["sleep", "30"])


def test_register_and_unregister(registry: ProcessRegistry) -> None:
    registry.register(1234, "demo")
    assert registry.has(1234)
    assert registry.count == 1

    registry.unregister(1234)
    registry.unregister(1234)
    assert not registry.has(1234)
    assert registry.count == 0


def test_cleanup_terminates_process(registry: ProcessRegistry) -> None:
    proc = _sleeper()
    registry.register(proc.pid, "sleep")

    registry.cleanup()

    assert proc.wait(timeout=5) == -signal.SIGTERM
    assert registry.count == 0
    assert registry.cleaned_up


def test_cleanup_kills_whole_tree(registry: ProcessRegistry) -> None:
    parent = subprocess.Popen(["sh", "-c", "sleep 30 & wait"])
    try:
        for _ in range(50):
            children = psutil.Process(parent.pid).children(recursive=True)
            if children:
                break
            time.sleep(0.05)
        assert children
        registry.register(parent.pid, "shell")

        registry.cleanup()

        gone, alive = psutil.wait_procs(children, timeout=5)
        assert not alive
        parent.wait(timeout=5)
    finally:
        if parent.poll() is None:
            parent.kill()


def test_cleanup_is_single_shot(registry: ProcessRegistry, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[int] = []
    monkeypatch.setattr(registry_module, "terminate_tree", lambda pid, sig: calls.append(pid))
    registry.register(111, "a")
    registry.register(222, "b")

    registry.cleanup()
    registry.register(333, "late")
    registry.cleanup()

    assert calls == [111, 222]


def test_cleanup_falls_back_to_sigkill(registry: ProcessRegistry, monkeypatch: pytest.MonkeyPatch) -> None:
    def boom(pid: int, sig: int) -> None:
        raise psutil.AccessDenied(pid)

    killed: list[tuple[int, int]] = []
    monkeypatch.setattr(registry_module, "terminate_tree", boom)
    monkeypatch.setattr(registry_module.os, "kill", lambda pid, sig: killed.append((pid, sig)))
    registry.register(4321, "stubborn")

    registry.cleanup()

    assert killed == [(4321, signal.SIGKILL)]
    assert registry.count == 0


def test_cleanup_tolerates_dead_pid(registry: ProcessRegistry) -> None:
    proc = subprocess.Popen(["true"])
    proc.wait(timeout=5)
    registry.register(proc.pid, "already gone")

    registry.cleanup()

    assert registry.count == 0


def test_collect_tree_and_liveness() -> None:
    proc = _sleeper()
    try:
        tree = collect_tree(proc.pid)
        assert tree[0].pid == proc.pid
        assert is_live(tree[0])
    finally:
        proc.kill()
        proc.wait(timeout=5)
    assert not is_live(tree[0])
