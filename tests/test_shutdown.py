import asyncio
import io
import os
import signal
import subprocess
import time

import pytest

from equipe.errors import ShutdownTimeoutError
from equipe.processes.registry import ProcessRegistry
from equipe.processes.shutdown import SIGNAL_EXIT_CODES
from equipe.processes.shutdown import ShutdownCoordinator


class ExitRecorder:
    def __init__(self) -> None:
        self.codes: list[int] = []

    def __call__(self, code: int) -> None:
        self.codes.append(code)


def _coordinator(registry: ProcessRegistry, cleanup=None, timeout: float = 5.0):
    exits = ExitRecorder()
    coordinator = ShutdownCoordinator(
        registry,
        cleanup,
        timeout=timeout,
        exit_func=exits,
        stdin=io.StringIO(),
    )
    return coordinator, exits


def test_exit_codes_follow_posix_convention() -> None:
    assert SIGNAL_EXIT_CODES == {
        signal.SIGINT: 130,
        signal.SIGTERM: 143,
        signal.SIGHUP: 129,
        signal.SIGQUIT: 131,
    }


def test_shutdown_runs_once_in_order(registry: ProcessRegistry) -> None:
    calls: list[str] = []
    proc = subprocess.Popen(["sleep", "30"])
    registry.register(proc.pid, "sleep")
    coordinator, exits = _coordinator(registry, cleanup=lambda: calls.append("cleanup"))

    coordinator.shutdown("SIGTERM", 143)
    coordinator.shutdown("SIGINT", 130)

    assert calls == ["cleanup"]
    assert exits.codes == [143]
    assert coordinator.reason == "SIGTERM"
    assert registry.count == 0
    assert proc.wait(timeout=5) == -signal.SIGTERM


def test_async_cleanup_is_awaited(registry: ProcessRegistry) -> None:
    calls: list[str] = []

    async def cleanup() -> None:
        calls.append("async")

    coordinator, exits = _coordinator(registry, cleanup=cleanup)
    coordinator.shutdown("test", 0)

    assert calls == ["async"]
    assert exits.codes == [0]


def test_cleanup_failure_still_exits_and_sweeps(registry: ProcessRegistry) -> None:
    def broken() -> None:
        raise RuntimeError("boom")

    coordinator, exits = _coordinator(registry, cleanup=broken)

    coordinator.shutdown("SIGTERM", 143)

    assert exits.codes == [1]
    assert registry.cleaned_up


def test_watchdog_forces_exit(registry: ProcessRegistry) -> None:
    coordinator, exits = _coordinator(registry, cleanup=lambda: time.sleep(0.5), timeout=0.05)

    coordinator.shutdown("SIGTERM", 143)

    assert exits.codes == [1]
    assert isinstance(coordinator.timeout_error, ShutdownTimeoutError)


def test_signal_handler_triggers_shutdown(registry: ProcessRegistry) -> None:
    coordinator, exits = _coordinator(registry)
    coordinator.install()
    try:
        os.kill(os.getpid(), signal.SIGHUP)
        for _ in range(100):
            if exits.codes:
                break
            time.sleep(0.01)
    finally:
        coordinator.uninstall()

    assert exits.codes == [129]
    assert coordinator.reason == "SIGHUP"


def test_uncaught_exception_hook(registry: ProcessRegistry) -> None:
    coordinator, exits = _coordinator(registry)
    error = ValueError("unexpected")

    coordinator._handle_exception(ValueError, error, None)

    assert exits.codes == [1]
    assert coordinator.reason == "uncaughtException"


@pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGQUIT])
def test_handle_signal_maps_exit_code(registry: ProcessRegistry, signum: int) -> None:
    coordinator, exits = _coordinator(registry)
    coordinator._handle_signal(signum, None)
    assert exits.codes == [SIGNAL_EXIT_CODES[signum]]


def test_async_cleanup_inside_running_loop(registry: ProcessRegistry) -> None:
    calls: list[str] = []

    async def cleanup() -> None:
        await asyncio.sleep(0)
        calls.append("async")

    coordinator, exits = _coordinator(registry, cleanup=cleanup)

    async def app() -> None:
        coordinator.shutdown("SIGTERM", 143)

    asyncio.run(app())

    assert calls == ["async"]
    assert exits.codes == [143]


def test_loop_exception_handler_triggers_shutdown(registry: ProcessRegistry) -> None:
    calls: list[str] = []

    async def cleanup() -> None:
        calls.append("async")

    coordinator, exits = _coordinator(registry, cleanup=cleanup)

    async def app() -> None:
        loop = asyncio.get_running_loop()
        coordinator.install_loop_handler(loop)
        loop.call_exception_handler({"message": "Task exception was never retrieved", "exception": RuntimeError("lost")})

    asyncio.run(app())

    assert calls == ["async"]
    assert exits.codes == [1]
    assert coordinator.reason == "unhandledRejection"
