"""Graceful shutdown wiring for signals and uncaught errors."""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
import signal
import sys
import termios
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Optional
from typing import TextIO
from typing import Union

from ..errors import ShutdownTimeoutError
from .registry import ProcessRegistry


logger = logging.getLogger(__name__)

CleanupCallback = Callable[[], Union[None, Awaitable[None]]]

# 128 + signal number
SIGNAL_EXIT_CODES: dict[int, int] = {
    signal.SIGINT: 130,
    signal.SIGTERM: 143,
    signal.SIGHUP: 129,
    signal.SIGQUIT: 131,
}


def _hard_exit(code: int) -> None:
    logging.shutdown()
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(code)


class ShutdownCoordinator:
    """Funnels every termination path into one single-shot shutdown routine.

    The sequence is: caller cleanup, ProcessRegistry sweep, terminal mode
    restore, exit. A watchdog forces exit with status 1 if the first three
    steps take longer than ``timeout`` seconds.
    """

    def __init__(
        self,
        registry: ProcessRegistry,
        cleanup: CleanupCallback | None = None,
        *,
        timeout: float = 5.0,
        exit_func: Callable[[int], Any] = _hard_exit,
        stdin: TextIO | None = None,
    ) -> None:
        self.registry = registry
        self.cleanup = cleanup
        self.timeout = timeout
        self._exit_func = exit_func
        self._stdin = stdin if stdin is not None else sys.stdin
        self._shutdown_started = False
        self._exited = False
        self._exit_lock = threading.Lock()
        self._saved_tty: Optional[list[Any]] = None
        self._previous_handlers: dict[int, Any] = {}
        self._previous_hooks: Optional[tuple[Any, Any]] = None
        self.reason: str | None = None
        self.exit_code: int | None = None
        self.timeout_error: ShutdownTimeoutError | None = None

    # Installation -----------------------------------------------------
    def install(self) -> None:
        """Register signal handlers and excepthooks. Call before spawning anything."""
        self._save_terminal_mode()
        for sig in SIGNAL_EXIT_CODES:
            self._previous_handlers[sig] = signal.signal(sig, self._handle_signal)
        self._previous_hooks = (sys.excepthook, threading.excepthook)
        sys.excepthook = self._handle_exception
        threading.excepthook = self._handle_thread_exception

    def install_loop_handler(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route unhandled errors from an asyncio loop into shutdown."""
        loop.set_exception_handler(self._handle_loop_exception)

    def uninstall(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()
        if self._previous_hooks is not None:
            sys.excepthook, threading.excepthook = self._previous_hooks
            self._previous_hooks = None

    # Handlers ---------------------------------------------------------
    def _handle_signal(self, signum: int, _frame: Any) -> None:
        name = signal.Signals(signum).name
        self.shutdown(name, SIGNAL_EXIT_CODES.get(signum, 1))

    def _handle_exception(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        logger.error("Uncaught exception", exc_info=(exc_type, exc, tb))
        self.shutdown("uncaughtException", 1)

    def _handle_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        logger.error(
            "Uncaught exception in thread %s",
            getattr(args.thread, "name", "?"),
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        self.shutdown("uncaughtException", 1)

    def _handle_loop_exception(self, _loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        logger.error("Unhandled rejection: %s", context.get("exception") or context.get("message"))
        self.shutdown("unhandledRejection", 1)

    # Shutdown ---------------------------------------------------------
    def shutdown(self, reason: str, exit_code: int = 0) -> None:
        if self._shutdown_started:
            return
        self._shutdown_started = True
        self.reason = reason
        logger.info("Shutting down (%s)", reason)

        watchdog = threading.Timer(self.timeout, self._on_timeout)
        watchdog.daemon = True
        watchdog.start()
        steps: list[tuple[str, Callable[[], Any]]] = [
            ("cleanup callback", lambda: self._run_cleanup(self.cleanup)),
            ("process cleanup", self.registry.cleanup),
            ("terminal restore", self._restore_terminal_mode),
        ]
        try:
            for name, step in steps:
                try:
                    step()
                except Exception:
                    logger.exception("Shutdown step failed: %s", name)
                    exit_code = 1
        finally:
            watchdog.cancel()
        self._exit(exit_code)

    def _on_timeout(self) -> None:
        self.timeout_error = ShutdownTimeoutError(
            f"cleanup did not finish within {self.timeout:.1f}s, forcing exit"
        )
        logger.error("%s", self.timeout_error)
        self._exit(1)

    def _exit(self, code: int) -> None:
        with self._exit_lock:
            if self._exited:
                return
            self._exited = True
            self.exit_code = code
        self._exit_func(code)

    @staticmethod
    def _run_cleanup(callback: CleanupCallback | None) -> None:
        if callback is None:
            return
        result = callback()
        if not inspect.isawaitable(result):
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(_await(result))
            return
        # the running loop is blocked in this call, so drive the cleanup on its own loop
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="equipe-shutdown") as pool:
            pool.submit(asyncio.run, _await(result)).result()

    # Terminal mode ----------------------------------------------------
    def _save_terminal_mode(self) -> None:
        try:
            if self._stdin.isatty():
                self._saved_tty = termios.tcgetattr(self._stdin.fileno())
        except (OSError, ValueError, termios.error) as exc:
            logger.debug("Terminal mode not saved: %s", exc)

    def _restore_terminal_mode(self) -> None:
        if self._saved_tty is None:
            return
        try:
            termios.tcsetattr(self._stdin.fileno(), termios.TCSADRAIN, self._saved_tty)
        except (OSError, ValueError, termios.error) as exc:
            logger.debug("Terminal mode not restored: %s", exc)


async def _await(awaitable: Awaitable[None]) -> None:
    await awaitable


__all__ = ["ShutdownCoordinator", "SIGNAL_EXIT_CODES"]
