"""Registry of spawned processes, torn down as whole trees on shutdown."""
from __future__ import annotations

import logging
import os
import signal

import psutil

from .. import metrics


logger = logging.getLogger(__name__)


def collect_tree(pid: int) -> list[psutil.Process]:
    """Return the process and all of its descendants, deepest last.

    Raises psutil.NoSuchProcess when the root is gone.
    """
    root = psutil.Process(pid)
    try:
        children = root.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    return [root, *children]


def is_live(proc: psutil.Process) -> bool:
    """True while the process exists and is not a zombie awaiting reaping."""
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def signal_processes(procs: list[psutil.Process], sig: int) -> int:
    """Send `sig` to every process still alive; returns how many were signalled."""
    sent = 0
    # descendants first so a dying parent cannot respawn them
    for proc in reversed(procs):
        try:
            proc.send_signal(sig)
            sent += 1
        except psutil.NoSuchProcess:
            continue
    return sent


def terminate_tree(pid: int, sig: int = signal.SIGTERM) -> None:
    """Signal a process tree. Raises when the root cannot be signalled."""
    procs = collect_tree(pid)
    signal_processes(procs[1:], sig)
    procs[0].send_signal(sig)


class ProcessRegistry:
    """Tracks PIDs this application must terminate before it exits."""

    def __init__(self) -> None:
        self._processes: dict[int, str] = {}
        self._cleanup_in_progress = False

    def register(self, pid: int, description: str = "unknown") -> None:
        self._processes[pid] = description
        metrics.set_tracked_processes(len(self._processes))
        logger.info("Registered PID %d (%s)", pid, description)

    def unregister(self, pid: int) -> None:
        description = self._processes.pop(pid, None)
        if description is not None:
            metrics.set_tracked_processes(len(self._processes))
            logger.info("Unregistered PID %d (%s)", pid, description)

    def has(self, pid: int) -> bool:
        return pid in self._processes

    @property
    def count(self) -> int:
        return len(self._processes)

    @property
    def cleaned_up(self) -> bool:
        return self._cleanup_in_progress

    def cleanup(self) -> None:
        """Kill every tracked process tree. Only the first call does anything."""
        if self._cleanup_in_progress:
            logger.info("Cleanup already in progress, skipping")
            return
        self._cleanup_in_progress = True

        if not self._processes:
            logger.info("No processes to clean up")
            return

        logger.info("Cleaning up %d process(es)", len(self._processes))
        for pid, description in list(self._processes.items()):
            logger.info("Terminating PID %d (%s)", pid, description)
            try:
                terminate_tree(pid, signal.SIGTERM)
            except (psutil.Error, OSError) as exc:
                logger.error("SIGTERM failed for %d: %s", pid, exc)
                try:
                    os.kill(pid, signal.SIGKILL)
                    logger.info("SIGKILL sent to %d", pid)
                except ProcessLookupError:
                    logger.info("Process %d already dead", pid)
                except OSError as kill_exc:
                    logger.error("SIGKILL failed for %d: %s", pid, kill_exc)
            else:
                logger.info("Terminated PID %d", pid)
            metrics.record_cleanup_kill()

        self._processes.clear()
        metrics.set_tracked_processes(0)
        logger.info("Cleanup complete")
