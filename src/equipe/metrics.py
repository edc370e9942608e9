"""Prometheus metrics helpers for equipe components."""
from __future__ import annotations

from prometheus_client import Counter
from prometheus_client import Gauge
from prometheus_client import start_http_server as _start_http_server

AGENT_STARTS_TOTAL = Counter(
    "equipe_agent_starts_total",
    "Agent start attempts grouped by agent type and result",
    labelnames=("agent_type", "result"),
)
AGENT_STOPS_TOTAL = Counter(
    "equipe_agent_stops_total",
    "Agent stops grouped by whether SIGKILL was needed",
    labelnames=("forced",),
)
RUNNING_AGENTS = Gauge(
    "equipe_running_agents",
    "Agents currently believed to be running",
)
RECONCILE_RUNS_TOTAL = Counter(
    "equipe_reconcile_runs_total",
    "Workspace reconciliation passes grouped by result",
    labelnames=("result",),
)
TRACKED_PROCESSES = Gauge(
    "equipe_tracked_processes",
    "Processes currently registered for shutdown cleanup",
)
CLEANUP_KILLS_TOTAL = Counter(
    "equipe_cleanup_kills_total",
    "Process trees signalled by the shutdown sweep",
)


def record_agent_start(agent_type: str, result: str) -> None:
    AGENT_STARTS_TOTAL.labels(agent_type=agent_type, result=result).inc()


def record_agent_stop(forced: bool) -> None:
    AGENT_STOPS_TOTAL.labels(forced="yes" if forced else "no").inc()


def set_running_agents(count: int) -> None:
    RUNNING_AGENTS.set(max(count, 0))


def record_reconcile(result: str) -> None:
    RECONCILE_RUNS_TOTAL.labels(result=result).inc()


def set_tracked_processes(count: int) -> None:
    TRACKED_PROCESSES.set(max(count, 0))


def record_cleanup_kill() -> None:
    CLEANUP_KILLS_TOTAL.inc()


def start_server(port: int, host: str = "127.0.0.1") -> None:
    """Start the Prometheus exporter."""

    _start_http_server(port, addr=host)
