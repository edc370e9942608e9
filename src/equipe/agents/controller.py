"""Per-workspace agent state machine on top of a session backend."""
from __future__ import annotations

import logging
import signal
import time
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Callable
from typing import Iterable
from typing import Iterator
from typing import Optional

from .. import metrics
from ..errors import AlreadyRunningError
from ..errors import EquipeError
from ..errors import OperationInProgressError
from ..errors import OperationResult
from ..errors import SessionNotFoundError
from ..workspace.models import AgentType
from ..workspace.models import Workspace
from ..workspace.models import resolve_path
from ..workspace.models import utc_now
from .backends import SessionBackend
from .ticker import StatusTicker


logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class AgentInstance:
    agent_id: str
    workspace_id: str
    workspace_path: str
    agent_type: AgentType
    session_name: str
    status: AgentStatus = AgentStatus.RUNNING
    started_at: datetime = field(default_factory=utc_now)
    stopped_at: Optional[datetime] = None
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None

    def snapshot(self) -> "AgentInstance":
        return replace(self)


CommandResolver = Callable[[AgentType], str]


class AgentLifecycleController:
    """Starts, stops, restarts and attaches one agent per workspace.

    Public operations return an OperationResult instead of raising, so a
    failure in one workspace surfaces as an error status and message. At most
    one operation per workspace may be in flight; an overlapping call fails
    with OperationInProgressError.
    """

    def __init__(
        self,
        backend: SessionBackend,
        command_for: CommandResolver,
        *,
        ticker: StatusTicker | None = None,
        stop_timeout: float = 5.0,
        poll_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self._command_for = command_for
        self.ticker = ticker or StatusTicker(clock=clock)
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._instances: dict[str, AgentInstance] = {}
        self._in_flight: dict[str, str] = {}

    # Queries ----------------------------------------------------------
    def get(self, workspace_id: str) -> AgentInstance | None:
        instance = self._instances.get(workspace_id)
        return instance.snapshot() if instance else None

    def status(self, workspace_id: str) -> AgentStatus:
        instance = self._instances.get(workspace_id)
        return instance.status if instance else AgentStatus.IDLE

    def instances(self) -> list[AgentInstance]:
        return [instance.snapshot() for instance in self._instances.values()]

    def running_count(self) -> int:
        return sum(1 for instance in self._instances.values() if instance.status == AgentStatus.RUNNING)

    # Operations -------------------------------------------------------
    def start(self, workspace_id: str, path: str, agent_type: AgentType | str) -> OperationResult:
        try:
            with self._operation(workspace_id, "start"):
                return OperationResult(instance=self._start(workspace_id, path, AgentType(agent_type)))
        except EquipeError as exc:
            return OperationResult(instance=self.get(workspace_id), error=exc)

    def stop(self, workspace_id: str) -> OperationResult:
        try:
            with self._operation(workspace_id, "stop"):
                return OperationResult(instance=self._stop(workspace_id))
        except EquipeError as exc:
            return OperationResult(instance=self.get(workspace_id), error=exc)

    def restart(self, workspace_id: str, agent_type: AgentType | str | None = None) -> OperationResult:
        try:
            with self._operation(workspace_id, "restart"):
                instance = self._instances.get(workspace_id)
                if instance is None:
                    raise SessionNotFoundError("no agent to restart", workspace_id=workspace_id)
                path = instance.workspace_path
                chosen = AgentType(agent_type) if agent_type else instance.agent_type
                if instance.status == AgentStatus.RUNNING or self.backend.exists(workspace_id):
                    self._stop(workspace_id)
                return OperationResult(instance=self._start(workspace_id, path, chosen))
        except EquipeError as exc:
            return OperationResult(instance=self.get(workspace_id), error=exc)

    def attach(self, workspace_id: str) -> OperationResult:
        """Hand the terminal to the session; blocks until the user detaches."""
        try:
            with self._operation(workspace_id, "attach"):
                if not self.backend.exists(workspace_id):
                    self._sync(workspace_id)
                    raise SessionNotFoundError("no live session to attach to", workspace_id=workspace_id)
                self.backend.attach_interactive(workspace_id)
                # the agent may have exited while attached
                self._sync(workspace_id)
                return OperationResult(instance=self.get(workspace_id))
        except EquipeError as exc:
            return OperationResult(instance=self.get(workspace_id), error=exc)

    def send_input(self, workspace_id: str, text: str) -> OperationResult:
        try:
            self.backend.send_input(workspace_id, text)
        except EquipeError as exc:
            return OperationResult(instance=self.get(workspace_id), error=exc)
        return OperationResult(instance=self.get(workspace_id))

    def capture_output(self, workspace_id: str, lines: int = 50) -> str:
        return self.backend.capture_output(workspace_id, lines)

    def resize(self, workspace_id: str, cols: int, rows: int) -> None:
        self.backend.resize(workspace_id, cols, rows)

    # Status polling ---------------------------------------------------
    def sync_status(self, workspace_id: str) -> AgentInstance | None:
        """Mark a running instance stopped (or error) once its session is gone."""
        self._sync(workspace_id)
        return self.get(workspace_id)

    def tick(self, force: bool = False) -> list[AgentInstance]:
        """Sync every running instance when the ticker is due; returns the ones that changed."""
        if not force and not self.ticker.due():
            return []
        self.ticker.mark()
        changed: list[AgentInstance] = []
        for workspace_id, instance in list(self._instances.items()):
            if instance.status != AgentStatus.RUNNING or workspace_id in self._in_flight:
                continue
            if self._sync(workspace_id):
                changed.append(instance.snapshot())
        return changed

    def focus(self) -> None:
        self.ticker.focus()

    def blur(self) -> None:
        self.ticker.blur()

    # Adoption ---------------------------------------------------------
    def adopt(self, workspaces: Iterable[Workspace]) -> list[str]:
        """Track live sessions left by a previous run.

        Returns the workspace ids of sessions that belong to no known
        workspace (orphans).
        """
        known = {workspace.id: workspace for workspace in workspaces}
        orphans: list[str] = []
        for workspace_id in self.backend.sessions():
            workspace = known.get(workspace_id)
            if workspace is None:
                orphans.append(workspace_id)
                continue
            current = self._instances.get(workspace_id)
            if current is not None and current.status == AgentStatus.RUNNING:
                continue
            self._instances[workspace_id] = AgentInstance(
                agent_id=self._new_agent_id(workspace_id),
                workspace_id=workspace_id,
                workspace_path=workspace.resolved_path,
                agent_type=workspace.agent_type,
                session_name=self.backend.session_name(workspace_id),
            )
            logger.info("Adopted running session for workspace %s", workspace_id)
        self._update_gauge()
        return orphans

    def prune_orphans(self, workspace_ids: Iterable[str]) -> int:
        pruned = 0
        for workspace_id in workspace_ids:
            if workspace_id in self._instances:
                continue
            self.backend.destroy(workspace_id)
            logger.info("Pruned orphaned session %s", self.backend.session_name(workspace_id))
            pruned += 1
        return pruned

    def forget(self, workspace_id: str) -> None:
        self._instances.pop(workspace_id, None)
        self._update_gauge()

    def close(self) -> None:
        """Tear down sessions that cannot outlive this process."""
        if self.backend.durable:
            return
        for workspace_id, instance in list(self._instances.items()):
            if instance.status == AgentStatus.RUNNING:
                self.backend.destroy(workspace_id)
                instance.status = AgentStatus.STOPPED
                instance.stopped_at = utc_now()
        self._update_gauge()

    # Internals --------------------------------------------------------
    @contextmanager
    def _operation(self, workspace_id: str, name: str) -> Iterator[None]:
        active = self._in_flight.get(workspace_id)
        if active is not None:
            raise OperationInProgressError(
                f"cannot {name} while {active} is in progress",
                workspace_id=workspace_id,
            )
        self._in_flight[workspace_id] = name
        try:
            yield
        finally:
            self._in_flight.pop(workspace_id, None)

    def _new_agent_id(self, workspace_id: str) -> str:
        return f"agent-{workspace_id}-{int(time.time() * 1000)}"

    def _start(self, workspace_id: str, path: str, agent_type: AgentType) -> AgentInstance:
        current = self._instances.get(workspace_id)
        if current is not None and current.status == AgentStatus.RUNNING:
            self._sync(workspace_id)
            if current.status == AgentStatus.RUNNING:
                raise AlreadyRunningError(
                    f"agent {current.agent_id} is already running",
                    workspace_id=workspace_id,
                )

        workspace_path = resolve_path(path)
        command = self._command_for(agent_type)
        instance = AgentInstance(
            agent_id=self._new_agent_id(workspace_id),
            workspace_id=workspace_id,
            workspace_path=workspace_path,
            agent_type=agent_type,
            session_name=self.backend.session_name(workspace_id),
        )
        try:
            handle = self.backend.create(workspace_id, workspace_path, command)
        except EquipeError as exc:
            instance.status = AgentStatus.ERROR
            instance.error = str(exc)
            instance.stopped_at = utc_now()
            self._instances[workspace_id] = instance
            metrics.record_agent_start(agent_type.value, "error")
            self._update_gauge()
            logger.error("Failed to start %s in %s: %s", agent_type.value, workspace_id, exc)
            raise

        instance.session_name = handle.session_name
        instance.pid = handle.pid
        self._instances[workspace_id] = instance
        metrics.record_agent_start(agent_type.value, "ok")
        self._update_gauge()
        logger.info("Started %s for workspace %s (%s)", agent_type.value, workspace_id, instance.agent_id)
        return instance.snapshot()

    def _stop(self, workspace_id: str) -> AgentInstance:
        instance = self._instances.get(workspace_id)
        if not self.backend.exists(workspace_id):
            if instance is None:
                raise SessionNotFoundError("no agent to stop", workspace_id=workspace_id)
            if instance.status == AgentStatus.RUNNING:
                self._mark_stopped(instance)
            return instance.snapshot()

        forced = self._terminate(workspace_id)
        self.backend.destroy(workspace_id)
        metrics.record_agent_stop(forced)
        if instance is None:
            # session without an instance, e.g. never adopted
            return AgentInstance(
                agent_id=self._new_agent_id(workspace_id),
                workspace_id=workspace_id,
                workspace_path="",
                agent_type=AgentType.CLAUDE,
                session_name=self.backend.session_name(workspace_id),
                status=AgentStatus.STOPPED,
                stopped_at=utc_now(),
            )
        self._mark_stopped(instance)
        logger.info("Stopped agent %s%s", instance.agent_id, " (SIGKILL)" if forced else "")
        return instance.snapshot()

    def _terminate(self, workspace_id: str) -> bool:
        """SIGTERM, wait up to the ceiling, then SIGKILL. Returns True when forced."""
        try:
            self.backend.signal(workspace_id, signal.SIGTERM)
        except SessionNotFoundError:
            return False
        deadline = self._clock() + self.stop_timeout
        while self._clock() < deadline:
            if not self.backend.is_alive(workspace_id):
                return False
            self._sleep(self.poll_interval)
        if not self.backend.is_alive(workspace_id):
            return False
        logger.warning(
            "Agent in %s ignored SIGTERM for %.1fs, sending SIGKILL",
            workspace_id,
            self.stop_timeout,
        )
        try:
            self.backend.signal(workspace_id, signal.SIGKILL)
        except SessionNotFoundError:
            pass
        return True

    def _mark_stopped(self, instance: AgentInstance) -> None:
        instance.status = AgentStatus.STOPPED
        instance.stopped_at = utc_now()
        instance.error = None
        self._update_gauge()

    def _sync(self, workspace_id: str) -> bool:
        instance = self._instances.get(workspace_id)
        if instance is None or instance.status != AgentStatus.RUNNING:
            return False
        if self.backend.exists(workspace_id):
            return False
        exit_code, _sig = self.backend.exit_status(workspace_id) or (None, None)
        instance.exit_code = exit_code
        instance.stopped_at = utc_now()
        if exit_code not in (None, 0):
            instance.status = AgentStatus.ERROR
            instance.error = f"agent exited with code {exit_code}"
        else:
            instance.status = AgentStatus.STOPPED
        # release whatever the backend still holds for the dead session
        self.backend.destroy(workspace_id)
        self._update_gauge()
        logger.info("Agent %s is now %s", instance.agent_id, instance.status.value)
        return True

    def _update_gauge(self) -> None:
        metrics.set_running_agents(self.running_count())


__all__ = ["AgentInstance", "AgentLifecycleController", "AgentStatus"]
