"""Agent sessions and their lifecycle."""

from .backends import PtySessionBackend
from .backends import SessionBackend
from .backends import TmuxSessionBackend
from .controller import AgentInstance
from .controller import AgentLifecycleController
from .controller import AgentStatus
from .ticker import StatusTicker

__all__ = [
    "AgentInstance",
    "AgentLifecycleController",
    "AgentStatus",
    "PtySessionBackend",
    "SessionBackend",
    "StatusTicker",
    "TmuxSessionBackend",
]
