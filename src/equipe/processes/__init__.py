"""Process tracking, pseudo-terminal sessions and shutdown handling."""

from .pty import BufferedSessionProcess
from .pty import DataEvent
from .pty import ExitEvent
from .registry import ProcessRegistry
from .shutdown import ShutdownCoordinator

__all__ = [
    "BufferedSessionProcess",
    "DataEvent",
    "ExitEvent",
    "ProcessRegistry",
    "ShutdownCoordinator",
]
