"""Status polling cadence that slows down while the app is in the background."""
from __future__ import annotations

import time
from typing import Callable


class StatusTicker:
    def __init__(
        self,
        focused_interval: float = 1.0,
        background_interval: float = 5.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if focused_interval <= 0 or background_interval <= 0:
            raise ValueError("polling intervals must be positive")
        self.focused_interval = focused_interval
        self.background_interval = background_interval
        self._clock = clock
        self._focused = True
        self._last_tick: float | None = None

    @property
    def focused(self) -> bool:
        return self._focused

    @property
    def interval(self) -> float:
        return self.focused_interval if self._focused else self.background_interval

    def focus(self) -> None:
        # regaining focus should refresh right away
        if not self._focused:
            self._last_tick = None
        self._focused = True

    def blur(self) -> None:
        self._focused = False

    def due(self) -> bool:
        if self._last_tick is None:
            return True
        return self._clock() - self._last_tick >= self.interval

    def mark(self) -> None:
        self._last_tick = self._clock()

    def remaining(self) -> float:
        if self._last_tick is None:
            return 0.0
        return max(0.0, self.interval - (self._clock() - self._last_tick))
