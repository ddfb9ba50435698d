from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class PeriodicRefresh:
    """Re-arming timer that calls ``callback`` every ``interval`` seconds until cancelled.

    Each tick runs on its own ``threading.Timer`` thread. ``cancel()`` is
    idempotent and guarantees no further ticks are armed; a tick that is
    already running finishes but does not re-arm.
    """

    def __init__(
        self, interval: float, callback: Callable[[], None], *, name: str = "refresh"
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = float(interval)
        self.callback = callback
        self.name = name
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._cancelled = False
        self.ticks = 0

    @property
    def active(self) -> bool:
        with self._lock:
            return not self._cancelled and self._timer is not None

    def start(self) -> "PeriodicRefresh":
        self._arm()
        return self

    def _arm(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            timer = threading.Timer(self.interval, self._tick)
            timer.daemon = True
            timer.name = f"{self.name}-timer"
            self._timer = timer
            timer.start()

    def _tick(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self.ticks += 1
        try:
            self.callback()
        except Exception:
            logger.exception("Periodic refresh %s failed", self.name)
        self._arm()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        logger.debug("Cancelled periodic refresh %s", self.name)
