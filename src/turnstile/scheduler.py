"""Timer-driven background tasks (session reaper, periodic sweep)."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Run `fn(stop_event)` every `interval_seconds` on a daemon thread.

    Exceptions are logged and the schedule continues. `stop()` sets the
    event the callable receives, so long runs can bail out early.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[threading.Event], object],
        interval_seconds: float,
        run_immediately: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self.runs = 0
        self._fn = fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"turnstile-{self.name}", daemon=True)
        self._thread.start()
        logger.info("Started %s task (every %ss)", self.name, self.interval_seconds)

    def run_once(self) -> None:
        try:
            self._fn(self._stop)
        except Exception:
            logger.exception("%s task failed", self.name)
        finally:
            self.runs += 1

    def _loop(self) -> None:
        if self.run_immediately:
            self.run_once()
        while not self._stop.wait(self.interval_seconds):
            self.run_once()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Stopped %s task", self.name)
