"""Cancellable repeating timer that drives orchestration cycles."""

from __future__ import annotations

import threading
from typing import Callable, Optional

from .logging import get_logger


class CycleScheduler:
    """Runs ``task`` immediately, then again ``interval`` seconds after each run ends.

    ``cancel()`` clears the pending schedule. It never interrupts a task that
    is already running; that run finishes and no further run is scheduled.
    """

    def __init__(
        self,
        task: Callable[[], object],
        *,
        interval: float = 60.0,
        stop_event: threading.Event | None = None,
        name: str = "evolver-cycle",
    ) -> None:
        self.task = task
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self.name = name
        self._thread: Optional[threading.Thread] = None
        self.logger = get_logger("scheduler")

    @property
    def active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if self.active:
            return False
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        return True

    def cancel(self) -> None:
        self.stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                self.task()
            except Exception:
                self.logger.exception("Scheduled cycle raised unexpectedly")
            if self.stop_event.wait(self.interval):
                break
        self.logger.debug("Scheduler %s stopped", self.name)


__all__ = ["CycleScheduler"]
