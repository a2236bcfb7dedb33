from __future__ import annotations

import threading
from typing import Any, Callable

from .run_log import RunLogger


class PeriodicTask:
    """
    Runs `fn` right away and then every `interval_seconds` until `stop` is set.

    A tick that raises is logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], Any],
        interval_seconds: float,
        stop: threading.Event,
        *,
        logger: RunLogger | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self._fn = fn
        self._interval = float(interval_seconds)
        self._stop = stop
        self._logger = logger
        self._thread: threading.Thread | None = None
        self.ticks = 0
        self.errors = 0

    def run(self, max_ticks: int | None = None) -> None:
        while not self._stop.is_set():
            try:
                self._fn()
            except Exception as e:
                self.errors += 1
                if self._logger is not None:
                    self._logger.exception("task_tick_failed", exc=e, task=self.name)
            self.ticks += 1

            if max_ticks is not None and self.ticks >= max_ticks:
                return
            if self._stop.wait(self._interval):
                return

    def start(self) -> threading.Thread:
        if self._thread is not None:
            raise RuntimeError(f"task {self.name} already started")
        self._thread = threading.Thread(target=self.run, name=f"lostdogs-{self.name}", daemon=True)
        self._thread.start()
        if self._logger is not None:
            self._logger.info("task_started", task=self.name, interval_seconds=self._interval)
        return self._thread

    def join(self, timeout: float | None = None) -> bool:
        """True once the thread has exited (or was never started)."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()
