"""Daemon-thread runner for periodic jobs (aggregation, on-chain retry, defense checks)."""
from __future__ import annotations

import threading
from typing import Any, Callable

from settlement.utils import get_logger

logger = get_logger(__name__)


class PeriodicRunner:
    def __init__(self, name: str, fn: Callable[[], Any], interval_seconds: float, *, run_immediately: bool = False):
        self.name = name
        self.fn = fn
        self.interval_seconds = float(interval_seconds)
        self.run_immediately = run_immediately
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self.runs = 0
        self.failures = 0

    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("Periodic job started", job=self.name, interval_seconds=self.interval_seconds)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        logger.info("Periodic job stop requested", job=self.name)
        if timeout is not None:
            self.join(timeout)

    def join(self, timeout: float) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _loop(self) -> None:
        if not self.run_immediately and self._stop_event.wait(self.interval_seconds):
            return
        while not self._stop_event.is_set():
            self.run_once()
            if self._stop_event.wait(self.interval_seconds):
                break

    def run_once(self) -> Any:
        try:
            result = self.fn()
            self.runs += 1
            return result
        except Exception as e:
            self.failures += 1
            logger.error("Periodic job failed", job=self.name, error=str(e), exc_info=True)
            return None


__all__ = ["PeriodicRunner"]
