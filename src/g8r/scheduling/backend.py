"""Thread tick backend for the reconciliation scheduler.

┌──────────────────────────────────────────────────────────────────────────────┐
│  THREAD BACKEND                                                               │
│                                                                               │
│   start(tick, interval)                                                       │
│      │                                                                        │
│      ▼                                                                        │
│   Daemon thread:                                                              │
│      tick()                              ◄── first tick right away            │
│      while not stop_event.wait(interval):                                     │
│          tick_count += 1                                                      │
│          tick()                                                               │
│                                                                               │
│   stop(timeout)                                                               │
│      stop_event.set(); thread.join(timeout)                                   │
│                                                                               │
│  The backend only decides WHEN to tick.  What a tick does lives in            │
│  ReconciliationScheduler.tick().                                              │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from g8r.core.logging import get_logger
from g8r.core.models import utcnow

logger = get_logger(__name__)

TickCallback = Callable[[], None]


class ThreadSchedulerBackend:
    """Calls a tick function at a fixed interval from a daemon thread.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>> backend.start(scheduler.tick, interval_seconds=10.0)
        >>> # ... later ...
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval: float = 10.0
        self._started = False
        self._lock = threading.Lock()

    def start(self, tick_callback: TickCallback, interval_seconds: float = 10.0) -> None:
        if self._started:
            logger.warning("backend.already_started", backend=self.name)
            return

        self._interval = interval_seconds
        self._stop_event.clear()

        def _tick() -> None:
            with self._lock:
                self._tick_count += 1
                self._last_tick = utcnow()
            try:
                tick_callback()
            except Exception as e:
                logger.exception("backend.tick_failed", error=str(e))

        def _loop() -> None:
            logger.info("backend.started", backend=self.name, interval_seconds=interval_seconds)
            _tick()
            while not self._stop_event.wait(interval_seconds):
                _tick()
            logger.info("backend.stopped", backend=self.name)

        self._thread = threading.Thread(target=_loop, daemon=True, name="g8r-scheduler")
        self._thread.start()
        self._started = True

    def stop(self, timeout: float = 30.0) -> None:
        """Stop ticking and wait up to ``timeout`` seconds for the current tick."""
        if not self._started:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("backend.stop_timeout", backend=self.name, timeout=timeout)

        self._started = False

    def health(self) -> dict[str, Any]:
        return {
            "healthy": self.is_running,
            "backend": self.name,
            "tick_count": self._tick_count,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "interval_seconds": self._interval,
        }

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count
