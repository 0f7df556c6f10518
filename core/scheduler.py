"""
Fixed-cadence ticker

Purpose:
  Drive periodic work (enrollment sample acquisition) at a fixed
  interval on a background thread, with cancellation that is safe to
  call at any time, from any thread, including from inside the tick
  callback itself.

Contract:
  - start() begins ticking; the first tick fires one interval after start.
  - cancel() is idempotent; once it returns no further tick is started.
  - A tick callback that raises is logged and ticking continues.

The capture controller only depends on the small Ticker surface
(start / cancel / active), so tests can swap in a manual ticker.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTicker:
    """Cancellable periodic timer backed by one daemon thread."""

    def __init__(
        self,
        interval_sec: float,
        callback: Callable[[], object],
        name: str = "ticker",
    ) -> None:
        if interval_sec <= 0:
            raise ValueError(f"interval_sec must be positive, got {interval_sec}")
        self.interval_sec = float(interval_sec)
        self.callback = callback
        self.name = name
        self.tick_count = 0

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def active(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Ticker '{self.name}' already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("Ticker '%s' started (interval=%.3fs)", self.name, self.interval_sec)

    def cancel(self) -> None:
        """Stop ticking. Joins the thread unless called from inside a tick."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, 2 * self.interval_sec))
        logger.debug("Ticker '%s' cancelled after %d ticks", self.name, self.tick_count)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_sec):
            self.tick_count += 1
            try:
                self.callback()
            except Exception:
                logger.exception("Ticker '%s' callback failed", self.name)
