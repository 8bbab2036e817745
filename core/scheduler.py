"""Cancellable periodic task used by the rollout and alerting loops.

Updates:
    v0.1 - 2025-11-08 - Added event-driven periodic task with explicit stop conditions.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

LOGGER = logging.getLogger("agc.scheduler")


class PeriodicTask:
    """Run *callback* every *interval_seconds* until stopped.

    The loop ends when :meth:`stop` is called or the callback returns ``False``.
    Exceptions raised by the callback are logged and do not end the loop.
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: Callable[[], Optional[bool]],
        name: str = "agc-periodic",
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive.")
        self._interval = interval_seconds
        self._callback = callback
        self._name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.iterations = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        """Invoke the callback once; return ``False`` when the loop should end."""
        self.iterations += 1
        try:
            result = self._callback()
        except Exception:
            LOGGER.exception("Periodic task '%s' callback failed.", self._name)
            return True
        return result is not False

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        LOGGER.debug("Periodic task '%s' started (interval %.2fs).", self._name, self._interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        LOGGER.debug("Periodic task '%s' stopped.", self._name)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop to finish; return ``True`` when it has."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            if not self.run_once():
                break
