"""
beatdrift - Silence Watchdog
Polls the tracker on a fixed cadence and forces WAITING once the performer
has gone quiet for longer than the silence timeout.
"""

import threading
import time
from typing import Callable, Optional

from logging_utils import log_event


class SilenceWatchdog:
    """
    Background poller for one tracker. The tracker decides whether a tick
    actually changes state (check_silence holds the tracker lock), so the
    watchdog itself owns no tracking state.
    """

    def __init__(self, tracker, poll_interval_ms: float = 500.0,
                 clock: Optional[Callable[[], float]] = None):
        """
        Args:
            tracker: Object exposing check_silence(now_ms) -> bool
            poll_interval_ms: Delay between ticks
            clock: Returns "now" in ms on the same timeline as onset timestamps
        """
        if poll_interval_ms <= 0:
            raise ValueError(f"poll_interval_ms must be > 0, got {poll_interval_ms}")
        self.tracker = tracker
        self.poll_interval_ms = float(poll_interval_ms)
        self.clock = clock or (lambda: time.monotonic() * 1000.0)

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()
        self.fired_count = 0

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    def tick(self) -> bool:
        """Run one poll now. Returns True when it forced the WAITING transition."""
        fired = self.tracker.check_silence(self.clock())
        if fired:
            self.fired_count += 1
        return fired

    def _worker_loop(self, stop_event: threading.Event) -> None:
        interval_s = self.poll_interval_ms / 1000.0
        while not stop_event.wait(interval_s):
            self.tick()

    def start(self) -> None:
        """Start polling; an already running watchdog is restarted with a fresh timer."""
        with self._lifecycle_lock:
            previous = self._thread
            self._stop_event.set()
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._worker_loop,
                args=(self._stop_event,),
                name="SilenceWatchdog",
                daemon=True,
            )
            self._thread.start()

        # Swapped under the lock, so concurrent starts leave exactly one live worker
        if previous is not None and previous is not threading.current_thread():
            previous.join()
        log_event("INFO", "Watchdog", "Started", poll_ms=self.poll_interval_ms)

    def stop(self) -> None:
        """Stop polling and wait for the worker to exit. No-op when not running."""
        with self._lifecycle_lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            self._thread = None

        # A listener running on the worker thread may stop us; it cannot join itself
        if thread is not threading.current_thread():
            thread.join()
        log_event("INFO", "Watchdog", "Stopped")
