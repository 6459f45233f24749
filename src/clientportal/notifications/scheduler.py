"""Single periodic timer driving change detection and housekeeping."""

from __future__ import annotations

import threading
from typing import Callable, Sequence

from clientportal.notifications.detector import ChangeDetector
from clientportal.observability.correlation import (
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from clientportal.observability.logging import get_logger

logger = get_logger(__name__)

Housekeeping = Callable[[], object]


class PollScheduler:
    """Runs detector.poll_once() every interval_seconds on a daemon thread.

    The first tick runs immediately on start so the snapshot bootstraps
    without waiting a full interval. Housekeeping callables (TTL purges)
    run after each cycle. Nothing raised by a tick stops the loop.
    """

    def __init__(
        self,
        detector: ChangeDetector,
        interval_seconds: float,
        housekeeping: Sequence[Housekeeping] = (),
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._detector = detector
        self._interval = interval_seconds
        self._housekeeping = tuple(housekeeping)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="poll-scheduler", daemon=True)
        self._thread.start()
        logger.info(
            "poll scheduler started",
            extra={"extra_fields": {"interval_seconds": self._interval}},
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
        logger.info("poll scheduler stopped")

    def tick(self) -> None:
        """One cycle plus housekeeping, under a fresh correlation id."""
        token = set_correlation_id(generate_correlation_id("poll"))
        try:
            try:
                self._detector.poll_once()
            except Exception:
                logger.exception("poll cycle crashed")
            for task in self._housekeeping:
                try:
                    task()
                except Exception:
                    logger.exception("housekeeping task crashed")
        finally:
            reset_correlation_id(token)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self._interval)
