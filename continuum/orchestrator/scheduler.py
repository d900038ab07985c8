"""Background scheduler for the continuity loop."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from typing import Optional

from continuum.core.exceptions import ContinuumError
from continuum.orchestrator.continuity_loop import ContinuityLoop, TickResult
from continuum.tools.suppression_ledger import SuppressionLedger

logger = logging.getLogger("continuum.orchestrator.scheduler")


class ContinuityScheduler:
    """Runs a continuity tick and a suppression prune every interval on a daemon thread."""

    def __init__(
        self,
        loop: ContinuityLoop,
        suppression: Optional[SuppressionLedger] = None,
        interval_seconds: float = 900.0,
    ):
        self.loop = loop
        self.suppression = suppression
        self.interval_seconds = interval_seconds

        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._running = False
        self.cycles = 0
        self.last_result: Optional[TickResult] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.warning("Continuity scheduler already running")
            return

        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._run, name="continuity-scheduler", daemon=True)
        self._thread.start()
        logger.info("Started continuity scheduler (every %ss)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._running = False
        logger.info("Stopped continuity scheduler after %d cycle(s)", self.cycles)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called. Returns True if stopped."""
        return self._stop_event.wait(timeout)

    def tick_now(self, now: Optional[datetime] = None) -> TickResult:
        """Run one tick out of band. Safe while the thread is running."""
        result = self.loop.tick(now)
        self.last_result = result
        return result

    def _cycle(self) -> None:
        now = datetime.now(UTC)
        self.tick_now(now)
        if self.suppression is not None:
            pruned = self.suppression.prune(now)
            if pruned:
                logger.debug("Pruned %d suppression entries", pruned)
        self.cycles += 1

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._cycle()
            except ContinuumError as e:
                logger.error("Continuity cycle failed: %s", e)
            except Exception as e:
                logger.error("Unexpected error in continuity scheduler: %s", e, exc_info=True)
            self._stop_event.wait(self.interval_seconds)
