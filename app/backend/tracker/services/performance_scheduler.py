"""Periodic and on-demand recomputation of performance reports."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tracker.services.performance_cache import PerformanceCache
from tracker.services.performance_models import PerformanceSnapshot

logger = logging.getLogger(__name__)


class RefreshState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    ERROR = "error"


class Timer(Protocol):
    """Repeating trigger driving the scheduler."""

    def start(self, interval_seconds: float, callback: Callable[[], object]) -> None: ...

    def cancel(self) -> None: ...

    def close(self) -> None: ...


class APSchedulerTimer:
    """Timer backed by an APScheduler background scheduler."""

    def __init__(self, job_id: str = "performance_refresh", scheduler: BackgroundScheduler | None = None) -> None:
        self.job_id = job_id
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")

    def start(self, interval_seconds: float, callback: Callable[[], object]) -> None:
        self.scheduler.add_job(
            callback,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=self.job_id,
            name="Refresh performance report",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()

    def cancel(self) -> None:
        """Remove the job; the scheduler thread keeps running for a later start."""

        if not self.scheduler.running:
            return
        try:
            self.scheduler.remove_job(self.job_id)
        except JobLookupError:
            pass

    def close(self) -> None:
        """Shut the scheduler down; its executors cannot be restarted afterwards."""

        self.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)


class RefreshScheduler:
    """Runs the aggregation pipeline and installs its result in the cache.

    State moves ``idle -> loading -> idle`` on success and
    ``idle -> loading -> error`` on failure; the next trigger starts loading
    again. At most one pipeline runs at a time: a trigger arriving while
    loading is dropped. Failures are recorded on ``error`` and never raised,
    and the previous cache entry stays in place.
    """

    def __init__(
        self,
        pipeline: Callable[[], PerformanceSnapshot],
        cache: PerformanceCache,
        timer: Timer,
    ) -> None:
        self.pipeline = pipeline
        self.cache = cache
        self.timer = timer
        self.state = RefreshState.IDLE
        self.last_updated: datetime | None = None
        self.error: str | None = None
        self._running = threading.Lock()
        self._started = False

    @property
    def loading(self) -> bool:
        return self.state is RefreshState.LOADING

    @property
    def started(self) -> bool:
        return self._started

    def start(self, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive.")
        self.timer.start(interval_seconds, self.refresh_now)
        self._started = True
        logger.info("Performance refresh scheduled every %ss", interval_seconds)

    def stop(self) -> None:
        if not self._started:
            return
        self.timer.cancel()
        self._started = False
        logger.info("Performance refresh stopped")

    def close(self) -> None:
        """Stop and release the timer for good, e.g. on application shutdown."""

        self.stop()
        self.timer.close()

    def refresh_now(self) -> bool:
        """Run the pipeline unless one is in flight; return whether it ran."""

        if not self._running.acquire(blocking=False):
            logger.debug("Performance refresh already running; trigger ignored")
            return False
        try:
            self.state = RefreshState.LOADING
            started = time.perf_counter()
            try:
                snapshot = self.pipeline()
                entry = self.cache.put(snapshot.summaries, snapshot.project_ids, snapshot.user_ids)
            except Exception as exc:
                logger.exception("Performance refresh failed")
                self.error = str(exc) or exc.__class__.__name__
                self.state = RefreshState.ERROR
                return True

            self.last_updated = entry.timestamp
            self.error = None
            self.state = RefreshState.IDLE
            logger.info(
                "Performance report refreshed in %.0fms (%d users, %d departments, %d projects)",
                (time.perf_counter() - started) * 1000,
                len(snapshot.summaries.users),
                len(snapshot.summaries.departments),
                len(snapshot.summaries.projects),
            )
            return True
        finally:
            self._running.release()
