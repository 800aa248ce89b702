import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from sync import SyncEngine


logger = logging.getLogger(__name__)

SAVE_JOB_ID = "debounced_save"
FLUSH_JOB_ID = "queue_flush"


class SyncScheduler:
    """Runs debounced saves and periodic queue flushes off the caller's thread.

    Both jobs share a single worker, so at most one remote write sequence is in
    flight at any time.
    """

    def __init__(
        self,
        engine: SyncEngine,
        debounce_ms: Optional[int] = None,
        flush_interval_secs: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.engine = engine
        self.debounce = timedelta(
            milliseconds=settings.save_debounce_ms if debounce_ms is None else debounce_ms
        )
        self.flush_interval_secs = (
            settings.flush_interval_secs if flush_interval_secs is None else flush_interval_secs
        )
        self.scheduler = BackgroundScheduler(
            timezone=settings.timezone,
            executors={"default": ThreadPoolExecutor(max_workers=1)},
            job_defaults={"coalesce": True, "max_instances": 1},
        )

    def _save_job(self, source: str = "debounce") -> None:
        try:
            pushed = self.engine.push_dirty()
            self.engine.persist_snapshot()
        except Exception:
            logger.exception(f"sync_save_failed: source={source}")
            return
        logger.info(f"sync_save: source={source} pushed={len(pushed)}")

    def _flush_job(self, source: str = "interval") -> None:
        try:
            report = self.engine.flush()
        except Exception:
            logger.exception(f"sync_flush_failed: source={source}")
            return
        if not report.skipped:
            logger.info(f"sync_flush_run: source={source} retained={len(report.retained)}")

    def schedule_save(self, _touched=None) -> None:
        """Restart the debounce window; the latest call wins."""
        run_at = datetime.now(timezone.utc) + self.debounce
        self.scheduler.add_job(
            self._save_job,
            DateTrigger(run_date=run_at),
            id=SAVE_JOB_ID,
            replace_existing=True,
            misfire_grace_time=60,
        )

    def _cancel_pending_save(self) -> bool:
        cancelled = False
        while self.scheduler.get_job(SAVE_JOB_ID) is not None:
            self.scheduler.remove_job(SAVE_JOB_ID)
            cancelled = True
        return cancelled

    def save_now(self) -> None:
        self._cancel_pending_save()
        self._save_job("immediate")

    def start(self) -> None:
        trigger = IntervalTrigger(seconds=self.flush_interval_secs)
        self.scheduler.add_job(
            self._flush_job,
            trigger,
            args=["interval"],
            id=FLUSH_JOB_ID,
            replace_existing=True,
            misfire_grace_time=self.flush_interval_secs,
        )
        self.scheduler.start()
        logger.info(
            f"Sync scheduler started with {int(self.debounce.total_seconds() * 1000)}ms "
            f"save debounce and {self.flush_interval_secs}s flush interval"
        )

    def stop(self, flush_pending: bool = True) -> None:
        pending = self._cancel_pending_save()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Sync scheduler stopped")
        if flush_pending and pending:
            self._save_job("shutdown")
