import logging
import threading
from datetime import datetime
from typing import Callable, ContextManager, Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MAX_INSTANCES,
    JobEvent,
)
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from summaries import SummaryAggregator, SummaryRun


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

SUMMARY_JOB_ID = "monthly_summary"


class SchedulerManager:
    def __init__(
        self,
        session_factory: Callable[[], ContextManager[Session]] = session_scope,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.session_factory = session_factory
        self.clock = clock
        self._lock = threading.Lock()

    def run_now(self, source: str = "manual") -> Optional[SummaryRun]:
        if not self._lock.acquire(blocking=False):
            logger.warning(f"summary_run: source={source} skipped=already_running")
            return None
        try:
            now = self.clock()
            logger.info(f"summary_run: source={source} now={now.isoformat()}")
            with self.session_factory() as session:
                result = SummaryAggregator(session).generate(now)
            logger.info(
                f"summary_run: source={source} month={result.month} "
                f"inserted={result.inserted} updated={result.updated}"
            )
            return result
        except Exception:
            logger.exception(f"summary_run: source={source} failed")
            raise
        finally:
            self._lock.release()

    def _on_job_event(self, event: JobEvent) -> None:
        if event.code == EVENT_JOB_ERROR:
            logger.error(f"scheduler_job_failed: job={event.job_id} error={event.exception!r}")
        elif event.code == EVENT_JOB_MAX_INSTANCES:
            logger.warning(f"scheduler_job_skipped: job={event.job_id} reason=max_instances")
        else:
            logger.info(f"scheduler_job_finished: job={event.job_id}")

    def start(self) -> None:
        trigger = CronTrigger.from_crontab(
            self.settings.summary_cron, timezone=self.settings.timezone
        )
        self.scheduler.add_job(
            self.run_now,
            trigger,
            args=["cron"],
            id=SUMMARY_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_listener(
            self._on_job_event,
            EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MAX_INSTANCES,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started with summary cron '{self.settings.summary_cron}'")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
