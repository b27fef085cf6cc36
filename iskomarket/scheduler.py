"""
Polling fallback scheduler using APScheduler.

Jobs:
- Persistent poll (every poll_interval_seconds) for the lifetime of the view
- Fast poll (every fast_poll_interval_seconds) while realtime health is unconfirmed
- One-shot jobs (realtime grace timer, reconcile-after-local-mutation)

Features:
- Prevents job pile-up (max_instances=1, coalesce)
- Job run/error bookkeeping for diagnostics
- shutdown() clears every timer at once
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from iskomarket.observability import get_logger

logger = get_logger(__name__)

SCHEDULER_TIMEZONE = ZoneInfo("UTC")

PERSISTENT_POLL_JOB = "persistent_poll"
FAST_POLL_JOB = "fast_poll"
REALTIME_GRACE_JOB = "realtime_grace"
RECONCILE_JOB = "reconcile"

PollCallback = Callable[[str], Awaitable[Any]]


@dataclass
class JobRecord:
    """Outcome counters for one job id, kept across removals."""
    description: str
    runs: int = 0
    errors: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self, job_id: str, job=None) -> Dict[str, Any]:
        next_run = getattr(job, "next_run_time", None)
        return {
            "id": job_id,
            "description": self.description,
            "active": job is not None,
            "next_run": next_run.isoformat() if next_run else None,
            "last_run": self.last_run_at.isoformat() if self.last_run_at else None,
            "run_count": self.runs,
            "error_count": self.errors,
            "last_error": self.last_error,
        }


class PollingScheduler:
    """
    Interval timers driving listing refreshes.

    Usage:
        scheduler = PollingScheduler(on_poll=service.poll)
        scheduler.start()
        scheduler.start_fast_poll()
        ...
        scheduler.shutdown()
    """

    def __init__(
        self,
        on_poll: PollCallback,
        poll_interval: float = 5.0,
        fast_poll_interval: float = 5.0,
    ):
        self.on_poll = on_poll
        self.poll_interval = poll_interval
        self.fast_poll_interval = fast_poll_interval
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._records: Dict[str, JobRecord] = {}
        self._started = False

    def start(self) -> None:
        """Start the scheduler and the persistent poll. Needs a running event loop."""
        if self._started:
            logger.warning("Polling scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)
        self._scheduler.add_listener(
            self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED
        )
        self._scheduler.start()
        self._started = True

        self._add_job(
            job_id=PERSISTENT_POLL_JOB,
            description="Unconditional refresh for the lifetime of the view",
            func=self.on_poll,
            trigger=IntervalTrigger(seconds=self.poll_interval, timezone=SCHEDULER_TIMEZONE),
            args=["poll"],
        )
        logger.info(f"Polling scheduler started (every {self.poll_interval}s)")

    def _add_job(
        self,
        job_id: str,
        description: str,
        func: Callable,
        trigger,
        args: Optional[List[Any]] = None,
    ) -> None:
        self._scheduler.add_job(
            func,
            trigger=trigger,
            args=args or [],
            id=job_id,
            name=description,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._records.setdefault(job_id, JobRecord(description=description))

    def _remove_job(self, job_id: str) -> bool:
        if not self._started:
            return False
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        return True

    # ═══════════════════════════════════════════════════════════════════════════
    # FAST POLL / ONE-SHOT JOBS
    # ═══════════════════════════════════════════════════════════════════════════

    def start_fast_poll(self) -> bool:
        """Start the conditional fast poll. Returns False if already running."""
        if not self._started or self.has_job(FAST_POLL_JOB):
            return False
        self._add_job(
            job_id=FAST_POLL_JOB,
            description="Fast refresh while realtime health is unconfirmed",
            func=self.on_poll,
            trigger=IntervalTrigger(seconds=self.fast_poll_interval, timezone=SCHEDULER_TIMEZONE),
            args=["fast_poll"],
        )
        logger.info(f"Fast poll started (every {self.fast_poll_interval}s)")
        return True

    def stop_fast_poll(self) -> bool:
        if self._remove_job(FAST_POLL_JOB):
            logger.info("Fast poll stopped")
            return True
        return False

    def run_once(
        self,
        job_id: str,
        func: Callable,
        delay: float = 0.0,
        args: Optional[List[Any]] = None,
        description: str = "",
    ) -> bool:
        """Schedule a one-shot job `delay` seconds from now (replacing a pending one)."""
        if not self._started:
            return False
        run_date = datetime.now(SCHEDULER_TIMEZONE) + timedelta(seconds=delay)
        self._add_job(
            job_id=job_id,
            description=description or job_id,
            func=func,
            trigger=DateTrigger(run_date=run_date, timezone=SCHEDULER_TIMEZONE),
            args=args,
        )
        return True

    def cancel(self, job_id: str) -> bool:
        return self._remove_job(job_id)

    def has_job(self, job_id: str) -> bool:
        return self._started and self._scheduler.get_job(job_id) is not None

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _on_job_event(self, event: JobExecutionEvent) -> None:
        if event.code == EVENT_JOB_MISSED:
            logger.warning(f"Job {event.job_id} missed its run time", extra={"job_id": event.job_id})
            return

        record = self._records.get(event.job_id)
        if record is not None:
            record.runs += 1
            record.last_run_at = datetime.now(SCHEDULER_TIMEZONE)

        if event.code == EVENT_JOB_ERROR:
            if record is not None:
                record.errors += 1
                record.last_error = str(event.exception) or type(event.exception).__name__
            logger.error(
                f"Job {event.job_id} raised {type(event.exception).__name__}",
                exc_info=event.exception,
                extra={"job_id": event.job_id},
            )

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    def get_jobs(self) -> List[Dict[str, Any]]:
        """Every job id ever scheduled, with whether it is currently pending."""
        return [
            record.to_dict(job_id, self._scheduler.get_job(job_id) if self._started else None)
            for job_id, record in self._records.items()
        ]

    def shutdown(self) -> None:
        """Clear every timer. Running jobs are cancelled, not awaited."""
        if self._scheduler and self._started:
            self._scheduler.remove_all_jobs()
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Polling scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None
