from __future__ import annotations

import logging
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from resource_office.config import notification_max_attempts, overdue_sweep_interval_minutes
from resource_office.services.notification_service import LoggingTransport, QueueNotificationSink, deliver_pending
from resource_office.services.overdue_service import run_overdue_sweep

LOGGER = logging.getLogger("resource_office.scheduler")

SWEEP_JOB_ID = "overdue_sweep_job"


def run_sweep_job(session_factory: Callable[[], Session], transport=None) -> dict:
    db = session_factory()
    try:
        summary = run_overdue_sweep(db, QueueNotificationSink(session_factory))
        summary["delivery"] = deliver_pending(
            db,
            transport or LoggingTransport(),
            max_attempts=notification_max_attempts(),
        )
        return summary
    finally:
        db.close()


def start_scheduler(session_factory: Callable[[], Session], interval_minutes: int | None = None) -> BackgroundScheduler:
    minutes = interval_minutes or overdue_sweep_interval_minutes()
    scheduler = BackgroundScheduler(timezone="UTC")

    def _job_wrapper():
        try:
            run_sweep_job(session_factory)
        except Exception:
            LOGGER.exception("Scheduled overdue sweep failed")

    scheduler.add_job(
        func=_job_wrapper,
        trigger=IntervalTrigger(minutes=minutes),
        id=SWEEP_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=120,
    )
    scheduler.start()
    LOGGER.info("Scheduler started job=%s interval_minutes=%s", SWEEP_JOB_ID, minutes)
    return scheduler


def stop_scheduler(scheduler: BackgroundScheduler | None) -> None:
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        LOGGER.info("Scheduler shutdown")
