"""NCDTrack — Scheduler Jobs.

APScheduler nightly job that reconciles the materialized district rows
against live facility sums, catching any refresh that failed mid-request.
"""

from apscheduler.schedulers.background import BackgroundScheduler
from sqlmodel import Session

from ncdtrack.config import settings
from ncdtrack.core.errors import EngineError
from ncdtrack.core.metric_registry import MetricDomain
from ncdtrack.database import engine
from ncdtrack.engine.rollup import reconcile_districts
from ncdtrack.core.logging import get_logger

logger = get_logger("scheduler")

scheduler = BackgroundScheduler()


def nightly_reconcile_job() -> dict[str, int]:
    """Reconcile district rows for every domain."""
    logger.info("Scheduled district reconcile starting...")
    drifted: dict[str, int] = {}
    with Session(engine) as session:
        for domain in MetricDomain:
            try:
                drifted[domain.value] = reconcile_districts(session, domain)
            except EngineError as e:
                logger.error(f"Scheduled reconcile failed for {domain.value}: {e}")
    logger.info(f"Scheduled reconcile complete. Drifted: {drifted}")
    return drifted


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        nightly_reconcile_job,
        "cron",
        hour=settings.reconcile_hour,
        minute=0,
        id="nightly_reconcile",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Nightly reconcile at {settings.reconcile_hour}:00 UTC")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
