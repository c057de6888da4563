"""
Background scheduler for end-of-day queue metrics.

Uses APScheduler to run, once a day after close of business:
- Daily queue metrics aggregation for every provider with appointments
- Pruning of idle token partition locks from previous days

Runs outside the request path; failures surface through the job event
listeners and the aggregator's own structured logs.
"""

import logging
from datetime import date, datetime
from typing import Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

import config
from aggregator import run_daily_aggregation
from tokens import partition_locks

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[BackgroundScheduler] = None


def _on_job_error(event):
    """Log scheduler job errors with full context."""
    exc = event.exception
    logger.error(
        "Scheduled job FAILED: job_id=%s error=%s",
        event.job_id, exc,
        exc_info=(type(exc), exc, exc.__traceback__) if exc else None,
    )


def _on_job_missed(event):
    logger.warning(
        "Scheduled job MISSED: job_id=%s scheduled_run_time=%s",
        event.job_id,
        event.scheduled_run_time,
    )


def daily_metrics_job(engine, today: Callable[[], date] = date.today):
    """Aggregate today's metrics, then drop yesterday's partition locks."""
    day = today()
    report = run_daily_aggregation(engine, day)
    pruned = partition_locks.discard_before(day)
    logger.info("Daily metrics job done date=%s failed=%d pruned_locks=%d", day, len(report.failed), pruned)
    return report


def init_scheduler(engine) -> BackgroundScheduler:
    """
    Initialize the background scheduler with the daily metrics job.

    Called once when the application starts up.
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return scheduler

    scheduler = BackgroundScheduler(
        job_defaults={
            'coalesce': True,  # Combine missed executions
            'max_instances': 1,  # Only one aggregation at a time
            'misfire_grace_time': 3600,
        }
    )

    scheduler.add_job(
        func=daily_metrics_job,
        args=[engine],
        trigger=CronTrigger(hour=config.AGGREGATION_HOUR, minute=config.AGGREGATION_MINUTE),
        id='daily_queue_metrics',
        name='Daily Queue Metrics Aggregation',
        replace_existing=True,
    )
    logger.info(
        "Scheduled job: daily_queue_metrics (daily at %02d:%02d)",
        config.AGGREGATION_HOUR, config.AGGREGATION_MINUTE,
    )

    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    scheduler.add_listener(_on_job_missed, EVENT_JOB_MISSED)
    return scheduler


def start_scheduler(engine) -> BackgroundScheduler:
    sched = init_scheduler(engine)
    if not sched.running:
        sched.start()
        logger.info("Background scheduler started at %s", datetime.now().isoformat())
    return sched


def shutdown_scheduler():
    global scheduler
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler stopped")
    scheduler = None
