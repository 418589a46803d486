# webscan/scheduler.py
"""
Queue Housekeeping Scheduler
────────────────────────────
Uses APScheduler to keep the scan queue healthy while workers run:

    - every 30 seconds: move jobs whose worker died back to wait
    - every hour:       prune completed (24h) and dead (7d) jobs

Started by the worker process (webscan.worker.main), never by the web app.
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from redis.exceptions import RedisError

from webscan.queue import ScanQueue

logger = logging.getLogger("scheduler")
logger.setLevel(logging.INFO)

_scheduler: BackgroundScheduler | None = None

STALLED_CHECK_SECONDS = 30
PRUNE_INTERVAL_HOURS = 1


def _recover_stalled(queue: ScanQueue):
    try:
        count = queue.recover_stalled()
    except RedisError as e:
        logger.error(f"Stalled-job check failed: {e}")
        return
    if count:
        logger.info(f"Recovered {count} stalled job(s)")


def _prune(queue: ScanQueue):
    try:
        completed, dead = queue.prune()
    except RedisError as e:
        logger.error(f"Queue prune failed: {e}")
        return
    if completed or dead:
        logger.info(f"Pruned {completed} completed and {dead} dead job(s)")


def init_scheduler(queue: ScanQueue):
    """Initialize and start the housekeeping scheduler."""
    global _scheduler

    if _scheduler is not None:
        logger.info("Scheduler already running")
        return

    _scheduler = BackgroundScheduler(daemon=True)

    _scheduler.add_job(
        func=lambda: _recover_stalled(queue),
        trigger=IntervalTrigger(seconds=STALLED_CHECK_SECONDS),
        id="queue_stalled_checker",
        name="Recover stalled scan jobs",
        replace_existing=True,
        max_instances=1,  # Prevent overlapping runs
    )
    _scheduler.add_job(
        func=lambda: _prune(queue),
        trigger=IntervalTrigger(hours=PRUNE_INTERVAL_HOURS),
        id="queue_pruner",
        name="Prune finished scan jobs",
        replace_existing=True,
        max_instances=1,
    )

    _scheduler.start()
    logger.info(f"Queue scheduler started (stalled check every {STALLED_CHECK_SECONDS}s)")


def shutdown_scheduler():
    """Gracefully stop the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")
