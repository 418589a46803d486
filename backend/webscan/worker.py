# webscan/worker.py
"""
Scan worker process.

    webscan-worker            (console script)
    python -m webscan.worker

Opens the app (DB + queue), wires the orchestrator to a Worker with
WORKER_CONCURRENCY threads, starts the housekeeping scheduler when
SCHEDULER_ENABLED, and runs until SIGTERM / SIGINT. In-flight jobs are
allowed to finish before the queue connection is closed.
"""

from __future__ import annotations

import logging
import signal

from webscan import create_app
from webscan.extensions import get_scan_queue
from webscan.queue import Worker
from webscan.scanner.orchestrator import ScanOrchestrator, register_dead_letter_handler
from webscan.scheduler import init_scheduler, shutdown_scheduler

logger = logging.getLogger(__name__)


def build_worker(app) -> Worker:
    queue = get_scan_queue(app)
    orchestrator = ScanOrchestrator(queue=queue)
    register_dead_letter_handler(queue, app)
    return Worker(
        queue,
        handler=orchestrator.execute,
        app=app,
        concurrency=app.config["WORKER_CONCURRENCY"],
    )


def main() -> None:
    app = create_app()
    queue = get_scan_queue(app)
    worker = build_worker(app)

    def _handle_signal(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down")
        worker.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if app.config["SCHEDULER_ENABLED"]:
        init_scheduler(queue)
    else:
        logger.info("Housekeeping scheduler disabled (SCHEDULER_ENABLED != true)")

    worker.start()
    try:
        worker.wait()
    finally:
        worker.stop()
        shutdown_scheduler()
        queue.close()
        logger.info("Worker process exited")


if __name__ == "__main__":
    main()
