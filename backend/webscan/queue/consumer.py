# webscan/queue/consumer.py
"""
Queue consumer loop.

Worker runs `concurrency` threads, each pulling one job at a time from the
ScanQueue and handing it to the registered handler. The handler answers with
a JobOutcome; the worker resolves the delivery accordingly:

    Ack(result)          → queue.ack
    Retry(reason)        → queue.fail (backoff, or dead set when exhausted)
    DeadLetter(reason)   → queue.dead_letter

A handler that raises is treated as Retry(str(exc)).

While the handler runs, a LockKeeper thread renews the delivery's lock every
lock_ttl / 3 seconds, so a long probe is never mistaken for a dead worker.
The delivery is resolved with its lock token; if the job was recovered and
handed to someone else in the meantime, the queue refuses the stale result.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

from redis.exceptions import RedisError

from webscan.queue.jobs import Ack, DeadLetter, JobOutcome, QueueJob, Retry
from webscan.queue.scan_queue import ScanQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[QueueJob], JobOutcome]

# Pause after a broker error so a dead Redis doesn't spin the loop
BROKER_ERROR_BACKOFF_SECONDS = 5.0


class LockKeeper:
    """Renews one delivery's lock on a timer until stopped."""

    def __init__(self, queue: ScanQueue, job: QueueJob, interval: Optional[float] = None):
        self.queue = queue
        self.job = job
        self.interval = interval if interval is not None else max(0.1, queue.lock_ttl / 3.0)
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if not self.job.token:
            return
        self._thread = threading.Thread(
            target=self._renew,
            name=f"lock-keeper-{self.job.job_id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._done.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _renew(self) -> None:
        while not self._done.wait(self.interval):
            try:
                if not self.queue.extend_lock(self.job.job_id, self.job.token):
                    logger.warning("Lost lock on job %s; it may be redelivered", self.job.job_id)
                    return
            except RedisError as e:
                logger.warning("Could not renew lock on job %s: %s", self.job.job_id, e)


class Worker:

    def __init__(
        self,
        queue: ScanQueue,
        handler: JobHandler,
        app=None,
        concurrency: int = 2,
        poll_timeout: float = 1.0,
    ):
        self.queue = queue
        self.handler = handler
        self.app = app
        self.concurrency = max(1, int(concurrency))
        self.poll_timeout = poll_timeout
        self._shutdown = threading.Event()
        self._threads: List[threading.Thread] = []

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def start(self) -> None:
        self._shutdown.clear()
        for i in range(self.concurrency):
            t = threading.Thread(
                target=self._consume,
                name=f"scan-worker-{i + 1}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
        logger.info("Worker started with concurrency %d", self.concurrency)

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Stop taking new jobs and wait for in-flight jobs to finish."""
        self._shutdown.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []
        logger.info("Worker stopped")

    @property
    def running(self) -> bool:
        return not self._shutdown.is_set() and any(t.is_alive() for t in self._threads)

    def wait(self) -> None:
        """Block until stop() is called."""
        while not self._shutdown.wait(timeout=1.0):
            pass

    # -----------------------------------------------------------------------
    # Consume loop
    # -----------------------------------------------------------------------

    def _consume(self) -> None:
        while not self._shutdown.is_set():
            try:
                job = self.queue.reserve(timeout=self.poll_timeout)
            except RedisError as e:
                logger.error("Failed to reserve job: %s", e)
                self._shutdown.wait(BROKER_ERROR_BACKOFF_SECONDS)
                continue

            if job is None:
                continue

            try:
                self.process(job)
            except RedisError as e:
                # Delivery stays in `active`; recover_stalled() redelivers it
                logger.error("Failed to resolve job %s: %s", job.job_id, e)
                self._shutdown.wait(BROKER_ERROR_BACKOFF_SECONDS)

    def process(self, job: QueueJob) -> JobOutcome:
        """Run the handler for one job and resolve the delivery."""
        start = time.monotonic()
        keeper = LockKeeper(self.queue, job)
        keeper.start()
        try:
            outcome = self._run_handler(job)
        finally:
            keeper.stop()
        duration = round(time.monotonic() - start, 2)

        if isinstance(outcome, Ack):
            if self.queue.ack(job.job_id, outcome.result, token=job.token):
                logger.info("Job %s handled in %ss", job.job_id, duration)
        elif isinstance(outcome, DeadLetter):
            self.queue.dead_letter(job.job_id, outcome.reason, token=job.token)
        elif isinstance(outcome, Retry):
            self.queue.fail(job.job_id, outcome.reason, token=job.token)
        else:
            self.queue.fail(job.job_id, f"handler returned unexpected outcome {outcome!r}", token=job.token)

        return outcome

    def _run_handler(self, job: QueueJob) -> JobOutcome:
        try:
            if self.app is not None:
                with self.app.app_context():
                    return self.handler(job)
            return self.handler(job)
        except Exception as e:
            logger.exception("Handler crashed on job %s", job.job_id)
            return Retry(f"{type(e).__name__}: {e}")
