# webscan/queue/__init__.py
"""
Job queue between admission and the scan workers.

    from webscan.queue import ScanQueue, Worker

    queue = ScanQueue.from_url(app.config["REDIS_URL"])
    worker = Worker(queue, handler=orchestrator.execute, app=app, concurrency=2)
    worker.start()
"""
from webscan.queue.jobs import Ack, DeadLetter, JobOutcome, JobState, QueueJob, Retry
from webscan.queue.scan_queue import ScanQueue
from webscan.queue.consumer import Worker

__all__ = [
    "Ack", "DeadLetter", "Retry", "JobOutcome", "JobState", "QueueJob",
    "ScanQueue", "Worker",
]
