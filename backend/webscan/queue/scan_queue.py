# webscan/queue/scan_queue.py
"""
Redis-backed scan queue with at-least-once delivery.

Key layout (all under the queue name prefix, e.g. "scan-queue:"):

    id             INCR counter for job ids
    job:{id}       hash: id, data, attempts, max_attempts, enqueued_at,
                   state, failed_reason, progress, finished_at
    wait           list of job ids ready to run (LPUSH head, consumers take tail)
    active         list of job ids currently held by a worker
    lock:{id}      delivery token with TTL, renewed by the worker while the
                   handler runs (extend_lock)
    delayed        zset of job ids → epoch second they become due
    completed      zset of job ids → completion time
    dead           zset of job ids → time they were dead-lettered

Delivery rules:
    - reserve() moves a job wait → active and counts the attempt
    - ack() moves it active → completed
    - fail() reschedules with exponential backoff (2s, 4s, ...) until
      max_attempts is reached, then moves it to the dead set
    - a job whose lock expired (worker crashed) is moved back to wait by
      recover_stalled(), so handlers must be idempotent
    - ack/fail/dead_letter with a token from an older delivery are refused,
      so a redelivered job is resolved only by its current holder
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis
from redis.exceptions import RedisError, WatchError

from webscan.errors import QueueError
from webscan.queue.jobs import JobState, QueueJob

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 2.0
COMPLETED_RETENTION_SECONDS = 24 * 60 * 60        # 24 hours
DEAD_RETENTION_SECONDS = 7 * 24 * 60 * 60         # 7 days
DEFAULT_LOCK_TTL_SECONDS = 120

DeadLetterCallback = Callable[[QueueJob, str], None]


class ScanQueue:
    """
    Typical usage:
        queue = ScanQueue.from_url("redis://localhost:6379/0")
        job_ref = queue.enqueue({"scan_id": scan.id, "url": scan.url, ...})

        job = queue.reserve(timeout=1.0)
        ...
        queue.ack(job.job_id)
    """

    def __init__(
        self,
        client: "redis.Redis",
        name: str = "scan-queue",
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        completed_retention: int = COMPLETED_RETENTION_SECONDS,
        dead_retention: int = DEAD_RETENTION_SECONDS,
        lock_ttl: int = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = client
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.completed_retention = completed_retention
        self.dead_retention = dead_retention
        self.lock_ttl = lock_ttl
        self.clock = clock
        self._dead_letter_callbacks: List[DeadLetterCallback] = []

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "ScanQueue":
        client = redis.Redis.from_url(url, decode_responses=True)
        return cls(client, **kwargs)

    def close(self) -> None:
        self.redis.close()

    # -----------------------------------------------------------------------
    # Keys
    # -----------------------------------------------------------------------

    def _key(self, suffix: str) -> str:
        return f"{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _lock_key(self, job_id: str) -> str:
        return self._key(f"lock:{job_id}")

    # -----------------------------------------------------------------------
    # Producer side
    # -----------------------------------------------------------------------

    def enqueue(self, payload: Dict[str, Any]) -> str:
        """Store a new job and make it available to workers. Returns the job ref."""
        try:
            job_id = str(self.redis.incr(self._key("id")))
            pipe = self.redis.pipeline(transaction=True)
            pipe.hset(self._job_key(job_id), mapping={
                "id": job_id,
                "data": json.dumps(payload, default=str),
                "attempts": 0,
                "max_attempts": self.max_attempts,
                "enqueued_at": self.clock(),
                "state": JobState.WAITING,
            })
            pipe.lpush(self._key("wait"), job_id)
            pipe.execute()
        except RedisError as e:
            raise QueueError(f"Failed to enqueue job: {e}") from e

        logger.info("Enqueued job %s for scan %s", job_id, payload.get("scan_id"))
        return job_id

    # -----------------------------------------------------------------------
    # Consumer side
    # -----------------------------------------------------------------------

    def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to wait."""
        now = self.clock()
        due = self.redis.zrangebyscore(self._key("delayed"), 0, now)
        promoted = 0
        for job_id in due:
            # ZREM decides the winner when several workers promote at once
            if not self.redis.zrem(self._key("delayed"), job_id):
                continue
            pipe = self.redis.pipeline(transaction=True)
            pipe.hset(self._job_key(job_id), "state", JobState.WAITING)
            pipe.lpush(self._key("wait"), job_id)
            pipe.execute()
            promoted += 1
        if promoted:
            logger.debug("Promoted %d delayed job(s)", promoted)
        return promoted

    def reserve(self, timeout: float = 0) -> Optional[QueueJob]:
        """
        Take the next job, or return None if nothing arrives within `timeout`.

        The attempt counter is incremented here, so QueueJob.attempts
        includes the delivery being handed out.
        """
        self.promote_delayed()

        job_id = self.redis.lmove(self._key("wait"), self._key("active"), "RIGHT", "LEFT")
        if job_id is None and timeout > 0:
            job_id = self.redis.blmove(
                self._key("wait"), self._key("active"), timeout, "RIGHT", "LEFT"
            )
        if job_id is None:
            return None

        if not self.redis.exists(self._job_key(job_id)):
            # Hash pruned underneath a stale id
            self.redis.lrem(self._key("active"), 0, job_id)
            return None

        token = uuid.uuid4().hex
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(self._lock_key(job_id), token, ex=self.lock_ttl)
        pipe.hincrby(self._job_key(job_id), "attempts", 1)
        pipe.hset(self._job_key(job_id), mapping={"state": JobState.ACTIVE, "token": token})
        pipe.execute()

        job = self.get_job(job_id)

        logger.debug("Reserved job %s (attempt %d/%d)", job_id, job.attempts, job.max_attempts)
        return job

    def extend_lock(self, job_id: str, token: str) -> bool:
        """
        Push the lock's expiry out by lock_ttl while `token` still holds it.

        False means the lock expired or belongs to a newer delivery.
        """
        key = self._lock_key(job_id)
        with self.redis.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.get(key) != token:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.expire(key, self.lock_ttl)
                pipe.execute()
            except WatchError:
                return False
        return True

    def holds_delivery(self, job_id: str, token: Optional[str]) -> bool:
        """True if `token` is the current delivery of an active job. None skips the check."""
        if token is None:
            return True
        state, current = self.redis.hmget(self._job_key(job_id), "state", "token")
        return state == JobState.ACTIVE and current == token

    def ack(self, job_id: str, result: Optional[Dict[str, Any]] = None, token: Optional[str] = None) -> bool:
        if not self.holds_delivery(job_id, token):
            logger.warning("Ignoring ack for job %s from a superseded delivery", job_id)
            return False

        now = self.clock()
        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(self._key("active"), 0, job_id)
        pipe.delete(self._lock_key(job_id))
        mapping: Dict[str, Any] = {"state": JobState.COMPLETED, "finished_at": now}
        if result is not None:
            mapping["result"] = json.dumps(result, default=str)
        pipe.hset(self._job_key(job_id), mapping=mapping)
        pipe.zadd(self._key("completed"), {job_id: now})
        pipe.execute()
        logger.info("Job %s completed", job_id)
        return True

    def fail(self, job_id: str, reason: str, token: Optional[str] = None) -> Optional[str]:
        """
        Record a failed attempt.

        Returns JobState.DELAYED when the job will be retried after backoff,
        JobState.DEAD when attempts are exhausted, None when the delivery
        was superseded and nothing changed.
        """
        if not self.holds_delivery(job_id, token):
            logger.warning("Ignoring failure of job %s from a superseded delivery", job_id)
            return None

        job = self.get_job(job_id)
        if job is None:
            logger.warning("fail() on unknown job %s", job_id)
            return JobState.DEAD

        if job.attempts >= job.max_attempts:
            self.dead_letter(job_id, reason)
            return JobState.DEAD

        delay = self.backoff_delay(job.attempts)
        due_at = self.clock() + delay

        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(self._key("active"), 0, job_id)
        pipe.delete(self._lock_key(job_id))
        pipe.hset(self._job_key(job_id), mapping={
            "state": JobState.DELAYED,
            "failed_reason": reason[:1000],
        })
        pipe.zadd(self._key("delayed"), {job_id: due_at})
        pipe.execute()

        logger.warning(
            "Job %s failed (attempt %d/%d), retrying in %.0fs: %s",
            job_id, job.attempts, job.max_attempts, delay, reason,
        )
        return JobState.DELAYED

    def backoff_delay(self, attempts: int) -> float:
        """Exponential backoff: base, 2×base, 4×base, ..."""
        return self.backoff_seconds * (2 ** max(0, attempts - 1))

    def dead_letter(self, job_id: str, reason: str, token: Optional[str] = None) -> bool:
        """Move a job to the dead set and notify dead-letter callbacks."""
        if not self.holds_delivery(job_id, token):
            logger.warning("Ignoring dead-letter of job %s from a superseded delivery", job_id)
            return False

        now = self.clock()
        pipe = self.redis.pipeline(transaction=True)
        pipe.lrem(self._key("active"), 0, job_id)
        pipe.lrem(self._key("wait"), 0, job_id)
        pipe.zrem(self._key("delayed"), job_id)
        pipe.delete(self._lock_key(job_id))
        pipe.hset(self._job_key(job_id), mapping={
            "state": JobState.DEAD,
            "failed_reason": reason[:1000],
            "finished_at": now,
        })
        pipe.zadd(self._key("dead"), {job_id: now})
        pipe.execute()

        logger.error("Job %s moved to dead set: %s", job_id, reason)

        job = self.get_job(job_id)
        if job is None:
            return True
        for callback in self._dead_letter_callbacks:
            try:
                callback(job, reason)
            except Exception:
                logger.exception("Dead-letter callback failed for job %s", job_id)
        return True

    def on_dead_letter(self, callback: DeadLetterCallback) -> None:
        self._dead_letter_callbacks.append(callback)

    def update_progress(self, job_id: str, progress: Dict[str, Any]) -> None:
        """Publish the latest progress event. The lock is renewed by the Worker, not here."""
        self.redis.hset(self._job_key(job_id), "progress", json.dumps(progress, default=str))

    # -----------------------------------------------------------------------
    # Inspection
    # -----------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[QueueJob]:
        raw = self.redis.hgetall(self._job_key(job_id))
        if not raw:
            return None
        return QueueJob.from_hash(raw)

    def dead_jobs(self, limit: int = 50) -> List[QueueJob]:
        ids = self.redis.zrevrange(self._key("dead"), 0, max(0, limit - 1))
        jobs = []
        for job_id in ids:
            job = self.get_job(job_id)
            if job:
                jobs.append(job)
        return jobs

    def counts(self) -> Dict[str, int]:
        return {
            "waiting": self.redis.llen(self._key("wait")),
            "active": self.redis.llen(self._key("active")),
            "delayed": self.redis.zcard(self._key("delayed")),
            "completed": self.redis.zcard(self._key("completed")),
            "dead": self.redis.zcard(self._key("dead")),
        }

    def health(self) -> Dict[str, Any]:
        try:
            self.redis.ping()
            counts = self.counts()
        except RedisError as e:
            logger.warning("Queue health check failed: %s", e)
            return {"healthy": False, "error": str(e)}
        return {"healthy": True, **counts}

    # -----------------------------------------------------------------------
    # Housekeeping
    # -----------------------------------------------------------------------

    def recover_stalled(self) -> int:
        """
        Return active jobs whose worker stopped refreshing the lock to wait.

        A stalled job that already used all its attempts goes to the dead set.
        """
        recovered = 0
        for job_id in self.redis.lrange(self._key("active"), 0, -1):
            if self.redis.exists(self._lock_key(job_id)):
                continue

            job = self.get_job(job_id)
            if job is not None and job.attempts >= job.max_attempts:
                self.dead_letter(job_id, "job stalled more than allowable limit")
                continue

            # LREM decides the winner when several workers recover at once
            if not self.redis.lrem(self._key("active"), 0, job_id):
                continue
            pipe = self.redis.pipeline(transaction=True)
            pipe.hset(self._job_key(job_id), "state", JobState.WAITING)
            pipe.rpush(self._key("wait"), job_id)
            pipe.execute()
            recovered += 1
            logger.warning("Recovered stalled job %s", job_id)

        return recovered

    def prune(self, now: Optional[float] = None) -> Tuple[int, int]:
        """Drop completed jobs after 24h and dead jobs after 7d."""
        now = self.clock() if now is None else now
        removed = []
        for set_name, retention in (
            ("completed", self.completed_retention),
            ("dead", self.dead_retention),
        ):
            cutoff = now - retention
            ids = self.redis.zrangebyscore(self._key(set_name), 0, cutoff)
            if ids:
                pipe = self.redis.pipeline(transaction=True)
                pipe.zrem(self._key(set_name), *ids)
                pipe.delete(*[self._job_key(i) for i in ids])
                pipe.execute()
            removed.append(len(ids))

        if any(removed):
            logger.info("Pruned %d completed and %d dead job(s)", removed[0], removed[1])
        return removed[0], removed[1]

    def remove_dead(self, job_id: str) -> bool:
        """Discard a dead job after it has been inspected."""
        if not self.redis.zrem(self._key("dead"), job_id):
            return False
        self.redis.delete(self._job_key(job_id))
        logger.info("Removed dead job %s", job_id)
        return True
