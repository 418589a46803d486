# webscan/queue/jobs.py
"""
Queue data structures.

QueueJob is the read-only view of one job that handlers receive.
Handlers answer with a JobOutcome (Ack, Retry or DeadLetter) and the
consumer loop turns that into the matching queue call. Retrying is never
signalled by raising.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union


# ---------------------------------------------------------------------------
# Job states
# ---------------------------------------------------------------------------

class JobState:
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    DEAD = "dead"


# ---------------------------------------------------------------------------
# Job view
# ---------------------------------------------------------------------------

@dataclass
class QueueJob:
    """
    One job as stored in the broker.

    Fields:
        job_id:        Broker-assigned reference (also stored as Scan.job_ref)
        data:          ScanJobData payload: scan_id, url, domain,
                       requester_id, is_public_scan, scan_config
        attempts:      Deliveries so far, including the current one
        max_attempts:  Attempt ceiling before the job is dead-lettered
        enqueued_at:   Epoch seconds
        state:         One of JobState
        failed_reason: Last failure reason, if any
        progress:      Last progress event published by the handler
        token:         Lock token of the current delivery; ack/fail with a
                       stale token are refused
    """
    job_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    enqueued_at: float = 0.0
    state: str = JobState.WAITING
    failed_reason: Optional[str] = None
    progress: Optional[Dict[str, Any]] = None
    finished_at: Optional[float] = None
    token: Optional[str] = None

    @property
    def scan_id(self) -> Optional[str]:
        return self.data.get("scan_id")

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts >= self.max_attempts

    @classmethod
    def from_hash(cls, raw: Dict[str, str]) -> "QueueJob":
        return cls(
            job_id=raw["id"],
            data=json.loads(raw.get("data") or "{}"),
            attempts=int(raw.get("attempts") or 0),
            max_attempts=int(raw.get("max_attempts") or 3),
            enqueued_at=float(raw.get("enqueued_at") or 0),
            state=raw.get("state") or JobState.WAITING,
            failed_reason=raw.get("failed_reason") or None,
            progress=json.loads(raw["progress"]) if raw.get("progress") else None,
            finished_at=float(raw["finished_at"]) if raw.get("finished_at") else None,
            token=raw.get("token") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "scanId": self.scan_id,
            "state": self.state,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "enqueuedAt": self.enqueued_at,
            "failedReason": self.failed_reason,
            "progress": self.progress,
        }


# ---------------------------------------------------------------------------
# Handler outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Ack:
    result: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Retry:
    reason: str


@dataclass(frozen=True)
class DeadLetter:
    reason: str


JobOutcome = Union[Ack, Retry, DeadLetter]
