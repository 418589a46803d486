# webscan/scans/lifecycle.py
"""
Scan lifecycle state machine.

    pending ──► running ──► completed
       │           │
       └───────────┴──────► failed

`pending` is set at admission and is the only initial state. `running` is
entered once by the orchestrator. `completed` and `failed` are terminal.
`cancelled` is reserved; nothing in the pipeline transitions into it.
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet

from webscan.errors import InvalidTransition
from webscan.models import Scan, now_utc

logger = logging.getLogger(__name__)


class ScanStatus:
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (PENDING, RUNNING, COMPLETED, FAILED, CANCELLED)


TERMINAL_STATES: FrozenSet[str] = frozenset({
    ScanStatus.COMPLETED,
    ScanStatus.FAILED,
    ScanStatus.CANCELLED,
})

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    ScanStatus.PENDING: frozenset({ScanStatus.RUNNING, ScanStatus.FAILED}),
    ScanStatus.RUNNING: frozenset({ScanStatus.COMPLETED, ScanStatus.FAILED}),
    ScanStatus.COMPLETED: frozenset(),
    ScanStatus.FAILED: frozenset(),
    ScanStatus.CANCELLED: frozenset(),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(scan: Scan, target: str) -> Scan:
    """
    Move a scan to `target`, stamping started_at / completed_at.

    Does not commit; the caller owns the session so the status change lands
    in the same commit as the rest of its writes.
    Raises InvalidTransition for anything outside ALLOWED_TRANSITIONS.
    """
    current = scan.status
    if not can_transition(current, target):
        raise InvalidTransition(current, target)

    scan.status = target
    if target == ScanStatus.RUNNING:
        scan.started_at = now_utc()
    elif target in TERMINAL_STATES:
        scan.completed_at = now_utc()

    logger.info("Scan %s: %s → %s", scan.id, current, target)
    return scan
