# webscan/errors.py
"""
Error taxonomy for the scan pipeline.

Admission errors    client-correctable, returned synchronously, never retried
                    (InvalidUrl, InvalidProtocol, PrivateNetworkTarget).
Policy errors       client-correctable but state-dependent
                    (DailyLimitExceeded, DuplicateScan, PlanLimitExceeded).
Probe errors        ProbeFetchError; absorbed by the orchestrator and turned
                    into an `error` finding.
Infrastructure      storage / broker failures (AdmissionInfrastructureError,
                    QueueError); fail the request or go through queue retry.

Every ScanError renders to the wire shape {error, code, details?}.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ScanError(Exception):
    """Base class. Subclasses set `code` and `http_status`."""

    code = "INTERNAL_ERROR"
    http_status = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


# ---------------------------------------------------------------------------
# Admission errors
# ---------------------------------------------------------------------------

class AdmissionError(ScanError):
    http_status = 400


class InvalidUrl(AdmissionError):
    code = "INVALID_URL"
    message = "Invalid URL format"


class InvalidProtocol(AdmissionError):
    code = "INVALID_PROTOCOL"
    message = "Only HTTP and HTTPS URLs are supported"


class PrivateNetworkTarget(AdmissionError):
    code = "PRIVATE_NETWORK"
    http_status = 403
    message = "Cannot scan local or private network addresses"


class InvalidRequester(AdmissionError):
    code = "INVALID_REQUESTER"
    http_status = 401
    message = "Requester not found"


# ---------------------------------------------------------------------------
# Policy errors
# ---------------------------------------------------------------------------

class DailyLimitExceeded(AdmissionError):
    code = "DAILY_LIMIT_EXCEEDED"
    http_status = 429

    def __init__(self, limit: int, used: int, reset_at: str):
        super().__init__(
            f"Daily scan limit reached. You've used all {limit} scans for today. "
            f"Limit resets at midnight.",
            details={"limit": limit, "used": used, "remaining": 0, "resetAt": reset_at},
        )
        self.limit = limit
        self.used = used
        self.reset_at = reset_at


class DuplicateScan(AdmissionError):
    code = "DUPLICATE_SCAN"
    http_status = 429

    def __init__(self, wait_seconds: int, prior_scan_id: str):
        minutes = max(1, wait_seconds // 60)
        super().__init__(
            f"Duplicate scan detected. Please wait {minutes} minutes before "
            f"scanning the same URL again.",
            details={"waitSeconds": wait_seconds, "priorScanId": prior_scan_id},
        )
        self.wait_seconds = wait_seconds
        self.prior_scan_id = prior_scan_id


class PlanLimitExceeded(AdmissionError):
    code = "PLAN_LIMIT_EXCEEDED"
    http_status = 403

    def __init__(self, reason: str):
        super().__init__(reason, details={"reason": reason})
        self.reason = reason


# ---------------------------------------------------------------------------
# Infrastructure errors
# ---------------------------------------------------------------------------

class AdmissionInfrastructureError(ScanError):
    code = "INTERNAL_ERROR"
    http_status = 500


class QueueError(ScanError):
    code = "QUEUE_ERROR"
    http_status = 503
    message = "Scan queue is unavailable"


class InvalidTransition(ScanError):
    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot transition scan from '{current}' to '{target}'")
        self.current = current
        self.target = target


# ---------------------------------------------------------------------------
# Probe errors
# ---------------------------------------------------------------------------

class ProbeFetchError(Exception):
    """The first required fetch of a probe could not reach the target."""

    def __init__(self, url: str, cause: Exception):
        super().__init__(f"Failed to fetch {url}: {type(cause).__name__}: {cause}")
        self.url = url
        self.cause = cause
