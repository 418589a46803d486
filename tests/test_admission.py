from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from webscan.billing.plans import DatabasePlanService, PlanCheck, PlanService
from webscan.errors import (
    AdmissionInfrastructureError,
    DailyLimitExceeded,
    DuplicateScan,
    InvalidProtocol,
    InvalidRequester,
    InvalidUrl,
    PlanLimitExceeded,
    PrivateNetworkTarget,
    QueueError,
)
from webscan.models import Scan, UsageStats
from webscan.scans.admission import AdmissionGate, ScanRequest

NOW = datetime(2026, 3, 10, 12, 0, 0)


class RecordingPlanService(PlanService):
    def __init__(self, allowed=True, reason=None):
        self.allowed = allowed
        self.reason = reason
        self.checked = []
        self.tracked = []

    def check_scan_limit(self, requester_id):
        self.checked.append(requester_id)
        return PlanCheck(allowed=self.allowed, reason=self.reason)

    def track_scan_usage(self, requester_id):
        self.tracked.append(requester_id)


class BrokenQueue:
    def enqueue(self, payload):
        raise QueueError("broker unavailable")


@pytest.fixture
def plans():
    return RecordingPlanService()


@pytest.fixture
def gate(app, scan_queue, plans):
    return AdmissionGate(
        scan_queue,
        plans,
        production=True,
        duplicate_window=timedelta(seconds=300),
        tz_name="UTC",
        clock=lambda: NOW,
    )


# ---------------------------------------------------------------------------
# Anonymous
# ---------------------------------------------------------------------------

def test_anonymous_scan_is_admitted_and_queued(gate, scan_queue, plans):
    scan = gate.admit(ScanRequest(url="https://example.com", user_agent="curl/8", source_address="203.0.113.9"))

    assert scan.status == "pending"
    assert scan.is_public_scan is True
    assert scan.requester_id is None
    assert scan.domain == "example.com"
    assert scan.created_at == NOW
    assert scan.user_agent == "curl/8"
    assert scan.ip_address == "203.0.113.9"

    job = scan_queue.get_job(scan.job_ref)
    assert job is not None
    assert job.data["scan_id"] == scan.id
    assert job.data["url"] == "https://example.com"
    assert job.data["scan_config"]["timeout"] == 30000
    assert scan_queue.counts()["waiting"] == 1

    # Anonymous scans skip the plan and usage bookkeeping
    assert plans.checked == []
    assert plans.tracked == []
    assert UsageStats.query.count() == 0


@pytest.mark.parametrize("url,error", [
    ("not a url", InvalidUrl),
    ("ftp://example.com", InvalidProtocol),
    ("http://192.168.1.10/", PrivateNetworkTarget),
    ("http://localhost:3000/", PrivateNetworkTarget),
])
def test_rejected_urls_leave_no_trace(gate, scan_queue, url, error):
    with pytest.raises(error):
        gate.admit(ScanRequest(url=url))
    assert Scan.query.count() == 0
    assert scan_queue.counts()["waiting"] == 0


def test_private_targets_allowed_outside_production(app, scan_queue, plans):
    gate = AdmissionGate(scan_queue, plans, production=False, clock=lambda: NOW)
    scan = gate.admit(ScanRequest(url="http://192.168.1.10/"))
    assert scan.domain == "192.168.1.10"


def test_scan_config_is_clamped_and_stored(gate):
    scan = gate.admit(ScanRequest(
        url="https://example.com",
        scan_config={"timeout": 5, "maxRedirects": 99, "followRedirects": False},
    ))
    assert scan.scan_config["timeout"] == 1000
    assert scan.scan_config["max_redirects"] == 10
    assert scan.scan_config["follow_redirects"] is False


# ---------------------------------------------------------------------------
# Quota
# ---------------------------------------------------------------------------

def test_daily_limit_exhausted(gate, make_requester, make_scan, scan_queue):
    make_requester("u1", plan="free", scan_limit=3)
    for hours in (1, 2, 3):
        make_scan(url=f"https://site{hours}.example", requester_id="u1",
                  created_at=NOW - timedelta(hours=hours), status="completed")

    with pytest.raises(DailyLimitExceeded) as exc:
        gate.admit(ScanRequest(url="https://example.com", requester_id="u1"))

    err = exc.value
    assert err.http_status == 429
    assert err.details == {
        "limit": 3,
        "used": 3,
        "remaining": 0,
        "resetAt": "2026-03-11T00:00:00+00:00",
    }
    assert Scan.query.count() == 3
    assert scan_queue.counts()["waiting"] == 0


def test_scans_before_midnight_do_not_count(gate, make_requester, make_scan):
    make_requester("u1", scan_limit=1)
    make_scan(url="https://old.example", requester_id="u1", created_at=NOW - timedelta(hours=13))

    scan = gate.admit(ScanRequest(url="https://example.com", requester_id="u1"))
    assert scan.status == "pending"


def test_unlimited_requester_skips_quota(gate, make_requester, make_scan):
    make_requester("u1", plan="enterprise")
    for minutes in range(10, 60, 10):
        make_scan(url=f"https://s{minutes}.example", requester_id="u1",
                  created_at=NOW - timedelta(minutes=minutes))

    assert gate.admit(ScanRequest(url="https://example.com", requester_id="u1"))


def test_unknown_requester(gate):
    with pytest.raises(InvalidRequester) as exc:
        gate.admit(ScanRequest(url="https://example.com", requester_id="ghost"))
    assert exc.value.http_status == 401


# ---------------------------------------------------------------------------
# Plan capability
# ---------------------------------------------------------------------------

def test_plan_denial_is_reported_with_reason(app, scan_queue, make_requester):
    make_requester("u1", plan="pro")
    plans = RecordingPlanService(allowed=False, reason="Monthly scan limit reached (1000 scans per month)")
    gate = AdmissionGate(scan_queue, plans, clock=lambda: NOW, tz_name="UTC")

    with pytest.raises(PlanLimitExceeded) as exc:
        gate.admit(ScanRequest(url="https://example.com", requester_id="u1"))

    assert exc.value.http_status == 403
    assert exc.value.message == "Monthly scan limit reached (1000 scans per month)"
    assert exc.value.details == {"reason": "Monthly scan limit reached (1000 scans per month)"}
    assert Scan.query.count() == 0


def test_quota_checked_before_plan(gate, plans, make_requester, make_scan):
    make_requester("u1", scan_limit=1)
    make_scan(requester_id="u1", created_at=NOW - timedelta(minutes=30))
    plans.allowed = False

    with pytest.raises(DailyLimitExceeded):
        gate.admit(ScanRequest(url="https://other.example", requester_id="u1"))
    assert plans.checked == []


# ---------------------------------------------------------------------------
# Duplicates
# ---------------------------------------------------------------------------

def test_duplicate_within_window_is_rejected(gate, make_requester, make_scan):
    make_requester("u1", plan="pro")
    prior = make_scan(url="https://example.com", requester_id="u1",
                      created_at=NOW - timedelta(seconds=300))

    with pytest.raises(DuplicateScan) as exc:
        gate.admit(ScanRequest(url="https://example.com", requester_id="u1"))

    assert exc.value.http_status == 429
    assert exc.value.details == {"waitSeconds": 300, "priorScanId": prior.id}


def test_duplicate_window_has_expired(gate, make_requester, make_scan):
    make_requester("u1", plan="pro")
    make_scan(url="https://example.com", requester_id="u1",
              created_at=NOW - timedelta(seconds=301))

    scan = gate.admit(ScanRequest(url="https://example.com", requester_id="u1"))
    assert scan.status == "pending"


def test_duplicate_is_per_requester_and_exact_url(gate, make_requester, make_scan):
    make_requester("u1", plan="pro")
    make_requester("u2", plan="pro")
    make_scan(url="https://example.com", requester_id="u2", created_at=NOW - timedelta(seconds=10))
    make_scan(url="https://example.com/", requester_id="u1", created_at=NOW - timedelta(seconds=10))

    assert gate.admit(ScanRequest(url="https://example.com", requester_id="u1"))


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

def test_authenticated_intake_records_usage(gate, plans, make_requester, scan_queue):
    make_requester("u1", plan="pro")

    first = gate.admit(ScanRequest(url="https://a.example", requester_id="u1"))
    second = gate.admit(ScanRequest(url="https://b.example", requester_id="u1", is_public_scan=True))

    assert first.is_public_scan is False
    assert second.is_public_scan is True
    assert first.job_ref != second.job_ref

    usage = UsageStats.query.filter_by(requester_id="u1").one()
    assert usage.date == NOW.date()
    assert usage.scans_count == 2
    assert plans.tracked == ["u1", "u1"]
    assert scan_queue.counts()["waiting"] == 2


def test_enqueue_failure_removes_scan(app, make_requester, plans):
    make_requester("u1", plan="pro")
    gate = AdmissionGate(BrokenQueue(), plans, clock=lambda: NOW, tz_name="UTC")

    with pytest.raises(AdmissionInfrastructureError) as exc:
        gate.admit(ScanRequest(url="https://example.com", requester_id="u1"))

    assert exc.value.code == "INTERNAL_ERROR"
    assert exc.value.http_status == 500
    assert Scan.query.count() == 0
    assert UsageStats.query.count() == 0
    assert plans.tracked == []


def test_failed_job_ref_commit_withdraws_the_job(app, scan_queue, make_requester, plans, monkeypatch):
    make_requester("u1", plan="pro")
    gate = AdmissionGate(scan_queue, plans, clock=lambda: NOW, tz_name="UTC")

    def boom(*args, **kwargs):
        raise OperationalError("UPDATE usage_stats", {}, Exception("database is locked"))
    monkeypatch.setattr("webscan.scans.admission.increment_daily_usage", boom)

    with pytest.raises(AdmissionInfrastructureError):
        gate.admit(ScanRequest(url="https://example.com", requester_id="u1"))

    assert Scan.query.count() == 0
    counts = scan_queue.counts()
    assert counts["waiting"] == 0
    assert counts["dead"] == 1
    assert scan_queue.reserve() is None


def test_database_plan_service_blocks_after_daily_plan_limit(app, scan_queue, make_requester):
    # Requester override above the plan's daily cap: the plan still applies
    make_requester("u1", plan="free", scan_limit=10)
    gate = AdmissionGate(
        scan_queue, DatabasePlanService(tz_name="UTC"), tz_name="UTC",
    )

    for i in range(3):
        gate.admit(ScanRequest(url=f"https://s{i}.example", requester_id="u1"))

    with pytest.raises(PlanLimitExceeded) as exc:
        gate.admit(ScanRequest(url="https://s9.example", requester_id="u1"))
    assert exc.value.details["reason"] == "Daily scan limit reached (3 scans per day)"
