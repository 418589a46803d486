from datetime import timedelta

import pytest

from webscan.extensions import db
from webscan.models import Scan, now_utc
from webscan.scanner.orchestrator import ScanOrchestrator
from webscan.scanner.probes import CookieAuditProbe, HeaderAuditProbe


@pytest.fixture
def requester(make_requester):
    return make_requester("user-1", plan="free")


# ---------------------------------------------------------------------------
# POST /scans
# ---------------------------------------------------------------------------

def test_anonymous_scan_is_admitted(client, scan_queue):
    resp = client.post("/scans", json={"url": "https://example.com/login"})

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["status"] == "pending"
    assert body["domain"] == "example.com"
    assert body["estimatedCompletionTime"] == "1-3 minutes"

    scan = db.session.get(Scan, body["scanId"])
    assert scan.is_public_scan is True
    assert scan.requester_id is None
    assert scan.job_ref == body["jobRef"]
    assert scan_queue.get_job(body["jobRef"]).scan_id == scan.id


def test_request_metadata_is_recorded(client):
    resp = client.post(
        "/scans",
        json={"url": "https://example.com", "config": {"timeout": 999999}},
        headers={"User-Agent": "curl/8.0", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )
    scan = db.session.get(Scan, resp.get_json()["scanId"])
    assert scan.user_agent == "curl/8.0"
    assert scan.ip_address == "203.0.113.9"
    assert scan.scan_config["timeout"] == 300000


@pytest.mark.parametrize("payload, status, code", [
    ({}, 400, "INVALID_URL"),
    ({"url": 42}, 400, "INVALID_URL"),
    ({"url": "not a url"}, 400, "INVALID_URL"),
    ({"url": "ftp://example.com"}, 400, "INVALID_PROTOCOL"),
])
def test_invalid_targets_are_rejected(client, payload, status, code):
    resp = client.post("/scans", json=payload)
    assert resp.status_code == status
    assert resp.get_json()["code"] == code
    assert Scan.query.count() == 0


def test_invalid_token_is_rejected(client):
    resp = client.post(
        "/scans", json={"url": "https://example.com"}, headers={"Authorization": "Bearer nope"}
    )
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "UNAUTHORIZED"


def test_token_for_unknown_requester_is_rejected(client, auth_headers):
    resp = client.post("/scans", json={"url": "https://example.com"}, headers=auth_headers("ghost"))
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "INVALID_REQUESTER"


def test_daily_limit(client, make_requester, make_scan, auth_headers):
    make_requester("user-2", scan_limit=1)
    make_scan(url="https://a.example.com", requester_id="user-2")

    resp = client.post("/scans", json={"url": "https://b.example.com"}, headers=auth_headers("user-2"))

    assert resp.status_code == 429
    body = resp.get_json()
    assert body["code"] == "DAILY_LIMIT_EXCEEDED"
    assert body["details"]["limit"] == 1
    assert body["details"]["used"] == 1
    assert body["details"]["remaining"] == 0


def test_duplicate_scan(client, requester, make_scan, auth_headers):
    prior = make_scan(url="https://example.com", requester_id="user-1",
                      created_at=now_utc() - timedelta(minutes=2))

    resp = client.post("/scans", json={"url": "https://example.com"}, headers=auth_headers("user-1"))

    assert resp.status_code == 429
    body = resp.get_json()
    assert body["code"] == "DUPLICATE_SCAN"
    assert body["details"] == {"waitSeconds": 300, "priorScanId": prior.id}


def test_authenticated_scan_is_private_by_default(client, requester, auth_headers):
    resp = client.post("/scans", json={"url": "https://example.com"}, headers=auth_headers("user-1"))

    scan = db.session.get(Scan, resp.get_json()["scanId"])
    assert scan.requester_id == "user-1"
    assert scan.is_public_scan is False


# ---------------------------------------------------------------------------
# GET /scans/<id>
# ---------------------------------------------------------------------------

def test_unknown_scan_is_404(client):
    resp = client.get("/scans/nope")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "scan not found", "code": "NOT_FOUND"}


def test_private_scan_is_hidden_from_others(client, make_requester, make_scan, auth_headers):
    make_requester("user-1")
    make_requester("user-2")
    scan = make_scan(requester_id="user-1")

    assert client.get(f"/scans/{scan.id}").status_code == 404
    assert client.get(f"/scans/{scan.id}", headers=auth_headers("user-2")).status_code == 404
    assert client.get(f"/scans/{scan.id}", headers=auth_headers("user-1")).status_code == 200


def test_pending_scan_shows_progress(client, scan_queue):
    scan_id = client.post("/scans", json={"url": "https://example.com"}).get_json()["scanId"]
    scan = db.session.get(Scan, scan_id)
    scan_queue.update_progress(scan.job_ref, {"stage": "testing", "percentage": 37})

    body = client.get(f"/scans/{scan_id}").get_json()

    assert body["status"] == "pending"
    assert body["progress"] == {"stage": "testing", "percentage": 37}
    assert "report" not in body


def test_completed_scan_includes_report(client, scan_queue, http):
    http.add("https://example.com", headers={"X-Frame-Options": "DENY"})
    scan_id = client.post("/scans", json={"url": "https://example.com"}).get_json()["scanId"]

    orchestrator = ScanOrchestrator(
        queue=scan_queue,
        probes=(HeaderAuditProbe(), CookieAuditProbe()),
        session_factory=lambda config: http,
    )
    orchestrator.execute(scan_queue.reserve())

    body = client.get(f"/scans/{scan_id}").get_json()

    assert body["status"] == "completed"
    assert "progress" not in body
    assert body["severityCounts"] == {"critical": 0, "high": 0, "medium": 2, "low": 2, "info": 1}
    assert body["totalVulnerabilities"] == 5
    report = body["report"]
    assert report["riskScore"] == "medium"
    assert len(report["findings"]) == 7
    assert {f["outcome"] for f in report["findings"]} == {"fail", "warning", "pass"}


# ---------------------------------------------------------------------------
# GET /scans, /scans/usage
# ---------------------------------------------------------------------------

def test_history_requires_auth(client):
    resp = client.get("/scans")
    assert resp.status_code == 401


def test_history_lists_own_scans_newest_first(client, make_requester, make_scan, auth_headers):
    make_requester("user-1")
    make_requester("user-2")
    now = now_utc()
    older = make_scan(url="https://a.example.com", requester_id="user-1",
                      created_at=now - timedelta(hours=2))
    newer = make_scan(url="https://b.example.com", requester_id="user-1", status="completed",
                      created_at=now - timedelta(hours=1), high_count=1, total_vulnerabilities=1)
    make_scan(url="https://c.example.com", requester_id="user-2")

    body = client.get("/scans", headers=auth_headers("user-1")).get_json()

    assert body["count"] == 2
    assert [s["scanId"] for s in body["scans"]] == [newer.id, older.id]
    assert body["scans"][0]["riskScore"] == "high"
    assert body["scans"][1]["riskScore"] is None


@pytest.mark.parametrize("limit, expected", [("1", 1), ("0", 1), ("500", 3), ("abc", 3)])
def test_history_limit_is_clamped(client, requester, make_scan, auth_headers, limit, expected):
    for i in range(3):
        make_scan(url=f"https://{i}.example.com", requester_id="user-1")

    body = client.get(f"/scans?limit={limit}", headers=auth_headers("user-1")).get_json()
    assert body["count"] == expected


def test_usage(client, requester, auth_headers):
    for host in ("a", "b"):
        resp = client.post("/scans", json={"url": f"https://{host}.example.com"},
                           headers=auth_headers("user-1"))
        assert resp.status_code == 201

    body = client.get("/scans/usage", headers=auth_headers("user-1")).get_json()

    assert body["plan"] == "free"
    assert body["today"]["used"] == 2
    assert body["today"]["limit"] == 3
    assert body["today"]["remaining"] == 1
    assert body["today"]["resetAt"].endswith("+00:00")
    assert body["month"] == {"used": 2, "limit": 30}


def test_usage_unlimited(client, make_requester, auth_headers):
    make_requester("big", plan="enterprise")
    body = client.get("/scans/usage", headers=auth_headers("big")).get_json()
    assert body["today"]["limit"] == -1
    assert body["today"]["remaining"] == -1


# ---------------------------------------------------------------------------
# App-level
# ---------------------------------------------------------------------------

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "up and running"
    assert body["queue"]["healthy"] is True


def test_unknown_route_is_json_404(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Not found"
