# =============================================================================
# File: webscan/scans/routes.py
# Description: Scan routes: admit a scan, poll its status, list history,
#   show today's usage.
#
# Auth:
#   - POST /scans: optional bearer token (anonymous scans are public)
#   - GET /scans/<id>: optional; private scans only visible to their owner
#   - GET /scans: requester only
#   - GET /scans/usage: requester only
# =============================================================================

from __future__ import annotations

import logging
from datetime import timezone
from typing import Any, Dict, Optional

from flask import Blueprint, current_app, jsonify, request
from redis.exceptions import RedisError

from webscan.auth.decorators import current_requester_id, optional_auth, require_auth
from webscan.billing.plans import get_plan_limits
from webscan.billing.usage import get_usage_counts, local_day_window
from webscan.errors import InvalidUrl, ScanError
from webscan.extensions import db, get_scan_queue
from webscan.models import Requester, Scan
from webscan.scanner.report import calculate_risk_score
from webscan.scans.admission import ScanRequest, build_admission_gate
from webscan.scans.lifecycle import ScanStatus, is_terminal

logger = logging.getLogger(__name__)

scans_bp = Blueprint("scans", __name__, url_prefix="/scans")

ESTIMATED_COMPLETION = "1-3 minutes"
HISTORY_DEFAULT_LIMIT = 20
HISTORY_MAX_LIMIT = 100


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


def _error(e: ScanError):
    return jsonify(e.to_dict()), e.http_status


def _client_address() -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For") or ""
    if forwarded:
        return forwarded.split(",")[0].strip()[:64]
    return (request.remote_addr or "")[:64] or None


def _job_progress(scan: Scan) -> Optional[Dict[str, Any]]:
    if not scan.job_ref or is_terminal(scan.status):
        return None
    try:
        job = get_scan_queue().get_job(scan.job_ref)
    except RedisError as e:
        logger.warning(f"Could not read progress for scan {scan.id}: {e}")
        return None
    if job is None:
        return None
    return job.progress


def scan_to_ui(s: Scan) -> dict:
    return {
        "scanId": s.id,
        "url": s.url,
        "domain": s.domain,
        "status": s.status,
        "isPublicScan": bool(s.is_public_scan),
        "createdAt": _iso(s.created_at),
        "startedAt": _iso(s.started_at),
        "completedAt": _iso(s.completed_at),
        "severityCounts": s.severity_counts(),
        "totalVulnerabilities": s.total_vulnerabilities or 0,
        "error": s.error_message,
    }


def _visible_to_caller(scan: Scan) -> bool:
    if scan.is_public_scan or not scan.requester_id:
        return True
    return scan.requester_id == current_requester_id()


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@scans_bp.post("")
@optional_auth
def create_scan():
    body = request.get_json(silent=True) or {}
    url = body.get("url")
    if not isinstance(url, str):
        return _error(InvalidUrl())

    scan_request = ScanRequest(
        url=url,
        requester_id=current_requester_id(),
        is_public_scan=bool(body.get("isPublicScan", False)),
        user_agent=(request.headers.get("User-Agent") or None),
        source_address=_client_address(),
        scan_config=body.get("config") if isinstance(body.get("config"), dict) else None,
    )

    try:
        scan = build_admission_gate(current_app).admit(scan_request)
    except ScanError as e:
        return _error(e)

    return jsonify({
        "scanId": scan.id,
        "jobRef": scan.job_ref,
        "url": scan.url,
        "domain": scan.domain,
        "status": scan.status,
        "createdAt": _iso(scan.created_at),
        "estimatedCompletionTime": ESTIMATED_COMPLETION,
    }), 201


@scans_bp.get("")
@require_auth
def list_scans():
    try:
        limit = int(request.args.get("limit", HISTORY_DEFAULT_LIMIT))
    except (TypeError, ValueError):
        limit = HISTORY_DEFAULT_LIMIT
    limit = min(HISTORY_MAX_LIMIT, max(1, limit))

    scans = (
        Scan.query
        .filter(Scan.requester_id == current_requester_id())
        .order_by(Scan.created_at.desc())
        .limit(limit)
        .all()
    )

    items = []
    for s in scans:
        item = scan_to_ui(s)
        item["riskScore"] = (
            calculate_risk_score(s.severity_counts())
            if s.status == ScanStatus.COMPLETED else None
        )
        items.append(item)

    return jsonify(scans=items, count=len(items)), 200


@scans_bp.get("/usage")
@require_auth
def usage():
    rid = current_requester_id()
    requester = db.session.get(Requester, rid)
    tz_name = current_app.config.get("DAILY_RESET_TZ") or None

    limits = get_plan_limits(requester.plan)
    counts = get_usage_counts(rid, tz_name=tz_name)
    _start, reset_at, _day = local_day_window(tz_name=tz_name)

    daily_limit = requester.scan_limit
    remaining = -1 if daily_limit == -1 else max(0, daily_limit - counts["scans_today"])

    return jsonify(
        plan=requester.plan,
        today={
            "used": counts["scans_today"],
            "limit": daily_limit,
            "remaining": remaining,
            "resetAt": reset_at.replace(tzinfo=timezone.utc).isoformat(),
        },
        month={
            "used": counts["scans_this_month"],
            "limit": limits["scans_per_month"],
        },
    ), 200


@scans_bp.get("/<scan_id>")
@optional_auth
def get_scan(scan_id: str):
    scan = db.session.get(Scan, scan_id)
    if not scan or not _visible_to_caller(scan):
        return jsonify(error="scan not found", code="NOT_FOUND"), 404

    result = scan_to_ui(scan)

    progress = _job_progress(scan)
    if progress is not None:
        result["progress"] = progress

    if scan.status == ScanStatus.COMPLETED and scan.report is not None:
        report = scan.report.to_dict()
        report["findings"] = [f.to_dict() for f in scan.findings]
        result["report"] = report

    return jsonify(result), 200
