# webscan/scanner/report.py
"""
Report synthesizer.

Derives the report summary for a finished scan:

    risk_score        max-severity-present rule over fail/warning findings;
                      one critical finding makes the whole report critical
    owasp_coverage    % of the ten OWASP categories with at least one pass
    recommendations   one action per OWASP category with a fail/warning
                      finding, worst first; a single "no critical issues"
                      line when nothing failed

build_report_summary() is pure. synthesize() adds the ScanReport row to the
session (once per scan) and leaves the commit to the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Sequence

from webscan.extensions import db
from webscan.models import ScanReport, now_utc
from webscan.scanner.base import (
    OWASP_CATEGORIES,
    SEVERITIES,
    SEVERITY_ORDER,
    VULNERABLE_OUTCOMES,
    FindingDraft,
)

logger = logging.getLogger(__name__)

NO_ISSUES_RECOMMENDATION = (
    "No critical security issues detected. Keep dependencies and server "
    "configuration up to date and re-scan after significant changes."
)

CATEGORY_RECOMMENDATIONS = {
    "A01": "Enforce access control on administrative and internal resources; deny by default.",
    "A02": "Serve the site over HTTPS only and enable HSTS with a max-age of at least one year.",
    "A03": "Validate and encode all untrusted input; use parameterized queries and a strict CSP.",
    "A04": "Review the application's threat model and add defense-in-depth controls.",
    "A05": "Harden the server configuration: add the missing security headers and block public access to sensitive files.",
    "A06": "Update outdated components and remove unused dependencies.",
    "A07": "Set the Secure, HttpOnly and SameSite attributes on all session cookies.",
    "A08": "Verify the integrity of software updates, dependencies and CI/CD pipelines.",
    "A09": "Enable security logging and alerting for authentication and access-control events.",
    "A10": "Validate and restrict outbound requests made on behalf of users.",
}


def severity_counts(findings: Iterable[FindingDraft]) -> Dict[str, int]:
    """Per-severity counts over fail/warning findings only."""
    counts = {s: 0 for s in SEVERITIES}
    for f in findings:
        if f.outcome in VULNERABLE_OUTCOMES and f.severity in counts:
            counts[f.severity] += 1
    return counts


def calculate_risk_score(counts: Dict[str, int]) -> str:
    if counts.get("critical", 0) > 0:
        return "critical"
    if counts.get("high", 0) > 0:
        return "high"
    if counts.get("medium", 0) > 0:
        return "medium"
    return "low"


def owasp_coverage(findings: Iterable[FindingDraft]) -> int:
    passed = {f.category for f in findings if f.outcome == "pass" and f.category in OWASP_CATEGORIES}
    return round(len(passed) * 100 / len(OWASP_CATEGORIES))


def build_recommendations(findings: Sequence[FindingDraft]) -> List[str]:
    worst: Dict[str, int] = {}
    for f in findings:
        if f.outcome not in VULNERABLE_OUTCOMES:
            continue
        rank = SEVERITY_ORDER.get(f.severity, len(SEVERITY_ORDER))
        worst[f.category] = min(rank, worst.get(f.category, rank))

    if not worst:
        return [NO_ISSUES_RECOMMENDATION]

    ordered = sorted(worst.items(), key=lambda item: (item[1], item[0]))
    recommendations = []
    for category, _rank in ordered:
        text = CATEGORY_RECOMMENDATIONS.get(category)
        if not text:
            name = OWASP_CATEGORIES.get(category, category)
            text = f"Address the {name} issues listed in this report."
        recommendations.append(text)
    return recommendations


def build_report_summary(findings: Sequence[FindingDraft]) -> Dict[str, Any]:
    counts = severity_counts(findings)
    outcomes: Dict[str, int] = {"pass": 0, "fail": 0, "warning": 0, "error": 0}
    for f in findings:
        outcomes[f.outcome] = outcomes.get(f.outcome, 0) + 1

    return {
        "risk_score": calculate_risk_score(counts),
        "owasp_coverage": owasp_coverage(findings),
        "recommendations": build_recommendations(findings),
        "summary": {
            "severityCounts": counts,
            "totalVulnerabilities": sum(counts.values()),
            "totalFindings": len(findings),
            "outcomes": outcomes,
            "probes": sorted({f.probe_name for f in findings}),
        },
    }


def synthesize(scan_id: str, findings: Sequence[FindingDraft]) -> ScanReport:
    """
    Build the report for a scan and add it to the session.

    A scan gets exactly one report: if one already exists (job redelivered
    after the report was written) it is returned unchanged.
    """
    existing = ScanReport.query.filter_by(scan_id=scan_id).first()
    if existing:
        logger.info(f"Report for scan {scan_id} already exists, keeping it")
        return existing

    data = build_report_summary(findings)
    report = ScanReport(
        scan_id=scan_id,
        risk_score=data["risk_score"],
        owasp_coverage=data["owasp_coverage"],
        recommendations=data["recommendations"],
        summary=data["summary"],
        generated_at=now_utc(),
    )
    db.session.add(report)
    logger.info(
        f"Report for scan {scan_id}: risk={report.risk_score}, "
        f"coverage={report.owasp_coverage}%"
    )
    return report
