import pytest

from webscan.extensions import db
from webscan.models import ScanReport
from webscan.scanner.base import FindingDraft
from webscan.scanner.report import (
    CATEGORY_RECOMMENDATIONS,
    NO_ISSUES_RECOMMENDATION,
    build_recommendations,
    build_report_summary,
    calculate_risk_score,
    owasp_coverage,
    severity_counts,
    synthesize,
)


def _finding(severity="medium", outcome="fail", category="A05", probe="hsts"):
    return FindingDraft(
        probe_name=probe, category=category, severity=severity, outcome=outcome, title=f"{probe} {outcome}",
    )


@pytest.mark.parametrize("counts,expected", [
    ({"critical": 1, "high": 0, "medium": 0, "low": 9, "info": 0}, "critical"),
    ({"critical": 0, "high": 2, "medium": 5, "low": 0, "info": 0}, "high"),
    ({"critical": 0, "high": 0, "medium": 1, "low": 0, "info": 0}, "medium"),
    ({"critical": 0, "high": 0, "medium": 0, "low": 3, "info": 4}, "low"),
    ({"critical": 0, "high": 0, "medium": 0, "low": 0, "info": 0}, "low"),
])
def test_risk_score_is_worst_severity_present(counts, expected):
    assert calculate_risk_score(counts) == expected


def test_counts_ignore_passes_and_errors():
    findings = [
        _finding("medium", "fail"),
        _finding("low", "warning"),
        _finding("info", "pass"),
        _finding("info", "error"),
        _finding("critical", "fail"),
    ]
    assert severity_counts(findings) == {"critical": 1, "high": 0, "medium": 1, "low": 1, "info": 0}


def test_coverage_counts_categories_with_a_pass():
    findings = [
        _finding("info", "pass", "A05"),
        _finding("info", "pass", "A05"),
        _finding("info", "pass", "A07"),
        _finding("medium", "fail", "A02"),
    ]
    assert owasp_coverage(findings) == 20
    assert owasp_coverage([]) == 0


def test_recommendations_worst_category_first():
    findings = [
        _finding("low", "warning", "A07"),
        _finding("medium", "fail", "A02"),
        _finding("critical", "fail", "A05"),
        _finding("info", "pass", "A01"),
    ]
    assert build_recommendations(findings) == [
        CATEGORY_RECOMMENDATIONS["A05"],
        CATEGORY_RECOMMENDATIONS["A02"],
        CATEGORY_RECOMMENDATIONS["A07"],
    ]


def test_clean_scan_gets_single_recommendation():
    findings = [_finding("info", "pass"), _finding("info", "error")]
    assert build_recommendations(findings) == [NO_ISSUES_RECOMMENDATION]


def test_summary_shape():
    findings = [_finding("high", "fail", probe="directory_exposure"), _finding("info", "pass", probe="hsts")]
    summary = build_report_summary(findings)

    assert summary["risk_score"] == "high"
    assert summary["summary"]["totalVulnerabilities"] == 1
    assert summary["summary"]["totalFindings"] == 2
    assert summary["summary"]["outcomes"] == {"pass": 1, "fail": 1, "warning": 0, "error": 0}
    assert summary["summary"]["probes"] == ["directory_exposure", "hsts"]


def test_synthesize_writes_one_report_per_scan(make_scan):
    scan = make_scan(status="running")

    first = synthesize(scan.id, [_finding("medium", "fail")])
    db.session.commit()
    again = synthesize(scan.id, [_finding("critical", "fail")])
    db.session.commit()

    assert again.id == first.id
    assert ScanReport.query.filter_by(scan_id=scan.id).count() == 1
    assert ScanReport.query.filter_by(scan_id=scan.id).one().risk_score == "medium"
