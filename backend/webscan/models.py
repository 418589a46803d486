from __future__ import annotations

import uuid
from datetime import datetime, timezone
from sqlalchemy import UniqueConstraint
from .extensions import db


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_scan_id() -> str:
    return str(uuid.uuid4())


class Requester(db.Model):
    __tablename__ = "requester"

    # Identity is owned by the external identity provider
    id = db.Column(db.String(64), primary_key=True)
    email = db.Column(db.String(255), nullable=True, unique=True, index=True)

    # Plan: free | pro | enterprise
    plan = db.Column(db.String(30), nullable=False, default="free")
    # Scans allowed per day (seeded from the plan, overridable per requester)
    scan_limit = db.Column(db.Integer, nullable=False, default=3)

    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)


class Scan(db.Model):
    __tablename__ = "scan"
    __table_args__ = (
        db.Index("ix_scan_requester_created", "requester_id", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_scan_id)
    url = db.Column(db.Text, nullable=False)
    domain = db.Column(db.String(255), nullable=False, index=True)

    requester_id = db.Column(
        db.String(64),
        db.ForeignKey("requester.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_public_scan = db.Column(db.Boolean, nullable=False, default=False)

    # pending | running | completed | failed | cancelled
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    job_ref = db.Column(db.String(64), nullable=True)

    # Written once, together with the terminal transition
    critical_count = db.Column(db.Integer, nullable=False, default=0)
    high_count = db.Column(db.Integer, nullable=False, default=0)
    medium_count = db.Column(db.Integer, nullable=False, default=0)
    low_count = db.Column(db.Integer, nullable=False, default=0)
    info_count = db.Column(db.Integer, nullable=False, default=0)
    total_vulnerabilities = db.Column(db.Integer, nullable=False, default=0)

    error_message = db.Column(db.String(500), nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)

    # Request metadata
    user_agent = db.Column(db.Text, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    scan_config = db.Column(db.JSON, nullable=True)

    requester = db.relationship("Requester", backref=db.backref("scans", lazy="dynamic"))

    def severity_counts(self) -> dict:
        return {
            "critical": self.critical_count or 0,
            "high": self.high_count or 0,
            "medium": self.medium_count or 0,
            "low": self.low_count or 0,
            "info": self.info_count or 0,
        }


class ScanFinding(db.Model):
    __tablename__ = "scan_finding"

    id = db.Column(db.Integer, primary_key=True)
    scan_id = db.Column(
        db.String(36),
        db.ForeignKey("scan.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    probe_name = db.Column(db.String(100), nullable=False)
    owasp_category = db.Column(db.String(3), nullable=False, index=True)   # A01..A10
    severity = db.Column(db.String(20), nullable=False)                   # info..critical
    outcome = db.Column(db.String(20), nullable=False)                    # pass | fail | warning | error

    title = db.Column(db.String(500), nullable=False)
    description = db.Column(db.Text, nullable=True)
    impact = db.Column(db.Text, nullable=True)
    recommendation = db.Column(db.Text, nullable=True)
    references = db.Column(db.JSON, nullable=True)
    evidence = db.Column(db.JSON, nullable=True)
    confidence = db.Column(db.Integer, nullable=False, default=100)

    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)

    scan = db.relationship(
        "Scan",
        backref=db.backref(
            "findings",
            cascade="all, delete-orphan",
            passive_deletes=True,
            order_by="ScanFinding.id",
        ),
    )

    def to_dict(self) -> dict:
        return {
            "probeName": self.probe_name,
            "owaspCategory": self.owasp_category,
            "severity": self.severity,
            "outcome": self.outcome,
            "title": self.title,
            "description": self.description,
            "impact": self.impact,
            "recommendation": self.recommendation,
            "references": self.references or [],
            "evidence": self.evidence or {},
            "confidence": self.confidence,
        }


class ScanReport(db.Model):
    __tablename__ = "scan_report"

    id = db.Column(db.Integer, primary_key=True)
    scan_id = db.Column(
        db.String(36),
        db.ForeignKey("scan.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    # low | medium | high | critical
    risk_score = db.Column(db.String(20), nullable=False)
    owasp_coverage = db.Column(db.Integer, nullable=False, default=0)
    recommendations = db.Column(db.JSON, nullable=False, default=list)
    summary = db.Column(db.JSON, nullable=True)

    generated_at = db.Column(db.DateTime, nullable=False, default=now_utc)

    scan = db.relationship(
        "Scan",
        backref=db.backref(
            "report",
            uselist=False,
            cascade="all, delete-orphan",
            passive_deletes=True,
        ),
    )

    def to_dict(self) -> dict:
        return {
            "riskScore": self.risk_score,
            "owaspCoverage": self.owasp_coverage,
            "recommendations": self.recommendations or [],
            "summary": self.summary or {},
            "generatedAt": self.generated_at.isoformat() if self.generated_at else None,
        }


class UsageStats(db.Model):
    __tablename__ = "usage_stats"
    __table_args__ = (
        UniqueConstraint("requester_id", "date", name="uq_usage_stats_requester_date"),
    )

    id = db.Column(db.Integer, primary_key=True)
    requester_id = db.Column(
        db.String(64),
        db.ForeignKey("requester.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    date = db.Column(db.Date, nullable=False)
    scans_count = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, nullable=False, default=now_utc, onupdate=now_utc)
