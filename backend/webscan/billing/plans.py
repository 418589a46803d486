# webscan/billing/plans.py
"""
Plan configuration and the plan-capability check used by admission.

Admission only depends on the two-method PlanService interface:

    check_scan_limit(requester_id) -> PlanCheck(allowed, reason)
    track_scan_usage(requester_id)

DatabasePlanService is the default implementation, backed by the
usage_stats counters. Swap in another implementation by passing it to
AdmissionGate or setting app.extensions["plan_service"].
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from webscan.billing.usage import get_usage_counts
from webscan.extensions import db
from webscan.models import Requester

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# PLAN CONFIGURATION (single source of truth)
# ════════════════════════════════════════════════════════════════

PLAN_CONFIG = {
    "free": {
        "label": "Free",
        "limits": {
            "scans_per_day": 3,
            "scans_per_month": 30,
        },
    },
    "pro": {
        "label": "Pro",
        "limits": {
            "scans_per_day": 50,
            "scans_per_month": 1000,
        },
    },
    "enterprise": {
        "label": "Enterprise",
        "limits": {
            "scans_per_day": -1,  # -1 = unlimited
            "scans_per_month": -1,
        },
    },
}


def get_plan_limits(plan_key: str) -> dict:
    """Get limits for a plan tier. Falls back to free if unknown."""
    config = PLAN_CONFIG.get(plan_key, PLAN_CONFIG["free"])
    return config["limits"]


def default_scan_limit(plan_key: str) -> int:
    """Per-day limit a new requester on this plan starts with."""
    return get_plan_limits(plan_key)["scans_per_day"]


@dataclass
class PlanCheck:
    allowed: bool
    reason: Optional[str] = None


class PlanService(ABC):

    @abstractmethod
    def check_scan_limit(self, requester_id: str) -> PlanCheck:
        ...

    @abstractmethod
    def track_scan_usage(self, requester_id: str) -> None:
        ...


class DatabasePlanService(PlanService):
    """Plan checks against PLAN_CONFIG and the usage_stats table."""

    def __init__(self, tz_name: Optional[str] = None):
        self.tz_name = tz_name

    def check_scan_limit(self, requester_id: str) -> PlanCheck:
        requester = db.session.get(Requester, requester_id)
        if requester is None:
            return PlanCheck(allowed=False, reason="Requester not found")

        limits = get_plan_limits(requester.plan)
        usage = get_usage_counts(requester_id, tz_name=self.tz_name)

        per_day = limits["scans_per_day"]
        if per_day != -1 and usage["scans_today"] >= per_day:
            return PlanCheck(
                allowed=False,
                reason=f"Daily scan limit reached ({per_day} scans per day)",
            )

        per_month = limits["scans_per_month"]
        if per_month != -1 and usage["scans_this_month"] >= per_month:
            return PlanCheck(
                allowed=False,
                reason=f"Monthly scan limit reached ({per_month} scans per month)",
            )

        return PlanCheck(allowed=True)

    def track_scan_usage(self, requester_id: str) -> None:
        # Counters are already bumped by admission; surface plan exhaustion
        requester = db.session.get(Requester, requester_id)
        if requester is None:
            return

        per_month = get_plan_limits(requester.plan)["scans_per_month"]
        if per_month == -1:
            return

        used = get_usage_counts(requester_id, tz_name=self.tz_name)["scans_this_month"]
        if used >= per_month:
            logger.info(
                "Requester %s reached monthly allowance of plan '%s' (%d/%d)",
                requester_id, requester.plan, used, per_month,
            )
