# webscan/scans/admission.py
"""
Admission gate: decides synchronously whether a scan request is accepted.

Checks run in order and stop at the first rejection:

    1. URL structure            → InvalidUrl
    2. Protocol (http/https)    → InvalidProtocol
    3. Private network target   → PrivateNetworkTarget   (production only)
    4. Daily quota              → DailyLimitExceeded     (authenticated only)
    5. Plan capability          → PlanLimitExceeded      (authenticated only)
    6. Duplicate suppression    → DuplicateScan          (authenticated only)
    7. Intake: create Scan, enqueue job, record usage

Nothing is written before step 7. If the enqueue fails, the scan row
created in step 7 is removed again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from webscan.billing.plans import DatabasePlanService, PlanService
from webscan.billing.usage import count_scans_since, increment_daily_usage, local_day_window
from webscan.errors import (
    AdmissionError,
    AdmissionInfrastructureError,
    DailyLimitExceeded,
    DuplicateScan,
    InvalidRequester,
    PlanLimitExceeded,
    QueueError,
)
from webscan.extensions import db, get_scan_queue
from webscan.models import Requester, Scan, now_utc
from webscan.queue.scan_queue import ScanQueue
from webscan.scanner.base import ScanConfig
from webscan.scans.lifecycle import ScanStatus
from webscan.scans.validation import ParsedTarget, validate_url

logger = logging.getLogger(__name__)

DEFAULT_DUPLICATE_WINDOW = timedelta(minutes=5)


@dataclass
class ScanRequest:
    url: Any
    requester_id: Optional[str] = None
    is_public_scan: bool = False
    user_agent: Optional[str] = None
    source_address: Optional[str] = None
    scan_config: Optional[Dict[str, Any]] = None

    @property
    def is_anonymous(self) -> bool:
        return not self.requester_id


class AdmissionGate:

    def __init__(
        self,
        queue: ScanQueue,
        plan_service: PlanService,
        *,
        production: bool = False,
        duplicate_window: timedelta = DEFAULT_DUPLICATE_WINDOW,
        tz_name: Optional[str] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.queue = queue
        self.plan_service = plan_service
        self.production = production
        self.duplicate_window = duplicate_window
        self.tz_name = tz_name
        self.clock = clock

    def admit(self, request: ScanRequest) -> Scan:
        """Run every check, then create and enqueue the scan. Raises AdmissionError."""
        try:
            target = validate_url(request.url, production=self.production)

            now = self.clock()
            if not request.is_anonymous:
                self._check_quota(request.requester_id, now)
                self._check_plan(request.requester_id)
                self._check_duplicate(request.requester_id, target, now)
        except AdmissionError as e:
            logger.info(
                f"Scan rejected ({e.code}) for requester={request.requester_id or 'anonymous'}: {e.message}"
            )
            raise

        return self._intake(request, target, now)

    # -----------------------------------------------------------------------
    # Policy checks
    # -----------------------------------------------------------------------

    def _check_quota(self, requester_id: str, now: datetime) -> None:
        requester = db.session.get(Requester, requester_id)
        if requester is None:
            raise InvalidRequester()

        limit = requester.scan_limit
        if limit == -1:
            return

        day_start, reset_at, _day = local_day_window(now, self.tz_name)
        used = count_scans_since(requester_id, day_start)
        if used >= limit:
            raise DailyLimitExceeded(
                limit=limit,
                used=used,
                reset_at=reset_at.replace(tzinfo=timezone.utc).isoformat(),
            )

    def _check_plan(self, requester_id: str) -> None:
        check = self.plan_service.check_scan_limit(requester_id)
        if not check.allowed:
            raise PlanLimitExceeded(check.reason or "Plan limit reached")

    def _check_duplicate(self, requester_id: str, target: ParsedTarget, now: datetime) -> None:
        since = now - self.duplicate_window
        prior = (
            Scan.query
            .filter(
                Scan.requester_id == requester_id,
                Scan.url == target.url,
                Scan.created_at >= since,
            )
            .order_by(Scan.created_at.desc())
            .first()
        )
        if prior is not None:
            raise DuplicateScan(
                wait_seconds=int(self.duplicate_window.total_seconds()),
                prior_scan_id=prior.id,
            )

    # -----------------------------------------------------------------------
    # Intake
    # -----------------------------------------------------------------------

    def _intake(self, request: ScanRequest, target: ParsedTarget, now: datetime) -> Scan:
        config = ScanConfig.from_dict(request.scan_config)
        scan = Scan(
            url=target.url,
            domain=target.domain,
            requester_id=request.requester_id or None,
            is_public_scan=request.is_anonymous or bool(request.is_public_scan),
            status=ScanStatus.PENDING,
            created_at=now,
            user_agent=request.user_agent,
            ip_address=request.source_address,
            scan_config=config.to_dict(),
        )

        try:
            db.session.add(scan)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception("Failed to create scan record")
            raise AdmissionInfrastructureError("Failed to create scan") from e

        try:
            job_ref = self.queue.enqueue({
                "scan_id": scan.id,
                "url": scan.url,
                "domain": scan.domain,
                "requester_id": scan.requester_id,
                "is_public_scan": scan.is_public_scan,
                "scan_config": scan.scan_config,
            })
        except (QueueError, RedisError) as e:
            logger.exception(f"Failed to enqueue scan {scan.id}, removing record")
            self._discard(scan)
            raise AdmissionInfrastructureError("Failed to queue scan") from e

        try:
            scan.job_ref = job_ref
            if scan.requester_id:
                _start, _reset, day = local_day_window(now, self.tz_name)
                increment_daily_usage(scan.requester_id, day)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception(f"Failed to record job ref for scan {scan.id}, withdrawing job {job_ref}")
            self._withdraw(job_ref)
            self._discard(scan)
            raise AdmissionInfrastructureError("Failed to record scan") from e

        if scan.requester_id:
            try:
                self.plan_service.track_scan_usage(scan.requester_id)
            except Exception:
                # The scan is already queued; usage tracking must not undo it
                logger.exception(f"Plan usage tracking failed for requester {scan.requester_id}")

        logger.info(
            f"Scan {scan.id} admitted for {scan.domain} "
            f"(requester={scan.requester_id or 'anonymous'}, job={job_ref})"
        )
        return scan

    def _withdraw(self, job_ref: str) -> None:
        # The job is already visible to workers; park it in the dead set
        try:
            self.queue.dead_letter(job_ref, "admission could not record the scan")
        except RedisError:
            logger.exception(f"Failed to withdraw job {job_ref}")

    def _discard(self, scan: Scan) -> None:
        try:
            db.session.delete(scan)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(f"Failed to remove orphaned scan {scan.id}")


def build_admission_gate(app) -> AdmissionGate:
    """Gate wired to the app's queue, plan service and admission config."""
    tz_name = app.config.get("DAILY_RESET_TZ") or None
    plan_service = app.extensions.get("plan_service") or DatabasePlanService(tz_name=tz_name)
    return AdmissionGate(
        get_scan_queue(app),
        plan_service,
        production=app.config.get("WEBSCAN_ENV") == "production",
        duplicate_window=timedelta(seconds=int(app.config.get("DUPLICATE_WINDOW_SECONDS", 300))),
        tz_name=tz_name,
    )
