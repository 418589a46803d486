# webscan/scanner/orchestrator.py
"""
Scan Orchestrator: runs one queued scan job end to end.

Coordinates the pipeline for a single QueueJob:

    1. Load the Scan; terminal scans are acknowledged without writes
    2. Transition pending → running (a running scan is resumed as-is)
    3. Run the probes sequentially in their declared order, publishing
       progress after each one
    4. Turn a probe that raised into an `error` finding and carry on
    5. Count severities over fail/warning findings
    6. Persist findings (replace), the report (once) and the completed
       status in one commit
    7. On infrastructure errors, record the error and let the queue retry;
       the final attempt marks the scan failed

Usage from the worker process:
    orchestrator = ScanOrchestrator(queue=queue)
    worker = Worker(queue, handler=orchestrator.execute, app=app)

Every write is keyed on scan_id and overwrites rather than increments, so a
redelivered job never duplicates findings or reports.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from redis.exceptions import RedisError

from webscan.extensions import db
from webscan.models import Scan, ScanFinding
from webscan.queue.jobs import Ack, DeadLetter, JobOutcome, QueueJob, Retry
from webscan.queue.scan_queue import ScanQueue
from webscan.scanner.base import BaseProbe, FindingDraft, ScanConfig, build_session
from webscan.scanner.probes import default_probes
from webscan.scanner.report import severity_counts, synthesize
from webscan.scans.lifecycle import ScanStatus, is_terminal, transition

logger = logging.getLogger(__name__)

# Progress milestones (percent)
PROGRESS_TESTING_FLOOR = 10
PROGRESS_TESTING_SPAN = 80
PROGRESS_REPORTING = 95
PROGRESS_COMPLETED = 100


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def probe_error_finding(probe: BaseProbe, exc: Exception) -> FindingDraft:
    """Synthetic finding recorded in place of a probe that raised."""
    return FindingDraft(
        probe_name=probe.name,
        category="A05",
        severity="info",
        outcome="error",
        title=f"{probe.label} Test Failed",
        description=f"Unable to complete {probe.label} test due to an error.",
        recommendation="Ensure the target URL is accessible and try again.",
        evidence={"error": str(exc), "probe": probe.name},
        confidence=0,
    )


def testing_percentage(completed: int, total: int) -> int:
    if total <= 0:
        return PROGRESS_TESTING_FLOOR + PROGRESS_TESTING_SPAN
    return round(PROGRESS_TESTING_FLOOR + (completed / total) * PROGRESS_TESTING_SPAN)


def _draft_to_row(scan_id: str, d: FindingDraft) -> ScanFinding:
    return ScanFinding(
        scan_id=scan_id,
        probe_name=d.probe_name,
        owasp_category=d.category,
        severity=d.severity,
        outcome=d.outcome,
        title=d.title[:500],
        description=d.description,
        impact=d.impact,
        recommendation=d.recommendation,
        references=list(d.references),
        evidence=d.evidence,
        confidence=max(0, min(100, int(d.confidence))),
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ScanOrchestrator:
    """
    Executes scan jobs. Stateless between jobs; reuse one instance across
    worker threads. Requires an application context (the Worker provides it).
    """

    def __init__(
        self,
        queue: Optional[ScanQueue] = None,
        probes: Optional[Sequence[BaseProbe]] = None,
        session_factory: Callable[[ScanConfig], requests.Session] = build_session,
    ):
        self.queue = queue
        self.probes = tuple(probes) if probes is not None else default_probes()
        self.session_factory = session_factory

    def execute(self, job: QueueJob) -> JobOutcome:
        """
        Run one job. Never raises: infrastructure errors come back as
        Retry, or DeadLetter on the final attempt.
        """
        try:
            return self._execute(job)
        except Exception as e:
            logger.exception(f"Scan {job.scan_id} failed on attempt {job.attempts}/{job.max_attempts}")
            return self._handle_failure(job, e)

    def _execute(self, job: QueueJob) -> JobOutcome:
        scan_id = job.scan_id
        total_start = time.monotonic()

        # --- 1. Load scan ---
        scan: Optional[Scan] = db.session.get(Scan, scan_id) if scan_id else None
        if scan is None:
            logger.error(f"Job {job.job_id}: scan {scan_id} not found")
            return DeadLetter(f"scan {scan_id} not found")

        if is_terminal(scan.status):
            logger.info(f"Scan {scan.id} already {scan.status}, acknowledging redelivered job {job.job_id}")
            return Ack({"scanId": scan.id, "status": scan.status, "redelivered": True})

        # --- 2. Enter running ---
        if scan.status == ScanStatus.PENDING:
            transition(scan, ScanStatus.RUNNING)
            db.session.commit()
        else:
            logger.info(f"Resuming scan {scan.id} (attempt {job.attempts}/{job.max_attempts})")

        config = ScanConfig.from_dict(job.data.get("scan_config") or scan.scan_config)

        # --- 3/4. Run probes ---
        findings = self.run_probes(scan.url, config, job)

        # --- 5. Summarize ---
        self._publish(job, {
            "stage": "reporting",
            "completedProbes": len(self.probes),
            "totalProbes": len(self.probes),
            "currentProbe": None,
            "percentage": PROGRESS_REPORTING,
            "message": "Generating security report...",
        })
        counts = severity_counts(findings)

        # --- 6. Persist ---
        self._persist(scan, findings, counts)

        self._publish(job, {
            "stage": "completed",
            "completedProbes": len(self.probes),
            "totalProbes": len(self.probes),
            "currentProbe": None,
            "percentage": PROGRESS_COMPLETED,
            "message": "Security scan completed successfully",
        })

        duration = round(time.monotonic() - total_start, 2)
        logger.info(
            f"Scan {scan.id} completed in {duration}s: {len(findings)} findings, "
            f"{scan.total_vulnerabilities} vulnerabilities"
        )
        return Ack({
            "scanId": scan.id,
            "status": scan.status,
            "executionTime": duration,
            "totalVulnerabilities": scan.total_vulnerabilities,
            "severityCounts": counts,
        })

    # -----------------------------------------------------------------------
    # Probes
    # -----------------------------------------------------------------------

    def run_probes(self, url: str, config: ScanConfig, job: Optional[QueueJob] = None) -> List[FindingDraft]:
        """Run every probe in order. A probe that raises yields an error finding."""
        total = len(self.probes)
        findings: List[FindingDraft] = []

        self._publish(job, {
            "stage": "initializing",
            "completedProbes": 0,
            "totalProbes": total,
            "currentProbe": None,
            "percentage": 0,
            "message": "Starting security scan...",
        })

        session = self.session_factory(config)
        try:
            for completed, probe in enumerate(self.probes):
                self._publish(job, {
                    "stage": "testing",
                    "completedProbes": completed,
                    "totalProbes": total,
                    "currentProbe": probe.label,
                    "percentage": testing_percentage(completed, total),
                    "message": f"Running {probe.label} test...",
                })

                logger.info(f"Running probe '{probe.name}' for {url}")
                try:
                    drafts = probe.run(url, config, session)
                except Exception as e:
                    logger.warning(f"Probe '{probe.name}' failed for {url}: {e}")
                    drafts = [probe_error_finding(probe, e)]
                findings.extend(drafts)

                self._publish(job, {
                    "stage": "testing",
                    "completedProbes": completed + 1,
                    "totalProbes": total,
                    "currentProbe": probe.label,
                    "percentage": testing_percentage(completed + 1, total),
                    "message": f"Completed {probe.label} test",
                })
        finally:
            session.close()

        return findings

    def _publish(self, job: Optional[QueueJob], progress: Dict[str, Any]) -> None:
        # Progress is advisory; a broker hiccup must not fail the scan
        if self.queue is None or job is None:
            return
        try:
            self.queue.update_progress(job.job_id, progress)
        except RedisError as e:
            logger.warning(f"Could not publish progress for job {job.job_id}: {e}")

    # -----------------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------------

    def _persist(self, scan: Scan, findings: Sequence[FindingDraft], counts: Dict[str, int]) -> None:
        """Findings, report and the completed transition in one commit."""
        ScanFinding.query.filter_by(scan_id=scan.id).delete(synchronize_session=False)
        for d in findings:
            db.session.add(_draft_to_row(scan.id, d))

        synthesize(scan.id, findings)

        scan.critical_count = counts["critical"]
        scan.high_count = counts["high"]
        scan.medium_count = counts["medium"]
        scan.low_count = counts["low"]
        scan.info_count = counts["info"]
        scan.total_vulnerabilities = sum(counts.values())
        scan.error_message = None
        transition(scan, ScanStatus.COMPLETED)

        db.session.commit()

    def _handle_failure(self, job: QueueJob, exc: Exception) -> JobOutcome:
        reason = f"{type(exc).__name__}: {exc}"[:500]
        final = job.is_final_attempt
        db.session.rollback()

        try:
            scan = db.session.get(Scan, job.scan_id) if job.scan_id else None
            if scan is not None and not is_terminal(scan.status):
                scan.error_message = reason
                scan.retry_count = (scan.retry_count or 0) + 1
                if final:
                    transition(scan, ScanStatus.FAILED)
                db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception(f"Could not record failure on scan {job.scan_id}")

        if final:
            return DeadLetter(reason)
        return Retry(reason)


# ---------------------------------------------------------------------------
# Dead-letter handling
# ---------------------------------------------------------------------------

def mark_scan_failed(job: QueueJob, reason: str) -> bool:
    """
    Mark the job's scan failed after the queue gave up on it.
    Requires an application context. Returns True if the scan changed.
    """
    scan = db.session.get(Scan, job.scan_id) if job.scan_id else None
    if scan is None or is_terminal(scan.status):
        return False

    scan.error_message = (reason or "Job failed")[:500]
    transition(scan, ScanStatus.FAILED)
    db.session.commit()
    return True


def register_dead_letter_handler(queue: ScanQueue, app) -> None:
    """Have dead-lettered jobs mark their scan failed."""

    def _on_dead_letter(job: QueueJob, reason: str) -> None:
        with app.app_context():
            try:
                mark_scan_failed(job, reason)
            except Exception:
                db.session.rollback()
                raise

    queue.on_dead_letter(_on_dead_letter)
