#!/usr/bin/env python3
"""
dead_letters.py

Lists scan jobs that exhausted their attempts and landed in the dead set,
together with the state of the scan each one belongs to. Optionally purges
them once inspected (their scans are already marked failed).

Usage:
    # List (no changes):
    python dead_letters.py

    # List up to 200:
    python dead_letters.py --limit 200

    # Remove the listed jobs from the dead set:
    python dead_letters.py --purge --commit

Run from backend/ (where webscan/ lives).
"""

import argparse
import sys
import os
from datetime import datetime, timezone

# Ensure the app is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from webscan import create_app
from webscan.extensions import db, get_scan_queue
from webscan.models import Scan


def _fmt_ts(ts):
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def inspect(limit=50, purge=False, commit=False):
    app = create_app()

    with app.app_context():
        queue = get_scan_queue(app)
        jobs = queue.dead_jobs(limit=limit)

        if not jobs:
            print("Dead set is empty.")
            return 0

        print(f"Found {len(jobs)} dead job(s).\n")

        for job in jobs:
            scan = db.session.get(Scan, job.scan_id) if job.scan_id else None
            scan_state = scan.status if scan else "missing"
            reason = (job.failed_reason or "")[:70]
            print(
                f"  job {job.job_id:<8} scan {str(job.scan_id)[:36]:<36} "
                f"[{scan_state:<9}] attempts {job.attempts}/{job.max_attempts} "
                f"at {_fmt_ts(job.finished_at)} {reason}"
            )

        if not purge:
            return len(jobs)

        print(f"\n{'=' * 60}")
        if commit:
            removed = sum(1 for job in jobs if queue.remove_dead(job.job_id))
            print(f"DONE: {removed} dead job(s) removed.")
        else:
            print(f"DRY RUN: {len(jobs)} job(s) would be removed. Run with --commit to apply.")

        return len(jobs)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Inspect the scan queue's dead set")
    parser.add_argument("--limit", type=int, default=50)
    parser.add_argument("--purge", action="store_true", help="remove listed jobs from the dead set")
    parser.add_argument("--commit", action="store_true", help="apply --purge")
    args = parser.parse_args()
    inspect(limit=args.limit, purge=args.purge, commit=args.commit)
