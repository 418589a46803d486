# webscan/billing/usage.py
"""
Usage accounting: daily scan counters and the quota day boundary.

The counter row per (requester, date) is only ever bumped with an
INSERT ... ON CONFLICT DO UPDATE SET scans_count = scans_count + 1,
so concurrent admissions for the same requester cannot lose updates.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from webscan.extensions import db
from webscan.models import Scan, UsageStats, now_utc

logger = logging.getLogger(__name__)


def _tz(tz_name: Optional[str]):
    # None: the server's local rules, resolved per instant by astimezone()
    return ZoneInfo(tz_name) if tz_name else None


def _local_midnight(day: date, tz) -> datetime:
    if tz is None:
        # Naive astimezone() applies the local offset in force on that date
        return datetime.combine(day, time.min).astimezone()
    return datetime.combine(day, time.min, tzinfo=tz)


def local_day_window(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> Tuple[datetime, datetime, date]:
    """
    Return (start_utc, reset_at_utc, local_date) for the quota day containing `now`.

    `now` is a naive UTC timestamp like everything stored in the DB.
    start_utc / reset_at_utc are naive UTC too, so they compare directly
    with Scan.created_at.
    """
    now = now or now_utc()
    tz = _tz(tz_name)
    local_now = now.replace(tzinfo=timezone.utc).astimezone(tz)
    local_day = local_now.date()

    start_local = _local_midnight(local_day, tz)
    reset_local = _local_midnight(local_day + timedelta(days=1), tz)

    start_utc = start_local.astimezone(timezone.utc).replace(tzinfo=None)
    reset_utc = reset_local.astimezone(timezone.utc).replace(tzinfo=None)
    return start_utc, reset_utc, local_day


def count_scans_since(requester_id: str, since: datetime) -> int:
    """Scans created by the requester since `since` (naive UTC)."""
    return (
        db.session.query(func.count(Scan.id))
        .filter(Scan.requester_id == requester_id, Scan.created_at >= since)
        .scalar()
    ) or 0


def increment_daily_usage(requester_id: str, day: date) -> None:
    """
    Atomically add one scan to the requester's counter for `day`.

    Does not commit.
    """
    dialect = db.engine.dialect.name
    values = {
        "requester_id": requester_id,
        "date": day,
        "scans_count": 1,
        "updated_at": now_utc(),
    }

    if dialect == "postgresql":
        stmt = pg_insert(UsageStats).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(UsageStats).values(**values)
    else:
        raise RuntimeError(f"Atomic usage upsert is not supported on '{dialect}'")

    stmt = stmt.on_conflict_do_update(
        index_elements=["requester_id", "date"],
        set_={
            "scans_count": UsageStats.scans_count + 1,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.session.execute(stmt)


def get_usage_counts(requester_id: str, tz_name: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    """Scans today / this month from the usage counters."""
    _start, _reset, today = local_day_window(now, tz_name)
    month_start = today.replace(day=1)

    today_count = (
        db.session.query(UsageStats.scans_count)
        .filter(UsageStats.requester_id == requester_id, UsageStats.date == today)
        .scalar()
    ) or 0
    month_count = (
        db.session.query(func.coalesce(func.sum(UsageStats.scans_count), 0))
        .filter(UsageStats.requester_id == requester_id, UsageStats.date >= month_start)
        .scalar()
    ) or 0

    return {"scans_today": int(today_count), "scans_this_month": int(month_count)}
