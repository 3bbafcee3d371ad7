"""
Fleet status transitions.

A fleet's status is re-derived from the clock on every read: scheduled
fleets start once scheduled_at has passed and finish once their duration
has elapsed. Completed and cancelled fleets are never touched again.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from clock_service import format_timestamp, parse_timestamp, utc_now
from constants import (
    FLEET_COMPLETED,
    FLEET_IN_PROGRESS,
    FLEET_SCHEDULED,
    FLEET_TERMINAL_STATUSES,
)


def fleet_end_time(scheduled_at: Any, duration_minutes: Any) -> datetime:
    return parse_timestamp(scheduled_at) + timedelta(minutes=int(duration_minutes or 0))


def next_fleet_status(status: str, scheduled_at: Any, duration_minutes: Any, now: datetime) -> str:
    if status in FLEET_TERMINAL_STATUSES:
        return status
    start = parse_timestamp(scheduled_at)
    if status == FLEET_SCHEDULED and now >= start:
        status = FLEET_IN_PROGRESS
    if status == FLEET_IN_PROGRESS and now >= fleet_end_time(start, duration_minutes):
        status = FLEET_COMPLETED
    return status


def update_fleet_statuses(conn: sqlite3.Connection, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Promote every due fleet and commit. Returns counts of what changed."""
    now = now or utc_now()
    now_s = format_timestamp(now)
    started = 0
    completed = 0

    rows = conn.execute(
        "SELECT id,status,scheduled_at,duration_minutes FROM fleets WHERE status IN (?,?) AND scheduled_at<=?",
        (FLEET_SCHEDULED, FLEET_IN_PROGRESS, now_s),
    ).fetchall()

    try:
        for row in rows:
            current = str(row["status"])
            target = next_fleet_status(current, row["scheduled_at"], row["duration_minutes"], now)
            if target == current:
                continue
            start_s = format_timestamp(parse_timestamp(row["scheduled_at"]))
            end_s = format_timestamp(fleet_end_time(row["scheduled_at"], row["duration_minutes"]))

            if target == FLEET_IN_PROGRESS:
                cur = conn.execute(
                    """
                    UPDATE fleets
                    SET status=?, actual_start_time=COALESCE(actual_start_time, ?), updated_at=?
                    WHERE id=? AND status=?
                    """,
                    (FLEET_IN_PROGRESS, start_s, now_s, row["id"], current),
                )
                started += cur.rowcount
            else:
                cur = conn.execute(
                    """
                    UPDATE fleets
                    SET status=?,
                        actual_start_time=COALESCE(actual_start_time, ?),
                        actual_end_time=COALESCE(actual_end_time, ?),
                        updated_at=?
                    WHERE id=? AND status=?
                    """,
                    (FLEET_COMPLETED, start_s, end_s, now_s, row["id"], current),
                )
                completed += cur.rowcount
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        logging.exception("Fleet status update failed")
        raise

    if started or completed:
        print(f"[fleet-status] started={started} completed={completed}")
    return {
        "success": True,
        "updated": started + completed,
        "started": started,
        "completed": completed,
    }
