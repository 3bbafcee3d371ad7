"""
Public (unauthenticated) API routes.

Handles:
  /api/public/fleets        (GET)
  /api/public/doctrines     (GET)
  /api/public/srp-config    (GET)
"""

import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from clock_service import normalize_timestamp, now_iso
from constants import DOCTRINE_JSON_FIELDS, FLEET_IN_PROGRESS, FLEET_SCHEDULED
from db import get_db, row_to_dict, rows_to_dicts
from fleet_status_service import update_fleet_statuses

router = APIRouter(tags=["public"])


def _timestamp_or_400(value: str, field: str) -> str:
    try:
        return normalize_timestamp(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date format for {field}")


@router.get("/api/public/fleets")
def api_public_fleets(
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    update_fleet_statuses(conn)

    where = ["f.status IN (?,?)"]
    params: List[Any] = [FLEET_SCHEDULED, FLEET_IN_PROGRESS]
    if from_date:
        where.append("f.scheduled_at>=?")
        params.append(_timestamp_or_400(from_date, "from_date"))
    else:
        # Fleets already under way stay listed until they complete.
        where.append("(f.status=? OR f.scheduled_at>=?)")
        params.extend([FLEET_IN_PROGRESS, now_iso()])
    if to_date:
        where.append("f.scheduled_at<=?")
        params.append(_timestamp_or_400(to_date, "to_date"))

    rows = conn.execute(
        f"""
        SELECT f.id, f.scheduled_at, f.timezone, f.duration_minutes, f.fleet_type_id,
               f.title, f.description, f.staging_system, f.comms_channel, f.status,
               ft.name AS fleet_type_name, ft.description AS fleet_type_description,
               fc.main_character_name AS fc_name, fc.rank AS fc_rank,
               COALESCE(f.participant_count, 0) AS participant_count
        FROM fleets f
        JOIN fleet_types ft ON ft.id = f.fleet_type_id
        JOIN fleet_commanders fc ON fc.id = f.fc_id
        WHERE {' AND '.join(where)}
        ORDER BY f.scheduled_at ASC, f.id ASC
        LIMIT ?
        """,
        (*params, limit),
    ).fetchall()
    return {"success": True, "fleets": rows_to_dicts(rows)}


@router.get("/api/public/doctrines")
def api_public_doctrines(
    fleet_type_id: Optional[int] = None,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    where = "d.is_active=1 AND ft.is_active=1"
    params: List[Any] = []
    if fleet_type_id is not None:
        where += " AND d.fleet_type_id=?"
        params.append(fleet_type_id)
    rows = conn.execute(
        f"""
        SELECT d.id, d.fleet_type_id, d.name, d.ship_type_id, d.ship_name, d.ship_group_id, d.ship_group_name,
               d.high_slots, d.mid_slots, d.low_slots, d.rig_slots,
               d.high_slot_modules, d.mid_slot_modules, d.low_slot_modules, d.rig_modules, d.cargo_items,
               d.notes, d.display_order,
               ft.name AS fleet_type_name, ft.description AS fleet_type_description,
               ft.display_order AS fleet_type_order
        FROM doctrines d
        JOIN fleet_types ft ON ft.id = d.fleet_type_id
        WHERE {where}
        ORDER BY ft.display_order ASC, ft.name ASC, d.display_order ASC, d.name ASC
        """,
        params,
    ).fetchall()

    grouped: Dict[int, Dict[str, Any]] = {}
    for row in rows:
        doctrine = row_to_dict(row, json_fields=DOCTRINE_JSON_FIELDS)
        group = grouped.setdefault(
            doctrine["fleet_type_id"],
            {
                "fleet_type_id": doctrine["fleet_type_id"],
                "fleet_type_name": doctrine.pop("fleet_type_name"),
                "fleet_type_description": doctrine.pop("fleet_type_description"),
                "fleet_type_order": doctrine.pop("fleet_type_order"),
                "doctrines": [],
            },
        )
        for key in ("fleet_type_name", "fleet_type_description", "fleet_type_order"):
            doctrine.pop(key, None)
        group["doctrines"].append(doctrine)

    return {"success": True, "fleet_types": list(grouped.values())}


@router.get("/api/public/srp-config")
def api_public_srp_config(conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    rows = conn.execute(
        """
        SELECT type_name, group_name, base_payout, polarized_payout, fc_discretion, notes
        FROM srp_ship_types
        WHERE is_active=1
        ORDER BY group_name ASC, type_name ASC
        """
    ).fetchall()
    return {"success": True, "ship_types": rows_to_dicts(rows, bool_fields=("fc_discretion",))}
