"""
Fleet scheduling API routes.

Handles:
  /api/admin/fleets                     (GET, POST)
  /api/admin/fleets/{fleet_id}          (GET, PUT, DELETE)
  /api/admin/fleet-participants         (GET, POST, DELETE)
  /api/admin/fleet-kills                (GET, POST, DELETE)
  /api/cron/update-fleet-status         (GET, POST)

Every fleet read first runs the status updater so callers always see
statuses derived from the current clock.
"""

import logging
import re
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from auth_service import can_manage, require_authorized, require_cron_secret, require_roles
from clock_service import normalize_timestamp, now_iso, utc_now
from constants import (
    DEFAULT_FLEET_DURATION_MINUTES,
    DEFAULT_FLEET_TIMEZONE,
    FLEET_CANCELLED,
    FLEET_COMPLETED,
    FLEET_IN_PROGRESS,
    FLEET_SCHEDULED,
    FLEET_SCHEDULER_ROLES,
    FLEET_STATUSES,
    FLEET_TERMINAL_STATUSES,
)
from db import get_db, row_to_dict, rows_to_dicts
from fleet_status_service import next_fleet_status, update_fleet_statuses

router = APIRouter(tags=["fleets"])

ZKILL_URL_RE = re.compile(r"(?:zkillboard\.com/kill/)?(\d+)")

_NON_NULL_FLEET_FIELDS = (
    "scheduled_at",
    "timezone",
    "duration_minutes",
    "fleet_type_id",
    "fc_id",
    "status",
    "participant_count",
)

_FLEET_SELECT = """
    SELECT
      f.*,
      ft.name AS fleet_type_name,
      ft.description AS fleet_type_description,
      fc.main_character_name AS fc_name,
      fc.main_character_id AS fc_character_id,
      fc.rank AS fc_rank
    FROM fleets f
    LEFT JOIN fleet_types ft ON ft.id = f.fleet_type_id
    LEFT JOIN fleet_commanders fc ON fc.id = f.fc_id
"""


# ── Pydantic models ────────────────────────────────────────

class FleetCreateReq(BaseModel):
    scheduled_at: Optional[str] = None
    timezone: Optional[str] = None
    duration_minutes: Optional[int] = None
    fleet_type_id: Optional[int] = None
    fc_id: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    staging_system: Optional[str] = None
    comms_channel: Optional[str] = None


class FleetUpdateReq(BaseModel):
    scheduled_at: Optional[str] = None
    timezone: Optional[str] = None
    duration_minutes: Optional[int] = None
    fleet_type_id: Optional[int] = None
    fc_id: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    staging_system: Optional[str] = None
    comms_channel: Optional[str] = None
    status: Optional[str] = None
    actual_start_time: Optional[str] = None
    actual_end_time: Optional[str] = None
    participant_count: Optional[int] = None


class ParticipantCreateReq(BaseModel):
    fleet_id: Optional[int] = None
    character_id: Optional[int] = None
    character_name: Optional[str] = None
    role: Optional[str] = None
    notes: Optional[str] = None


class FleetKillsReq(BaseModel):
    fleet_id: Optional[int] = None
    drop_number: Optional[int] = None
    zkill_urls: List[str] = Field(default_factory=list)
    hunter_id: Optional[int] = None


# ── Helpers ────────────────────────────────────────────────

def _parse_date_or_400(value: Any, field: str) -> str:
    try:
        return normalize_timestamp(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date format for {field}")


def _check_fleet_type(conn: sqlite3.Connection, fleet_type_id: int) -> None:
    row = conn.execute("SELECT id FROM fleet_types WHERE id=?", (fleet_type_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Fleet type not found")


def _check_active_fc(conn: sqlite3.Connection, fc_id: int) -> None:
    row = conn.execute(
        "SELECT id FROM fleet_commanders WHERE id=? AND LOWER(status)='active'",
        (fc_id,),
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Fleet commander not found or not active")


def _load_fleet(conn: sqlite3.Connection, fleet_id: int) -> Dict[str, Any]:
    row = conn.execute(f"{_FLEET_SELECT} WHERE f.id=?", (fleet_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Fleet not found")
    return row_to_dict(row)


def _is_fleet_fc(conn: sqlite3.Connection, user: Any, fleet_id: int) -> bool:
    row = conn.execute(
        """
        SELECT fc.main_character_id, fc.bb_corp_alt_id
        FROM fleets f JOIN fleet_commanders fc ON fc.id=f.fc_id
        WHERE f.id=?
        """,
        (fleet_id,),
    ).fetchone()
    if not row:
        return False
    return user["character_id"] in (row["main_character_id"], row["bb_corp_alt_id"])


def _require_fleet_manager(conn: sqlite3.Connection, user: Any, fleet_id: int, message: str) -> None:
    if can_manage(user) or _is_fleet_fc(conn, user, fleet_id):
        return
    raise HTTPException(status_code=403, detail=message)


def _sync_participant_count(conn: sqlite3.Connection, fleet_id: int) -> None:
    conn.execute(
        """
        UPDATE fleets
        SET participant_count=(SELECT COUNT(*) FROM fleet_participants WHERE fleet_id=?), updated_at=?
        WHERE id=?
        """,
        (fleet_id, now_iso(), fleet_id),
    )


# ── Fleets ─────────────────────────────────────────────────

@router.get("/api/admin/fleets")
def api_list_fleets(
    request: Request,
    status: Optional[str] = None,
    fc_id: Optional[int] = None,
    fleet_type_id: Optional[int] = None,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_authorized(conn, request)
    update_fleet_statuses(conn)

    where = ["1=1"]
    params: List[Any] = []
    if status:
        where.append("f.status=?")
        params.append(status)
    if fc_id is not None:
        where.append("f.fc_id=?")
        params.append(fc_id)
    if fleet_type_id is not None:
        where.append("f.fleet_type_id=?")
        params.append(fleet_type_id)
    if from_date:
        where.append("f.scheduled_at>=?")
        params.append(_parse_date_or_400(from_date, "from_date"))
    if to_date:
        where.append("f.scheduled_at<=?")
        params.append(_parse_date_or_400(to_date, "to_date"))
    where_sql = " AND ".join(where)

    rows = conn.execute(
        f"{_FLEET_SELECT} WHERE {where_sql} ORDER BY f.scheduled_at DESC LIMIT ? OFFSET ?",
        (*params, limit, offset),
    ).fetchall()
    total = conn.execute(f"SELECT COUNT(*) FROM fleets f WHERE {where_sql}", params).fetchone()[0]

    return {
        "success": True,
        "fleets": rows_to_dicts(rows),
        "pagination": {"total": int(total), "limit": limit, "offset": offset},
    }


@router.post("/api/admin/fleets", status_code=201)
def api_create_fleet(req: FleetCreateReq, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    user = require_roles(conn, request, FLEET_SCHEDULER_ROLES)

    if not req.scheduled_at or req.fleet_type_id is None or req.fc_id is None:
        raise HTTPException(status_code=400, detail="Missing required fields: scheduled_at, fleet_type_id, fc_id")
    scheduled_at = _parse_date_or_400(req.scheduled_at, "scheduled_at")
    duration = req.duration_minutes if req.duration_minutes is not None else DEFAULT_FLEET_DURATION_MINUTES
    if duration <= 0:
        raise HTTPException(status_code=400, detail="duration_minutes must be positive")

    _check_fleet_type(conn, req.fleet_type_id)
    _check_active_fc(conn, req.fc_id)

    now_s = now_iso()
    cur = conn.execute(
        """
        INSERT INTO fleets (
          scheduled_at,timezone,duration_minutes,fleet_type_id,fc_id,
          title,description,staging_system,comms_channel,status,
          created_by,updated_by,created_at,updated_at
        ) VALUES (?,?,?,?,?,?,?,?,?,'scheduled',?,?,?,?)
        """,
        (
            scheduled_at,
            req.timezone or DEFAULT_FLEET_TIMEZONE,
            duration,
            req.fleet_type_id,
            req.fc_id,
            req.title,
            req.description,
            req.staging_system,
            req.comms_channel,
            user["character_id"],
            user["character_id"],
            now_s,
            now_s,
        ),
    )
    conn.commit()
    return {"success": True, "fleet": _load_fleet(conn, int(cur.lastrowid))}


@router.get("/api/admin/fleets/{fleet_id}")
def api_get_fleet(fleet_id: int, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_authorized(conn, request)
    update_fleet_statuses(conn)
    return {"success": True, "fleet": _load_fleet(conn, fleet_id)}


@router.put("/api/admin/fleets/{fleet_id}")
def api_update_fleet(
    fleet_id: int,
    req: FleetUpdateReq,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    user = require_roles(conn, request, FLEET_SCHEDULER_ROLES)
    existing = _load_fleet(conn, fleet_id)

    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    for field in ("scheduled_at", "actual_start_time", "actual_end_time"):
        if changes.get(field) is not None:
            changes[field] = _parse_date_or_400(changes[field], field)
    for field in _NON_NULL_FLEET_FIELDS:
        if field in changes and changes[field] is None:
            raise HTTPException(status_code=400, detail=f"{field} cannot be null")
    if "duration_minutes" in changes and changes["duration_minutes"] <= 0:
        raise HTTPException(status_code=400, detail="duration_minutes must be positive")
    if changes.get("fleet_type_id") is not None:
        _check_fleet_type(conn, changes["fleet_type_id"])
    if changes.get("fc_id") is not None:
        _check_active_fc(conn, changes["fc_id"])

    current = existing["status"]
    new_status = changes.get("status")
    if "status" in changes:
        if new_status not in FLEET_STATUSES:
            raise HTTPException(status_code=400, detail=f"Invalid status: {new_status}")
        if current in FLEET_TERMINAL_STATUSES and new_status != current:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot change status of a {current} fleet",
            )

    if current not in FLEET_TERMINAL_STATUSES:
        # Non-terminal statuses always follow the clock for the effective schedule.
        derived = next_fleet_status(
            FLEET_SCHEDULED,
            changes.get("scheduled_at", existing["scheduled_at"]),
            changes.get("duration_minutes", existing["duration_minutes"]),
            utc_now(),
        )
        if new_status is not None and new_status != FLEET_CANCELLED and new_status != derived:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot set status to {new_status}; by its schedule the fleet is {derived}",
            )
        if new_status is None and current == FLEET_IN_PROGRESS and derived == FLEET_SCHEDULED:
            changes["status"] = FLEET_SCHEDULED
            changes["actual_start_time"] = None

    sets = [f"{field}=?" for field in changes]
    params: List[Any] = list(changes.values())
    sets.extend(["updated_by=?", "updated_at=?"])
    params.extend([user["character_id"], now_iso(), fleet_id])
    conn.execute(f"UPDATE fleets SET {', '.join(sets)} WHERE id=?", params)
    conn.commit()
    return {"success": True, "fleet": _load_fleet(conn, fleet_id)}


@router.delete("/api/admin/fleets/{fleet_id}")
def api_cancel_fleet(fleet_id: int, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    user = require_roles(conn, request, FLEET_SCHEDULER_ROLES)
    existing = _load_fleet(conn, fleet_id)
    if existing["status"] == FLEET_COMPLETED:
        raise HTTPException(
            status_code=400,
            detail="Cannot delete completed fleet. Completed fleets are final.",
        )

    conn.execute(
        "UPDATE fleets SET status=?, updated_by=?, updated_at=? WHERE id=? AND status<>?",
        (FLEET_CANCELLED, user["character_id"], now_iso(), fleet_id, FLEET_COMPLETED),
    )
    conn.commit()
    return {"success": True, "message": "Fleet cancelled successfully", "fleet": _load_fleet(conn, fleet_id)}


# ── Participants ───────────────────────────────────────────

@router.get("/api/admin/fleet-participants")
def api_list_participants(
    request: Request,
    fleet_id: Optional[int] = None,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_authorized(conn, request)
    if fleet_id is None:
        raise HTTPException(status_code=400, detail="Missing required parameter: fleet_id")
    _load_fleet(conn, fleet_id)

    rows = conn.execute(
        """
        SELECT fp.*, COUNT(fk.id) AS kill_count
        FROM fleet_participants fp
        LEFT JOIN fleet_kills fk ON fk.hunter_id=fp.id
        WHERE fp.fleet_id=?
        GROUP BY fp.id
        ORDER BY fp.joined_at ASC, fp.id ASC
        """,
        (fleet_id,),
    ).fetchall()
    return {"success": True, "participants": rows_to_dicts(rows)}


@router.post("/api/admin/fleet-participants", status_code=201)
def api_add_participant(
    req: ParticipantCreateReq,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    user = require_authorized(conn, request)
    if req.fleet_id is None or req.character_id is None or not (req.character_name or "").strip():
        raise HTTPException(status_code=400, detail="Missing required fields: fleet_id, character_id, character_name")
    _load_fleet(conn, req.fleet_id)
    _require_fleet_manager(conn, user, req.fleet_id, "Only the fleet FC or Council can manage participants")

    existing = conn.execute(
        "SELECT id FROM fleet_participants WHERE fleet_id=? AND character_id=?",
        (req.fleet_id, req.character_id),
    ).fetchone()
    if existing:
        raise HTTPException(status_code=400, detail="Participant already added to this fleet")

    cur = conn.execute(
        """
        INSERT INTO fleet_participants (fleet_id,character_id,character_name,role,notes,joined_at,added_by)
        VALUES (?,?,?,?,?,?,?)
        """,
        (
            req.fleet_id,
            req.character_id,
            req.character_name.strip(),
            req.role,
            req.notes,
            now_iso(),
            user["character_id"],
        ),
    )
    _sync_participant_count(conn, req.fleet_id)
    conn.commit()
    row = conn.execute("SELECT * FROM fleet_participants WHERE id=?", (cur.lastrowid,)).fetchone()
    return {"success": True, "participant": row_to_dict(row)}


@router.delete("/api/admin/fleet-participants")
def api_remove_participant(
    request: Request,
    id: Optional[int] = None,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    user = require_authorized(conn, request)
    if id is None:
        raise HTTPException(status_code=400, detail="Missing required parameter: id")
    row = conn.execute("SELECT id,fleet_id FROM fleet_participants WHERE id=?", (id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Participant not found")
    fleet_id = int(row["fleet_id"])
    _require_fleet_manager(conn, user, fleet_id, "Only the fleet FC or Council can manage participants")

    conn.execute("DELETE FROM fleet_participants WHERE id=?", (id,))
    _sync_participant_count(conn, fleet_id)
    conn.commit()
    return {"success": True, "message": "Participant removed"}


# ── Kills ──────────────────────────────────────────────────

def parse_zkill_id(url: str) -> Optional[int]:
    match = ZKILL_URL_RE.search(url or "")
    return int(match.group(1)) if match else None


@router.get("/api/admin/fleet-kills")
def api_list_fleet_kills(
    request: Request,
    fleet_id: Optional[int] = None,
    drop_number: Optional[int] = None,
    hunter_id: Optional[int] = None,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_authorized(conn, request)
    if fleet_id is None:
        raise HTTPException(status_code=400, detail="Missing required parameter: fleet_id")
    _load_fleet(conn, fleet_id)

    where = ["fk.fleet_id=?"]
    params: List[Any] = [fleet_id]
    if drop_number is not None:
        where.append("fk.drop_number=?")
        params.append(drop_number)
    if hunter_id is not None:
        where.append("fk.hunter_id=?")
        params.append(hunter_id)

    rows = conn.execute(
        f"""
        SELECT fk.*, fp.character_name AS hunter_name, fp.role AS hunter_role
        FROM fleet_kills fk
        LEFT JOIN fleet_participants fp ON fp.id=fk.hunter_id
        WHERE {' AND '.join(where)}
        ORDER BY fk.drop_number ASC, fk.created_at ASC, fk.id ASC
        """,
        params,
    ).fetchall()
    stats = conn.execute(
        """
        SELECT COUNT(*) AS total_kills,
               COALESCE(SUM(total_value), 0) AS total_value,
               COUNT(DISTINCT drop_number) AS total_drops
        FROM fleet_kills WHERE fleet_id=?
        """,
        (fleet_id,),
    ).fetchone()
    return {"success": True, "kills": rows_to_dicts(rows), "stats": row_to_dict(stats)}


@router.post("/api/admin/fleet-kills", status_code=201)
def api_add_fleet_kills(req: FleetKillsReq, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    user = require_authorized(conn, request)
    if req.fleet_id is None or req.drop_number is None or not req.zkill_urls:
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: fleet_id, drop_number, zkill_urls (array)",
        )
    _load_fleet(conn, req.fleet_id)
    _require_fleet_manager(conn, user, req.fleet_id, "Only the fleet FC or Council can add kills")

    if req.hunter_id is not None:
        hunter = conn.execute(
            "SELECT id FROM fleet_participants WHERE id=? AND fleet_id=?",
            (req.hunter_id, req.fleet_id),
        ).fetchone()
        if not hunter:
            raise HTTPException(status_code=404, detail="Hunter not found in this fleet")

    inserted: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for url in req.zkill_urls:
        killmail_id = parse_zkill_id(url)
        if killmail_id is None:
            errors.append({"url": url, "error": "Invalid zkillboard URL format"})
            continue
        duplicate = conn.execute(
            "SELECT id FROM fleet_kills WHERE fleet_id=? AND killmail_id=?",
            (req.fleet_id, killmail_id),
        ).fetchone()
        if duplicate:
            errors.append({"url": url, "error": "Killmail already added to this fleet"})
            continue
        try:
            cur = conn.execute(
                """
                INSERT INTO fleet_kills (fleet_id,killmail_id,zkill_url,drop_number,hunter_id,added_by,created_at)
                VALUES (?,?,?,?,?,?,?)
                """,
                (
                    req.fleet_id,
                    killmail_id,
                    f"https://zkillboard.com/kill/{killmail_id}/",
                    req.drop_number,
                    req.hunter_id,
                    user["character_id"],
                    now_iso(),
                ),
            )
        except sqlite3.Error as exc:
            logging.exception("Failed to insert killmail %s for fleet %s", killmail_id, req.fleet_id)
            errors.append({"url": url, "error": str(exc)})
            continue
        inserted.append(row_to_dict(conn.execute("SELECT * FROM fleet_kills WHERE id=?", (cur.lastrowid,)).fetchone()))
    conn.commit()

    return {
        "success": True,
        "inserted_count": len(inserted),
        "error_count": len(errors),
        "kills": inserted,
        "errors": errors,
    }


@router.delete("/api/admin/fleet-kills")
def api_remove_fleet_kill(
    request: Request,
    id: Optional[int] = None,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    user = require_authorized(conn, request)
    if id is None:
        raise HTTPException(status_code=400, detail="Missing required parameter: id")
    row = conn.execute("SELECT id,fleet_id FROM fleet_kills WHERE id=?", (id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Kill not found")
    _require_fleet_manager(conn, user, int(row["fleet_id"]), "Only the fleet FC or Council can remove kills")
    conn.execute("DELETE FROM fleet_kills WHERE id=?", (id,))
    conn.commit()
    return {"success": True, "message": "Kill removed"}


# ── Cron ───────────────────────────────────────────────────

@router.api_route("/api/cron/update-fleet-status", methods=["GET", "POST"])
def api_cron_update_fleet_status(request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_cron_secret(request)
    result = update_fleet_statuses(conn)
    return {**result, "timestamp": now_iso()}
