"""
Fleet commander roster API routes.

Handles:
  /api/admin/fcs              (GET, POST)
  /api/admin/fcs/{fc_id}      (GET, PUT, DELETE)

Deletion is soft: the row is kept with status 'Deleted' so historical
fleets still resolve their FC.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from auth_service import (
    can_manage_fc,
    is_admin_character,
    require_authorized,
    require_manager,
    require_roles,
)
from clock_service import now_iso
from constants import (
    ACCESS_LEVELS,
    CAN_CREATE_FC_ROLES,
    FC_RANK_ORDER,
    FC_RANKS,
    FC_STATUS_DELETED,
    FC_STATUSES,
    ROLE_ADMIN,
)
from db import get_db, row_to_dict

router = APIRouter(tags=["fcs"])

_FC_JSON_FIELDS = ("additional_alts",)

_RANK_ORDER_SQL = "CASE rank " + " ".join(
    f"WHEN '{rank}' THEN {order}" for rank, order in FC_RANK_ORDER.items()
) + f" ELSE {len(FC_RANK_ORDER) + 1} END"


# ── Pydantic models ────────────────────────────────────────

class AltCharacter(BaseModel):
    character_id: int
    character_name: Optional[str] = None


class FCCreateReq(BaseModel):
    main_character_id: Optional[int] = None
    main_character_name: Optional[str] = None
    rank: Optional[str] = None
    status: Optional[str] = None
    bb_corp_alt_id: Optional[int] = None
    bb_corp_alt_name: Optional[str] = None
    additional_alts: Optional[List[AltCharacter]] = None
    notes: Optional[str] = None
    access_level: Optional[str] = None


class FCUpdateReq(FCCreateReq):
    pass


# ── Helpers ────────────────────────────────────────────────

def _fc_out(row: sqlite3.Row) -> Dict[str, Any]:
    fc = row_to_dict(row, json_fields=_FC_JSON_FIELDS)
    fc["is_admin"] = is_admin_character(fc["main_character_id"])
    return fc


def _load_fc(conn: sqlite3.Connection, fc_id: int) -> sqlite3.Row:
    row = conn.execute(
        "SELECT * FROM fleet_commanders WHERE id=? AND status<>?",
        (fc_id, FC_STATUS_DELETED),
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Fleet commander not found")
    return row


def _validate_fc_fields(rank: Optional[str], status: Optional[str], access_level: Optional[str]) -> None:
    if rank is not None and rank not in FC_RANKS:
        raise HTTPException(status_code=400, detail=f"Invalid rank: {rank}")
    if status is not None and status not in FC_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
    if access_level is not None and access_level not in ACCESS_LEVELS:
        raise HTTPException(status_code=400, detail=f"Invalid access level: {access_level}")


def _check_can_grant(user: Any, access_level: Optional[str]) -> None:
    if not access_level:
        return
    if not can_manage_fc(user, access_level == ROLE_ADMIN, access_level):
        raise HTTPException(status_code=403, detail="You cannot grant this access level")


def _alts_json(alts: Optional[List[AltCharacter]]) -> str:
    return json.dumps([a.model_dump() for a in (alts or [])])


def _main_id_taken(conn: sqlite3.Connection, main_character_id: int, exclude_id: Optional[int] = None) -> bool:
    row = conn.execute(
        "SELECT id FROM fleet_commanders WHERE main_character_id=? AND id<>?",
        (main_character_id, exclude_id or 0),
    ).fetchone()
    return bool(row)


# ── Routes ─────────────────────────────────────────────────

@router.get("/api/admin/fcs")
def api_list_fcs(
    request: Request,
    status: Optional[str] = None,
    rank: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 500,
    offset: int = 0,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_authorized(conn, request)

    where = ["status<>?"]
    params: List[Any] = [FC_STATUS_DELETED]
    if status:
        where.append("status=?")
        params.append(status)
    if rank:
        where.append("rank=?")
        params.append(rank)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        where.append(
            "(LOWER(main_character_name) LIKE ? OR LOWER(COALESCE(bb_corp_alt_name,'')) LIKE ? "
            "OR LOWER(COALESCE(notes,'')) LIKE ?)"
        )
        params.extend([pattern, pattern, pattern])
    where_sql = " AND ".join(where)

    rows = conn.execute(
        f"""
        SELECT * FROM fleet_commanders
        WHERE {where_sql}
        ORDER BY {_RANK_ORDER_SQL}, main_character_name ASC
        LIMIT ? OFFSET ?
        """,
        (*params, limit, offset),
    ).fetchall()
    total = int(conn.execute(f"SELECT COUNT(*) FROM fleet_commanders WHERE {where_sql}", params).fetchone()[0])
    fcs = [_fc_out(r) for r in rows]
    return {
        "success": True,
        "fcs": fcs,
        "count": len(fcs),
        "total": total,
        "pagination": {"limit": limit, "offset": offset, "total": total},
    }


@router.get("/api/admin/fcs/{fc_id}")
def api_get_fc(fc_id: int, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_authorized(conn, request)
    return {"success": True, "fc": _fc_out(_load_fc(conn, fc_id))}


@router.post("/api/admin/fcs", status_code=201)
def api_create_fc(req: FCCreateReq, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    user = require_roles(conn, request, CAN_CREATE_FC_ROLES, "Admin, Council, or Election Officer role required")

    if (
        req.main_character_id is None
        or not (req.main_character_name or "").strip()
        or not req.rank
        or not req.status
    ):
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: main_character_id, main_character_name, rank, status",
        )
    _validate_fc_fields(req.rank, req.status, req.access_level)
    _check_can_grant(user, req.access_level)
    if _main_id_taken(conn, req.main_character_id):
        raise HTTPException(status_code=409, detail="A fleet commander with this main character already exists")

    now_s = now_iso()
    cur = conn.execute(
        """
        INSERT INTO fleet_commanders (
          main_character_id,main_character_name,bb_corp_alt_id,bb_corp_alt_name,
          additional_alts,status,rank,access_level,notes,created_at,updated_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            req.main_character_id,
            req.main_character_name.strip(),
            req.bb_corp_alt_id,
            req.bb_corp_alt_name,
            _alts_json(req.additional_alts),
            req.status,
            req.rank,
            req.access_level,
            req.notes,
            now_s,
            now_s,
        ),
    )
    conn.commit()
    row = conn.execute("SELECT * FROM fleet_commanders WHERE id=?", (cur.lastrowid,)).fetchone()
    return {"success": True, "fc": _fc_out(row)}


@router.put("/api/admin/fcs/{fc_id}")
def api_update_fc(
    fc_id: int,
    req: FCUpdateReq,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    user = require_authorized(conn, request)
    existing = _load_fc(conn, fc_id)

    if not can_manage_fc(user, is_admin_character(existing["main_character_id"]), existing["access_level"]):
        raise HTTPException(status_code=403, detail="You do not have permission to edit this FC")

    changes = req.model_dump(exclude_unset=True)
    _validate_fc_fields(changes.get("rank"), changes.get("status"), changes.get("access_level"))
    if "access_level" in changes:
        _check_can_grant(user, changes["access_level"])

    # Required columns keep their value when sent as null.
    for field in ("main_character_id", "main_character_name", "rank", "status", "additional_alts"):
        if field in changes and changes[field] is None:
            del changes[field]
    if "main_character_id" in changes and _main_id_taken(conn, changes["main_character_id"], fc_id):
        raise HTTPException(status_code=409, detail="A fleet commander with this main character already exists")
    if "additional_alts" in changes:
        changes["additional_alts"] = _alts_json(req.additional_alts)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    sets = [f"{field}=?" for field in changes]
    params: List[Any] = list(changes.values())
    sets.append("updated_at=?")
    params.extend([now_iso(), fc_id])
    conn.execute(f"UPDATE fleet_commanders SET {', '.join(sets)} WHERE id=?", params)
    conn.commit()
    row = conn.execute("SELECT * FROM fleet_commanders WHERE id=?", (fc_id,)).fetchone()
    return {"success": True, "fc": _fc_out(row)}


@router.delete("/api/admin/fcs/{fc_id}")
def api_delete_fc(fc_id: int, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_manager(conn, request)
    cur = conn.execute(
        "UPDATE fleet_commanders SET status=?, updated_at=? WHERE id=? AND status<>?",
        (FC_STATUS_DELETED, now_iso(), fc_id, FC_STATUS_DELETED),
    )
    if cur.rowcount == 0:
        raise HTTPException(status_code=404, detail="FC not found or already deleted")
    conn.commit()
    return {"success": True, "message": "FC deleted successfully"}
