"""
Fleet type and doctrine API routes.

Handles:
  /api/admin/fleet-types              (GET, POST)
  /api/admin/fleet-types/{type_id}    (PUT, DELETE)
  /api/admin/doctrines                (GET, POST)
  /api/admin/doctrines/{doctrine_id}  (PUT, DELETE)

A doctrine's hull and slot layout are fixed when it is created; only the
fitting contents, notes and ordering can change afterwards.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from auth_service import require_authorized, require_manager
from clock_service import now_iso
from constants import DOCTRINE_JSON_FIELDS
from db import get_db, row_to_dict, rows_to_dicts

router = APIRouter(tags=["doctrines"])

_FIXED_DOCTRINE_FIELDS = (
    "fleet_type_id",
    "ship_type_id",
    "ship_name",
    "ship_group_id",
    "ship_group_name",
    "high_slots",
    "mid_slots",
    "low_slots",
    "rig_slots",
)


# ── Pydantic models ────────────────────────────────────────

class FleetTypeReq(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    display_order: Optional[int] = None


class DoctrineCreateReq(BaseModel):
    fleet_type_id: Optional[int] = None
    name: Optional[str] = None
    ship_type_id: Optional[int] = None
    ship_name: Optional[str] = None
    ship_group_id: Optional[int] = None
    ship_group_name: Optional[str] = None
    high_slots: int = 0
    mid_slots: int = 0
    low_slots: int = 0
    rig_slots: int = 0
    high_slot_modules: List[Any] = []
    mid_slot_modules: List[Any] = []
    low_slot_modules: List[Any] = []
    rig_modules: List[Any] = []
    cargo_items: List[Any] = []
    notes: Optional[str] = None
    display_order: int = 0


class DoctrineUpdateReq(BaseModel):
    name: Optional[str] = None
    high_slot_modules: Optional[List[Any]] = None
    mid_slot_modules: Optional[List[Any]] = None
    low_slot_modules: Optional[List[Any]] = None
    rig_modules: Optional[List[Any]] = None
    cargo_items: Optional[List[Any]] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None
    display_order: Optional[int] = None

    model_config = {"extra": "allow"}


# ── Fleet types ────────────────────────────────────────────

def _fleet_type_name_taken(conn: sqlite3.Connection, name: str, exclude_id: int = 0) -> bool:
    row = conn.execute("SELECT id FROM fleet_types WHERE name=? AND id<>?", (name, exclude_id)).fetchone()
    return bool(row)


@router.get("/api/admin/fleet-types")
def api_list_fleet_types(
    request: Request,
    include_inactive: bool = False,
    skip_counts: bool = False,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_authorized(conn, request)
    where_sql = "" if include_inactive else "WHERE ft.is_active=1"
    if skip_counts:
        rows = conn.execute(
            f"SELECT ft.* FROM fleet_types ft {where_sql} ORDER BY ft.display_order ASC, ft.name ASC"
        ).fetchall()
    else:
        rows = conn.execute(
            f"""
            SELECT ft.*,
                   COUNT(d.id) AS doctrine_count,
                   COALESCE(SUM(CASE WHEN d.is_active=1 THEN 1 ELSE 0 END), 0) AS active_doctrine_count
            FROM fleet_types ft
            LEFT JOIN doctrines d ON d.fleet_type_id = ft.id
            {where_sql}
            GROUP BY ft.id
            ORDER BY ft.display_order ASC, ft.name ASC
            """
        ).fetchall()
    return {"success": True, "fleet_types": rows_to_dicts(rows, bool_fields=("is_active",))}


@router.post("/api/admin/fleet-types", status_code=201)
def api_create_fleet_type(req: FleetTypeReq, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_manager(conn, request)
    name = (req.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Fleet type name is required")
    if _fleet_type_name_taken(conn, name):
        raise HTTPException(status_code=409, detail="Fleet type with this name already exists")

    now_s = now_iso()
    cur = conn.execute(
        """
        INSERT INTO fleet_types (name,description,is_active,display_order,created_at,updated_at)
        VALUES (?,?,?,?,?,?)
        """,
        (
            name,
            (req.description or "").strip() or None,
            0 if req.is_active is False else 1,
            req.display_order or 0,
            now_s,
            now_s,
        ),
    )
    conn.commit()
    row = conn.execute("SELECT * FROM fleet_types WHERE id=?", (cur.lastrowid,)).fetchone()
    return {"success": True, "fleet_type": row_to_dict(row, bool_fields=("is_active",))}


@router.put("/api/admin/fleet-types/{type_id}")
def api_update_fleet_type(
    type_id: int,
    req: FleetTypeReq,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_manager(conn, request)
    if not conn.execute("SELECT id FROM fleet_types WHERE id=?", (type_id,)).fetchone():
        raise HTTPException(status_code=404, detail="Fleet type not found")

    changes = {k: v for k, v in req.model_dump(exclude_unset=True).items() if v is not None}
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        if not changes["name"]:
            raise HTTPException(status_code=400, detail="Fleet type name is required")
        if _fleet_type_name_taken(conn, changes["name"], type_id):
            raise HTTPException(status_code=409, detail="Fleet type with this name already exists")
    if "is_active" in changes:
        changes["is_active"] = 1 if changes["is_active"] else 0
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    sets = [f"{field}=?" for field in changes]
    params: List[Any] = list(changes.values())
    sets.append("updated_at=?")
    params.extend([now_iso(), type_id])
    conn.execute(f"UPDATE fleet_types SET {', '.join(sets)} WHERE id=?", params)
    conn.commit()
    row = conn.execute("SELECT * FROM fleet_types WHERE id=?", (type_id,)).fetchone()
    return {"success": True, "fleet_type": row_to_dict(row, bool_fields=("is_active",))}


@router.delete("/api/admin/fleet-types/{type_id}")
def api_delete_fleet_type(type_id: int, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_manager(conn, request)
    row = conn.execute(
        """
        SELECT ft.name, COUNT(d.id) AS doctrine_count
        FROM fleet_types ft
        LEFT JOIN doctrines d ON d.fleet_type_id = ft.id
        WHERE ft.id=?
        GROUP BY ft.id
        """,
        (type_id,),
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Fleet type not found")
    if conn.execute("SELECT 1 FROM fleets WHERE fleet_type_id=? LIMIT 1", (type_id,)).fetchone():
        raise HTTPException(status_code=409, detail="Fleet type is used by existing fleets; deactivate it instead")

    conn.execute("DELETE FROM fleet_types WHERE id=?", (type_id,))
    conn.commit()
    return {
        "success": True,
        "message": f'Fleet type "{row["name"]}" and {int(row["doctrine_count"])} doctrine(s) deleted',
    }


# ── Doctrines ──────────────────────────────────────────────

_DOCTRINE_SELECT = """
    SELECT d.*, ft.name AS fleet_type_name
    FROM doctrines d
    JOIN fleet_types ft ON d.fleet_type_id = ft.id
"""


def _doctrine_out(row: sqlite3.Row) -> Dict[str, Any]:
    return row_to_dict(row, json_fields=DOCTRINE_JSON_FIELDS, bool_fields=("is_active",))


def _load_doctrine(conn: sqlite3.Connection, doctrine_id: int) -> sqlite3.Row:
    row = conn.execute(_DOCTRINE_SELECT + " WHERE d.id=?", (doctrine_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Doctrine not found")
    return row


@router.get("/api/admin/doctrines")
def api_list_doctrines(
    request: Request,
    fleet_type_id: Optional[int] = None,
    include_inactive: bool = False,
    id: Optional[int] = None,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_authorized(conn, request)
    if id is not None:
        return {"success": True, "doctrine": _doctrine_out(_load_doctrine(conn, id))}

    where: List[str] = []
    params: List[Any] = []
    if fleet_type_id is not None:
        where.append("d.fleet_type_id=?")
        params.append(fleet_type_id)
    if not include_inactive:
        where.append("d.is_active=1")
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""
    rows = conn.execute(
        f"{_DOCTRINE_SELECT} {where_sql} ORDER BY d.display_order ASC, d.name ASC",
        params,
    ).fetchall()
    return {"success": True, "doctrines": [_doctrine_out(r) for r in rows]}


@router.post("/api/admin/doctrines", status_code=201)
def api_create_doctrine(req: DoctrineCreateReq, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    user = require_manager(conn, request)
    name = (req.name or "").strip()
    if not req.fleet_type_id or not name or not req.ship_type_id:
        raise HTTPException(status_code=400, detail="fleet_type_id, name, and ship_type_id are required")
    if not conn.execute("SELECT id FROM fleet_types WHERE id=?", (req.fleet_type_id,)).fetchone():
        raise HTTPException(status_code=404, detail="Fleet type not found")
    if conn.execute(
        "SELECT id FROM doctrines WHERE fleet_type_id=? AND name=?", (req.fleet_type_id, name)
    ).fetchone():
        raise HTTPException(status_code=409, detail="Doctrine with this name already exists in this fleet type")

    now_s = now_iso()
    cur = conn.execute(
        """
        INSERT INTO doctrines (
          fleet_type_id,name,ship_type_id,ship_name,ship_group_id,ship_group_name,
          high_slots,mid_slots,low_slots,rig_slots,
          high_slot_modules,mid_slot_modules,low_slot_modules,rig_modules,cargo_items,
          notes,display_order,created_by,created_at,updated_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            req.fleet_type_id,
            name,
            req.ship_type_id,
            req.ship_name,
            req.ship_group_id,
            req.ship_group_name,
            req.high_slots,
            req.mid_slots,
            req.low_slots,
            req.rig_slots,
            json.dumps(req.high_slot_modules),
            json.dumps(req.mid_slot_modules),
            json.dumps(req.low_slot_modules),
            json.dumps(req.rig_modules),
            json.dumps(req.cargo_items),
            req.notes,
            req.display_order,
            user["character_id"],
            now_s,
            now_s,
        ),
    )
    conn.commit()
    return {"success": True, "doctrine": _doctrine_out(_load_doctrine(conn, int(cur.lastrowid)))}


@router.put("/api/admin/doctrines/{doctrine_id}")
def api_update_doctrine(
    doctrine_id: int,
    req: DoctrineUpdateReq,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_manager(conn, request)
    existing = _load_doctrine(conn, doctrine_id)

    fixed = sorted(set(req.model_extra or {}) & set(_FIXED_DOCTRINE_FIELDS))
    if fixed:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot change {', '.join(fixed)} after creation; create a new doctrine instead",
        )

    changes = {k: v for k, v in req.model_dump(exclude_unset=True).items() if k not in (req.model_extra or {})}
    changes = {k: v for k, v in changes.items() if v is not None}
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        if not changes["name"]:
            raise HTTPException(status_code=400, detail="Doctrine name cannot be empty")
        if conn.execute(
            "SELECT id FROM doctrines WHERE fleet_type_id=? AND name=? AND id<>?",
            (existing["fleet_type_id"], changes["name"], doctrine_id),
        ).fetchone():
            raise HTTPException(status_code=409, detail="Doctrine with this name already exists in this fleet type")
    for field in DOCTRINE_JSON_FIELDS:
        if field in changes:
            changes[field] = json.dumps(changes[field])
    if "is_active" in changes:
        changes["is_active"] = 1 if changes["is_active"] else 0
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    sets = [f"{field}=?" for field in changes]
    params: List[Any] = list(changes.values())
    sets.append("updated_at=?")
    params.extend([now_iso(), doctrine_id])
    conn.execute(f"UPDATE doctrines SET {', '.join(sets)} WHERE id=?", params)
    conn.commit()
    return {"success": True, "doctrine": _doctrine_out(_load_doctrine(conn, doctrine_id))}


@router.delete("/api/admin/doctrines/{doctrine_id}")
def api_delete_doctrine(doctrine_id: int, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_manager(conn, request)
    row = conn.execute("SELECT name FROM doctrines WHERE id=?", (doctrine_id,)).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Doctrine not found")
    conn.execute("DELETE FROM doctrines WHERE id=?", (doctrine_id,))
    conn.commit()
    return {"success": True, "message": f'Doctrine "{row["name"]}" deleted'}
