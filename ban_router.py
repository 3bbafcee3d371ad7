"""
Ban list API routes.

Handles:
  /api/admin/bans   (GET, POST, PUT, DELETE)

A ban entry names a character, corporation or alliance and flags which
scopes it applies to: bb (Bombers Bar fleets and SRP), xup and hk.
"""

import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from auth_service import require_authorized, require_manager
from ban_service import BAN_BOOL_FIELDS, ban_column
from clock_service import now_iso
from constants import BAN_ENTITY_TYPES
from db import get_db, row_to_dict, rows_to_dicts

router = APIRouter(tags=["bans"])


class BanCreateReq(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    esi_id: Optional[int] = None
    bb_banned: bool = False
    xup_banned: bool = False
    hk_banned: bool = False
    banned_by: Optional[str] = None
    reason: Optional[str] = None
    ban_date: Optional[str] = None


class BanUpdateReq(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None
    type: Optional[str] = None
    esi_id: Optional[int] = None
    bb_banned: Optional[bool] = None
    xup_banned: Optional[bool] = None
    hk_banned: Optional[bool] = None
    banned_by: Optional[str] = None
    reason: Optional[str] = None
    ban_date: Optional[str] = None


def _check_entity_type(value: Optional[str]) -> None:
    if value is not None and value not in BAN_ENTITY_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid type: {value}")


def _ban_out(row: sqlite3.Row) -> Dict[str, Any]:
    return row_to_dict(row, bool_fields=BAN_BOOL_FIELDS)


@router.get("/api/admin/bans")
def api_list_bans(
    request: Request,
    type: Optional[str] = None,
    ban_type: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(100, ge=1, le=5000),
    offset: int = Query(0, ge=0),
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_authorized(conn, request)

    where: List[str] = []
    params: List[Any] = []
    if type:
        where.append("type=?")
        params.append(type)
    if ban_type:
        try:
            where.append(f"{ban_column(ban_type)}=1")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        where.append(
            "(LOWER(name) LIKE ? OR LOWER(COALESCE(reason,'')) LIKE ? OR LOWER(COALESCE(banned_by,'')) LIKE ?)"
        )
        params.extend([pattern, pattern, pattern])
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""

    rows = conn.execute(
        f"SELECT * FROM ban_list {where_sql} ORDER BY name ASC LIMIT ? OFFSET ?",
        (*params, limit, offset),
    ).fetchall()
    total = int(conn.execute(f"SELECT COUNT(*) FROM ban_list {where_sql}", params).fetchone()[0])
    return {
        "success": True,
        "bans": rows_to_dicts(rows, bool_fields=BAN_BOOL_FIELDS),
        "count": len(rows),
        "total": total,
        "pagination": {"limit": limit, "offset": offset, "total": total},
    }


@router.post("/api/admin/bans", status_code=201)
def api_create_ban(req: BanCreateReq, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_manager(conn, request)
    if not (req.name or "").strip() or not req.type:
        raise HTTPException(status_code=400, detail="Missing required fields: name, type")
    _check_entity_type(req.type)

    now_s = now_iso()
    cur = conn.execute(
        """
        INSERT INTO ban_list (
          name,esi_id,type,bb_banned,xup_banned,hk_banned,banned_by,reason,ban_date,created_at,updated_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            req.name.strip(),
            req.esi_id,
            req.type,
            1 if req.bb_banned else 0,
            1 if req.xup_banned else 0,
            1 if req.hk_banned else 0,
            req.banned_by,
            req.reason,
            req.ban_date or now_s,
            now_s,
            now_s,
        ),
    )
    conn.commit()
    print(f"[bans] added {req.type} {req.name.strip()} (id={cur.lastrowid})")
    row = conn.execute("SELECT * FROM ban_list WHERE id=?", (cur.lastrowid,)).fetchone()
    return {"success": True, "ban": _ban_out(row)}


@router.put("/api/admin/bans")
def api_update_ban(req: BanUpdateReq, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_manager(conn, request)
    if req.id is None:
        raise HTTPException(status_code=400, detail="Missing required field: id")
    _check_entity_type(req.type)

    changes = {k: v for k, v in req.model_dump(exclude_unset=True).items() if v is not None and k != "id"}
    for field in BAN_BOOL_FIELDS:
        if field in changes:
            changes[field] = 1 if changes[field] else 0
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        if not changes["name"]:
            raise HTTPException(status_code=400, detail="Name cannot be empty")

    sets = [f"{field}=?" for field in changes]
    params: List[Any] = list(changes.values())
    sets.append("updated_at=?")
    params.extend([now_iso(), req.id])
    cur = conn.execute(f"UPDATE ban_list SET {', '.join(sets)} WHERE id=?", params)
    if cur.rowcount == 0:
        raise HTTPException(status_code=404, detail="Ban entry not found")
    conn.commit()
    row = conn.execute("SELECT * FROM ban_list WHERE id=?", (req.id,)).fetchone()
    return {"success": True, "ban": _ban_out(row)}


@router.delete("/api/admin/bans")
def api_delete_ban(
    request: Request,
    id: Optional[int] = None,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_manager(conn, request)
    if id is None:
        raise HTTPException(status_code=400, detail="Missing required parameter: id")
    cur = conn.execute("DELETE FROM ban_list WHERE id=?", (id,))
    if cur.rowcount == 0:
        raise HTTPException(status_code=404, detail="Ban entry not found")
    conn.commit()
    return {"success": True, "message": "Ban entry deleted successfully"}
