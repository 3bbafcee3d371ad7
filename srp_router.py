"""
SRP request and SRP ship-type configuration API routes.

Handles:
  /api/admin/srp                        (GET)
  /api/admin/srp/{srp_id}               (GET)
  /api/admin/srp/{srp_id}/approve       (POST)
  /api/admin/srp/{srp_id}/reject        (POST)
  /api/admin/srp/{srp_id}/paid          (POST)
  /api/admin/srp/{srp_id}/cancel        (POST)
  /api/admin/srp-config                 (GET, POST, PUT, DELETE)
"""

import math
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from auth_service import require_authorized, require_manager, require_roles
from clock_service import now_iso
from constants import CAN_MODIFY_ROLES
from db import get_db, row_to_dict, rows_to_dicts
from killmail_parser import killmail_url
from mail_queue import MAILER_CHARACTER_ID, queue_mail_send
from srp_service import (
    SRPNotFound,
    SRPStateError,
    build_srp_filters,
    get_srp_request,
    srp_order_by,
    srp_out,
    transition_srp,
)

router = APIRouter(tags=["srp"])

_SHIP_BOOL_FIELDS = ("fc_discretion", "is_active")


# ── Pydantic models ────────────────────────────────────────

class ApproveReq(BaseModel):
    payout_amount: Optional[float] = None
    admin_notes: Optional[str] = None


class RejectReq(BaseModel):
    reject_reason: Optional[str] = None
    admin_notes: Optional[str] = None
    send_mail: bool = False


class PaidReq(BaseModel):
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    send_mail: bool = False


class CancelReq(BaseModel):
    admin_notes: Optional[str] = None


class ShipTypeCreateReq(BaseModel):
    type_id: Optional[int] = None
    type_name: Optional[str] = None
    group_id: Optional[int] = None
    group_name: Optional[str] = None
    base_payout: Optional[float] = None
    polarized_payout: Optional[float] = None
    fc_discretion: bool = False
    is_active: bool = True
    notes: Optional[str] = None


class ShipTypeUpdateReq(BaseModel):
    id: Optional[int] = None
    type_id: Optional[int] = None
    type_name: Optional[str] = None
    group_id: Optional[int] = None
    group_name: Optional[str] = None
    base_payout: Optional[float] = None
    polarized_payout: Optional[float] = None
    fc_discretion: Optional[bool] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = None


# ── Helpers ────────────────────────────────────────────────

def _run_transition(conn: sqlite3.Connection, srp_id: int, action: str, **kwargs: Any) -> Dict[str, Any]:
    try:
        return transition_srp(conn, srp_id, action, **kwargs)
    except SRPNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SRPStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


def _load_srp_or_404(conn: sqlite3.Connection, srp_id: int) -> Dict[str, Any]:
    if srp_id <= 0:
        raise HTTPException(status_code=400, detail="Invalid SRP request ID")
    try:
        return get_srp_request(conn, srp_id)
    except SRPNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


def _processed_by(user: Any) -> Dict[str, Any]:
    return {
        "processed_at": now_iso(),
        "processed_by_character_id": user["character_id"],
        "processed_by_character_name": user["character_name"],
    }


def _queue_srp_mail(conn: sqlite3.Connection, mail_type: str, srp: Dict[str, Any], **extra: Any) -> None:
    payload = {
        "sender_character_id": MAILER_CHARACTER_ID,
        "recipient_character_id": srp["character_id"],
        "recipient_name": srp["character_name"],
        "ship_name": srp.get("ship_name"),
        "killmail_url": killmail_url(srp.get("mail_body") or "", srp.get("killmail_id")),
        **extra,
    }
    queue_mail_send(conn, mail_type, srp["character_id"], payload)
    conn.commit()


# ── SRP requests ───────────────────────────────────────────

@router.get("/api/admin/srp")
def api_list_srp(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500, alias="pageSize"),
    status: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    sort_direction: Optional[str] = Query(None, alias="sortDirection"),
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_authorized(conn, request)

    where_sql, params = build_srp_filters(status, search)
    total = int(conn.execute(f"SELECT COUNT(*) FROM srp_requests {where_sql}", params).fetchone()[0])
    rows = conn.execute(
        f"SELECT * FROM srp_requests {where_sql} {srp_order_by(sort_by, sort_order or sort_direction)} LIMIT ? OFFSET ?",
        (*params, page_size, (page - 1) * page_size),
    ).fetchall()
    return {
        "success": True,
        "data": [srp_out(r) for r in rows],
        "pagination": {
            "page": page,
            "pageSize": page_size,
            "total": total,
            "totalPages": math.ceil(total / page_size),
        },
    }


@router.get("/api/admin/srp/{srp_id}")
def api_get_srp(srp_id: int, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_authorized(conn, request)
    return {"success": True, "data": _load_srp_or_404(conn, srp_id)}


@router.post("/api/admin/srp/{srp_id}/approve")
def api_approve_srp(
    srp_id: int,
    req: ApproveReq,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    user = require_roles(conn, request, CAN_MODIFY_ROLES, "SRP modify role required")
    srp = _load_srp_or_404(conn, srp_id)
    if req.payout_amount is not None and req.payout_amount < 0:
        raise HTTPException(status_code=400, detail="Payout amount cannot be negative")

    base = float(srp["base_payout_amount"] or 0)
    final = float(req.payout_amount) if req.payout_amount is not None else base
    values: Dict[str, Any] = {
        "final_payout_amount": final,
        "payout_adjusted": 1 if final != base else 0,
        **_processed_by(user),
    }
    if req.admin_notes is not None:
        values["admin_notes"] = req.admin_notes
    return {"success": True, "data": _run_transition(conn, srp_id, "approve", values=values)}


@router.post("/api/admin/srp/{srp_id}/reject")
def api_reject_srp(
    srp_id: int,
    req: RejectReq,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    user = require_roles(conn, request, CAN_MODIFY_ROLES, "SRP modify role required")
    _load_srp_or_404(conn, srp_id)
    if not (req.reject_reason or "").strip():
        raise HTTPException(status_code=400, detail="Rejection reason is required")

    values: Dict[str, Any] = {"denial_reason": req.reject_reason, **_processed_by(user)}
    if req.admin_notes is not None:
        values["admin_notes"] = req.admin_notes
    srp = _run_transition(conn, srp_id, "reject", values=values)
    if req.send_mail:
        _queue_srp_mail(conn, "manual_denial", srp, denial_reason=req.reject_reason)
    return {"success": True, "data": srp, "mail_queued": req.send_mail}


@router.post("/api/admin/srp/{srp_id}/paid")
def api_mark_srp_paid(
    srp_id: int,
    req: PaidReq,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    user = require_roles(conn, request, CAN_MODIFY_ROLES, "SRP modify role required")
    _load_srp_or_404(conn, srp_id)
    if not (req.payment_method or "").strip():
        raise HTTPException(status_code=400, detail="Payment method is required")

    srp = _run_transition(
        conn,
        srp_id,
        "paid",
        values={
            "payment_method": req.payment_method.strip(),
            "payment_reference": req.payment_reference,
            "paid_at": now_iso(),
            "paid_by_character_id": user["character_id"],
            "paid_by_character_name": user["character_name"],
        },
        copy_columns={"payment_amount": "final_payout_amount"},
    )
    if req.send_mail:
        _queue_srp_mail(conn, "manual_approval", srp, payout_amount=srp["payment_amount"])
    return {"success": True, "data": srp, "mail_queued": req.send_mail}


@router.post("/api/admin/srp/{srp_id}/cancel")
def api_cancel_srp(
    srp_id: int,
    req: CancelReq,
    request: Request,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    user = require_roles(conn, request, CAN_MODIFY_ROLES, "SRP modify role required")
    _load_srp_or_404(conn, srp_id)
    values: Dict[str, Any] = dict(_processed_by(user))
    if req.admin_notes is not None:
        values["admin_notes"] = req.admin_notes
    return {"success": True, "data": _run_transition(conn, srp_id, "cancel", values=values)}


# ── SRP ship-type configuration ────────────────────────────

def _ship_type_out(row: sqlite3.Row) -> Dict[str, Any]:
    return row_to_dict(row, bool_fields=_SHIP_BOOL_FIELDS)


@router.get("/api/admin/srp-config")
def api_list_ship_types(
    request: Request,
    is_active: Optional[bool] = None,
    group_name: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(500, ge=1, le=5000),
    offset: int = Query(0, ge=0),
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_authorized(conn, request)

    where: List[str] = []
    params: List[Any] = []
    if is_active is not None:
        where.append("is_active=?")
        params.append(1 if is_active else 0)
    if group_name:
        where.append("group_name=?")
        params.append(group_name)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        where.append("(LOWER(type_name) LIKE ? OR LOWER(group_name) LIKE ?)")
        params.extend([pattern, pattern])
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""

    rows = conn.execute(
        f"""
        SELECT * FROM srp_ship_types {where_sql}
        ORDER BY is_active DESC, group_name ASC, type_name ASC
        LIMIT ? OFFSET ?
        """,
        (*params, limit, offset),
    ).fetchall()
    total = int(conn.execute(f"SELECT COUNT(*) FROM srp_ship_types {where_sql}", params).fetchone()[0])
    return {
        "success": True,
        "ship_types": rows_to_dicts(rows, bool_fields=_SHIP_BOOL_FIELDS),
        "count": len(rows),
        "total": total,
        "pagination": {"limit": limit, "offset": offset, "total": total},
    }


@router.post("/api/admin/srp-config", status_code=201)
def api_create_ship_type(req: ShipTypeCreateReq, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    user = require_manager(conn, request)
    if (
        req.type_id is None
        or not (req.type_name or "").strip()
        or req.group_id is None
        or not (req.group_name or "").strip()
        or req.base_payout is None
    ):
        raise HTTPException(
            status_code=400,
            detail="Missing required fields: type_id, type_name, group_id, group_name, base_payout",
        )
    existing = conn.execute("SELECT type_name FROM srp_ship_types WHERE type_id=?", (req.type_id,)).fetchone()
    if existing:
        raise HTTPException(status_code=409, detail=f'"{existing["type_name"]}" is already in the system')

    now_s = now_iso()
    cur = conn.execute(
        """
        INSERT INTO srp_ship_types (
          type_id,type_name,group_id,group_name,base_payout,polarized_payout,
          fc_discretion,is_active,notes,created_by,updated_by,created_at,updated_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            req.type_id,
            req.type_name.strip(),
            req.group_id,
            req.group_name.strip(),
            req.base_payout,
            req.polarized_payout,
            1 if req.fc_discretion else 0,
            1 if req.is_active else 0,
            req.notes,
            user["character_id"],
            user["character_id"],
            now_s,
            now_s,
        ),
    )
    conn.commit()
    row = conn.execute("SELECT * FROM srp_ship_types WHERE id=?", (cur.lastrowid,)).fetchone()
    return {"success": True, "ship_type": _ship_type_out(row)}


@router.put("/api/admin/srp-config")
def api_update_ship_type(req: ShipTypeUpdateReq, request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    user = require_manager(conn, request)
    if req.id is None:
        raise HTTPException(status_code=400, detail="Missing required field: id")
    if not conn.execute("SELECT id FROM srp_ship_types WHERE id=?", (req.id,)).fetchone():
        raise HTTPException(status_code=404, detail="Ship type not found")

    changes = req.model_dump(exclude_unset=True)
    changes.pop("id", None)
    # Only the optional columns may be cleared with an explicit null.
    changes = {k: v for k, v in changes.items() if v is not None or k in ("polarized_payout", "notes")}
    if changes.get("type_id") is not None:
        clash = conn.execute(
            "SELECT type_name FROM srp_ship_types WHERE type_id=? AND id<>?", (changes["type_id"], req.id)
        ).fetchone()
        if clash:
            raise HTTPException(
                status_code=409,
                detail=f'Another ship type "{clash["type_name"]}" with this type_id already exists',
            )
    for field in _SHIP_BOOL_FIELDS:
        if field in changes:
            changes[field] = 1 if changes[field] else 0
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    sets = [f"{field}=?" for field in changes]
    params: List[Any] = list(changes.values())
    sets.extend(["updated_by=?", "updated_at=?"])
    params.extend([user["character_id"], now_iso(), req.id])
    conn.execute(f"UPDATE srp_ship_types SET {', '.join(sets)} WHERE id=?", params)
    conn.commit()
    row = conn.execute("SELECT * FROM srp_ship_types WHERE id=?", (req.id,)).fetchone()
    return {"success": True, "ship_type": _ship_type_out(row)}


@router.delete("/api/admin/srp-config")
def api_deactivate_ship_type(
    request: Request,
    id: Optional[int] = None,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    user = require_manager(conn, request)
    if id is None:
        raise HTTPException(status_code=400, detail="Missing required parameter: id")
    cur = conn.execute(
        "UPDATE srp_ship_types SET is_active=0, updated_by=?, updated_at=? WHERE id=?",
        (user["character_id"], now_iso(), id),
    )
    if cur.rowcount == 0:
        raise HTTPException(status_code=404, detail="Ship type not found")
    conn.commit()
    row = conn.execute("SELECT * FROM srp_ship_types WHERE id=?", (id,)).fetchone()
    return {"success": True, "message": "Ship type deactivated successfully", "ship_type": _ship_type_out(row)}
