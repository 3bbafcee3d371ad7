"""
Mail intake API routes.

Handles:
  /api/admin/mail               (GET, POST)
  /api/admin/processed-mails    (GET, DELETE)
  /api/cron/process-mail        (GET, POST)

Everything that touches EVE goes through app.state.mail_gateway; when no
gateway is installed these endpoints answer 503.
"""

import logging
import sqlite3
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from auth_service import require_cron_secret, require_manager, require_roles
from constants import MAIL_PROCESSING_ROLES, PROCESSED_MAIL_READ_ROLES
from db import get_db, row_to_dict, rows_to_dicts
from mail_gateway import MailGateway
from mail_processing import process_mails_for_srp
from mail_queue import queue_stats
from mail_sender import send_queued_mails

router = APIRouter(tags=["mail"])

_PROCESSED_MAIL_LIST_COLUMNS = (
    "mail_id,from_character_id,sender_name,subject,mail_timestamp,processed_at,status,srp_request_id,error_message"
)


def _gateway_or_503(request: Request) -> MailGateway:
    gateway = getattr(request.app.state, "mail_gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Mail gateway is not configured")
    return gateway


def _process_inbox(conn: sqlite3.Connection, gateway: MailGateway) -> Dict[str, Any]:
    headers = gateway.list_mail_headers()
    processing = process_mails_for_srp(conn, gateway, headers)
    queue = send_queued_mails(conn, gateway)
    return {"mail_count": len(headers), "processingResults": processing, "queueResults": queue}


@router.get("/api/admin/mail")
def api_list_mail(
    request: Request,
    process_mails: bool = Query(False, alias="processMails"),
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_roles(conn, request, MAIL_PROCESSING_ROLES, "Admin access required")
    gateway = _gateway_or_503(request)
    if process_mails:
        return {"success": True, **_process_inbox(conn, gateway)}
    headers = gateway.list_mail_headers()
    return {"success": True, "mails": headers, "count": len(headers)}


@router.post("/api/admin/mail")
def api_process_mail(request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_roles(conn, request, MAIL_PROCESSING_ROLES, "Admin access required")
    gateway = _gateway_or_503(request)
    return {"success": True, **_process_inbox(conn, gateway)}


@router.get("/api/admin/processed-mails")
def api_list_processed_mails(
    request: Request,
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    mail_id: Optional[int] = None,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_roles(conn, request, PROCESSED_MAIL_READ_ROLES, "Admin access required")

    if mail_id is not None:
        row = conn.execute("SELECT * FROM processed_mails WHERE mail_id=?", (mail_id,)).fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Mail not found")
        return {"success": True, "mail": row_to_dict(row)}

    where_sql = "WHERE status=?" if status else ""
    params: List[Any] = [status] if status else []
    rows = conn.execute(
        f"""
        SELECT {_PROCESSED_MAIL_LIST_COLUMNS} FROM processed_mails {where_sql}
        ORDER BY processed_at DESC, mail_id DESC
        LIMIT ? OFFSET ?
        """,
        (*params, limit, offset),
    ).fetchall()
    total = int(conn.execute(f"SELECT COUNT(*) FROM processed_mails {where_sql}", params).fetchone()[0])
    return {
        "success": True,
        "mails": rows_to_dicts(rows),
        "count": len(rows),
        "total": total,
        "pagination": {"limit": limit, "offset": offset, "total": total},
    }


@router.delete("/api/admin/processed-mails")
def api_delete_processed_mail(
    request: Request,
    mail_id: Optional[int] = None,
    conn: sqlite3.Connection = Depends(get_db),
) -> Dict[str, Any]:
    require_manager(conn, request)
    if mail_id is None:
        raise HTTPException(status_code=400, detail="Missing required parameter: mail_id")
    cur = conn.execute("DELETE FROM processed_mails WHERE mail_id=?", (mail_id,))
    if cur.rowcount == 0:
        raise HTTPException(status_code=404, detail="Processed mail not found")
    conn.commit()
    return {"success": True, "message": "Processed mail deleted successfully"}


@router.api_route("/api/cron/process-mail", methods=["GET", "POST"])
def api_cron_process_mail(request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    require_cron_secret(request)
    gateway = _gateway_or_503(request)
    started = time.monotonic()

    stats = queue_stats(conn)
    queue = send_queued_mails(conn, gateway)
    headers = gateway.list_mail_headers()
    processing = process_mails_for_srp(conn, gateway, headers)

    results = {
        **processing,
        "queue_stats": stats,
        "queueResults": queue,
        "mail_count": len(headers),
        "duration_ms": int((time.monotonic() - started) * 1000),
    }
    logging.info(
        "Mail cron: processed=%s created=%s skipped=%s errors=%s",
        processing["processed"], processing["created"], processing["skipped"], len(processing["errors"]),
    )
    return {"success": True, "message": "Mail processing complete", "results": results}
