"""
Session API routes.

Sessions are issued by the EVE SSO callback (outside this service) through
auth_service.create_session; these routes only inspect and end them:
  /api/auth/verify
  /api/auth/logout
"""

import sqlite3
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, Response

from auth_repository import delete_session
from auth_service import SESSION_COOKIE_NAME, get_current_user, is_authorized_role
from db import get_db

router = APIRouter(tags=["auth"])


@router.get("/api/auth/verify")
def api_auth_verify(request: Request, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    user = get_current_user(conn, request)
    if not user:
        return {"success": True, "authenticated": False, "user": None}
    roles = user["roles"]
    return {
        "success": True,
        "authenticated": True,
        "user": {
            "character_id": user["character_id"],
            "character_name": user["character_name"],
            "roles": roles,
            "is_authorized": any(is_authorized_role(r) for r in roles),
        },
    }


@router.post("/api/auth/logout")
def api_auth_logout(request: Request, response: Response, conn: sqlite3.Connection = Depends(get_db)) -> Dict[str, Any]:
    token = (request.cookies.get(SESSION_COOKIE_NAME) or "").strip()
    if token:
        delete_session(conn, token)
        conn.commit()
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"success": True}
