import hmac
import os
import secrets
import sqlite3
import time
from typing import Any, Iterable, List, Optional

from fastapi import HTTPException, Request

from auth_repository import find_fc_access_level, find_session, insert_session
from constants import (
    AUTHORIZED_ROLES,
    CAN_MANAGE_ROLES,
    ROLE_ADMIN,
    ROLE_COUNCIL,
    ROLE_ELECTION_OFFICER,
    ROLE_USER,
)

SESSION_COOKIE_NAME = "session_token"
DEV_SKIP_AUTH = os.environ.get("DEV_SKIP_AUTH", "").strip().lower() in ("1", "true", "yes")
DEV_ADMIN_CHARACTER_ID = int(os.environ.get("DEV_ADMIN_CHARACTER_ID", "0") or 0)


class AuthUser:
    """Dict-like view of the authenticated character and its computed roles."""
    def __init__(self, character_id: int, character_name: str, roles: Iterable[str]):
        self._data = {
            "character_id": int(character_id),
            "character_name": str(character_name),
            "roles": list(roles),
        }
    def __getitem__(self, key: str) -> Any:
        return self._data[key]
    def __contains__(self, key: str) -> bool:
        return key in self._data
    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)


def _fake_admin() -> AuthUser:
    return AuthUser(DEV_ADMIN_CHARACTER_ID, "Dev Admin", [ROLE_USER, ROLE_ADMIN])


def admin_character_ids() -> set[int]:
    """Character IDs granted the admin role via ADMIN_CHARACTER_ID(S)."""
    ids: set[int] = set()
    raw_values = [os.environ.get("ADMIN_CHARACTER_ID", "")]
    raw_values.extend(os.environ.get("ADMIN_CHARACTER_IDS", "").split(","))
    for raw in raw_values:
        raw = raw.strip()
        if raw.isdigit():
            ids.add(int(raw))
    return ids


def is_admin_character(character_id: Any) -> bool:
    try:
        return int(character_id) in admin_character_ids()
    except (TypeError, ValueError):
        return False


def get_roles(conn: sqlite3.Connection, character_id: int) -> List[str]:
    roles = [ROLE_USER]
    if is_admin_character(character_id):
        roles.append(ROLE_ADMIN)
    access_level = find_fc_access_level(conn, character_id)
    if access_level and access_level not in roles:
        roles.append(access_level)
    return roles


def has_any_role(user: Any, allowed: Iterable[str]) -> bool:
    allowed = set(allowed)
    return any(role in allowed for role in (user.get("roles") or []))


def is_authorized_role(role: str) -> bool:
    return role in AUTHORIZED_ROLES


def can_manage(user: Any) -> bool:
    return has_any_role(user, CAN_MANAGE_ROLES)


def can_manage_fc(user: Any, target_is_admin: bool, target_access_level: Optional[str]) -> bool:
    """Admins manage everyone, Council manages non-admin non-Council FCs,
    Election Officers manage non-admins."""
    roles = set(user.get("roles") or [])
    if ROLE_ADMIN in roles:
        return True
    target_is_council = target_access_level == ROLE_COUNCIL
    if ROLE_COUNCIL in roles:
        return not target_is_admin and not target_is_council
    if ROLE_ELECTION_OFFICER in roles:
        return not target_is_admin
    return False


def create_session(conn: sqlite3.Connection, character_id: int, character_name: str) -> str:
    token = secrets.token_urlsafe(32)
    insert_session(conn, token, int(character_id), character_name, time.time())
    return token


def get_current_user(conn: sqlite3.Connection, request: Request) -> Optional[AuthUser]:
    if DEV_SKIP_AUTH:
        return _fake_admin()
    token = (request.cookies.get(SESSION_COOKIE_NAME) or "").strip()
    if not token:
        return None
    session = find_session(conn, token)
    if not session:
        return None
    character_id = int(session["character_id"])
    return AuthUser(character_id, session["character_name"], get_roles(conn, character_id))


def require_login(conn: sqlite3.Connection, request: Request) -> AuthUser:
    user = get_current_user(conn, request)
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_roles(
    conn: sqlite3.Connection,
    request: Request,
    allowed: Iterable[str],
    message: str = "Insufficient permissions",
) -> AuthUser:
    user = require_login(conn, request)
    if not has_any_role(user, allowed):
        raise HTTPException(status_code=403, detail=message)
    return user


def require_authorized(conn: sqlite3.Connection, request: Request) -> AuthUser:
    return require_roles(conn, request, AUTHORIZED_ROLES, "Authorized role required")


def require_manager(conn: sqlite3.Connection, request: Request) -> AuthUser:
    return require_roles(conn, request, CAN_MANAGE_ROLES, "Admin or Council role required")


def require_cron_secret(request: Request) -> None:
    """Cron endpoints require `Authorization: Bearer $CRON_SECRET` once the secret is configured."""
    secret = os.environ.get("CRON_SECRET", "")
    if not secret:
        return
    auth_header = request.headers.get("authorization") or ""
    if not hmac.compare_digest(auth_header, f"Bearer {secret}"):
        raise HTTPException(status_code=401, detail="Unauthorized")
