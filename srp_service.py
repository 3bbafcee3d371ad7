"""
SRP request state machine and shared SRP queries.

Allowed transitions:

    pending  --approve--> approved
    pending  --reject---> denied
    approved --paid-----> paid
    pending/approved --cancel--> cancelled

Every transition is one guarded UPDATE; a request that moved underneath
the caller fails with SRPStateError instead of being overwritten.
"""

import logging
import sqlite3
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from clock_service import now_iso
from constants import (
    AUTO_REJECTION_MARKER,
    SRP_APPROVED,
    SRP_CANCELLED,
    SRP_DENIED,
    SRP_PAID,
    SRP_PENDING,
    SRP_SORT_COLUMNS,
)
from db import row_to_dict

SRP_JSON_FIELDS = ("validation_warnings", "proximity_data")
SRP_BOOL_FIELDS = ("is_polarized", "payout_adjusted", "requires_fc_approval")

SRP_TRANSITIONS: Dict[str, Tuple[FrozenSet[str], str]] = {
    "approve": (frozenset({SRP_PENDING}), SRP_APPROVED),
    "reject": (frozenset({SRP_PENDING}), SRP_DENIED),
    "paid": (frozenset({SRP_APPROVED}), SRP_PAID),
    "cancel": (frozenset({SRP_PENDING, SRP_APPROVED}), SRP_CANCELLED),
}

# Columns a transition may write besides status.
_TRANSITION_COLUMNS = frozenset({
    "final_payout_amount",
    "payout_adjusted",
    "admin_notes",
    "denial_reason",
    "processed_at",
    "processed_by_character_id",
    "processed_by_character_name",
    "payment_amount",
    "payment_method",
    "payment_reference",
    "paid_at",
    "paid_by_character_id",
    "paid_by_character_name",
})


class SRPNotFound(LookupError):
    pass


class SRPStateError(ValueError):
    pass


def srp_out(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    data = row_to_dict(row, json_fields=SRP_JSON_FIELDS, bool_fields=SRP_BOOL_FIELDS)
    if data is not None:
        data["is_auto_rejection"] = AUTO_REJECTION_MARKER in (data.get("admin_notes") or "")
    return data


def get_srp_request(conn: sqlite3.Connection, srp_id: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM srp_requests WHERE id=?", (srp_id,)).fetchone()
    if not row:
        raise SRPNotFound("SRP request not found")
    return srp_out(row)


def transition_srp(
    conn: sqlite3.Connection,
    srp_id: int,
    action: str,
    values: Optional[Mapping[str, Any]] = None,
    *,
    copy_columns: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Apply one transition and commit. copy_columns maps target column -> source column."""
    allowed_from, target = SRP_TRANSITIONS[action]
    values = dict(values or {})
    copy_columns = dict(copy_columns or {})
    unknown = (set(values) | set(copy_columns)) - _TRANSITION_COLUMNS
    if unknown:
        raise ValueError(f"Unexpected SRP columns: {sorted(unknown)}")

    sets = ["status=?"]
    params: List[Any] = [target]
    for column, value in values.items():
        sets.append(f"{column}=?")
        params.append(value)
    for column, source in copy_columns.items():
        sets.append(f"{column}={source}")
    sets.append("updated_at=?")
    params.append(now_iso())

    placeholders = ",".join("?" for _ in allowed_from)
    cur = conn.execute(
        f"UPDATE srp_requests SET {', '.join(sets)} WHERE id=? AND status IN ({placeholders})",
        (*params, srp_id, *sorted(allowed_from)),
    )
    if cur.rowcount == 0:
        current = conn.execute("SELECT status FROM srp_requests WHERE id=?", (srp_id,)).fetchone()
        if not current:
            raise SRPNotFound("SRP request not found")
        expected = " or ".join(sorted(allowed_from))
        raise SRPStateError(f"SRP request is {current['status']}; only {expected} requests can be {target}")
    conn.commit()
    logging.info("SRP request %s -> %s", srp_id, target)
    return get_srp_request(conn, srp_id)


def build_srp_filters(status: Optional[str], search: Optional[str]) -> Tuple[str, List[Any]]:
    where: List[str] = []
    params: List[Any] = []
    if status and status != "all":
        where.append("status=?")
        params.append(status)
    if search and search.strip():
        term = search.strip()
        pattern = f"%{term.lower()}%"
        text_clause = (
            "LOWER(COALESCE(character_name,'')) LIKE ? OR LOWER(COALESCE(ship_name,'')) LIKE ? "
            "OR LOWER(COALESCE(solar_system_name,'')) LIKE ?"
        )
        if term.isdigit():
            where.append(f"(id=? OR killmail_id=? OR {text_clause})")
            params.extend([int(term), int(term), pattern, pattern, pattern])
        else:
            where.append(f"({text_clause})")
            params.extend([pattern, pattern, pattern])
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""
    return where_sql, params


def srp_order_by(sort_by: Optional[str], sort_order: Optional[str]) -> str:
    column = sort_by if sort_by in SRP_SORT_COLUMNS else "submitted_at"
    direction = "ASC" if (sort_order or "").lower() == "asc" else "DESC"
    return f"ORDER BY {column} {direction}, id {direction}"


# ── Approved ship types ────────────────────────────────────

def load_approved_ships(conn: sqlite3.Connection) -> Dict[int, Dict[str, Any]]:
    ships: Dict[int, Dict[str, Any]] = {}
    rows = conn.execute(
        "SELECT * FROM srp_ship_types WHERE is_active=1 ORDER BY group_name ASC, type_name ASC"
    ).fetchall()
    for r in rows:
        ships[int(r["type_id"])] = {
            "type_id": int(r["type_id"]),
            "name": r["type_name"],
            "group_id": r["group_id"],
            "group_name": r["group_name"],
            "payout": r["base_payout"],
            "polarized_payout": r["polarized_payout"],
            "fc_discretion": bool(r["fc_discretion"]),
            "notes": r["notes"],
        }
    return ships


def payout_for(ship: Mapping[str, Any], is_polarized: bool) -> float:
    if is_polarized and ship.get("polarized_payout"):
        return float(ship["polarized_payout"])
    return float(ship["payout"])
