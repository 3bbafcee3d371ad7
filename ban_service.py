import sqlite3
from typing import Any, Dict, Optional

from constants import BAN_TYPE_COLUMNS
from db import row_to_dict

BAN_BOOL_FIELDS = tuple(BAN_TYPE_COLUMNS.values())


def ban_column(ban_type: str) -> str:
    column = BAN_TYPE_COLUMNS.get(ban_type)
    if column is None:
        raise ValueError(f"Invalid ban type: {ban_type}. Must be 'bb', 'xup', or 'hk'")
    return column


def is_banned(conn: sqlite3.Connection, id_or_name: Any, ban_type: str = "bb") -> Optional[Dict[str, Any]]:
    """The matching ban entry, or None. Numeric input matches esi_id, anything else the name (case-insensitive)."""
    column = ban_column(ban_type)
    if isinstance(id_or_name, int) or str(id_or_name).strip().isdigit():
        row = conn.execute(
            f"SELECT * FROM ban_list WHERE esi_id=? AND {column}=1 LIMIT 1",
            (int(id_or_name),),
        ).fetchone()
    else:
        row = conn.execute(
            f"SELECT * FROM ban_list WHERE LOWER(name)=LOWER(?) AND {column}=1 LIMIT 1",
            (str(id_or_name).strip(),),
        ).fetchone()
    return row_to_dict(row, bool_fields=BAN_BOOL_FIELDS)
