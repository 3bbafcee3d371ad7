import sqlite3
from typing import Optional


def find_session(conn: sqlite3.Connection, token: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT token,character_id,character_name,created_at FROM sessions WHERE token=?",
        (token,),
    ).fetchone()


def insert_session(conn: sqlite3.Connection, token: str, character_id: int, character_name: str, created_at: float) -> None:
    conn.execute(
        "INSERT INTO sessions (token,character_id,character_name,created_at) VALUES (?,?,?,?)",
        (token, character_id, character_name, created_at),
    )


def delete_session(conn: sqlite3.Connection, token: str) -> None:
    conn.execute("DELETE FROM sessions WHERE token=?", (token,))


def find_fc_access_level(conn: sqlite3.Connection, character_id: int) -> Optional[str]:
    row = conn.execute(
        """
        SELECT access_level FROM fleet_commanders
        WHERE (main_character_id=? OR bb_corp_alt_id=?)
          AND LOWER(status)='active'
        LIMIT 1
        """,
        (character_id, character_id),
    ).fetchone()
    if not row:
        return None
    return row["access_level"]
