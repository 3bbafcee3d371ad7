import json
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional

APP_DIR = Path(__file__).resolve().parent
DB_DIR = Path(os.environ.get("DB_DIR", str(APP_DIR / "data")))
DB_PATH = Path(os.environ.get("DB_PATH", str(DB_DIR / "bombersbar.db")))


def connect_db(path: Optional[Path] = None) -> sqlite3.Connection:
    db_path = Path(path) if path is not None else DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA busy_timeout=30000;")
    return conn


def get_db() -> Generator[sqlite3.Connection, None, None]:
    """FastAPI dependency that yields a DB connection and closes it after the request."""
    conn = connect_db()
    try:
        yield conn
    finally:
        conn.close()


def row_to_dict(
    row: Optional[sqlite3.Row],
    json_fields: Iterable[str] = (),
    bool_fields: Iterable[str] = (),
) -> Optional[Dict[str, Any]]:
    """Convert a sqlite3.Row into a plain dict, decoding JSON and 0/1 columns."""
    if row is None:
        return None
    out = {k: row[k] for k in row.keys()}
    for key in json_fields:
        raw = out.get(key)
        if isinstance(raw, str) and raw:
            out[key] = json.loads(raw)
    for key in bool_fields:
        if key in out and out[key] is not None:
            out[key] = bool(out[key])
    return out


def rows_to_dicts(
    rows: Iterable[sqlite3.Row],
    json_fields: Iterable[str] = (),
    bool_fields: Iterable[str] = (),
) -> List[Dict[str, Any]]:
    json_fields = tuple(json_fields)
    bool_fields = tuple(bool_fields)
    return [row_to_dict(r, json_fields, bool_fields) for r in rows]
