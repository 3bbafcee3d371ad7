"""
Outbound EVE mail queue.

Every mail the service sends goes through pending_mail_sends so that the
sender can pace itself against the in-game rate limit. Rows are deleted
once sent; failures push retry_after forward and bump attempts.
"""

import json
import os
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from clock_service import format_timestamp, now_iso, utc_now
from constants import MAIL_QUEUE_BATCH_SIZE, MAIL_TYPES

# Character whose mailbox is read and who signs outgoing mail.
MAILER_CHARACTER_ID = int(os.environ.get("MAILER_CHARACTER_ID", "0") or 0)


def queue_mail_send(
    conn: sqlite3.Connection,
    mail_type: str,
    recipient_character_id: int,
    payload: Dict[str, Any],
    retry_after: Optional[datetime] = None,
) -> int:
    """Queue one mail. Does not commit; the caller owns the transaction."""
    if mail_type not in MAIL_TYPES:
        raise ValueError(f"Unknown mail type: {mail_type}")
    now_s = now_iso()
    cur = conn.execute(
        """
        INSERT INTO pending_mail_sends (mail_type,recipient_character_id,payload,retry_after,created_at,updated_at)
        VALUES (?,?,?,?,?,?)
        """,
        (
            mail_type,
            int(recipient_character_id),
            json.dumps(payload),
            format_timestamp(retry_after) if retry_after is not None else now_s,
            now_s,
            now_s,
        ),
    )
    print(f"[mail-queue] queued {mail_type} for {recipient_character_id} (id={cur.lastrowid})")
    return int(cur.lastrowid)


def get_ready_mails(conn: sqlite3.Connection, limit: int = MAIL_QUEUE_BATCH_SIZE) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT id,mail_type,recipient_character_id,payload,retry_after,attempts,last_error
        FROM pending_mail_sends
        WHERE retry_after<=?
        ORDER BY retry_after ASC, id ASC
        LIMIT ?
        """,
        (now_iso(), int(limit)),
    ).fetchall()
    out = []
    for r in rows:
        item = {k: r[k] for k in r.keys()}
        item["payload"] = json.loads(item["payload"] or "{}")
        out.append(item)
    return out


def mark_mail_sent(conn: sqlite3.Connection, queue_id: int) -> None:
    conn.execute("DELETE FROM pending_mail_sends WHERE id=?", (queue_id,))


def update_mail_retry(conn: sqlite3.Connection, queue_id: int, retry_after: datetime, error: str) -> None:
    conn.execute(
        """
        UPDATE pending_mail_sends
        SET attempts=attempts+1, retry_after=?, last_error=?, updated_at=?
        WHERE id=?
        """,
        (format_timestamp(retry_after), error, now_iso(), queue_id),
    )


def queue_stats(conn: sqlite3.Connection) -> Dict[str, int]:
    now_s = format_timestamp(utc_now())
    row = conn.execute(
        """
        SELECT COUNT(*) AS total,
               COALESCE(SUM(CASE WHEN retry_after<=? THEN 1 ELSE 0 END), 0) AS ready,
               COALESCE(SUM(CASE WHEN retry_after>? THEN 1 ELSE 0 END), 0) AS waiting
        FROM pending_mail_sends
        """,
        (now_s, now_s),
    ).fetchone()
    return {"total": int(row["total"]), "ready": int(row["ready"]), "waiting": int(row["waiting"])}
