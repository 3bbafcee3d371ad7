"""
SRP intake from the mailer character's EVE inbox.

process_mails_for_srp() classifies every unprocessed mail header and
records the outcome in processed_mails, creating SRP requests (pending or
auto-denied) and queueing reply mails as it goes. A run happens in four
passes:

  1. classify: ban check, killmail link count, killmail validation
  2. resolve every character/type/system name needed in one gateway call
  3. record mails that never reach SRP (banned, not_srp, multiple links, errors)
  4. turn validated mails into SRP requests or auto-rejections

Replies are only queued here; mail_sender delivers them at the rate EVE
allows.
"""

import json
import logging
import math
import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from ban_service import is_banned
from clock_service import normalize_timestamp, now_iso, parse_timestamp, utc_now
from constants import AUTO_REJECTION_MARKER, SRP_DENIED, SRP_PENDING
from killmail_parser import (
    apply_names,
    build_fc_map,
    collect_name_ids,
    count_killmail_links,
    enrich_proximity,
    killmail_url,
)
from mail_gateway import MailGateway
from mail_queue import MAILER_CHARACTER_ID, queue_mail_send
from srp_service import load_approved_ships
from srp_validator import SRPValidation, validate_srp_request

SRP_MAX_KILLMAIL_AGE_DAYS = int(os.environ.get("SRP_MAX_KILLMAIL_AGE_DAYS", "30") or 30)


@dataclass
class _Mail:
    header: Dict[str, Any]
    body: str = ""
    sender_name: str = "Unknown"

    @property
    def mail_id(self) -> int:
        return int(self.header["mail_id"])

    @property
    def sender_id(self) -> int:
        return int(self.header["from"])

    @property
    def subject(self) -> str:
        return str(self.header.get("subject") or "")

    @property
    def timestamp(self) -> str:
        raw = self.header.get("timestamp")
        if not raw:
            return now_iso()
        try:
            return normalize_timestamp(raw)
        except ValueError:
            logging.warning("Mail %s: unreadable timestamp %r, using processing time", self.header.get("mail_id"), raw)
            return now_iso()


def _error_entry(mail: _Mail, error: str) -> Dict[str, Any]:
    return {"mail_id": mail.mail_id, "subject": mail.subject, "error": error}


def _record_processed(
    conn: sqlite3.Connection,
    mail: _Mail,
    status: str,
    *,
    body: Optional[str] = None,
    error_message: Optional[str] = None,
    srp_request_id: Optional[int] = None,
    overwrite: bool = False,
) -> None:
    conflict = (
        "DO UPDATE SET status=excluded.status, srp_request_id=excluded.srp_request_id"
        if overwrite
        else "DO NOTHING"
    )
    conn.execute(
        f"""
        INSERT INTO processed_mails (
          mail_id,from_character_id,sender_name,subject,mail_timestamp,mail_body,
          status,srp_request_id,error_message,processed_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(mail_id) {conflict}
        """,
        (
            mail.mail_id,
            mail.sender_id,
            mail.sender_name,
            mail.subject,
            mail.timestamp,
            mail.body if body is None else body,
            status,
            srp_request_id,
            error_message,
            now_iso(),
        ),
    )


def _insert_srp_request(conn: sqlite3.Connection, fields: Dict[str, Any]) -> int:
    now_s = now_iso()
    fields = {"submitted_at": now_s, **fields, "updated_at": now_s}
    columns = ",".join(fields)
    placeholders = ",".join("?" for _ in fields)
    cur = conn.execute(f"INSERT INTO srp_requests ({columns}) VALUES ({placeholders})", list(fields.values()))
    return int(cur.lastrowid)


def _create_auto_rejected(
    conn: sqlite3.Connection,
    mail: _Mail,
    validation: Optional[SRPValidation],
    reason: str,
    processed_status: str,
    proximity: Optional[Dict[str, Any]] = None,
) -> int:
    km = (validation.killmail_data if validation else None) or {}
    srp_id = _insert_srp_request(
        conn,
        {
            "character_id": mail.sender_id,
            "character_name": mail.sender_name,
            "corporation_id": km.get("victim_corporation_id"),
            "corporation_name": km.get("victim_corporation_name"),
            "alliance_id": km.get("victim_alliance_id"),
            "alliance_name": km.get("victim_alliance_name"),
            "killmail_id": km.get("killmail_id"),
            "killmail_hash": km.get("hash") or "",
            "killmail_time": normalize_timestamp(km["killmail_time"]) if km.get("killmail_time") else mail.timestamp,
            "ship_type_id": km.get("victim_ship_type_id"),
            "ship_name": km.get("victim_ship_name") or "Unknown Ship",
            "is_polarized": 0,
            "solar_system_id": km.get("solar_system_id"),
            "solar_system_name": km.get("solar_system_name"),
            "hunter_donations": 0,
            "base_payout_amount": 0,
            "final_payout_amount": 0,
            "payout_adjusted": 0,
            "status": SRP_DENIED,
            "denial_reason": reason,
            "requires_fc_approval": 0,
            "mail_id": mail.mail_id,
            "mail_subject": mail.subject,
            "mail_body": mail.body,
            "admin_notes": AUTO_REJECTION_MARKER,
            "proximity_data": json.dumps(proximity) if proximity else None,
            "submitted_at": mail.timestamp,
        },
    )
    _record_processed(conn, mail, processed_status, error_message=reason, srp_request_id=srp_id)
    return srp_id


def _resolve_names(gateway: MailGateway, ids: Set[int]) -> Dict[int, str]:
    if not ids:
        return {}
    try:
        resolved = gateway.resolve_names(sorted(ids))
    except Exception:
        logging.exception("Bulk name resolution failed; falling back to placeholder names")
        return {}
    return {int(k): v for k, v in (resolved or {}).items()}


def _proximity_for(gateway: MailGateway, killmail_id: Any, fc_map: Dict[str, Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not killmail_id:
        return None
    try:
        data = gateway.get_proximity_data(int(killmail_id))
    except Exception:
        logging.warning("Proximity lookup failed for killmail %s", killmail_id, exc_info=True)
        return None
    return enrich_proximity(data, fc_map)


def _handle_validated(
    conn: sqlite3.Connection,
    mail: _Mail,
    validation: SRPValidation,
    mailer_id: int,
    fc_map: Dict[str, Dict[str, Any]],
    gateway: MailGateway,
    results: Dict[str, Any],
) -> None:
    km = validation.killmail_data or {}
    proximity = _proximity_for(gateway, km.get("killmail_id"), fc_map)
    url = killmail_url(mail.body, km.get("killmail_id"))
    reply = {"sender_character_id": mailer_id, "recipient_character_id": mail.sender_id, "recipient_name": mail.sender_name, "killmail_url": url}

    if not validation.valid:
        error_text = "; ".join(validation.errors)
        if validation.is_unapproved_ship and km:
            _create_auto_rejected(
                conn, mail, validation,
                "Auto-Rejected: Ship type not approved for O'Bomber-care",
                "rejected_ship", proximity,
            )
            queue_mail_send(conn, "unapproved_ship", mail.sender_id, {**reply, "ship_name": km.get("victim_ship_name") or "Unknown"})
            results["skipped"] += 1
            return
        _record_processed(conn, mail, "invalid", error_message=f"Invalid SRP: {error_text}")
        results["errors"].append(_error_entry(mail, error_text))
        return

    kill_time = parse_timestamp(km["killmail_time"])
    days_since_kill = (utc_now() - kill_time).total_seconds() / 86400
    if days_since_kill > SRP_MAX_KILLMAIL_AGE_DAYS:
        days = math.floor(days_since_kill)
        _create_auto_rejected(
            conn, mail, validation,
            f"Auto-Rejected: Killmail older than {SRP_MAX_KILLMAIL_AGE_DAYS} days ({days} days old)",
            "rejected_too_old", proximity,
        )
        queue_mail_send(conn, "too_old_rejection", mail.sender_id, {
            **reply,
            "days_since_kill": days,
            "kill_date": kill_time.strftime("%Y-%m-%d"),
            "max_age_days": SRP_MAX_KILLMAIL_AGE_DAYS,
        })
        results["skipped"] += 1
        return

    if mail.sender_id != int(km.get("victim_character_id") or 0):
        _create_auto_rejected(
            conn, mail, validation,
            "Auto-Rejected: Mail sender does not match killmail victim",
            "rejected_pilot", proximity,
        )
        queue_mail_send(conn, "rejection", mail.sender_id, {
            **reply,
            "victim_name": km.get("victim_character_name") or "Unknown",
        })
        results["skipped"] += 1
        return

    # Auto-rejected rows never block a corrected resubmission.
    existing = conn.execute(
        """
        SELECT id,status,paid_at,final_payout_amount FROM srp_requests
        WHERE killmail_id=? AND COALESCE(admin_notes,'')<>?
        ORDER BY id ASC LIMIT 1
        """,
        (km["killmail_id"], AUTO_REJECTION_MARKER),
    ).fetchone()
    if existing:
        _record_processed(conn, mail, "duplicate", error_message="Duplicate killmail", srp_request_id=int(existing["id"]), overwrite=True)
        is_paid = existing["paid_at"] is not None
        queue_mail_send(conn, "duplicate_paid_rejection" if is_paid else "duplicate_pending_rejection", mail.sender_id, {
            **reply,
            "srp_request_id": int(existing["id"]),
            "paid_amount": existing["final_payout_amount"],
            "paid_date": existing["paid_at"],
        })
        results["skipped"] += 1
        return

    ship_name = km.get("victim_ship_name") or (validation.ship_info or {}).get("name")
    srp_id = _insert_srp_request(
        conn,
        {
            "character_id": int(km["victim_character_id"]),
            "character_name": km.get("victim_character_name") or "Unknown",
            "corporation_id": km.get("victim_corporation_id"),
            "corporation_name": km.get("victim_corporation_name"),
            "alliance_id": km.get("victim_alliance_id"),
            "alliance_name": km.get("victim_alliance_name"),
            "killmail_id": km["killmail_id"],
            "killmail_hash": km.get("hash") or "",
            "killmail_time": normalize_timestamp(kill_time),
            "ship_type_id": km.get("victim_ship_type_id"),
            "ship_name": ship_name,
            "is_polarized": 1 if validation.is_polarized else 0,
            "solar_system_id": km.get("solar_system_id"),
            "solar_system_name": km.get("solar_system_name"),
            "base_payout_amount": validation.payout_amount,
            "final_payout_amount": validation.payout_amount,
            "status": SRP_PENDING,
            "requires_fc_approval": 1 if validation.requires_fc_approval else 0,
            "validation_warnings": json.dumps(validation.warnings),
            "proximity_data": json.dumps(proximity) if proximity else None,
            "mail_id": mail.mail_id,
            "mail_subject": mail.subject,
            "mail_body": mail.body,
        },
    )
    _record_processed(conn, mail, "srp_created", srp_request_id=srp_id, overwrite=True)
    queue_mail_send(conn, "confirmation", mail.sender_id, {
        **reply,
        "ship_name": ship_name,
        "loss_date": normalize_timestamp(kill_time),
        "payout_amount": validation.payout_amount,
    })
    results["created"] += 1
    logging.info("Mail %s: SRP request %s created (%s, %s ISK)", mail.mail_id, srp_id, ship_name, validation.payout_amount)


def process_mails_for_srp(
    conn: sqlite3.Connection,
    gateway: MailGateway,
    mail_headers: List[Dict[str, Any]],
    mailer_character_id: Optional[int] = None,
) -> Dict[str, Any]:
    results: Dict[str, Any] = {"processed": 0, "created": 0, "skipped": 0, "errors": []}
    mailer_id = int(mailer_character_id or MAILER_CHARACTER_ID or gateway.character_id or 0)

    processed_ids = {int(r["mail_id"]) for r in conn.execute("SELECT mail_id FROM processed_mails").fetchall()}
    # Mail sent by the mailer itself is never touched, not even recorded.
    unprocessed = [
        h for h in mail_headers
        if int(h["mail_id"]) not in processed_ids and int(h["from"]) != mailer_id
    ]
    logging.info("Mail intake: %d unprocessed mail(s)", len(unprocessed))
    if not unprocessed:
        return results

    approved_ships = load_approved_ships(conn)
    fc_map = build_fc_map(conn)

    banned: List[tuple] = []
    not_srp: List[_Mail] = []
    multiple: List[tuple] = []
    failed: List[tuple] = []
    validated: List[tuple] = []
    name_ids: Set[int] = set()

    for header in unprocessed:
        results["processed"] += 1
        mail = _Mail(header)
        name_ids.add(mail.sender_id)
        try:
            ban = is_banned(conn, mail.sender_id, "bb")
            if ban:
                banned.append((mail, ban))
                results["skipped"] += 1
                continue

            mail.body = gateway.get_mail_body(mail.mail_id) or ""
            link_count = count_killmail_links(mail.body)
            if link_count == 0:
                not_srp.append(mail)
                results["skipped"] += 1
                continue
            if link_count > 1:
                multiple.append((mail, link_count))
                results["skipped"] += 1
                continue

            try:
                validation = validate_srp_request(mail.body, approved_ships, gateway)
            except Exception as e:
                failed.append((mail, str(e)))
                results["errors"].append(_error_entry(mail, f"Validation failed: {e}"))
                continue
            validated.append((mail, validation))
            if validation.killmail_data:
                name_ids.update(collect_name_ids(validation.killmail_data))
        except Exception as e:
            logging.exception("Mail %s: classification failed", header.get("mail_id"))
            results["errors"].append(_error_entry(mail, str(e)))

    names = _resolve_names(gateway, name_ids)
    for group in (banned, multiple, failed, validated):
        for mail, _ in group:
            mail.sender_name = names.get(mail.sender_id, "Unknown")
    for mail in not_srp:
        mail.sender_name = names.get(mail.sender_id, "Unknown")

    for mail, ban in banned:
        _record_processed(
            conn, mail, "banned", body="",
            error_message=f"Sender is banned: {ban.get('reason') or 'No reason provided'}",
        )
    for mail, link_count in multiple:
        _create_auto_rejected(
            conn, mail, None,
            f"Auto-rejected: Multiple killmail links detected ({link_count} links found). "
            "Please submit one SRP request per killmail.",
            "rejected",
        )
        queue_mail_send(conn, "multiple_killmails_rejection", mail.sender_id, {
            "sender_character_id": mailer_id,
            "recipient_character_id": mail.sender_id,
            "recipient_name": mail.sender_name,
            "total_killmail_links": link_count,
        })
    for mail in not_srp:
        _record_processed(conn, mail, "not_srp", error_message="No killmail link found")
    for mail, error in failed:
        _record_processed(conn, mail, "error", error_message=f"Validation error: {error}")
    conn.commit()

    for mail, validation in validated:
        if validation.killmail_data:
            validation.killmail_data = apply_names(validation.killmail_data, names)
        try:
            _handle_validated(conn, mail, validation, mailer_id, fc_map, gateway, results)
            conn.commit()
        except Exception as e:
            conn.rollback()
            logging.exception("Mail %s: processing failed", mail.mail_id)
            results["errors"].append(_error_entry(mail, str(e)))
            _record_processed(conn, mail, "error", error_message=f"Processing error: {e}")
            conn.commit()

    print(
        f"[mail-intake] processed={results['processed']} created={results['created']} "
        f"skipped={results['skipped']} errors={len(results['errors'])}"
    )
    return results
