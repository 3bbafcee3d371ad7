import logging
import os
import sqlite3
import time
from datetime import timedelta
from typing import Callable, Dict, Optional

from clock_service import utc_now
from mail_gateway import MailGateway, parse_mail_stop_spamming
from mail_queue import MAILER_CHARACTER_ID, get_ready_mails, mark_mail_sent, update_mail_retry
from mail_templates import render_mail
from srp_service import load_approved_ships

# EVE accepts roughly four mails a minute from one character.
MAIL_SEND_DELAY_SECONDS = float(os.environ.get("MAIL_SEND_DELAY_SECONDS", "15") or 15)


def send_queued_mails(
    conn: sqlite3.Connection,
    gateway: MailGateway,
    sleep: Callable[[float], None] = time.sleep,
    delay_seconds: Optional[float] = None,
) -> Dict[str, int]:
    """Send one batch of ready mails, pausing between sends (errors included).

    Sent rows are deleted. A MailStopSpamming error reschedules the row for
    when EVE says sending is allowed again; any other error makes it ready
    again on the next run.
    """
    results = {"sent": 0, "failed": 0, "retrying": 0}
    queued = get_ready_mails(conn)
    if not queued:
        return results

    delay = MAIL_SEND_DELAY_SECONDS if delay_seconds is None else delay_seconds
    approved_ships = load_approved_ships(conn)
    print(f"[mail-send] sending {len(queued)} queued mail(s), {delay:g}s apart")

    for index, mail in enumerate(queued):
        payload = mail["payload"]
        sender_id = int(payload.get("sender_character_id") or MAILER_CHARACTER_ID or gateway.character_id or 0)
        try:
            subject, body = render_mail(mail["mail_type"], payload, approved_ships)
            gateway.send_mail(sender_id, int(mail["recipient_character_id"]), subject, body)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            remaining_ms = parse_mail_stop_spamming(error)
            if remaining_ms is not None:
                update_mail_retry(conn, mail["id"], utc_now() + timedelta(milliseconds=remaining_ms), error)
                results["retrying"] += 1
                logging.warning("Queued mail %s rate limited; retry in %.1f min", mail["id"], remaining_ms / 60000)
            else:
                update_mail_retry(conn, mail["id"], utc_now(), error)
                results["failed"] += 1
                logging.warning("Queued mail %s (%s) failed: %s", mail["id"], mail["mail_type"], error)
        else:
            mark_mail_sent(conn, mail["id"])
            results["sent"] += 1
        conn.commit()

        if index < len(queued) - 1:
            sleep(delay)

    return results
