"""
Outbound mail queue tests.

Covers queueing, batch selection, rate-limit handling in the sender,
and the rendered subjects/bodies for each mail type.
"""

import pytest

from clock_service import advance_clock, freeze_clock
from conftest import MAILER_ID, PILOT_ID

NOW = "2024-06-15T12:00:00Z"
KILL_URL = "https://zkillboard.com/kill/700/"


def _pending(db_conn):
    return db_conn.execute("SELECT * FROM pending_mail_sends ORDER BY id").fetchall()


def _confirmation_payload(**overrides):
    payload = {
        "sender_character_id": MAILER_ID,
        "recipient_character_id": PILOT_ID,
        "recipient_name": "Test Pilot",
        "killmail_url": KILL_URL,
        "ship_name": "Purifier",
        "loss_date": "2024-06-14T20:00:00Z",
        "payout_amount": 50_000_000,
    }
    payload.update(overrides)
    return payload


# ── Queue table ───────────────────────────────────────────────────────────

class TestQueue:
    def test_unknown_type_rejected(self, db_conn):
        from mail_queue import queue_mail_send
        with pytest.raises(ValueError, match="Unknown mail type"):
            queue_mail_send(db_conn, "newsletter", PILOT_ID, {})

    def test_ready_immediately(self, db_conn):
        from mail_queue import get_ready_mails, queue_mail_send

        freeze_clock(NOW)
        queue_id = queue_mail_send(db_conn, "confirmation", PILOT_ID, _confirmation_payload())
        ready = get_ready_mails(db_conn)
        assert [m["id"] for m in ready] == [queue_id]
        assert ready[0]["payload"]["ship_name"] == "Purifier"
        assert ready[0]["attempts"] == 0

    def test_ordering_and_limit(self, db_conn):
        from clock_service import parse_timestamp
        from mail_queue import get_ready_mails, queue_mail_send

        freeze_clock(NOW)
        late = queue_mail_send(db_conn, "confirmation", PILOT_ID, {}, retry_after=parse_timestamp("2024-06-15T11:00:00Z"))
        early = queue_mail_send(db_conn, "confirmation", PILOT_ID, {}, retry_after=parse_timestamp("2024-06-15T09:00:00Z"))
        queue_mail_send(db_conn, "confirmation", PILOT_ID, {}, retry_after=parse_timestamp("2024-06-15T13:00:00Z"))

        assert [m["id"] for m in get_ready_mails(db_conn)] == [early, late]
        assert [m["id"] for m in get_ready_mails(db_conn, limit=1)] == [early]

    def test_default_batch_size(self, db_conn):
        from constants import MAIL_QUEUE_BATCH_SIZE
        from mail_queue import get_ready_mails, queue_mail_send

        freeze_clock(NOW)
        for _ in range(MAIL_QUEUE_BATCH_SIZE + 3):
            queue_mail_send(db_conn, "confirmation", PILOT_ID, {})
        assert len(get_ready_mails(db_conn)) == MAIL_QUEUE_BATCH_SIZE

    def test_stats(self, db_conn):
        from clock_service import parse_timestamp
        from mail_queue import queue_mail_send, queue_stats

        freeze_clock(NOW)
        queue_mail_send(db_conn, "confirmation", PILOT_ID, {})
        queue_mail_send(db_conn, "confirmation", PILOT_ID, {}, retry_after=parse_timestamp("2024-06-15T12:10:00Z"))
        assert queue_stats(db_conn) == {"total": 2, "ready": 1, "waiting": 1}

        advance_clock(minutes=10)
        assert queue_stats(db_conn) == {"total": 2, "ready": 2, "waiting": 0}


# ── Sender ────────────────────────────────────────────────────────────────

class TestSender:
    def _send(self, db_conn, gateway, sleeps=None):
        from mail_sender import send_queued_mails
        recorded = [] if sleeps is None else sleeps
        return send_queued_mails(db_conn, gateway, sleep=recorded.append, delay_seconds=15)

    def test_empty_queue(self, db_conn, gateway):
        assert self._send(db_conn, gateway) == {"sent": 0, "failed": 0, "retrying": 0}

    def test_sends_and_deletes(self, db_conn, gateway):
        from mail_queue import queue_mail_send

        freeze_clock(NOW)
        queue_mail_send(db_conn, "confirmation", PILOT_ID, _confirmation_payload())
        db_conn.commit()

        assert self._send(db_conn, gateway) == {"sent": 1, "failed": 0, "retrying": 0}
        assert _pending(db_conn) == []
        sent = gateway.sent[0]
        assert sent["sender"] == MAILER_ID
        assert sent["recipient"] == PILOT_ID
        assert sent["subject"] == "O'Bomber-care - SRP Request Received"
        assert "• Expected Payout: 50,000,000 ISK" in sent["body"]

    def test_pauses_between_sends_only(self, db_conn, gateway):
        from mail_queue import queue_mail_send

        freeze_clock(NOW)
        for _ in range(3):
            queue_mail_send(db_conn, "confirmation", PILOT_ID, _confirmation_payload())
        db_conn.commit()

        sleeps = []
        self._send(db_conn, gateway, sleeps)
        assert sleeps == [15, 15]

    def test_rate_limited_mail_is_rescheduled(self, db_conn, gateway):
        from mail_queue import queue_mail_send, queue_stats

        freeze_clock(NOW)
        queue_mail_send(db_conn, "confirmation", PILOT_ID, _confirmation_payload())
        db_conn.commit()
        gateway.send_errors.append('ESI 520: MailStopSpamming, details: {"remainingTime": 600000}')

        assert self._send(db_conn, gateway) == {"sent": 0, "failed": 0, "retrying": 1}
        row = _pending(db_conn)[0]
        assert row["attempts"] == 1
        assert row["retry_after"] == "2024-06-15T12:10:00Z"
        assert "MailStopSpamming" in row["last_error"]
        assert queue_stats(db_conn)["waiting"] == 1

        # Not eligible until the limit lifts.
        assert self._send(db_conn, gateway)["sent"] == 0
        advance_clock(minutes=10)
        assert self._send(db_conn, gateway)["sent"] == 1

    def test_other_failure_retries_next_run(self, db_conn, gateway):
        from mail_queue import queue_mail_send

        freeze_clock(NOW)
        queue_mail_send(db_conn, "confirmation", PILOT_ID, _confirmation_payload())
        db_conn.commit()
        gateway.send_errors.append("Recipient not found")

        assert self._send(db_conn, gateway) == {"sent": 0, "failed": 1, "retrying": 0}
        row = _pending(db_conn)[0]
        assert row["attempts"] == 1
        assert row["last_error"] == "Recipient not found"
        assert row["retry_after"] == NOW
        assert self._send(db_conn, gateway)["sent"] == 1

    def test_sender_falls_back_to_gateway_character(self, db_conn, gateway):
        from mail_queue import queue_mail_send

        freeze_clock(NOW)
        queue_mail_send(db_conn, "confirmation", PILOT_ID, _confirmation_payload(sender_character_id=None))
        db_conn.commit()
        self._send(db_conn, gateway)
        assert gateway.sent[0]["sender"] == MAILER_ID


class TestRateLimitParsing:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ('MailStopSpamming, details: {"remainingTime": 42000}', 42000),
            ("MailStopSpamming", None),
            ('MailStopSpamming, details: {"other": 1}', None),
            ("Something else entirely", None),
            (None, None),
        ],
    )
    def test_parse(self, text, expected):
        from mail_gateway import parse_mail_stop_spamming
        assert parse_mail_stop_spamming(text) == expected


# ── Rendering ─────────────────────────────────────────────────────────────

class TestTemplates:
    SHIPS = {
        12038: {"name": "Purifier", "group_name": "Stealth Bomber", "notes": None},
        12034: {"name": "Hound", "group_name": "Stealth Bomber", "notes": "FC discretion"},
        11377: {"name": "Nemesis", "group_name": "Stealth Bomber", "notes": None},
        12044: {"name": "Sabre", "group_name": "Interdictor", "notes": None},
    }

    @pytest.mark.parametrize(
        "mail_type, payload, subject",
        [
            ("confirmation", _confirmation_payload(), "O'Bomber-care - SRP Request Received"),
            ("rejection", {"killmail_url": KILL_URL, "victim_name": "Alt"}, "O'Bomber-care - SRP Request Rejected (Pilot Mismatch)"),
            ("unapproved_ship", {"killmail_url": KILL_URL, "ship_name": "Rifter"}, "O'Bomber-care - SRP Request Rejected (Ship Not Covered)"),
            ("too_old_rejection", {"killmail_url": KILL_URL, "days_since_kill": 45}, "O'Bomber-care - SRP Request Rejected (Too Old)"),
            ("duplicate_pending_rejection", {"killmail_url": KILL_URL}, "O'Bomber-care - SRP Request Already Submitted"),
            ("duplicate_paid_rejection", {"killmail_url": KILL_URL}, "O'Bomber-care - SRP Request Rejected (Already Paid)"),
            ("multiple_killmails_rejection", {"total_killmail_links": 2}, "O'Bomber-care - SRP Request Rejected (Multiple Killmails)"),
            ("manual_denial", {"killmail_url": KILL_URL, "denial_reason": "Not in fleet"}, "O'Bomber-care - SRP Request Denied"),
            ("manual_approval", {"killmail_url": KILL_URL, "payout_amount": 1}, "O'Bomber-care - SRP Approved & Paid!"),
        ],
    )
    def test_subjects(self, mail_type, payload, subject):
        from mail_templates import FOOTER, render_mail
        rendered_subject, body = render_mail(mail_type, payload, self.SHIPS)
        assert rendered_subject == subject
        assert body.endswith(FOOTER)

    def test_unknown_type(self):
        from mail_templates import render_mail
        with pytest.raises(ValueError):
            render_mail("newsletter", {}, {})

    def test_covered_ships_grouped(self):
        from mail_templates import covered_ship_lines
        assert covered_ship_lines(self.SHIPS) == [
            "• Stealth Bomber (Purifier, Hound, Nemesis - <b>*FC discretion</b>)",
            "• Interdictor (Sabre)",
        ]

    def test_unapproved_ship_lists_coverage(self):
        from mail_templates import render_mail
        _, body = render_mail("unapproved_ship", {"killmail_url": KILL_URL, "ship_name": "Rifter"}, self.SHIPS)
        assert "The ship type (Rifter) is not covered" in body
        assert "• Interdictor (Sabre)" in body

    def test_duplicate_paid_details(self):
        from mail_templates import render_mail
        _, body = render_mail(
            "duplicate_paid_rejection",
            {"killmail_url": KILL_URL, "srp_request_id": 7, "paid_amount": 75_000_000, "paid_date": "2024-06-10T08:00:00Z"},
            {},
        )
        assert "(Request #7)" in body
        assert "• Amount Paid: 75,000,000 ISK" in body
        assert "• Payment Date: 2024-06-10" in body

    @pytest.mark.parametrize(
        "amount, expected",
        [(50_000_000, "50,000,000"), (1234.5, "1,234.50"), (None, "Unknown"), ("", "Unknown")],
    )
    def test_format_isk(self, amount, expected):
        from mail_templates import format_isk
        assert format_isk(amount) == expected
