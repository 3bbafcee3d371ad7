"""
EVE mail bodies for every queued mail type.

Bodies use the in-game mail markup (<b>, <url=...>). render_mail() is the
only entry point; it returns (subject, body) for a queued row.
"""

from typing import Any, Callable, Dict, List, Mapping, Tuple

from clock_service import parse_timestamp

SUBJECT_PREFIX = "O'Bomber-care"
DISCORD_URL = "https://discord.gg/yqQFDqRXvr"

FOOTER = (
    "---\n"
    "<b>O'Bomber-care</b> is Bombers Bar's ship replacement program. Questions? Contact leadership "
    f"on the Bombers Bar Discord <url={DISCORD_URL}>{DISCORD_URL}</url>"
)
SIGN_OFF = "Fly safe.\n\n- Bombers Bar Leadership"


def format_isk(amount: Any) -> str:
    if amount is None or amount == "":
        return "Unknown"
    value = float(amount)
    if value.is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def _link(url: str) -> str:
    return f"<url={url}>{url}</url>"


def _compose(title: str, greeting_name: str, *sections: str) -> str:
    parts = [f"<b>{title}</b>", f"Greetings {greeting_name},", *sections, SIGN_OFF, FOOTER]
    return "\n\n".join(p.strip("\n") for p in parts)


def covered_ship_lines(approved_ships: Mapping[int, Dict[str, Any]]) -> List[str]:
    """One bullet per ship group, with the first ship note in the group as a suffix."""
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for ship in approved_ships.values():
        groups.setdefault(ship["group_name"], []).append(ship)
    lines = []
    for group_name, ships in groups.items():
        names = ", ".join(s["name"] for s in ships)
        noted = next((s for s in ships if s.get("notes")), None)
        suffix = f" - <b>*{noted['notes']}</b>" if noted else ""
        lines.append(f"• {group_name} ({names}{suffix})")
    return lines


def _confirmation(p: Dict[str, Any], ships: Mapping[int, Dict[str, Any]]) -> Tuple[str, str]:
    loss = parse_timestamp(p["loss_date"])
    name = p.get("recipient_name") or "Pilot"
    body = _compose(
        "SRP Request Received",
        name,
        "Your O'Bomber-care SRP request has been received and is now pending review.",
        "<b>Request Details:</b>\n"
        f"• Pilot: {name}\n"
        f"• Ship: {p.get('ship_name')}\n"
        f"• Loss Date: {loss.strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"• Expected Payout: {format_isk(p.get('payout_amount'))} ISK\n"
        f"• Killmail: {_link(p['killmail_url'])}",
        "Your request will be reviewed by leadership and processed accordingly. "
        "If approved, ISK will be sent directly to your character.",
    )
    return f"{SUBJECT_PREFIX} - SRP Request Received", body


def _rejection(p: Dict[str, Any], ships: Mapping[int, Dict[str, Any]]) -> Tuple[str, str]:
    name = p.get("recipient_name") or "Pilot"
    victim = p.get("victim_name") or "Unknown"
    body = _compose(
        "SRP Request Rejected",
        name,
        "Your O'Bomber-care SRP request has been automatically rejected.",
        f"<b>Reason:</b>\nThe pilot in the killmail ({victim}) does not match your character ({name}).",
        "<b>What to do:</b>\n"
        f"If this is your loss on an alt character, please have <b>{victim}</b> submit the SRP request "
        "directly by sending a mail with the killmail link.\n\n"
        "If you believe this is an error, please contact leadership on Discord.",
        f"<b>Killmail:</b> {_link(p['killmail_url'])}",
    )
    return f"{SUBJECT_PREFIX} - SRP Request Rejected (Pilot Mismatch)", body


def _unapproved_ship(p: Dict[str, Any], ships: Mapping[int, Dict[str, Any]]) -> Tuple[str, str]:
    name = p.get("recipient_name") or "Pilot"
    body = _compose(
        "SRP Request - Ship Not Covered",
        name,
        "Your O'Bomber-care SRP request has been automatically rejected.",
        f"<b>Reason:</b>\nThe ship type ({p.get('ship_name')}) is not covered under the O'Bomber-care program.",
        "<b>Covered Ship Types:</b>\n" + "\n".join(covered_ship_lines(ships)),
        "If you believe this is an error or have questions about coverage, please contact leadership "
        "on the Bombers Bar Discord.",
        f"<b>Killmail:</b> {_link(p['killmail_url'])}",
    )
    return f"{SUBJECT_PREFIX} - SRP Request Rejected (Ship Not Covered)", body


def _too_old(p: Dict[str, Any], ships: Mapping[int, Dict[str, Any]]) -> Tuple[str, str]:
    days = p.get("days_since_kill")
    max_days = p.get("max_age_days", 30)
    body = _compose(
        "SRP Request Rejected - Killmail Too Old",
        p.get("recipient_name") or "Pilot",
        "Your O'Bomber-care SRP request has been automatically rejected.",
        f"<b>Reason:</b>\nThe killmail is {days} days old. "
        f"O'Bomber-care only covers losses within the last {max_days} days.",
        "<b>Killmail Details:</b>\n"
        f"• Kill Date: {p.get('kill_date')}\n"
        f"• Days Since Loss: {days} days\n"
        f"• Killmail: {_link(p['killmail_url'])}",
        f"Please submit SRP requests within {max_days} days of your loss.",
    )
    return f"{SUBJECT_PREFIX} - SRP Request Rejected (Too Old)", body


def _duplicate_pending(p: Dict[str, Any], ships: Mapping[int, Dict[str, Any]]) -> Tuple[str, str]:
    body = _compose(
        "SRP Request Already Exists",
        p.get("recipient_name") or "Pilot",
        "Your O'Bomber-care SRP request has been automatically rejected.",
        "<b>Reason:</b>\nThis killmail has already been submitted and is being processed "
        f"(Request #{p.get('srp_request_id')}).",
        f"<b>Killmail:</b>\n{_link(p['killmail_url'])}",
        "Please do not submit the same killmail multiple times. If you have questions about the status "
        "of your SRP request, please contact Bombers Bar leadership.",
    )
    return f"{SUBJECT_PREFIX} - SRP Request Already Submitted", body


def _duplicate_paid(p: Dict[str, Any], ships: Mapping[int, Dict[str, Any]]) -> Tuple[str, str]:
    paid_date = parse_timestamp(p["paid_date"]).strftime("%Y-%m-%d") if p.get("paid_date") else "Unknown"
    body = _compose(
        "SRP Request Already Paid",
        p.get("recipient_name") or "Pilot",
        "Your O'Bomber-care SRP request has been automatically rejected.",
        f"<b>Reason:</b>\nThis killmail has already been paid out (Request #{p.get('srp_request_id')}).",
        "<b>Payment Details:</b>\n"
        f"• Amount Paid: {format_isk(p.get('paid_amount'))} ISK\n"
        f"• Payment Date: {paid_date}\n"
        f"• Killmail: {_link(p['killmail_url'])}",
        "You cannot receive SRP payment twice for the same loss. If you believe this is an error, "
        "please contact Bombers Bar leadership.",
    )
    return f"{SUBJECT_PREFIX} - SRP Request Rejected (Already Paid)", body


def _multiple_killmails(p: Dict[str, Any], ships: Mapping[int, Dict[str, Any]]) -> Tuple[str, str]:
    body = _compose(
        "SRP Request Rejected - Multiple Killmail Links",
        p.get("recipient_name") or "Pilot",
        "Your O'Bomber-care SRP request has been automatically rejected.",
        f"<b>Reason:</b>\nYour mail contained {p.get('total_killmail_links')} killmail links. "
        "O'Bomber-care requires one mail per killmail for proper tracking and payment.",
        "<b>What to do:</b>\nPlease submit separate SRP requests for each loss. "
        "Each mail should contain only one killmail link.",
    )
    return f"{SUBJECT_PREFIX} - SRP Request Rejected (Multiple Killmails)", body


def _manual_denial(p: Dict[str, Any], ships: Mapping[int, Dict[str, Any]]) -> Tuple[str, str]:
    body = _compose(
        "SRP Request Denied",
        p.get("recipient_name") or "Pilot",
        "Your O'Bomber-care SRP request has been denied by an administrator.",
        f"<b>Reason:</b>\n{p.get('denial_reason')}",
        f"<b>Killmail:</b>\n{_link(p['killmail_url'])}",
        "If you believe this was in error or have questions, please contact Bombers Bar leadership on Discord.",
    )
    return f"{SUBJECT_PREFIX} - SRP Request Denied", body


def _manual_approval(p: Dict[str, Any], ships: Mapping[int, Dict[str, Any]]) -> Tuple[str, str]:
    body = _compose(
        "SRP Request Approved & Paid",
        p.get("recipient_name") or "Pilot",
        "Great news! Your O'Bomber-care SRP request has been approved and paid.",
        f"<b>Payout Amount:</b>\n{format_isk(p.get('payout_amount'))} ISK",
        f"<b>Ship Loss:</b>\n{p.get('ship_name')}",
        f"<b>Killmail:</b>\n{_link(p['killmail_url'])}",
        "The ISK has been transferred to your account. Check your wallet!",
    )
    return f"{SUBJECT_PREFIX} - SRP Approved & Paid!", body


_RENDERERS: Dict[str, Callable[[Dict[str, Any], Mapping[int, Dict[str, Any]]], Tuple[str, str]]] = {
    "confirmation": _confirmation,
    "rejection": _rejection,
    "unapproved_ship": _unapproved_ship,
    "too_old_rejection": _too_old,
    "duplicate_pending_rejection": _duplicate_pending,
    "duplicate_paid_rejection": _duplicate_paid,
    "multiple_killmails_rejection": _multiple_killmails,
    "manual_denial": _manual_denial,
    "manual_approval": _manual_approval,
}


def render_mail(
    mail_type: str,
    payload: Dict[str, Any],
    approved_ships: Mapping[int, Dict[str, Any]],
) -> Tuple[str, str]:
    renderer = _RENDERERS.get(mail_type)
    if renderer is None:
        raise ValueError(f"Unknown mail type: {mail_type}")
    return renderer(payload, approved_ships)
