from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from killmail_parser import KillmailError, detect_polarized, extract_killmail_ref, parse_killmail
from mail_gateway import MailGateway
from srp_service import payout_for


@dataclass
class SRPValidation:
    valid: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    killmail_data: Optional[Dict[str, Any]] = None
    ship_info: Optional[Dict[str, Any]] = None
    payout_amount: float = 0.0
    requires_fc_approval: bool = False
    is_polarized: bool = False

    @property
    def is_unapproved_ship(self) -> bool:
        return any("not approved for O'Bomber-care" in e for e in self.errors)


def validate_srp_request(
    body: str,
    approved_ships: Mapping[int, Dict[str, Any]],
    gateway: MailGateway,
) -> SRPValidation:
    """Resolve the killmail linked in a mail body and check it against the approved ship list.

    Malformed killmails are reported in errors. Gateway failures propagate
    so the caller can record the mail as an error rather than as invalid.
    """
    result = SRPValidation()

    ref = extract_killmail_ref(body)
    if ref is None:
        result.errors.append("Failed to parse killmail: No killmail link found in text")
        return result
    killmail_id, killmail_hash = ref

    raw = gateway.fetch_killmail(killmail_id, killmail_hash)
    try:
        parsed = parse_killmail(raw)
    except KillmailError as e:
        result.errors.append(f"Failed to parse killmail: {e}")
        return result
    parsed["hash"] = (raw or {}).get("killmail_hash") or killmail_hash or ""
    if parsed.get("killmail_id") is None:
        parsed["killmail_id"] = killmail_id
    result.killmail_data = parsed

    ship_type_id = parsed.get("victim_ship_type_id")
    ship = approved_ships.get(int(ship_type_id)) if ship_type_id is not None else None
    if ship is None:
        result.errors.append(f"Ship type {ship_type_id} is not approved for O'Bomber-care")
        return result
    result.ship_info = dict(ship)

    polarized = detect_polarized(parsed["items"])
    result.is_polarized = polarized["is_polarized"]
    result.payout_amount = payout_for(ship, result.is_polarized)

    if ship.get("fc_discretion"):
        result.requires_fc_approval = True
        result.warnings.append("This ship type requires FC discretion for approval")
    if result.is_polarized:
        result.warnings.append("Polarized fit detected - higher payout applied")
        if polarized["warning"]:
            result.warnings.append(polarized["warning"])

    result.valid = True
    return result
