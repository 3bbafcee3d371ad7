"""
Boundary to the EVE Online services the mail pipeline depends on.

The service never talks to ESI, zKillboard or the proximity API directly.
A MailGateway implementation is installed on app.state.mail_gateway at
startup; without one the mail endpoints answer 503. Tests install a fake.

Data shapes follow ESI:
  list_mail_headers() -> [{mail_id, from, subject, timestamp}, ...]
  get_mail_body(mail_id) -> str
  fetch_killmail(killmail_id, killmail_hash) -> ESI killmail dict; when
      killmail_hash is None the gateway looks it up (zKillboard) and
      reports it back under "killmail_hash"
  resolve_names(ids) -> {id: name}
  send_mail(sender_character_id, recipient_character_id, subject, body)
  get_proximity_data(killmail_id) -> dict or None
"""

import json
import re
from typing import Any, Dict, Iterable, List, Optional

MAIL_STOP_SPAMMING = "MailStopSpamming"
_DETAILS_RE = re.compile(r"details:\s*({[^}]+})")


class MailGatewayError(Exception):
    """Raised by gateways for any upstream failure; the message is stored verbatim."""


class MailGateway:
    character_id: int = 0

    def list_mail_headers(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def get_mail_body(self, mail_id: int) -> str:
        raise NotImplementedError

    def fetch_killmail(self, killmail_id: int, killmail_hash: Optional[str]) -> Dict[str, Any]:
        raise NotImplementedError

    def resolve_names(self, ids: Iterable[int]) -> Dict[int, str]:
        raise NotImplementedError

    def send_mail(self, sender_character_id: int, recipient_character_id: int, subject: str, body: str) -> Any:
        raise NotImplementedError

    def get_proximity_data(self, killmail_id: int) -> Optional[Dict[str, Any]]:
        return None


def parse_mail_stop_spamming(error_text: Any) -> Optional[int]:
    """Milliseconds until EVE accepts mail again, or None if this is not a rate-limit error."""
    if not isinstance(error_text, str) or MAIL_STOP_SPAMMING not in error_text:
        return None
    match = _DETAILS_RE.search(error_text)
    if not match:
        return None
    try:
        details = json.loads(match.group(1))
        return int(details["remainingTime"])
    except (ValueError, KeyError, TypeError):
        return None
