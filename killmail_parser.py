"""
Killmail link extraction and killmail parsing.

Two link formats are recognised in mail bodies: the in-game kill report
link (killReport:<id>:<hash>), which carries the hash ESI needs, and a
zKillboard URL, which only carries the id.
"""

import json
import re
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from constants import FULL_POLARIZED_LAUNCHER_COUNT, HIGH_SLOT_FLAGS, POLARIZED_TORPEDO_LAUNCHER_TYPE_ID

KILL_REPORT_RE = re.compile(r"killReport:(\d+):([a-f0-9]{40})", re.IGNORECASE)
ZKILL_ID_RE = re.compile(r"zkillboard\.com/kill/(\d+)", re.IGNORECASE)
ZKILL_URL_RE = re.compile(r"https?://zkillboard\.com/kill/\d+/?", re.IGNORECASE)


class KillmailError(ValueError):
    pass


def extract_kill_report_link(text: str) -> Optional[Tuple[int, str]]:
    match = KILL_REPORT_RE.search(text or "")
    if not match:
        return None
    return int(match.group(1)), match.group(2)


def extract_zkill_id(text: str) -> Optional[int]:
    match = ZKILL_ID_RE.search(text or "")
    return int(match.group(1)) if match else None


def extract_killmail_ref(text: str) -> Optional[Tuple[int, Optional[str]]]:
    """(killmail_id, hash) from the preferred link in text; hash is None for zKillboard links."""
    report = extract_kill_report_link(text)
    if report:
        return report
    zkill_id = extract_zkill_id(text)
    if zkill_id is not None:
        return zkill_id, None
    return None


def count_killmail_links(text: str) -> int:
    return len(ZKILL_ID_RE.findall(text or "")) + len(KILL_REPORT_RE.findall(text or ""))


def killmail_url(text: str, killmail_id: Any) -> str:
    """The zKillboard URL quoted in text, or a canonical one built from the id."""
    match = ZKILL_URL_RE.search(text or "")
    if match:
        return match.group(0)
    return f"https://zkillboard.com/kill/{killmail_id}/"


def parse_killmail(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Flatten an ESI killmail into the fields SRP cares about."""
    if not raw:
        raise KillmailError("Killmail data is empty")
    victim = raw.get("victim")
    if not victim:
        raise KillmailError("Killmail missing victim data")
    return {
        "killmail_id": raw.get("killmail_id"),
        "killmail_time": raw.get("killmail_time"),
        "victim_character_id": victim.get("character_id"),
        "victim_corporation_id": victim.get("corporation_id"),
        "victim_alliance_id": victim.get("alliance_id"),
        "victim_ship_type_id": victim.get("ship_type_id"),
        "damage_taken": victim.get("damage_taken"),
        "items": list(victim.get("items") or []),
        "solar_system_id": raw.get("solar_system_id"),
        "attackers_count": len(raw.get("attackers") or []),
    }


def detect_polarized(items: Any) -> Dict[str, Any]:
    if not isinstance(items, list):
        return {"is_polarized": False, "count": 0, "warning": None}
    count = sum(
        1
        for item in items
        if item.get("item_type_id") == POLARIZED_TORPEDO_LAUNCHER_TYPE_ID and item.get("flag") in HIGH_SLOT_FLAGS
    )
    warning = None
    if 0 < count < FULL_POLARIZED_LAUNCHER_COUNT:
        warning = (
            f"Only {count} polarized launcher(s) fitted "
            f"(expected {FULL_POLARIZED_LAUNCHER_COUNT} for full polarized fit)"
        )
    return {"is_polarized": count > 0, "count": count, "warning": warning}


def collect_name_ids(killmail_data: Dict[str, Any]) -> List[int]:
    ids = [
        killmail_data.get(key)
        for key in (
            "victim_character_id",
            "victim_corporation_id",
            "victim_alliance_id",
            "victim_ship_type_id",
            "solar_system_id",
        )
    ]
    ids.extend(item.get("item_type_id") for item in killmail_data.get("items") or [])
    return [int(i) for i in ids if i]


def apply_names(killmail_data: Dict[str, Any], names: Dict[int, str]) -> Dict[str, Any]:
    out = dict(killmail_data)
    if out.get("victim_character_id"):
        out["victim_character_name"] = names.get(int(out["victim_character_id"]), "Unknown")
    if out.get("victim_corporation_id"):
        out["victim_corporation_name"] = names.get(int(out["victim_corporation_id"]), "Unknown")
    if out.get("victim_alliance_id"):
        out["victim_alliance_name"] = names.get(int(out["victim_alliance_id"]))
    if out.get("victim_ship_type_id"):
        out["victim_ship_name"] = names.get(int(out["victim_ship_type_id"]), "Unknown")
    if out.get("solar_system_id"):
        out["solar_system_name"] = names.get(int(out["solar_system_id"]))
    out["items"] = [
        {
            **item,
            "item_type_name": names.get(int(item["item_type_id"]), f"Type {item['item_type_id']}")
            if item.get("item_type_id")
            else None,
        }
        for item in out.get("items") or []
    ]
    return out


# ── FC enrichment of proximity data ────────────────────────

def build_fc_map(conn: sqlite3.Connection) -> Dict[str, Dict[str, Any]]:
    """Character id (as str) -> FC summary, covering mains, corp alts and additional alts."""
    fc_map: Dict[str, Dict[str, Any]] = {}
    for fc in conn.execute("SELECT * FROM fleet_commanders").fetchall():
        info = {
            "fc_id": fc["id"],
            "status": fc["status"],
            "rank": fc["rank"],
            "main_character_name": fc["main_character_name"],
        }
        if fc["main_character_id"]:
            fc_map[str(fc["main_character_id"])] = info
        if fc["bb_corp_alt_id"]:
            fc_map[str(fc["bb_corp_alt_id"])] = info
        alts = json.loads(fc["additional_alts"] or "[]")
        for alt in alts if isinstance(alts, list) else []:
            if isinstance(alt, dict) and alt.get("character_id"):
                fc_map[str(alt["character_id"])] = info
    return fc_map


def _tag_fleet_commanders(killmails: List[Dict[str, Any]], fc_map: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for km in killmails:
        attackers = km.get("attackers")
        if not isinstance(attackers, list):
            out.append(km)
            continue
        seen = set()
        fcs = []
        for attacker_id in attackers:
            info = fc_map.get(str(attacker_id))
            if info and info["fc_id"] not in seen:
                seen.add(info["fc_id"])
                fcs.append(info)
        tagged = dict(km)
        if fcs:
            tagged["fleet_commanders"] = fcs
        out.append(tagged)
    return out


def enrich_proximity(data: Optional[Dict[str, Any]], fc_map: Dict[str, Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not data or not fc_map:
        return data
    enriched = dict(data)
    for key in ("relatedKillmails", "victimAsAttacker"):
        if isinstance(enriched.get(key), list):
            enriched[key] = _tag_fleet_commanders(enriched[key], fc_map)
    return enriched
