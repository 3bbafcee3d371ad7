"""
Canonical shared constants for the Bombers Bar fleet & SRP service.

Roles, role groups, status vocabularies and mail types live here so the
routers and services agree on a single spelling.
"""

from typing import Dict, FrozenSet, List, Tuple

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLE_COUNCIL = "Council"
ROLE_ACCOUNTANT = "Accountant"
ROLE_OBOMBERCARE = "OBomberCare"
ROLE_FC = "FC"
ROLE_ELECTION_OFFICER = "Election Officer"

ALL_ROLES: Tuple[str, ...] = (
    ROLE_USER,
    ROLE_ADMIN,
    ROLE_COUNCIL,
    ROLE_ACCOUNTANT,
    ROLE_OBOMBERCARE,
    ROLE_FC,
    ROLE_ELECTION_OFFICER,
)

# Any of these grants access to the admin area.
AUTHORIZED_ROLES: FrozenSet[str] = frozenset({
    ROLE_ADMIN,
    ROLE_COUNCIL,
    ROLE_ACCOUNTANT,
    ROLE_OBOMBERCARE,
    ROLE_FC,
    ROLE_ELECTION_OFFICER,
})

CAN_MODIFY_ROLES: FrozenSet[str] = frozenset({ROLE_ADMIN, ROLE_COUNCIL, ROLE_ACCOUNTANT, ROLE_OBOMBERCARE})
CAN_MANAGE_ROLES: FrozenSet[str] = frozenset({ROLE_ADMIN, ROLE_COUNCIL})
CAN_CREATE_FC_ROLES: FrozenSet[str] = frozenset({ROLE_ADMIN, ROLE_COUNCIL, ROLE_ELECTION_OFFICER})
FLEET_SCHEDULER_ROLES: FrozenSet[str] = CAN_MODIFY_ROLES | {ROLE_FC}
MAIL_PROCESSING_ROLES: FrozenSet[str] = frozenset({ROLE_ADMIN, ROLE_COUNCIL, ROLE_ACCOUNTANT})
PROCESSED_MAIL_READ_ROLES: FrozenSet[str] = frozenset({ROLE_ADMIN, ROLE_COUNCIL, ROLE_ACCOUNTANT, ROLE_FC})

# Elevated roles an FC row may carry in access_level.
ACCESS_LEVELS: FrozenSet[str] = frozenset({
    ROLE_ADMIN,
    ROLE_COUNCIL,
    ROLE_ACCOUNTANT,
    ROLE_OBOMBERCARE,
    ROLE_FC,
    ROLE_ELECTION_OFFICER,
})

# ---------------------------------------------------------------------------
# Fleets
# ---------------------------------------------------------------------------

FLEET_SCHEDULED = "scheduled"
FLEET_IN_PROGRESS = "in_progress"
FLEET_COMPLETED = "completed"
FLEET_CANCELLED = "cancelled"

FLEET_STATUSES: Tuple[str, ...] = (FLEET_SCHEDULED, FLEET_IN_PROGRESS, FLEET_COMPLETED, FLEET_CANCELLED)
FLEET_TERMINAL_STATUSES: FrozenSet[str] = frozenset({FLEET_COMPLETED, FLEET_CANCELLED})

DEFAULT_FLEET_DURATION_MINUTES = 120
DEFAULT_FLEET_TIMEZONE = "UTC"

# ---------------------------------------------------------------------------
# Fleet commanders
# ---------------------------------------------------------------------------

FC_STATUSES: Tuple[str, ...] = ("Active", "Inactive", "Banned")
FC_STATUS_DELETED = "Deleted"
FC_RANKS: Tuple[str, ...] = ("SFC", "JFC", "FC", "Support")

# Listing order; unknown ranks sort last.
FC_RANK_ORDER: Dict[str, int] = {"SFC": 1, "FC": 2, "JFC": 3, "Support": 4}

# ---------------------------------------------------------------------------
# SRP
# ---------------------------------------------------------------------------

SRP_PENDING = "pending"
SRP_APPROVED = "approved"
SRP_DENIED = "denied"
SRP_PAID = "paid"
SRP_CANCELLED = "cancelled"

SRP_STATUSES: Tuple[str, ...] = (SRP_PENDING, SRP_APPROVED, SRP_DENIED, SRP_PAID, SRP_CANCELLED)

AUTO_REJECTION_MARKER = "[AUTO-REJECTION]"

SRP_SORT_COLUMNS: FrozenSet[str] = frozenset({
    "submitted_at",
    "character_name",
    "ship_name",
    "solar_system_name",
    "final_payout_amount",
    "status",
})

POLARIZED_TORPEDO_LAUNCHER_TYPE_ID = 34294
HIGH_SLOT_FLAGS: FrozenSet[int] = frozenset({28, 29, 30})
FULL_POLARIZED_LAUNCHER_COUNT = 3

# ---------------------------------------------------------------------------
# Mail
# ---------------------------------------------------------------------------

MAIL_TYPES: List[str] = [
    "confirmation",
    "rejection",
    "unapproved_ship",
    "too_old_rejection",
    "duplicate_pending_rejection",
    "duplicate_paid_rejection",
    "multiple_killmails_rejection",
    "manual_denial",
    "manual_approval",
]

MAIL_QUEUE_BATCH_SIZE = 15

BAN_TYPE_COLUMNS: Dict[str, str] = {
    "bb": "bb_banned",
    "xup": "xup_banned",
    "hk": "hk_banned",
}
BAN_ENTITY_TYPES: Tuple[str, ...] = ("character", "corporation", "alliance")

# ---------------------------------------------------------------------------
# Doctrines
# ---------------------------------------------------------------------------

DOCTRINE_JSON_FIELDS: Tuple[str, ...] = (
    "high_slot_modules",
    "mid_slot_modules",
    "low_slot_modules",
    "rig_modules",
    "cargo_items",
)
