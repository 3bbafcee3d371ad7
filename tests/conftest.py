"""
Shared pytest fixtures for the Bombers Bar service tests.

Provides:
  - In-memory SQLite DB with migrations applied
  - FastAPI TestClient backed by a fresh on-disk DB per test, auth bypassed
  - A fake MailGateway for the mail pipeline
  - Helper functions for seeding FCs, fleet types, fleets, SRP rows, etc.
"""

import json
import os
import sqlite3
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional

import pytest

# ---------------------------------------------------------------------------
# Ensure the project root is on sys.path so we can import app modules
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Force DEV_SKIP_AUTH so all endpoints act as admin by default.
os.environ.setdefault("DEV_SKIP_AUTH", "1")
os.environ["MAIL_SEND_DELAY_SECONDS"] = "0"

# Use a writable temp directory for the startup DB so the app startup succeeds.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="bombersbar_test_")
os.environ["DB_DIR"] = _TEST_DB_DIR

from mail_gateway import MailGateway, MailGatewayError  # noqa: E402

MAILER_ID = 90000001
PILOT_ID = 91000001
PILOT_CORP_ID = 98000001
SOLAR_SYSTEM_ID = 30002187
PURIFIER_TYPE_ID = 12038
HOUND_TYPE_ID = 12034
RIFTER_TYPE_ID = 587
POLARIZED_LAUNCHER_TYPE_ID = 34294


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def db_conn() -> Generator[sqlite3.Connection, None, None]:
    """Yield an in-memory SQLite connection with all migrations applied."""
    from db_migrations import apply_migrations

    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    apply_migrations(conn)

    yield conn
    conn.close()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    from db import connect_db
    from db_migrations import apply_migrations

    path = tmp_path / "bombersbar.db"
    conn = connect_db(path)
    try:
        apply_migrations(conn)
    finally:
        conn.close()
    return path


@pytest.fixture()
def api_db(db_path: Path) -> Generator[sqlite3.Connection, None, None]:
    """A connection to the same database the `client` fixture serves."""
    from db import connect_db

    conn = connect_db(db_path)
    yield conn
    conn.close()


# ---------------------------------------------------------------------------
# FastAPI TestClient
# ---------------------------------------------------------------------------

@pytest.fixture()
def client(db_path: Path):
    """Return a Starlette TestClient wired to the FastAPI app.

    Every request gets a connection to this test's own database.
    Auth is bypassed via DEV_SKIP_AUTH=1.
    """
    from fastapi.testclient import TestClient

    from db import connect_db, get_db
    from main import app

    def _test_db():
        conn = connect_db(db_path)
        try:
            yield conn
        finally:
            conn.close()

    app.dependency_overrides[get_db] = _test_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.state.mail_gateway = None


@pytest.fixture()
def auth_enforced(monkeypatch):
    """Turn the DEV_SKIP_AUTH bypass off for one test."""
    import auth_service

    monkeypatch.setattr(auth_service, "DEV_SKIP_AUTH", False)


# ---------------------------------------------------------------------------
# Fake mail gateway
# ---------------------------------------------------------------------------

class FakeMailGateway(MailGateway):
    """In-memory stand-in for the EVE mail, killmail and name services."""

    character_id = MAILER_ID

    def __init__(self) -> None:
        self.headers: List[Dict[str, Any]] = []
        self.bodies: Dict[int, str] = {}
        self.killmails: Dict[int, Dict[str, Any]] = {}
        self.killmail_errors: Dict[int, str] = {}
        self.names: Dict[int, str] = {
            MAILER_ID: "O Bomber Care",
            PILOT_ID: "Test Pilot",
            PILOT_CORP_ID: "Bombers Bar Pilots",
            SOLAR_SYSTEM_ID: "Amamake",
            PURIFIER_TYPE_ID: "Purifier",
            HOUND_TYPE_ID: "Hound",
            RIFTER_TYPE_ID: "Rifter",
            POLARIZED_LAUNCHER_TYPE_ID: "Polarized Torpedo Launcher",
        }
        self.proximity: Dict[int, Dict[str, Any]] = {}
        self.send_errors: List[str] = []
        self.sent: List[Dict[str, Any]] = []
        self.fetched: List[tuple] = []

    def add_mail(
        self,
        mail_id: int,
        sender_id: int,
        body: str,
        subject: str = "SRP",
        timestamp: str = "2024-06-15T10:00:00Z",
    ) -> None:
        self.headers.append({"mail_id": mail_id, "from": sender_id, "subject": subject, "timestamp": timestamp})
        self.bodies[mail_id] = body

    def list_mail_headers(self) -> List[Dict[str, Any]]:
        return list(self.headers)

    def get_mail_body(self, mail_id: int) -> str:
        return self.bodies[mail_id]

    def fetch_killmail(self, killmail_id: int, killmail_hash: Optional[str]) -> Dict[str, Any]:
        self.fetched.append((killmail_id, killmail_hash))
        if killmail_id in self.killmail_errors:
            raise MailGatewayError(self.killmail_errors[killmail_id])
        return self.killmails[killmail_id]

    def resolve_names(self, ids: Iterable[int]) -> Dict[int, str]:
        return {i: self.names[i] for i in ids if i in self.names}

    def send_mail(self, sender_character_id: int, recipient_character_id: int, subject: str, body: str) -> Any:
        if self.send_errors:
            raise MailGatewayError(self.send_errors.pop(0))
        self.sent.append({
            "sender": sender_character_id,
            "recipient": recipient_character_id,
            "subject": subject,
            "body": body,
        })
        return len(self.sent)

    def get_proximity_data(self, killmail_id: int) -> Optional[Dict[str, Any]]:
        return self.proximity.get(killmail_id)


def make_killmail(
    killmail_id: int,
    *,
    victim_id: int = PILOT_ID,
    ship_type_id: int = PURIFIER_TYPE_ID,
    killmail_time: str = "2024-06-14T20:00:00Z",
    polarized_launchers: int = 0,
    killmail_hash: Optional[str] = None,
) -> Dict[str, Any]:
    items = [
        {"item_type_id": POLARIZED_LAUNCHER_TYPE_ID, "flag": 27 + slot, "quantity_destroyed": 1}
        for slot in range(1, polarized_launchers + 1)
    ]
    km: Dict[str, Any] = {
        "killmail_id": killmail_id,
        "killmail_time": killmail_time,
        "solar_system_id": SOLAR_SYSTEM_ID,
        "victim": {
            "character_id": victim_id,
            "corporation_id": PILOT_CORP_ID,
            "ship_type_id": ship_type_id,
            "damage_taken": 2500,
            "items": items,
        },
        "attackers": [{"character_id": 95000001}],
    }
    if killmail_hash:
        km["killmail_hash"] = killmail_hash
    return km


@pytest.fixture()
def gateway() -> FakeMailGateway:
    return FakeMailGateway()


@pytest.fixture()
def installed_gateway(client, gateway: FakeMailGateway) -> FakeMailGateway:
    """The fake gateway, installed on the running app."""
    client.app.state.mail_gateway = gateway
    return gateway


# ---------------------------------------------------------------------------
# Test data helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    """Stateless helper methods for common test-data operations."""

    __test__ = False

    @staticmethod
    def create_fc(
        conn: sqlite3.Connection,
        *,
        main_character_id: int = 92000001,
        main_character_name: str = "Test FC",
        rank: str = "FC",
        status: str = "Active",
        access_level: Optional[str] = None,
        bb_corp_alt_id: Optional[int] = None,
        additional_alts: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        cur = conn.execute(
            """
            INSERT INTO fleet_commanders (
              main_character_id,main_character_name,bb_corp_alt_id,additional_alts,
              status,rank,access_level,created_at,updated_at
            ) VALUES (?,?,?,?,?,?,?,?,?)
            """,
            (
                main_character_id,
                main_character_name,
                bb_corp_alt_id,
                json.dumps(additional_alts or []),
                status,
                rank,
                access_level,
                "2024-01-01T00:00:00Z",
                "2024-01-01T00:00:00Z",
            ),
        )
        conn.commit()
        return int(cur.lastrowid)

    @staticmethod
    def create_fleet_type(
        conn: sqlite3.Connection,
        name: str = "Bombers",
        *,
        is_active: bool = True,
        display_order: int = 0,
    ) -> int:
        cur = conn.execute(
            """
            INSERT INTO fleet_types (name,description,is_active,display_order,created_at,updated_at)
            VALUES (?,?,?,?,?,?)
            """,
            (name, f"{name} fleets", int(is_active), display_order, "2024-01-01T00:00:00Z", "2024-01-01T00:00:00Z"),
        )
        conn.commit()
        return int(cur.lastrowid)

    @staticmethod
    def create_doctrine(
        conn: sqlite3.Connection,
        fleet_type_id: int,
        name: str = "Purifier Torp",
        *,
        ship_type_id: int = PURIFIER_TYPE_ID,
        is_active: bool = True,
    ) -> int:
        cur = conn.execute(
            """
            INSERT INTO doctrines (
              fleet_type_id,name,ship_type_id,ship_name,high_slots,mid_slots,low_slots,rig_slots,
              high_slot_modules,is_active,created_at,updated_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                fleet_type_id,
                name,
                ship_type_id,
                "Purifier",
                4, 4, 2, 2,
                json.dumps([{"type_id": POLARIZED_LAUNCHER_TYPE_ID, "name": "Polarized Torpedo Launcher"}]),
                int(is_active),
                "2024-01-01T00:00:00Z",
                "2024-01-01T00:00:00Z",
            ),
        )
        conn.commit()
        return int(cur.lastrowid)

    @staticmethod
    def create_fleet(
        conn: sqlite3.Connection,
        fleet_type_id: int,
        fc_id: int,
        *,
        scheduled_at: str = "2025-01-01T00:00:00Z",
        duration_minutes: int = 120,
        status: str = "scheduled",
        title: str = "Test fleet",
    ) -> int:
        cur = conn.execute(
            """
            INSERT INTO fleets (
              scheduled_at,duration_minutes,fleet_type_id,fc_id,title,status,created_at,updated_at
            ) VALUES (?,?,?,?,?,?,?,?)
            """,
            (scheduled_at, duration_minutes, fleet_type_id, fc_id, title, status, scheduled_at, scheduled_at),
        )
        conn.commit()
        return int(cur.lastrowid)

    @staticmethod
    def create_ship_type(
        conn: sqlite3.Connection,
        *,
        type_id: int = PURIFIER_TYPE_ID,
        type_name: str = "Purifier",
        group_id: int = 834,
        group_name: str = "Stealth Bomber",
        base_payout: float = 50_000_000,
        polarized_payout: Optional[float] = 80_000_000,
        fc_discretion: bool = False,
        is_active: bool = True,
        notes: Optional[str] = None,
    ) -> int:
        cur = conn.execute(
            """
            INSERT INTO srp_ship_types (
              type_id,type_name,group_id,group_name,base_payout,polarized_payout,
              fc_discretion,is_active,notes,created_at,updated_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                type_id,
                type_name,
                group_id,
                group_name,
                base_payout,
                polarized_payout,
                int(fc_discretion),
                int(is_active),
                notes,
                "2024-01-01T00:00:00Z",
                "2024-01-01T00:00:00Z",
            ),
        )
        conn.commit()
        return int(cur.lastrowid)

    @staticmethod
    def create_srp_request(
        conn: sqlite3.Connection,
        *,
        killmail_id: int = 120000001,
        character_id: int = PILOT_ID,
        character_name: str = "Test Pilot",
        ship_name: str = "Purifier",
        status: str = "pending",
        base_payout: float = 50_000_000,
        admin_notes: Optional[str] = None,
        submitted_at: str = "2024-06-15T10:00:00Z",
        paid_at: Optional[str] = None,
    ) -> int:
        cur = conn.execute(
            """
            INSERT INTO srp_requests (
              character_id,character_name,killmail_id,killmail_hash,killmail_time,ship_type_id,ship_name,
              solar_system_name,base_payout_amount,final_payout_amount,status,admin_notes,
              mail_body,submitted_at,paid_at,updated_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                character_id,
                character_name,
                killmail_id,
                "",
                "2024-06-14T20:00:00Z",
                PURIFIER_TYPE_ID,
                ship_name,
                "Amamake",
                base_payout,
                base_payout,
                status,
                admin_notes,
                f"https://zkillboard.com/kill/{killmail_id}/",
                submitted_at,
                paid_at,
                submitted_at,
            ),
        )
        conn.commit()
        return int(cur.lastrowid)

    @staticmethod
    def create_session_token(conn: sqlite3.Connection, character_id: int, character_name: str = "Someone") -> str:
        from auth_service import create_session

        token = create_session(conn, character_id, character_name)
        conn.commit()
        return token


@pytest.fixture()
def helpers() -> TestHelpers:
    return TestHelpers()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_clock():
    """Ensure the clock override never leaks between tests."""
    from clock_service import reset_clock
    reset_clock()
    yield
    reset_clock()
