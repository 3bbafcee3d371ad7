import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, List


@dataclass(frozen=True)
class Migration:
    migration_id: str
    description: str
    apply: Callable[[sqlite3.Connection], None]


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table});").fetchall()
    return {str(r["name"]) for r in rows}


def _safe_add_column(conn: sqlite3.Connection, table: str, name: str, coltype: str) -> None:
    if name in _table_columns(conn, table):
        return
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {coltype};")


def _migration_0001_initial(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS sessions (
          token TEXT PRIMARY KEY,
          character_id INTEGER NOT NULL,
          character_name TEXT NOT NULL,
          created_at REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_sessions_character ON sessions(character_id);

        CREATE TABLE IF NOT EXISTS fleet_commanders (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          main_character_id INTEGER NOT NULL UNIQUE,
          main_character_name TEXT NOT NULL,
          bb_corp_alt_id INTEGER,
          bb_corp_alt_name TEXT,
          additional_alts TEXT NOT NULL DEFAULT '[]',
          status TEXT NOT NULL DEFAULT 'Active',
          rank TEXT NOT NULL,
          access_level TEXT,
          notes TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_fc_status ON fleet_commanders(status);
        CREATE INDEX IF NOT EXISTS idx_fc_alt ON fleet_commanders(bb_corp_alt_id);

        CREATE TABLE IF NOT EXISTS fleet_types (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL UNIQUE,
          description TEXT,
          is_active INTEGER NOT NULL DEFAULT 1,
          display_order INTEGER NOT NULL DEFAULT 0,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS doctrines (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          fleet_type_id INTEGER NOT NULL REFERENCES fleet_types(id) ON DELETE CASCADE,
          name TEXT NOT NULL,
          ship_type_id INTEGER NOT NULL,
          ship_name TEXT,
          ship_group_id INTEGER,
          ship_group_name TEXT,
          high_slots INTEGER NOT NULL DEFAULT 0,
          mid_slots INTEGER NOT NULL DEFAULT 0,
          low_slots INTEGER NOT NULL DEFAULT 0,
          rig_slots INTEGER NOT NULL DEFAULT 0,
          high_slot_modules TEXT NOT NULL DEFAULT '[]',
          mid_slot_modules TEXT NOT NULL DEFAULT '[]',
          low_slot_modules TEXT NOT NULL DEFAULT '[]',
          rig_modules TEXT NOT NULL DEFAULT '[]',
          cargo_items TEXT NOT NULL DEFAULT '[]',
          notes TEXT,
          is_active INTEGER NOT NULL DEFAULT 1,
          display_order INTEGER NOT NULL DEFAULT 0,
          created_by INTEGER,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          UNIQUE (fleet_type_id, name)
        );
        CREATE INDEX IF NOT EXISTS idx_doctrines_fleet_type ON doctrines(fleet_type_id);

        CREATE TABLE IF NOT EXISTS fleets (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          scheduled_at TEXT NOT NULL,
          timezone TEXT NOT NULL DEFAULT 'UTC',
          duration_minutes INTEGER NOT NULL DEFAULT 120,
          fleet_type_id INTEGER NOT NULL REFERENCES fleet_types(id),
          fc_id INTEGER NOT NULL REFERENCES fleet_commanders(id),
          title TEXT,
          description TEXT,
          staging_system TEXT,
          comms_channel TEXT,
          status TEXT NOT NULL DEFAULT 'scheduled',
          actual_start_time TEXT,
          actual_end_time TEXT,
          participant_count INTEGER NOT NULL DEFAULT 0,
          created_by INTEGER,
          updated_by INTEGER,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_fleets_status ON fleets(status);
        CREATE INDEX IF NOT EXISTS idx_fleets_scheduled ON fleets(scheduled_at);
        """
    )


def _migration_0002_fleet_activity(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS fleet_participants (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          fleet_id INTEGER NOT NULL REFERENCES fleets(id) ON DELETE CASCADE,
          character_id INTEGER NOT NULL,
          character_name TEXT NOT NULL,
          role TEXT,
          notes TEXT,
          joined_at TEXT NOT NULL,
          added_by INTEGER,
          UNIQUE (fleet_id, character_id)
        );
        CREATE INDEX IF NOT EXISTS idx_participants_fleet ON fleet_participants(fleet_id);

        CREATE TABLE IF NOT EXISTS fleet_kills (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          fleet_id INTEGER NOT NULL REFERENCES fleets(id) ON DELETE CASCADE,
          killmail_id INTEGER NOT NULL,
          zkill_url TEXT NOT NULL,
          drop_number INTEGER NOT NULL DEFAULT 1,
          hunter_id INTEGER REFERENCES fleet_participants(id) ON DELETE SET NULL,
          ship_type_id INTEGER,
          ship_name TEXT,
          total_value REAL NOT NULL DEFAULT 0,
          killmail_time TEXT,
          added_by INTEGER,
          created_at TEXT NOT NULL,
          UNIQUE (fleet_id, killmail_id)
        );
        CREATE INDEX IF NOT EXISTS idx_kills_fleet ON fleet_kills(fleet_id);
        """
    )


def _migration_0003_srp(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS srp_ship_types (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          type_id INTEGER NOT NULL UNIQUE,
          type_name TEXT NOT NULL,
          group_id INTEGER NOT NULL,
          group_name TEXT NOT NULL,
          base_payout REAL NOT NULL,
          polarized_payout REAL,
          fc_discretion INTEGER NOT NULL DEFAULT 0,
          is_active INTEGER NOT NULL DEFAULT 1,
          notes TEXT,
          created_by INTEGER,
          updated_by INTEGER,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS srp_requests (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          character_id INTEGER NOT NULL,
          character_name TEXT NOT NULL,
          corporation_id INTEGER,
          corporation_name TEXT,
          alliance_id INTEGER,
          alliance_name TEXT,
          killmail_id INTEGER,
          killmail_hash TEXT NOT NULL DEFAULT '',
          killmail_time TEXT,
          ship_type_id INTEGER,
          ship_name TEXT,
          is_polarized INTEGER NOT NULL DEFAULT 0,
          solar_system_id INTEGER,
          solar_system_name TEXT,
          hunter_donations REAL NOT NULL DEFAULT 0,
          base_payout_amount REAL NOT NULL DEFAULT 0,
          final_payout_amount REAL NOT NULL DEFAULT 0,
          payout_adjusted INTEGER NOT NULL DEFAULT 0,
          status TEXT NOT NULL DEFAULT 'pending',
          denial_reason TEXT,
          admin_notes TEXT,
          requires_fc_approval INTEGER NOT NULL DEFAULT 0,
          validation_warnings TEXT NOT NULL DEFAULT '[]',
          proximity_data TEXT,
          mail_id INTEGER,
          mail_subject TEXT,
          mail_body TEXT,
          submitted_at TEXT NOT NULL,
          processed_at TEXT,
          processed_by_character_id INTEGER,
          processed_by_character_name TEXT,
          payment_amount REAL,
          paid_at TEXT,
          paid_by_character_id INTEGER,
          paid_by_character_name TEXT,
          updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_srp_status ON srp_requests(status);
        CREATE INDEX IF NOT EXISTS idx_srp_killmail ON srp_requests(killmail_id);
        CREATE INDEX IF NOT EXISTS idx_srp_submitted ON srp_requests(submitted_at);
        """
    )


def _migration_0004_mail_pipeline(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS processed_mails (
          mail_id INTEGER PRIMARY KEY,
          from_character_id INTEGER,
          sender_name TEXT,
          subject TEXT,
          mail_timestamp TEXT,
          mail_body TEXT,
          status TEXT NOT NULL,
          srp_request_id INTEGER REFERENCES srp_requests(id) ON DELETE SET NULL,
          error_message TEXT,
          processed_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_processed_mails_status ON processed_mails(status);

        CREATE TABLE IF NOT EXISTS pending_mail_sends (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          mail_type TEXT NOT NULL,
          recipient_character_id INTEGER NOT NULL,
          payload TEXT NOT NULL DEFAULT '{}',
          retry_after TEXT NOT NULL,
          attempts INTEGER NOT NULL DEFAULT 0,
          last_error TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_pending_mail_retry ON pending_mail_sends(retry_after);
        """
    )


def _migration_0005_ban_list(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS ban_list (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL,
          esi_id INTEGER,
          type TEXT NOT NULL,
          bb_banned INTEGER NOT NULL DEFAULT 0,
          xup_banned INTEGER NOT NULL DEFAULT 0,
          hk_banned INTEGER NOT NULL DEFAULT 0,
          banned_by TEXT,
          reason TEXT,
          ban_date TEXT,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_ban_list_esi ON ban_list(esi_id);
        """
    )


def _migration_0006_srp_payment_details(conn: sqlite3.Connection) -> None:
    _safe_add_column(conn, "srp_requests", "payment_method", "TEXT")
    _safe_add_column(conn, "srp_requests", "payment_reference", "TEXT")


def _migrations() -> List[Migration]:
    return [
        Migration("0001_initial", "Sessions, FC roster, fleet types, doctrines, fleets", _migration_0001_initial),
        Migration("0002_fleet_activity", "Fleet participants and kill tracking", _migration_0002_fleet_activity),
        Migration("0003_srp", "SRP ship types and SRP requests", _migration_0003_srp),
        Migration("0004_mail_pipeline", "Processed mail log and pending mail send queue", _migration_0004_mail_pipeline),
        Migration("0005_ban_list", "Ban list consulted by mail intake", _migration_0005_ban_list),
        Migration("0006_srp_payment_details", "Add payment method/reference columns to srp_requests", _migration_0006_srp_payment_details),
    ]


def apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          migration_id TEXT PRIMARY KEY,
          description TEXT NOT NULL,
          applied_at REAL NOT NULL
        );
        """
    )

    applied = {
        str(r["migration_id"])
        for r in conn.execute("SELECT migration_id FROM schema_migrations").fetchall()
    }

    for migration in _migrations():
        if migration.migration_id in applied:
            continue
        migration.apply(conn)
        conn.execute(
            "INSERT INTO schema_migrations (migration_id,description,applied_at) VALUES (?,?,?)",
            (migration.migration_id, migration.description, time.time()),
        )
    conn.commit()
