"""
SQLite index of registered calendars, policy edges and projected blockers.
"""

import logging
import sqlite3
import time
from pathlib import Path

from gcalsync.models import BlockerRecord
from gcalsync.models import CalendarRecord
from gcalsync.models import StateIndexError

SCHEMA_VERSION = 2

_BLOCKER_COLUMNS = (
    "event_id, calendar_id, account_name, origin_calendar_id, "
    "origin_event_id, origin_fingerprint, last_seen_at"
)

# Columns added on top of the first-generation blocker_events table.
_LEGACY_ADDITIONS = {
    "origin_calendar_id": "TEXT NOT NULL DEFAULT ''",
    "origin_event_id": "TEXT NOT NULL DEFAULT ''",
    "origin_fingerprint": "TEXT NOT NULL DEFAULT ''",
    "last_seen_at": "INTEGER NOT NULL DEFAULT 0",
}


def _row_to_blocker(row: sqlite3.Row) -> BlockerRecord:
    return BlockerRecord(
        event_id=row["event_id"],
        calendar_id=row["calendar_id"],
        account_name=row["account_name"],
        origin_calendar_id=row["origin_calendar_id"],
        origin_event_id=row["origin_event_id"],
        origin_fingerprint=row["origin_fingerprint"],
        last_seen_at=row["last_seen_at"],
    )


class StateDatabase:
    """Manages the SQLite index that records what has been projected where.

    Every mutating method commits before returning, so a crash never loses a
    row for a remote mutation that already succeeded.  One process per
    database file is assumed.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self.logger = logging.getLogger(__name__)

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Open the database file and bring its schema up to date."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(str(self.db_path))
            self.conn.row_factory = sqlite3.Row
            self._init_schema()
        except sqlite3.DatabaseError as e:
            self.close()
            raise StateIndexError(
                f"Cannot open index {self.db_path}: {e}. "
                f"Move the file aside and run 'gcalsync desync' from a backup, "
                f"or re-register calendars with 'gcalsync add'."
            ) from e

    def _init_schema(self):
        """Create missing tables and migrate legacy layouts."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS calendars (
                account_name TEXT NOT NULL,
                calendar_id TEXT NOT NULL,
                PRIMARY KEY (account_name, calendar_id)
            );
            CREATE TABLE IF NOT EXISTS calendar_blocks (
                source_calendar_id TEXT NOT NULL,
                target_calendar_id TEXT NOT NULL,
                PRIMARY KEY (source_calendar_id, target_calendar_id)
            );
            CREATE TABLE IF NOT EXISTS blocker_events (
                event_id TEXT NOT NULL,
                calendar_id TEXT NOT NULL,
                account_name TEXT NOT NULL,
                origin_calendar_id TEXT NOT NULL DEFAULT '',
                origin_event_id TEXT NOT NULL DEFAULT '',
                origin_fingerprint TEXT NOT NULL DEFAULT '',
                last_seen_at INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (calendar_id, event_id)
            );
            CREATE TABLE IF NOT EXISTS account_tokens (
                account_name TEXT PRIMARY KEY,
                token_json TEXT NOT NULL,
                updated_at INTEGER NOT NULL DEFAULT 0
            );
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER NOT NULL
            );
        """)
        self.migrate_if_needed()
        self.conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS blocker_events_origin "
            "ON blocker_events (calendar_id, origin_calendar_id, origin_event_id) "
            "WHERE origin_event_id != ''"
        )
        self.conn.commit()

    def migrate_if_needed(self):
        """
        Bring a first-generation index up to the current schema.

        The first generation had no fingerprint or origin columns and no
        version marker.  Missing columns are added with empty defaults.  The next
        reconcile patches rows with an empty fingerprint and withdraws and
        recreates rows that carry no origin.
        """
        row = self.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        version = row[0]
        if version is not None and version > SCHEMA_VERSION:
            raise StateIndexError(
                f"Index {self.db_path} has schema version {version}, newer than the "
                f"supported version {SCHEMA_VERSION}. Upgrade gcalsync."
            )
        if version == SCHEMA_VERSION:
            return

        columns = {r["name"] for r in self.conn.execute("PRAGMA table_info(blocker_events)")}
        missing = [name for name in _LEGACY_ADDITIONS if name not in columns]
        for name in missing:
            self.conn.execute(
                f"ALTER TABLE blocker_events ADD COLUMN {name} {_LEGACY_ADDITIONS[name]}"
            )
        # The first generation had no primary key on (calendar_id, event_id).
        self.conn.execute(
            "DELETE FROM blocker_events WHERE rowid NOT IN "
            "(SELECT MIN(rowid) FROM blocker_events GROUP BY calendar_id, event_id)"
        )
        self.conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS blocker_events_key "
            "ON blocker_events (calendar_id, event_id)"
        )
        if missing:
            count = self.conn.execute("SELECT COUNT(*) FROM blocker_events").fetchone()[0]
            self.logger.info(
                f"Migrated index schema: added {', '.join(missing)} "
                f"({count} existing blocker row(s) will be refreshed on next sync)"
            )
        self.conn.execute("DELETE FROM schema_version")
        self.conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        self.conn.commit()

    def _write(self, sql: str, params: tuple = ()) -> int:
        """Execute one mutating statement and commit it. Returns affected rows."""
        try:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
        except sqlite3.DatabaseError as e:
            raise StateIndexError(f"Index write failed: {e}") from e
        return cursor.rowcount

    # ------------------------------------------------------------------ #
    # Calendars                                                            #
    # ------------------------------------------------------------------ #

    def add_calendar(self, account_name: str, calendar_id: str) -> bool:
        """Register a calendar. Returns False if it was already registered."""
        return (
            self._write(
                "INSERT OR IGNORE INTO calendars (account_name, calendar_id) VALUES (?, ?)",
                (account_name, calendar_id),
            )
            > 0
        )

    def remove_calendar(self, calendar_id: str) -> bool:
        """Unregister a calendar and drop the policy edges that reference it."""
        removed = self._write("DELETE FROM calendars WHERE calendar_id = ?", (calendar_id,))
        self._write(
            "DELETE FROM calendar_blocks WHERE source_calendar_id = ? OR target_calendar_id = ?",
            (calendar_id, calendar_id),
        )
        return removed > 0

    def get_calendar(self, calendar_id: str) -> CalendarRecord | None:
        row = self.conn.execute(
            "SELECT account_name, calendar_id FROM calendars WHERE calendar_id = ? LIMIT 1",
            (calendar_id,),
        ).fetchone()
        return CalendarRecord(row["account_name"], row["calendar_id"]) if row else None

    def list_calendars(self, account_name: str | None = None) -> list[CalendarRecord]:
        if account_name is None:
            cursor = self.conn.execute(
                "SELECT account_name, calendar_id FROM calendars ORDER BY account_name, calendar_id"
            )
        else:
            cursor = self.conn.execute(
                "SELECT account_name, calendar_id FROM calendars WHERE account_name = ? "
                "ORDER BY calendar_id",
                (account_name,),
            )
        return [CalendarRecord(r["account_name"], r["calendar_id"]) for r in cursor.fetchall()]

    def list_accounts(self) -> list[str]:
        cursor = self.conn.execute("SELECT DISTINCT account_name FROM calendars ORDER BY 1")
        return [r[0] for r in cursor.fetchall()]

    # ------------------------------------------------------------------ #
    # Policy edges                                                         #
    # ------------------------------------------------------------------ #

    def has_block(self, source_calendar_id: str, target_calendar_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM calendar_blocks WHERE source_calendar_id = ? AND target_calendar_id = ?",
            (source_calendar_id, target_calendar_id),
        ).fetchone()
        return row is not None

    def add_block(self, source_calendar_id: str, target_calendar_id: str) -> bool:
        return (
            self._write(
                "INSERT OR IGNORE INTO calendar_blocks (source_calendar_id, target_calendar_id) "
                "VALUES (?, ?)",
                (source_calendar_id, target_calendar_id),
            )
            > 0
        )

    def remove_block(self, source_calendar_id: str, target_calendar_id: str) -> bool:
        return (
            self._write(
                "DELETE FROM calendar_blocks "
                "WHERE source_calendar_id = ? AND target_calendar_id = ?",
                (source_calendar_id, target_calendar_id),
            )
            > 0
        )

    def list_blocks(self) -> list[tuple[str, str]]:
        cursor = self.conn.execute(
            "SELECT source_calendar_id, target_calendar_id FROM calendar_blocks "
            "ORDER BY source_calendar_id, target_calendar_id"
        )
        return [(r[0], r[1]) for r in cursor.fetchall()]

    # ------------------------------------------------------------------ #
    # Blocker events                                                       #
    # ------------------------------------------------------------------ #

    def get_blockers(
        self,
        calendar_id: str | None = None,
        origin_calendar_id: str | None = None,
        account_name: str | None = None,
    ) -> list[BlockerRecord]:
        """Blocker rows filtered by target calendar, origin calendar and/or account."""
        clauses = []
        params: list[str] = []
        for column, value in (
            ("calendar_id", calendar_id),
            ("origin_calendar_id", origin_calendar_id),
            ("account_name", account_name),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = self.conn.execute(
            f"SELECT {_BLOCKER_COLUMNS} FROM blocker_events{where} "
            f"ORDER BY calendar_id, event_id",
            params,
        )
        return [_row_to_blocker(r) for r in cursor.fetchall()]

    def get_blocker(self, calendar_id: str, event_id: str) -> BlockerRecord | None:
        row = self.conn.execute(
            f"SELECT {_BLOCKER_COLUMNS} FROM blocker_events "
            f"WHERE calendar_id = ? AND event_id = ?",
            (calendar_id, event_id),
        ).fetchone()
        return _row_to_blocker(row) if row else None

    def target_calendar_ids(self) -> list[str]:
        """Every calendar that holds at least one recorded blocker."""
        cursor = self.conn.execute(
            "SELECT DISTINCT calendar_id FROM blocker_events ORDER BY calendar_id"
        )
        return [r[0] for r in cursor.fetchall()]

    def upsert_blocker(self, record: BlockerRecord):
        """Insert or replace the row for (calendar_id, event_id)."""
        self._write(
            f"INSERT INTO blocker_events ({_BLOCKER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?) "
            f"ON CONFLICT (calendar_id, event_id) DO UPDATE SET "
            f"account_name = excluded.account_name, "
            f"origin_calendar_id = excluded.origin_calendar_id, "
            f"origin_event_id = excluded.origin_event_id, "
            f"origin_fingerprint = excluded.origin_fingerprint, "
            f"last_seen_at = excluded.last_seen_at",
            (
                record.event_id,
                record.calendar_id,
                record.account_name,
                record.origin_calendar_id,
                record.origin_event_id,
                record.origin_fingerprint,
                record.last_seen_at or int(time.time()),
            ),
        )

    def update_fingerprint(self, calendar_id: str, event_id: str, fingerprint: str):
        self._write(
            "UPDATE blocker_events SET origin_fingerprint = ?, last_seen_at = ? "
            "WHERE calendar_id = ? AND event_id = ?",
            (fingerprint, int(time.time()), calendar_id, event_id),
        )

    def mark_seen(self, calendar_id: str, event_ids: list[str]):
        """Stamp last_seen_at on rows that were found unchanged."""
        if not event_ids:
            return
        now = int(time.time())
        try:
            self.conn.executemany(
                "UPDATE blocker_events SET last_seen_at = ? WHERE calendar_id = ? AND event_id = ?",
                [(now, calendar_id, event_id) for event_id in event_ids],
            )
            self.conn.commit()
        except sqlite3.DatabaseError as e:
            raise StateIndexError(f"Index write failed: {e}") from e

    def delete_blocker(self, calendar_id: str, event_id: str) -> bool:
        return (
            self._write(
                "DELETE FROM blocker_events WHERE calendar_id = ? AND event_id = ?",
                (calendar_id, event_id),
            )
            > 0
        )

    def blocker_counts(self) -> dict[tuple[str, str], int]:
        """Map (account_name, calendar_id) to the number of blockers it holds."""
        cursor = self.conn.execute(
            "SELECT account_name, calendar_id, COUNT(*) FROM blocker_events GROUP BY 1, 2"
        )
        return {(r[0], r[1]): r[2] for r in cursor.fetchall()}

    # ------------------------------------------------------------------ #
    # Account tokens (opaque to the engine)                                #
    # ------------------------------------------------------------------ #

    def get_token(self, account_name: str) -> str | None:
        row = self.conn.execute(
            "SELECT token_json FROM account_tokens WHERE account_name = ?", (account_name,)
        ).fetchone()
        return row[0] if row else None

    def save_token(self, account_name: str, token_json: str):
        self._write(
            "INSERT INTO account_tokens (account_name, token_json, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT (account_name) DO UPDATE SET "
            "token_json = excluded.token_json, updated_at = excluded.updated_at",
            (account_name, token_json, int(time.time())),
        )

    def commit(self):
        """Commit pending transactions."""
        if self.conn:
            self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
