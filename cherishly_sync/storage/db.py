"""
SQLite database module for sync state management.

Provides persistent storage for connections, pairing codes, person links,
candidates, conflicts, the outbox and the minimal local people/moment
tables the sync engine reads and writes.
"""

import json
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from typing import Any, Optional

from cherishly_sync.utils.timestamps import now_iso

# Timestamps are ISO-8601 TEXT in UTC; see cherishly_sync.utils.timestamps
SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_connections (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    remote_app TEXT NOT NULL,
    remote_user_id TEXT,
    remote_base_url TEXT,
    shared_secret_hash TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'revoked')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_connections_user ON sync_connections(user_id, status);

CREATE TABLE IF NOT EXISTS sync_pairing_codes (
    id INTEGER PRIMARY KEY,
    code TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    consumed_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS partners (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    person_uid TEXT NOT NULL UNIQUE,
    relationship_type TEXT,
    archived INTEGER NOT NULL DEFAULT 0,
    merged_into_person_id TEXT REFERENCES partners(id),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_partners_user ON partners(user_id, archived);

CREATE TABLE IF NOT EXISTS moments (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    moment_uid TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    description TEXT,
    moment_date TEXT NOT NULL,
    happened_at TEXT,
    event_type TEXT,
    impact_level INTEGER,
    attachments TEXT,
    partner_ids TEXT NOT NULL DEFAULT '[]',
    source TEXT,
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_moments_user ON moments(user_id, deleted_at);

CREATE TABLE IF NOT EXISTS sync_remote_people_cache (
    id INTEGER PRIMARY KEY,
    connection_id TEXT NOT NULL REFERENCES sync_connections(id),
    remote_person_uid TEXT NOT NULL,
    remote_name TEXT NOT NULL,
    remote_relationship_label TEXT,
    fetched_at TEXT NOT NULL,
    UNIQUE(connection_id, remote_person_uid)
);

CREATE TABLE IF NOT EXISTS sync_person_links (
    id INTEGER PRIMARY KEY,
    connection_id TEXT NOT NULL REFERENCES sync_connections(id),
    local_person_id TEXT REFERENCES partners(id),
    remote_person_uid TEXT,
    link_status TEXT NOT NULL DEFAULT 'linked'
        CHECK (link_status IN ('linked', 'excluded', 'conflict')),
    is_enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (local_person_id IS NOT NULL OR remote_person_uid IS NOT NULL)
);

-- At most one non-excluded link per local person and per remote person
CREATE UNIQUE INDEX IF NOT EXISTS uq_person_links_local
    ON sync_person_links(connection_id, local_person_id)
    WHERE link_status != 'excluded' AND local_person_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS uq_person_links_remote
    ON sync_person_links(connection_id, remote_person_uid)
    WHERE link_status != 'excluded' AND remote_person_uid IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS uq_person_links_remote_excluded
    ON sync_person_links(connection_id, remote_person_uid)
    WHERE link_status = 'excluded' AND local_person_id IS NULL;
CREATE UNIQUE INDEX IF NOT EXISTS uq_person_links_local_excluded
    ON sync_person_links(connection_id, local_person_id)
    WHERE link_status = 'excluded' AND remote_person_uid IS NULL;

CREATE TABLE IF NOT EXISTS sync_person_candidates (
    id INTEGER PRIMARY KEY,
    connection_id TEXT NOT NULL REFERENCES sync_connections(id),
    remote_person_uid TEXT NOT NULL,
    remote_person_name TEXT NOT NULL,
    local_person_id TEXT REFERENCES partners(id),
    confidence REAL,
    reasons TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(connection_id, remote_person_uid)
);

CREATE TABLE IF NOT EXISTS sync_conflicts (
    id INTEGER PRIMARY KEY,
    connection_id TEXT NOT NULL REFERENCES sync_connections(id),
    user_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_uid TEXT NOT NULL,
    conflict_type TEXT NOT NULL,
    local_payload TEXT NOT NULL DEFAULT '{}',
    remote_payload TEXT NOT NULL DEFAULT '{}',
    suggested_resolution TEXT,
    resolution TEXT,
    resolved_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conflicts_open
    ON sync_conflicts(connection_id, entity_type, entity_uid, resolved_at);

CREATE TABLE IF NOT EXISTS sync_outbox (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    connection_id TEXT NOT NULL REFERENCES sync_connections(id),
    entity_type TEXT NOT NULL,
    entity_uid TEXT NOT NULL,
    operation TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    occurred_at TEXT NOT NULL,
    delivered_at TEXT,
    delivery_attempts INTEGER NOT NULL DEFAULT 0
);

-- Nothing is queued twice while an earlier copy is still pending
CREATE UNIQUE INDEX IF NOT EXISTS uq_outbox_pending
    ON sync_outbox(connection_id, entity_type, entity_uid)
    WHERE delivered_at IS NULL;

CREATE TABLE IF NOT EXISTS sync_cursors (
    connection_id TEXT PRIMARY KEY REFERENCES sync_connections(id),
    last_pulled_outbox_id INTEGER NOT NULL DEFAULT 0,
    last_pushed_outbox_id INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_merge_log (
    id INTEGER PRIMARY KEY,
    user_id TEXT NOT NULL,
    kept_person_id TEXT NOT NULL REFERENCES partners(id),
    merged_person_id TEXT NOT NULL REFERENCES partners(id),
    merged_person_snapshot TEXT NOT NULL DEFAULT '{}',
    merged_links_snapshot TEXT NOT NULL DEFAULT '[]',
    merged_moments_snapshot TEXT NOT NULL DEFAULT '[]',
    undone_at TEXT,
    created_at TEXT NOT NULL
);
"""

CONNECTION_COLUMNS = """
    id, user_id, remote_app, remote_user_id, remote_base_url,
    shared_secret_hash, status, created_at, updated_at
"""

PARTNER_COLUMNS = """
    id, user_id, name, person_uid, relationship_type, archived,
    merged_into_person_id, created_at, updated_at
"""

MOMENT_COLUMNS = """
    id, user_id, moment_uid, title, description, moment_date, happened_at,
    event_type, impact_level, attachments, partner_ids, source, deleted_at,
    created_at, updated_at
"""

LINK_COLUMNS = """
    id, connection_id, local_person_id, remote_person_uid, link_status,
    is_enabled, created_at, updated_at
"""

CONFLICT_COLUMNS = """
    id, connection_id, user_id, entity_type, entity_uid, conflict_type,
    local_payload, remote_payload, suggested_resolution, resolution,
    resolved_at, created_at
"""

OUTBOX_COLUMNS = """
    id, connection_id, entity_type, entity_uid, operation, payload,
    occurred_at, delivered_at, delivery_attempts
"""

# Moment columns that may be written through update_moment()
UPDATABLE_MOMENT_FIELDS = frozenset(
    {
        "title",
        "description",
        "moment_date",
        "happened_at",
        "event_type",
        "impact_level",
        "attachments",
        "partner_ids",
        "source",
        "deleted_at",
        "updated_at",
    }
)

UPDATABLE_PARTNER_FIELDS = frozenset(
    {
        "name",
        "relationship_type",
        "archived",
        "merged_into_person_id",
        "updated_at",
    }
)

JSON_MOMENT_FIELDS = frozenset({"attachments", "partner_ids"})


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


class SyncDatabase:
    """
    SQLite database manager for the sync engine.

    Provides methods for:
    - Connections and pairing codes
    - Local people and moments (minimal columns)
    - Remote people cache, person links and candidates
    - Conflict log, outbox, cursors and merge log

    Usage:
        db = SyncDatabase('/path/to/sync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()

        # Group several writes into one transaction:
        with db.transaction():
            db.insert_conflict(...)
            db.upsert_candidate(...)
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._transaction_connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        In-memory databases share one connection so the schema persists; file
        databases get a fresh connection per operation.
        """
        if self.db_path == ":memory:":
            if self._shared_connection is None:
                # The HTTP layer may call in from a worker thread
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
                self._shared_connection.execute("PRAGMA foreign_keys = ON")
            return self._shared_connection

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Inside an open transaction() the transaction's connection is reused
        and nothing is committed until the transaction ends.

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM sync_connections")
        """
        if self._transaction_connection is not None:
            yield self._transaction_connection
            return

        conn = self._get_connection()
        is_shared = self.db_path == ":memory:"
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            if not is_shared:
                conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Run several operations atomically.

        Nested calls join the outer transaction.
        """
        if self._transaction_connection is not None:
            yield self._transaction_connection
            return

        conn = self._get_connection()
        is_shared = self.db_path == ":memory:"
        self._transaction_connection = conn
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._transaction_connection = None
            if not is_shared:
                conn.close()

    def initialize(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    # =========================================================================
    # Connection Operations
    # =========================================================================

    def insert_connection(
        self,
        connection_id: str,
        user_id: str,
        remote_app: str,
        shared_secret_hash: str,
        remote_user_id: Optional[str] = None,
        remote_base_url: Optional[str] = None,
    ) -> None:
        """
        Insert a new, active connection.

        Connection ids are never reused, so a revoked connection stays revoked.

        Args:
            connection_id: Connection UUID (shared by both peers)
            user_id: Owning local user
            remote_app: Peer application identifier
            shared_secret_hash: Hash of the shared secret (the HMAC key)
            remote_user_id: User id on the peer
            remote_base_url: Peer endpoint base URL
        """
        now = now_iso()
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_connections (
                    id, user_id, remote_app, remote_user_id, remote_base_url,
                    shared_secret_hash, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'active', ?, ?)
                """,
                (
                    connection_id,
                    user_id,
                    remote_app,
                    remote_user_id,
                    remote_base_url,
                    shared_secret_hash,
                    now,
                    now,
                ),
            )

    def get_connection(self, connection_id: str) -> Optional[dict[str, Any]]:
        """Get a connection by id, or None if not found."""
        with self.connection() as conn:
            row = conn.execute(
                f"SELECT {CONNECTION_COLUMNS} FROM sync_connections WHERE id = ?",  # nosec B608
                (connection_id,),
            ).fetchone()
            return dict(row) if row else None

    def list_connections(
        self, user_id: Optional[str] = None, status: Optional[str] = None
    ) -> list[dict[str, Any]]:
        """List connections, newest first, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self.connection() as conn:
            cursor = conn.execute(
                f"SELECT {CONNECTION_COLUMNS} FROM sync_connections "  # nosec B608
                f"{where} ORDER BY created_at DESC",
                params,
            )
            return [dict(row) for row in cursor.fetchall()]

    def update_connection_status(self, connection_id: str, status: str) -> bool:
        """
        Set a connection's status.

        Returns:
            True if the status changed, False if not found or already set
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_connections SET status = ?, updated_at = ?
                WHERE id = ? AND status != ?
                """,
                (status, now_iso(), connection_id, status),
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Pairing Code Operations
    # =========================================================================

    def insert_pairing_code(self, code: str, user_id: str, expires_at: str) -> None:
        """Store a freshly generated pairing code."""
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_pairing_codes (code, user_id, expires_at, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (code, user_id, expires_at, now_iso()),
            )

    def invalidate_pairing_codes(self, user_id: str) -> int:
        """Delete a user's unconsumed codes. Returns the number removed."""
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_pairing_codes WHERE user_id = ? AND consumed_at IS NULL",
                (user_id,),
            )
            return cursor.rowcount

    def purge_pairing_codes(self, now: str) -> int:
        """Delete consumed and expired codes so their values can be reissued."""
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_pairing_codes WHERE consumed_at IS NOT NULL OR expires_at <= ?",
                (now,),
            )
            return cursor.rowcount

    def consume_pairing_code(self, code: str, now: str) -> Optional[dict[str, Any]]:
        """
        Atomically consume a pairing code.

        The code must exist, be unconsumed and unexpired at `now`.

        Returns:
            The consumed code row, or None if it could not be consumed
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_pairing_codes SET consumed_at = ?
                WHERE code = ? AND consumed_at IS NULL AND expires_at > ?
                """,
                (now, code, now),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute(
                "SELECT code, user_id, expires_at, consumed_at, created_at "
                "FROM sync_pairing_codes WHERE code = ?",
                (code,),
            ).fetchone()
            return dict(row) if row else None

    # =========================================================================
    # Partner (Local Person) Operations
    # =========================================================================

    def insert_partner(
        self,
        partner_id: str,
        user_id: str,
        name: str,
        person_uid: str,
        relationship_type: Optional[str] = None,
        archived: bool = False,
        updated_at: Optional[str] = None,
    ) -> None:
        """Insert a local person."""
        now = now_iso()
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO partners (
                    id, user_id, name, person_uid, relationship_type, archived,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    partner_id,
                    user_id,
                    name,
                    person_uid,
                    relationship_type,
                    int(archived),
                    now,
                    updated_at or now,
                ),
            )

    def get_partner(self, partner_id: str) -> Optional[dict[str, Any]]:
        """Get a local person by id."""
        with self.connection() as conn:
            row = conn.execute(
                f"SELECT {PARTNER_COLUMNS} FROM partners WHERE id = ?",  # nosec B608
                (partner_id,),
            ).fetchone()
            return dict(row) if row else None

    def get_partner_by_uid(self, person_uid: str) -> Optional[dict[str, Any]]:
        """Get a local person by cross-system person_uid."""
        with self.connection() as conn:
            row = conn.execute(
                f"SELECT {PARTNER_COLUMNS} FROM partners WHERE person_uid = ?",  # nosec B608
                (person_uid,),
            ).fetchone()
            return dict(row) if row else None

    def list_partners(
        self, user_id: str, include_archived: bool = False
    ) -> list[dict[str, Any]]:
        """
        List a user's people ordered by name.

        Merged-away people are archived, so they are excluded by default too.
        """
        sql = f"SELECT {PARTNER_COLUMNS} FROM partners WHERE user_id = ?"  # nosec B608
        if not include_archived:
            sql += " AND archived = 0 AND merged_into_person_id IS NULL"
        sql += " ORDER BY name COLLATE NOCASE, id"

        with self.connection() as conn:
            return [dict(row) for row in conn.execute(sql, (user_id,)).fetchall()]

    def update_partner(self, partner_id: str, **fields: Any) -> bool:
        """
        Update selected partner columns.

        Raises:
            ValueError: If a field is not updatable
        """
        unknown = set(fields) - UPDATABLE_PARTNER_FIELDS
        if unknown:
            raise ValueError(f"Cannot update partner fields: {sorted(unknown)}")
        if not fields:
            return False

        if "archived" in fields:
            fields["archived"] = int(bool(fields["archived"]))
        fields.setdefault("updated_at", now_iso())

        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self.connection() as conn:
            cursor = conn.execute(
                f"UPDATE partners SET {assignments} WHERE id = ?",  # nosec B608
                [*fields.values(), partner_id],
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Moment Operations
    # =========================================================================

    def insert_moment(self, moment: dict[str, Any]) -> None:
        """
        Insert a moment.

        `moment` must contain id, user_id, moment_uid, title and moment_date.
        JSON columns (attachments, partner_ids) are serialized here.
        """
        now = now_iso()
        with self.connection() as conn:
            conn.execute(
                f"""
                INSERT INTO moments ({MOMENT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,  # nosec B608
                (
                    moment["id"],
                    moment["user_id"],
                    moment["moment_uid"],
                    moment["title"],
                    moment.get("description"),
                    moment["moment_date"],
                    moment.get("happened_at"),
                    moment.get("event_type"),
                    moment.get("impact_level"),
                    _dumps(moment.get("attachments") or []),
                    _dumps(moment.get("partner_ids") or []),
                    moment.get("source"),
                    moment.get("deleted_at"),
                    moment.get("created_at") or now,
                    moment.get("updated_at") or now,
                ),
            )

    def get_moment_by_uid(
        self, moment_uid: str, user_id: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Get a moment (deleted or not) by cross-system uid, optionally only a user's."""
        sql = f"SELECT {MOMENT_COLUMNS} FROM moments WHERE moment_uid = ?"  # nosec B608
        params: list[Any] = [moment_uid]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self.connection() as conn:
            row = conn.execute(sql, params).fetchone()
            return dict(row) if row else None

    def update_moment(
        self, moment_uid: str, user_id: Optional[str] = None, **fields: Any
    ) -> bool:
        """
        Update selected moment columns by uid.

        When user_id is given, only that user's moment is touched.

        Raises:
            ValueError: If a field is not updatable
        """
        unknown = set(fields) - UPDATABLE_MOMENT_FIELDS
        if unknown:
            raise ValueError(f"Cannot update moment fields: {sorted(unknown)}")
        if not fields:
            return False

        values = [
            _dumps(value) if name in JSON_MOMENT_FIELDS else value
            for name, value in fields.items()
        ]
        assignments = ", ".join(f"{name} = ?" for name in fields)
        sql = f"UPDATE moments SET {assignments} WHERE moment_uid = ?"  # nosec B608
        params = [*values, moment_uid]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self.connection() as conn:
            cursor = conn.execute(sql, params)
            return cursor.rowcount > 0

    def list_moments(
        self, user_id: str, include_deleted: bool = False
    ) -> list[dict[str, Any]]:
        """List a user's moments ordered by date."""
        sql = f"SELECT {MOMENT_COLUMNS} FROM moments WHERE user_id = ?"  # nosec B608
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        sql += " ORDER BY moment_date, id"
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(sql, (user_id,)).fetchall()]

    # =========================================================================
    # Remote People Cache Operations
    # =========================================================================

    def replace_remote_people(
        self,
        connection_id: str,
        people: Iterable[dict[str, Any]],
        fetched_at: str,
    ) -> int:
        """
        Replace the cached remote people for a connection.

        Args:
            connection_id: Connection the cache belongs to
            people: Dicts with remote_person_uid, remote_name and
                    remote_relationship_label
            fetched_at: When the listing was fetched

        Returns:
            Number of cached rows
        """
        rows = [
            (
                connection_id,
                p["remote_person_uid"],
                p["remote_name"],
                p.get("remote_relationship_label"),
                fetched_at,
            )
            for p in people
        ]
        with self.transaction() as conn:
            conn.execute(
                "DELETE FROM sync_remote_people_cache WHERE connection_id = ?",
                (connection_id,),
            )
            conn.executemany(
                """
                INSERT OR REPLACE INTO sync_remote_people_cache (
                    connection_id, remote_person_uid, remote_name,
                    remote_relationship_label, fetched_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                rows,
            )
        return len(rows)

    def upsert_remote_person(
        self,
        connection_id: str,
        remote_person_uid: str,
        remote_name: str,
        remote_relationship_label: Optional[str] = None,
    ) -> None:
        """Add or refresh one cached remote person."""
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_remote_people_cache (
                    connection_id, remote_person_uid, remote_name,
                    remote_relationship_label, fetched_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(connection_id, remote_person_uid) DO UPDATE SET
                    remote_name = excluded.remote_name,
                    remote_relationship_label = excluded.remote_relationship_label
                """,
                (
                    connection_id,
                    remote_person_uid,
                    remote_name,
                    remote_relationship_label,
                    now_iso(),
                ),
            )

    def list_remote_people(self, connection_id: str) -> list[dict[str, Any]]:
        """List cached remote people in cache insertion order."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT connection_id, remote_person_uid, remote_name,
                       remote_relationship_label, fetched_at
                FROM sync_remote_people_cache
                WHERE connection_id = ?
                ORDER BY id
                """,
                (connection_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Person Link Operations
    # =========================================================================

    def list_person_links(
        self, connection_id: str, statuses: Optional[Iterable[str]] = None
    ) -> list[dict[str, Any]]:
        """List a connection's person links, optionally filtered by status."""
        sql = f"SELECT {LINK_COLUMNS} FROM sync_person_links WHERE connection_id = ?"  # nosec B608
        params: list[Any] = [connection_id]
        if statuses is not None:
            statuses = list(statuses)
            sql += f" AND link_status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        sql += " ORDER BY id"
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def find_active_link_for_remote(
        self, connection_id: str, remote_person_uid: str
    ) -> Optional[dict[str, Any]]:
        """Get the enabled, linked row for a remote person uid."""
        with self.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {LINK_COLUMNS} FROM sync_person_links
                WHERE connection_id = ? AND remote_person_uid = ?
                  AND link_status = 'linked' AND is_enabled = 1
                """,  # nosec B608
                (connection_id, remote_person_uid),
            ).fetchone()
            return dict(row) if row else None

    def is_remote_excluded(self, connection_id: str, remote_person_uid: str) -> bool:
        """True if the remote person has an excluded (do-not-sync) link."""
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM sync_person_links
                WHERE connection_id = ? AND remote_person_uid = ?
                  AND link_status = 'excluded'
                """,
                (connection_id, remote_person_uid),
            ).fetchone()
            return row is not None

    def find_open_link(
        self,
        connection_id: str,
        local_person_id: Optional[str] = None,
        remote_person_uid: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        """Get the non-excluded link on either side, if any."""
        if local_person_id is None and remote_person_uid is None:
            raise ValueError("Need local_person_id or remote_person_uid")
        column, value = (
            ("local_person_id", local_person_id)
            if local_person_id is not None
            else ("remote_person_uid", remote_person_uid)
        )
        with self.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {LINK_COLUMNS} FROM sync_person_links
                WHERE connection_id = ? AND {column} = ?
                  AND link_status != 'excluded'
                """,  # nosec B608 - column is one of two literals above
                (connection_id, value),
            ).fetchone()
            return dict(row) if row else None

    def insert_person_link(
        self,
        connection_id: str,
        local_person_id: Optional[str],
        remote_person_uid: Optional[str],
        link_status: str = "linked",
        is_enabled: bool = True,
    ) -> int:
        """
        Insert a person link.

        Raises:
            sqlite3.IntegrityError: If it would break the one-link-per-side rule

        Returns:
            The new link id
        """
        now = now_iso()
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_person_links (
                    connection_id, local_person_id, remote_person_uid,
                    link_status, is_enabled, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    connection_id,
                    local_person_id,
                    remote_person_uid,
                    link_status,
                    int(is_enabled),
                    now,
                    now,
                ),
            )
            return int(cursor.lastrowid or 0)

    def delete_person_links(
        self,
        connection_id: str,
        local_person_id: Optional[str] = None,
        remote_person_uid: Optional[str] = None,
    ) -> int:
        """
        Delete every link (any status) touching a local or remote person.

        Returns:
            Number of links deleted
        """
        if local_person_id is None and remote_person_uid is None:
            raise ValueError("Need local_person_id or remote_person_uid")

        clauses: list[str] = []
        params: list[Any] = [connection_id]
        if local_person_id is not None:
            clauses.append("local_person_id = ?")
            params.append(local_person_id)
        if remote_person_uid is not None:
            clauses.append("remote_person_uid = ?")
            params.append(remote_person_uid)

        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_person_links WHERE connection_id = ? "  # nosec B608
                f"AND ({' OR '.join(clauses)})",
                params,
            )
            return cursor.rowcount

    def list_links_for_local_person(self, local_person_id: str) -> list[dict[str, Any]]:
        """List links touching a local person across all connections."""
        with self.connection() as conn:
            cursor = conn.execute(
                f"SELECT {LINK_COLUMNS} FROM sync_person_links "  # nosec B608
                "WHERE local_person_id = ? ORDER BY id",
                (local_person_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def reassign_link(self, link_id: int, local_person_id: Optional[str]) -> None:
        """Point an existing link at a different local person."""
        with self.connection() as conn:
            conn.execute(
                "UPDATE sync_person_links SET local_person_id = ?, updated_at = ? "
                "WHERE id = ?",
                (local_person_id, now_iso(), link_id),
            )

    def delete_link_by_id(self, link_id: int) -> None:
        with self.connection() as conn:
            conn.execute("DELETE FROM sync_person_links WHERE id = ?", (link_id,))

    def restore_link(self, link: dict[str, Any]) -> None:
        """
        Re-insert a deleted link from its snapshot (used by merge undo).

        Raises:
            sqlite3.IntegrityError: If a newer link now holds either side
        """
        with self.connection() as conn:
            conn.execute(
                f"""
                INSERT INTO sync_person_links ({LINK_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,  # nosec B608
                (
                    link["id"],
                    link["connection_id"],
                    link["local_person_id"],
                    link["remote_person_uid"],
                    link["link_status"],
                    link["is_enabled"],
                    link["created_at"],
                    now_iso(),
                ),
            )

    # =========================================================================
    # Candidate Operations
    # =========================================================================

    def upsert_candidate(
        self,
        connection_id: str,
        remote_person_uid: str,
        remote_person_name: str,
        local_person_id: Optional[str],
        confidence: float,
        reasons: list[str],
    ) -> None:
        """Insert or refresh the pending candidate for a remote person."""
        now = now_iso()
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_person_candidates (
                    connection_id, remote_person_uid, remote_person_name,
                    local_person_id, confidence, reasons, status,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?)
                ON CONFLICT(connection_id, remote_person_uid) DO UPDATE SET
                    remote_person_name = excluded.remote_person_name,
                    local_person_id = excluded.local_person_id,
                    confidence = excluded.confidence,
                    reasons = excluded.reasons,
                    status = 'pending',
                    updated_at = excluded.updated_at
                """,
                (
                    connection_id,
                    remote_person_uid,
                    remote_person_name,
                    local_person_id,
                    confidence,
                    _dumps(reasons),
                    now,
                    now,
                ),
            )

    def set_candidate_status(
        self, connection_id: str, remote_person_uid: str, status: str
    ) -> int:
        """Mark a remote person's candidate accepted or dismissed."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_person_candidates SET status = ?, updated_at = ?
                WHERE connection_id = ? AND remote_person_uid = ?
                """,
                (status, now_iso(), connection_id, remote_person_uid),
            )
            return cursor.rowcount

    def list_candidates(
        self, connection_id: str, status: Optional[str] = "pending"
    ) -> list[dict[str, Any]]:
        """List candidates, highest confidence first."""
        sql = """
            SELECT connection_id, remote_person_uid, remote_person_name,
                   local_person_id, confidence, reasons, status
            FROM sync_person_candidates WHERE connection_id = ?
        """
        params: list[Any] = [connection_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY confidence DESC, id"
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    # =========================================================================
    # Conflict Operations
    # =========================================================================

    def insert_conflict(
        self,
        connection_id: str,
        user_id: str,
        entity_type: str,
        entity_uid: str,
        conflict_type: str,
        local_payload: dict[str, Any],
        remote_payload: dict[str, Any],
        suggested_resolution: Optional[str] = None,
    ) -> int:
        """Append a conflict to the log. Returns the new conflict id."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_conflicts (
                    connection_id, user_id, entity_type, entity_uid,
                    conflict_type, local_payload, remote_payload,
                    suggested_resolution, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    connection_id,
                    user_id,
                    entity_type,
                    entity_uid,
                    conflict_type,
                    _dumps(local_payload),
                    _dumps(remote_payload),
                    suggested_resolution,
                    now_iso(),
                ),
            )
            return int(cursor.lastrowid or 0)

    def find_open_conflict(
        self,
        connection_id: str,
        entity_type: str,
        entity_uid: str,
        conflict_type: str,
    ) -> Optional[dict[str, Any]]:
        """Get the unresolved conflict of this kind for an entity, if any."""
        with self.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {CONFLICT_COLUMNS} FROM sync_conflicts
                WHERE connection_id = ? AND entity_type = ? AND entity_uid = ?
                  AND conflict_type = ? AND resolved_at IS NULL
                ORDER BY id DESC LIMIT 1
                """,  # nosec B608
                (connection_id, entity_type, entity_uid, conflict_type),
            ).fetchone()
            return dict(row) if row else None

    def refresh_conflict_payload(
        self, conflict_id: int, remote_payload: dict[str, Any]
    ) -> None:
        """Store the newest remote snapshot on an open conflict."""
        with self.connection() as conn:
            conn.execute(
                "UPDATE sync_conflicts SET remote_payload = ? WHERE id = ?",
                (_dumps(remote_payload), conflict_id),
            )

    def get_conflict(self, conflict_id: int) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                f"SELECT {CONFLICT_COLUMNS} FROM sync_conflicts WHERE id = ?",  # nosec B608
                (conflict_id,),
            ).fetchone()
            return dict(row) if row else None

    def list_conflicts(
        self, connection_id: str, unresolved_only: bool = True
    ) -> list[dict[str, Any]]:
        """List a connection's conflicts, newest first."""
        sql = f"SELECT {CONFLICT_COLUMNS} FROM sync_conflicts WHERE connection_id = ?"  # nosec B608
        if unresolved_only:
            sql += " AND resolved_at IS NULL"
        sql += " ORDER BY id DESC"
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(sql, (connection_id,)).fetchall()]

    def resolve_conflict(self, conflict_id: int, resolution: str) -> bool:
        """Mark a conflict resolved. Returns False if missing or already resolved."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_conflicts SET resolution = ?, resolved_at = ?
                WHERE id = ? AND resolved_at IS NULL
                """,
                (resolution, now_iso(), conflict_id),
            )
            return cursor.rowcount > 0

    def resolve_open_conflicts(
        self, connection_id: str, entity_type: str, entity_uid: str, resolution: str
    ) -> int:
        """Resolve every unresolved conflict for an entity. Returns the count."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_conflicts SET resolution = ?, resolved_at = ?
                WHERE connection_id = ? AND entity_type = ? AND entity_uid = ?
                  AND resolved_at IS NULL
                """,
                (resolution, now_iso(), connection_id, entity_type, entity_uid),
            )
            return cursor.rowcount

    # =========================================================================
    # Outbox and Cursor Operations
    # =========================================================================

    def enqueue_outbox(
        self,
        connection_id: str,
        entity_type: str,
        entity_uid: str,
        operation: str,
        payload: dict[str, Any],
    ) -> bool:
        """
        Queue an outbound event.

        Returns:
            True if queued, False if an undelivered entry for the same entity
            is already pending
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO sync_outbox (
                    connection_id, entity_type, entity_uid, operation,
                    payload, occurred_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    connection_id,
                    entity_type,
                    entity_uid,
                    operation,
                    _dumps(payload),
                    now_iso(),
                ),
            )
            return cursor.rowcount > 0

    def list_pending_outbox(
        self, connection_id: str, after_id: int = 0, limit: int = 100
    ) -> list[dict[str, Any]]:
        """List undelivered outbox entries with id > after_id, oldest first."""
        with self.connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT {OUTBOX_COLUMNS} FROM sync_outbox
                WHERE connection_id = ? AND delivered_at IS NULL AND id > ?
                ORDER BY id LIMIT ?
                """,  # nosec B608
                (connection_id, after_id, limit),
            )
            return [dict(row) for row in cursor.fetchall()]

    def count_pending_outbox(self, connection_id: str) -> int:
        with self.connection() as conn:
            result: int = conn.execute(
                "SELECT COUNT(*) FROM sync_outbox "
                "WHERE connection_id = ? AND delivered_at IS NULL",
                (connection_id,),
            ).fetchone()[0]
            return result

    def mark_outbox_delivered(self, entry_ids: list[int]) -> int:
        """Mark outbox entries delivered and count the attempt."""
        if not entry_ids:
            return 0
        placeholders = ", ".join("?" for _ in entry_ids)
        with self.connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE sync_outbox
                SET delivered_at = ?, delivery_attempts = delivery_attempts + 1
                WHERE id IN ({placeholders}) AND delivered_at IS NULL
                """,  # nosec B608
                [now_iso(), *entry_ids],
            )
            return cursor.rowcount

    def acknowledge_outbox(self, connection_id: str, through_id: int) -> int:
        """Mark every pending entry up to through_id delivered."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_outbox
                SET delivered_at = ?, delivery_attempts = delivery_attempts + 1
                WHERE connection_id = ? AND id <= ? AND delivered_at IS NULL
                """,
                (now_iso(), connection_id, through_id),
            )
            return cursor.rowcount

    def record_outbox_attempt(self, entry_ids: list[int]) -> None:
        """Count a failed delivery attempt."""
        if not entry_ids:
            return
        placeholders = ", ".join("?" for _ in entry_ids)
        with self.connection() as conn:
            conn.execute(
                "UPDATE sync_outbox SET delivery_attempts = delivery_attempts + 1 "  # nosec B608
                f"WHERE id IN ({placeholders})",
                entry_ids,
            )

    def get_cursor(self, connection_id: str) -> dict[str, Any]:
        """Get the push/pull cursor for a connection (zeros if none yet)."""
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT connection_id, last_pulled_outbox_id, last_pushed_outbox_id,
                       updated_at
                FROM sync_cursors WHERE connection_id = ?
                """,
                (connection_id,),
            ).fetchone()
            if row:
                return dict(row)
            return {
                "connection_id": connection_id,
                "last_pulled_outbox_id": 0,
                "last_pushed_outbox_id": 0,
                "updated_at": None,
            }

    def update_cursor(
        self,
        connection_id: str,
        last_pulled_outbox_id: Optional[int] = None,
        last_pushed_outbox_id: Optional[int] = None,
    ) -> None:
        """Advance one or both cursors. Cursors never move backwards."""
        current = self.get_cursor(connection_id)
        pulled = max(current["last_pulled_outbox_id"], last_pulled_outbox_id or 0)
        pushed = max(current["last_pushed_outbox_id"], last_pushed_outbox_id or 0)
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_cursors (
                    connection_id, last_pulled_outbox_id, last_pushed_outbox_id,
                    updated_at
                ) VALUES (?, ?, ?, ?)
                ON CONFLICT(connection_id) DO UPDATE SET
                    last_pulled_outbox_id = excluded.last_pulled_outbox_id,
                    last_pushed_outbox_id = excluded.last_pushed_outbox_id,
                    updated_at = excluded.updated_at
                """,
                (connection_id, pulled, pushed, now_iso()),
            )

    # =========================================================================
    # Merge Log Operations
    # =========================================================================

    def insert_merge_log(
        self,
        user_id: str,
        kept_person_id: str,
        merged_person_id: str,
        merged_person_snapshot: dict[str, Any],
        merged_links_snapshot: list[dict[str, Any]],
        merged_moments_snapshot: list[dict[str, Any]],
    ) -> int:
        """Record a merge with enough state to undo it."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_merge_log (
                    user_id, kept_person_id, merged_person_id,
                    merged_person_snapshot, merged_links_snapshot,
                    merged_moments_snapshot, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    kept_person_id,
                    merged_person_id,
                    _dumps(merged_person_snapshot),
                    _dumps(merged_links_snapshot),
                    _dumps(merged_moments_snapshot),
                    now_iso(),
                ),
            )
            return int(cursor.lastrowid or 0)

    def get_merge_log(self, log_id: int) -> Optional[dict[str, Any]]:
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, kept_person_id, merged_person_id,
                       merged_person_snapshot, merged_links_snapshot,
                       merged_moments_snapshot, undone_at, created_at
                FROM sync_merge_log WHERE id = ?
                """,
                (log_id,),
            ).fetchone()
            if not row:
                return None
            entry = dict(row)
            for key in (
                "merged_person_snapshot",
                "merged_links_snapshot",
                "merged_moments_snapshot",
            ):
                entry[key] = json.loads(entry[key])
            return entry

    def list_merge_logs(self, user_id: str) -> list[dict[str, Any]]:
        """List merges that have not been undone, newest first."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT id, kept_person_id, merged_person_id, created_at
                FROM sync_merge_log
                WHERE user_id = ? AND undone_at IS NULL
                ORDER BY id DESC
                """,
                (user_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def mark_merge_undone(self, log_id: int) -> bool:
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE sync_merge_log SET undone_at = ? "
                "WHERE id = ? AND undone_at IS NULL",
                (now_iso(), log_id),
            )
            return cursor.rowcount > 0
