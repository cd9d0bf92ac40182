"""
Unit tests for the storage module.

Tests the SyncDatabase class for connections, pairing codes, person links,
the outbox, cursors and transactions.
"""

import sqlite3

import pytest

from cherishly_sync.storage.db import SyncDatabase

USER_ID = "user-1"


class TestSyncDatabaseInitialization:
    """Tests for database initialization."""

    def test_create_in_memory_database(self):
        """Test creating an in-memory database."""
        db = SyncDatabase(":memory:")
        assert db.db_path == ":memory:"

    def test_initialize_creates_tables(self, db):
        """Test that initialize creates the sync tables."""
        with db.connection() as conn:
            names = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        for table in (
            "sync_connections",
            "sync_pairing_codes",
            "sync_person_links",
            "sync_person_candidates",
            "sync_conflicts",
            "sync_outbox",
            "sync_cursors",
            "sync_merge_log",
            "partners",
            "moments",
        ):
            assert table in names

    def test_initialize_is_idempotent(self, db):
        """Test that calling initialize twice is safe."""
        db.initialize()

    def test_file_database_persists(self, tmp_path):
        """Test that a file database keeps data between instances."""
        path = str(tmp_path / "sync.db")
        first = SyncDatabase(path)
        first.initialize()
        first.insert_connection("c1", USER_ID, "temerio", "hash")

        second = SyncDatabase(path)
        assert second.get_connection("c1")["remote_app"] == "temerio"


class TestConnectionOperations:
    """Tests for connection rows."""

    def test_insert_and_get(self, db):
        db.insert_connection("c1", USER_ID, "temerio", "hash", remote_user_id="r-user")
        row = db.get_connection("c1")
        assert row["status"] == "active"
        assert row["remote_user_id"] == "r-user"

    def test_get_missing_returns_none(self, db):
        assert db.get_connection("missing") is None

    def test_status_update_reports_change(self, db):
        db.insert_connection("c1", USER_ID, "temerio", "hash")
        assert db.update_connection_status("c1", "revoked") is True
        assert db.update_connection_status("c1", "revoked") is False

    def test_invalid_status_rejected(self, db):
        db.insert_connection("c1", USER_ID, "temerio", "hash")
        with pytest.raises(sqlite3.IntegrityError):
            db.update_connection_status("c1", "paused")

    def test_list_filters(self, db):
        db.insert_connection("c1", USER_ID, "temerio", "hash")
        db.insert_connection("c2", "other", "temerio", "hash")
        db.update_connection_status("c1", "revoked")

        assert [r["id"] for r in db.list_connections(user_id=USER_ID)] == ["c1"]
        assert db.list_connections(user_id=USER_ID, status="active") == []


class TestPairingCodes:
    """Tests for pairing code storage."""

    def test_consume_once(self, db):
        db.insert_pairing_code("ABC234", USER_ID, "2024-05-01T12:10:00.000000+00:00")
        now = "2024-05-01T12:00:00.000000+00:00"

        assert db.consume_pairing_code("ABC234", now)["user_id"] == USER_ID
        assert db.consume_pairing_code("ABC234", now) is None

    def test_expired_code_not_consumed(self, db):
        db.insert_pairing_code("ABC234", USER_ID, "2024-05-01T12:10:00.000000+00:00")
        assert db.consume_pairing_code("ABC234", "2024-05-01T12:10:00.000000+00:00") is None

    def test_invalidate_keeps_consumed_codes(self, db):
        db.insert_pairing_code("AAAAAA", USER_ID, "2099-01-01T00:00:00.000000+00:00")
        db.insert_pairing_code("BBBBBB", USER_ID, "2099-01-01T00:00:00.000000+00:00")
        db.consume_pairing_code("AAAAAA", "2024-01-01T00:00:00.000000+00:00")

        assert db.invalidate_pairing_codes(USER_ID) == 1


class TestPersonLinks:
    """Tests for the one-link-per-side rule."""

    def test_second_link_for_local_rejected(self, db, connection, add_person):
        alex = add_person("Alex")
        db.insert_person_link(connection.id, alex, "r1")
        with pytest.raises(sqlite3.IntegrityError):
            db.insert_person_link(connection.id, alex, "r2")

    def test_second_link_for_remote_rejected(self, db, connection, add_person):
        alex = add_person("Alex")
        sam = add_person("Sam")
        db.insert_person_link(connection.id, alex, "r1")
        with pytest.raises(sqlite3.IntegrityError):
            db.insert_person_link(connection.id, sam, "r1")

    def test_link_needs_one_side(self, db, connection):
        with pytest.raises(sqlite3.IntegrityError):
            db.insert_person_link(connection.id, None, None)

    def test_remote_exclusion_is_unique(self, db, connection):
        db.insert_person_link(connection.id, None, "r1", link_status="excluded")
        with pytest.raises(sqlite3.IntegrityError):
            db.insert_person_link(connection.id, None, "r1", link_status="excluded")

    def test_active_link_lookup_ignores_disabled(self, db, connection, add_person):
        alex = add_person("Alex")
        db.insert_person_link(connection.id, alex, "r1", link_status="conflict", is_enabled=False)

        assert db.find_active_link_for_remote(connection.id, "r1") is None
        assert db.find_open_link(connection.id, remote_person_uid="r1")["local_person_id"] == alex

    def test_find_open_link_needs_a_side(self, db, connection):
        with pytest.raises(ValueError):
            db.find_open_link(connection.id)

    def test_delete_touching_either_side(self, db, connection, add_person):
        alex = add_person("Alex")
        sam = add_person("Sam")
        db.insert_person_link(connection.id, alex, "r1")
        db.insert_person_link(connection.id, sam, "r2")

        deleted = db.delete_person_links(connection.id, local_person_id=alex, remote_person_uid="r2")

        assert deleted == 2
        assert db.list_person_links(connection.id) == []


class TestPartnersAndMoments:
    """Tests for the local people and moment tables."""

    def test_update_partner_rejects_unknown_fields(self, db, add_person):
        alex = add_person("Alex")
        with pytest.raises(ValueError):
            db.update_partner(alex, person_uid="other")

    def test_archived_people_hidden_by_default(self, db, add_person):
        add_person("Alex")
        add_person("Old", archived=True)

        assert [p["name"] for p in db.list_partners(USER_ID)] == ["Alex"]
        assert len(db.list_partners(USER_ID, include_archived=True)) == 2

    def test_moment_json_columns_serialized(self, db, add_person, add_moment):
        alex = add_person("Alex")
        uid = add_moment([alex])
        db.update_moment(uid, partner_ids=[alex, "p-2"])
        assert db.get_moment_by_uid(uid)["partner_ids"] == f'["{alex}", "p-2"]'

    def test_moment_lookup_and_update_scoped_to_user(self, db, add_person, add_moment):
        sam = add_person("Sam", user_id="user-2")
        uid = add_moment([sam], title="Private", user_id="user-2")

        assert db.get_moment_by_uid(uid, USER_ID) is None
        assert db.get_moment_by_uid(uid, "user-2")["title"] == "Private"
        assert not db.update_moment(uid, user_id=USER_ID, title="Changed")
        assert db.get_moment_by_uid(uid)["title"] == "Private"

    def test_deleted_moments_hidden_by_default(self, db, add_person, add_moment):
        alex = add_person("Alex")
        add_moment([alex], deleted_at="2024-01-01T00:00:00.000000+00:00")
        assert db.list_moments(USER_ID) == []
        assert len(db.list_moments(USER_ID, include_deleted=True)) == 1


class TestOutboxAndCursors:
    """Tests for the outbox and sync cursors."""

    def test_pending_entry_not_duplicated(self, db, connection):
        assert db.enqueue_outbox(connection.id, "person", "u1", "upsert", {}) is True
        assert db.enqueue_outbox(connection.id, "person", "u1", "upsert", {}) is False
        assert db.count_pending_outbox(connection.id) == 1

    def test_entity_requeued_after_delivery(self, db, connection):
        db.enqueue_outbox(connection.id, "person", "u1", "upsert", {})
        entry = db.list_pending_outbox(connection.id)[0]
        db.mark_outbox_delivered([entry["id"]])

        assert db.enqueue_outbox(connection.id, "person", "u1", "upsert", {}) is True

    def test_failed_attempt_counted(self, db, connection):
        db.enqueue_outbox(connection.id, "person", "u1", "upsert", {})
        entry_id = db.list_pending_outbox(connection.id)[0]["id"]
        db.record_outbox_attempt([entry_id])
        assert db.list_pending_outbox(connection.id)[0]["delivery_attempts"] == 1

    def test_cursor_defaults_to_zero(self, db, connection):
        cursor = db.get_cursor(connection.id)
        assert cursor["last_pulled_outbox_id"] == 0
        assert cursor["last_pushed_outbox_id"] == 0

    def test_cursor_never_moves_backwards(self, db, connection):
        db.update_cursor(connection.id, last_pulled_outbox_id=10)
        db.update_cursor(connection.id, last_pulled_outbox_id=5, last_pushed_outbox_id=3)

        cursor = db.get_cursor(connection.id)
        assert cursor["last_pulled_outbox_id"] == 10
        assert cursor["last_pushed_outbox_id"] == 3


class TestTransactions:
    """Tests for transaction()."""

    def test_rollback_on_error(self, db, connection, add_person):
        alex = add_person("Alex")
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.insert_person_link(connection.id, alex, "r1")
                raise RuntimeError("boom")
        assert db.list_person_links(connection.id) == []

    def test_nested_transaction_joins_outer(self, db, connection, add_person):
        alex = add_person("Alex")
        with pytest.raises(RuntimeError):
            with db.transaction():
                with db.transaction():
                    db.insert_person_link(connection.id, alex, "r1")
                raise RuntimeError("boom")
        assert db.list_person_links(connection.id) == []

    def test_commit_on_success(self, db, connection, add_person):
        alex = add_person("Alex")
        with db.transaction():
            db.insert_person_link(connection.id, alex, "r1")
        assert len(db.list_person_links(connection.id)) == 1
