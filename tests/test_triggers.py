"""
Unit tests for backfill, run and outbox draining.

The peer is a MagicMock; everything else runs against an in-memory database.
"""

import json
from unittest.mock import MagicMock

import pytest

from cherishly_sync.api.peer_client import PeerAPIError
from cherishly_sync.sync.errors import ConnectionRevokedError
from cherishly_sync.sync.triggers import (
    UP_TO_DATE_MESSAGE,
    SyncTriggers,
    drain_outbox,
)
from cherishly_sync.sync.wire import ConflictReport, PulledEvent, PushResponse

NEW = "2030-01-01T00:00:00.000000+00:00"


@pytest.fixture
def peer():
    client = MagicMock()
    client.push_events.return_value = PushResponse(applied=0)
    client.pull_events.return_value = []
    return client


@pytest.fixture
def triggers(db, peer):
    return SyncTriggers(db, peer_factory=lambda connection: peer)


@pytest.fixture
def linked_people(db, connection, add_person, add_moment):
    """Alex is linked with one moment; Sam is unlinked with one moment."""
    alex = add_person("Alex", person_uid="uid-alex")
    sam = add_person("Sam", person_uid="uid-sam")
    db.insert_person_link(connection.id, alex, "r-alex")
    add_moment([alex, sam], moment_uid="m-shared")
    add_moment([sam], moment_uid="m-sam")
    return alex, sam


class TestBackfill:
    """Tests for backfill."""

    def test_queues_linked_people_and_their_moments(self, db, connection, triggers, linked_people):
        result = triggers.backfill(connection.id)

        assert result.people_queued == 1
        assert result.moments_queued == 1
        entries = db.list_pending_outbox(connection.id)
        assert [(e["entity_type"], e["entity_uid"]) for e in entries] == [
            ("person", "uid-alex"),
            ("moment", "m-shared"),
        ]
        payload = json.loads(entries[1]["payload"])
        assert payload["person_uids"] == ["uid-alex"]

    def test_second_backfill_queues_nothing(self, connection, triggers, linked_people):
        triggers.backfill(connection.id)
        result = triggers.backfill(connection.id)

        assert result.total_queued == 0
        assert result.already_pending == 2
        assert result.message == "Nothing new to queue"

    def test_disabled_links_skipped(self, db, connection, triggers, add_person):
        alex = add_person("Alex")
        db.insert_person_link(connection.id, alex, "r-alex", link_status="conflict", is_enabled=False)

        assert triggers.backfill(connection.id).total_queued == 0

    def test_archived_people_skipped(self, db, connection, triggers, add_person):
        alex = add_person("Alex", archived=True)
        db.insert_person_link(connection.id, alex, "r-alex")

        assert triggers.backfill(connection.id).people_queued == 0

    def test_revoked_connection_rejected(self, db, connection, triggers):
        db.update_connection_status(connection.id, "revoked")
        with pytest.raises(ConnectionRevokedError):
            triggers.backfill(connection.id)


class TestRun:
    """Tests for run ("sync now")."""

    def test_nothing_to_do(self, connection, triggers, peer):
        result = triggers.run(connection.id)

        assert result.pushed == 0
        assert result.message == UP_TO_DATE_MESSAGE
        peer.push_events.assert_not_called()
        peer.pull_events.assert_called_once_with(after_id=0, limit=200)

    def test_pushes_outbox_and_advances_cursor(self, db, connection, triggers, peer, linked_people):
        triggers.backfill(connection.id)
        peer.push_events.return_value = PushResponse(
            applied=1,
            conflicts=[ConflictReport(entity_uid="m-shared", entity_type="moment", reason="timestamp")],
        )

        result = triggers.run(connection.id)

        assert result.pushed == 2
        assert result.remote_conflicts[0].entity_uid == "m-shared"
        assert db.count_pending_outbox(connection.id) == 0
        assert db.get_cursor(connection.id)["last_pushed_outbox_id"] > 0

    def test_push_failure_keeps_entries_pending(self, db, connection, triggers, peer, linked_people):
        triggers.backfill(connection.id)
        peer.push_events.side_effect = PeerAPIError("down", status_code=503)

        with pytest.raises(PeerAPIError):
            triggers.run(connection.id)

        entries = db.list_pending_outbox(connection.id)
        assert len(entries) == 2
        assert all(e["delivery_attempts"] == 1 for e in entries)

    def test_pulled_events_applied_and_cursor_saved(self, db, connection, triggers, peer, add_person):
        alex = add_person("Alex", updated_at="2024-01-01T00:00:00.000000+00:00")
        db.insert_person_link(connection.id, alex, "r-alex")
        peer.pull_events.return_value = [
            PulledEvent(
                id=7,
                entity_type="person",
                entity_uid="r-alex",
                operation="upsert",
                payload={"person_uid": "r-alex", "name": "Alexandra", "updated_at": NEW},
            ),
            PulledEvent(
                id=8,
                entity_type="person",
                entity_uid="r-nobody",
                operation="upsert",
                payload={"person_uid": "r-nobody", "name": "Jordan", "updated_at": NEW},
            ),
        ]

        result = triggers.run(connection.id)

        assert result.pulled == 2
        assert result.applied == 1
        assert result.conflicts[0].reason == "missing_mapping"
        assert db.get_partner(alex)["name"] == "Alexandra"
        assert db.get_cursor(connection.id)["last_pulled_outbox_id"] == 8
        assert result.message == "Pulled 2 event(s), applied 1, 1 conflict(s)"

    def test_pull_resumes_from_cursor(self, db, connection, triggers, peer):
        db.update_cursor(connection.id, last_pulled_outbox_id=41)
        triggers.run(connection.id)
        peer.pull_events.assert_called_once_with(after_id=41, limit=200)

    def test_full_pull_page_fetches_again(self, db, connection, peer):
        event = PulledEvent(id=1, entity_type="note", entity_uid="n-1", operation="upsert")
        peer.pull_events.side_effect = [[event], []]
        triggers = SyncTriggers(db, peer_factory=lambda c: peer, pull_batch_size=1)

        result = triggers.run(connection.id)

        assert result.pulled == 1
        assert peer.pull_events.call_count == 2
        peer.pull_events.assert_called_with(after_id=1, limit=1)


class TestDrainOutbox:
    """Tests for serving pull requests from the outbox."""

    def test_retried_pull_gets_same_events(self, db, connection):
        db.enqueue_outbox(connection.id, "person", "uid-alex", "upsert", {"name": "Alex"})

        first = drain_outbox(db, connection.id)
        retry = drain_outbox(db, connection.id)

        assert len(first) == 1
        assert first[0].payload == {"name": "Alex"}
        assert retry == first
        assert db.count_pending_outbox(connection.id) == 1

    def test_cursor_acknowledges_earlier_entries(self, db, connection):
        db.enqueue_outbox(connection.id, "person", "uid-alex", "upsert", {"name": "Alex"})
        served = drain_outbox(db, connection.id)

        assert drain_outbox(db, connection.id, after_id=served[0].id) == []
        assert db.count_pending_outbox(connection.id) == 0

    def test_drain_respects_after_id_and_limit(self, db, connection):
        for uid in ("a", "b", "c"):
            db.enqueue_outbox(connection.id, "person", uid, "upsert", {})
        first = db.list_pending_outbox(connection.id)[0]["id"]

        events = drain_outbox(db, connection.id, after_id=first, limit=1)

        assert [e.entity_uid for e in events] == ["b"]
