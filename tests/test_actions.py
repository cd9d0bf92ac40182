"""
Unit tests for the server side of mapping activation.

Tests each action against an in-memory database, with the peer client
mocked for create_remote.
"""

from unittest.mock import MagicMock

import pytest

from cherishly_sync.api.peer_client import PeerAPIError
from cherishly_sync.sync.actions import MappingActionHandler
from cherishly_sync.sync.errors import ConnectionRevokedError
from cherishly_sync.sync.wire import (
    ActivationRequest,
    CreateLocalAction,
    CreateRemoteAction,
    ExcludeAction,
    LinkAction,
)


@pytest.fixture
def peer():
    client = MagicMock()
    client.create_person.return_value = "remote-new"
    return client


@pytest.fixture
def handler(db, peer):
    return MappingActionHandler(db, peer_factory=lambda connection: peer)


def open_links(db, connection_id):
    return [
        (row["local_person_id"], row["remote_person_uid"], row["link_status"])
        for row in db.list_person_links(connection_id)
    ]


class TestLinkAction:
    """Tests for link actions."""

    def test_link_replaces_earlier_links(self, db, connection, handler, add_person):
        alex = add_person("Alex")
        sam = add_person("Sam")
        db.insert_person_link(connection.id, sam, "r1")
        db.insert_person_link(connection.id, alex, "r2")

        response = handler.apply(
            ActivationRequest(
                connection_id=connection.id,
                actions=[LinkAction(local_person_id=alex, remote_person_uid="r1")],
            )
        )

        assert response.succeeded == 1
        assert open_links(db, connection.id) == [(alex, "r1", "linked")]

    def test_link_accepts_candidate(self, db, connection, handler, add_person):
        alex = add_person("Alex")
        db.upsert_candidate(connection.id, "r1", "Alex", alex, 0.95, ["Exact name match"])

        handler.link(connection, alex, "r1")

        assert db.list_candidates(connection.id) == []
        assert db.list_candidates(connection.id, status="accepted")[0]["remote_person_uid"] == "r1"

    def test_link_resolves_open_conflicts_for_remote(self, db, connection, handler, add_person):
        alex = add_person("Alex")
        for uid in ("r1", "r2"):
            db.insert_conflict(
                connection.id, connection.user_id, "person", uid, "duplicate_detected", {}, {}
            )

        handler.link(connection, alex, "r1")

        open_conflicts = db.list_conflicts(connection.id)
        assert [c["entity_uid"] for c in open_conflicts] == ["r2"]
        closed = [
            c
            for c in db.list_conflicts(connection.id, unresolved_only=False)
            if c["entity_uid"] == "r1"
        ]
        assert closed[0]["resolution"] == "linked_manually"
        assert closed[0]["resolved_at"] is not None

    def test_link_is_idempotent(self, db, connection, handler, add_person):
        alex = add_person("Alex")
        handler.link(connection, alex, "r1")
        handler.link(connection, alex, "r1")
        assert open_links(db, connection.id) == [(alex, "r1", "linked")]

    def test_unknown_local_person_fails_that_action_only(self, db, connection, handler, add_person):
        alex = add_person("Alex")
        response = handler.apply(
            ActivationRequest(
                connection_id=connection.id,
                actions=[
                    LinkAction(local_person_id="missing", remote_person_uid="r1"),
                    LinkAction(local_person_id=alex, remote_person_uid="r2"),
                ],
            )
        )
        assert response.succeeded == 1
        assert response.failed == 1
        assert "Unknown local person" in response.errors[0]


class TestCreateActions:
    """Tests for create_remote and create_local."""

    def test_create_remote_calls_peer_and_links(self, db, connection, handler, peer, add_person):
        alex = add_person("Alex", person_uid="uid-alex", relationship_type="friend")

        handler.create_remote(connection, alex)

        peer.create_person.assert_called_once_with(
            person_uid="uid-alex", name="Alex", relationship_label="friend"
        )
        assert open_links(db, connection.id) == [(alex, "remote-new", "linked")]
        cached = db.list_remote_people(connection.id)
        assert cached[0]["remote_person_uid"] == "remote-new"

    def test_create_remote_peer_failure_reported(self, db, connection, handler, peer, add_person):
        alex = add_person("Alex")
        peer.create_person.side_effect = PeerAPIError("down", status_code=503)

        response = handler.apply(
            ActivationRequest(
                connection_id=connection.id,
                actions=[CreateRemoteAction(local_person_id=alex)],
            )
        )

        assert response.failed == 1
        assert open_links(db, connection.id) == []

    def test_create_local_shares_remote_uid(self, db, connection, handler):
        local_id = handler.create_local(connection, "r-jordan", "Jordan", "sibling")

        partner = db.get_partner(local_id)
        assert partner["person_uid"] == "r-jordan"
        assert partner["relationship_type"] == "sibling"
        assert open_links(db, connection.id) == [(local_id, "r-jordan", "linked")]

    def test_create_local_uses_fresh_uid_when_taken(self, db, connection, handler, add_person):
        add_person("Someone", person_uid="r-jordan")

        local_id = handler.create_local(connection, "r-jordan", "Jordan")

        assert db.get_partner(local_id)["person_uid"] != "r-jordan"

    def test_create_local_requires_name(self, db, connection, handler):
        response = handler.apply(
            ActivationRequest(
                connection_id=connection.id,
                actions=[CreateLocalAction(remote_person_uid="r1", remote_name="  ")],
            )
        )
        assert response.failed == 1


class TestExcludeActions:
    """Tests for exclusions."""

    def test_exclude_remote_drops_link(self, db, connection, handler, add_person):
        alex = add_person("Alex")
        handler.link(connection, alex, "r1")

        handler.exclude_remote(connection, "r1")

        assert open_links(db, connection.id) == [(None, "r1", "excluded")]
        assert db.is_remote_excluded(connection.id, "r1")

    def test_exclude_local(self, db, connection, handler, add_person):
        alex = add_person("Alex")
        handler.link(connection, alex, "r1")

        handler.apply(
            ActivationRequest(
                connection_id=connection.id,
                actions=[ExcludeAction(local_person_id=alex)],
            )
        )

        assert open_links(db, connection.id) == [(alex, None, "excluded")]


class TestConnectionChecks:
    """Tests for connection preconditions."""

    def test_revoked_connection_rejected(self, db, connection, handler):
        db.update_connection_status(connection.id, "revoked")
        with pytest.raises(ConnectionRevokedError):
            handler.apply(ActivationRequest(connection_id=connection.id, actions=[]))
