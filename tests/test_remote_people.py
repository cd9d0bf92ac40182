"""
Unit tests for the remote people cache.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from cherishly_sync.api.peer_client import PeerAPIError
from cherishly_sync.sync.remote_people import RemotePeopleCache, RemotePeopleListing
from cherishly_sync.sync.wire import PeerPerson


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def peer():
    client = MagicMock()
    client.list_people.return_value = [
        PeerPerson(person_uid="r1", name="Alex", relationship_label="friend"),
        PeerPerson(person_uid="r2", name="Jordan"),
    ]
    return client


@pytest.fixture
def cache(db, peer, clock):
    return RemotePeopleCache(db, peer_factory=lambda c: peer, ttl_seconds=300, clock=clock)


class TestRemotePeopleCache:
    """Tests for cache refresh rules."""

    def test_empty_cache_fetches(self, connection, cache, peer):
        listing = cache.list(connection.id)

        assert listing.refreshed
        assert [p.remote_person_uid for p in listing.people] == ["r1", "r2"]
        assert listing.people[0].remote_relationship_label == "friend"
        assert listing.last_fetched == "2024-05-01 12:00:00 UTC"

    def test_fresh_cache_served_without_fetch(self, connection, cache, peer, clock):
        cache.list(connection.id)
        clock.now += timedelta(seconds=60)

        listing = cache.list(connection.id)

        assert not listing.refreshed
        assert peer.list_people.call_count == 1

    def test_stale_cache_refetched(self, connection, cache, peer, clock):
        cache.list(connection.id)
        clock.now += timedelta(seconds=301)

        assert cache.list(connection.id).refreshed
        assert peer.list_people.call_count == 2

    def test_force_refresh_replaces_rows(self, connection, cache, peer):
        cache.list(connection.id)
        peer.list_people.return_value = [PeerPerson(person_uid="r3", name="Sam")]

        listing = cache.list(connection.id, force_refresh=True)

        assert [p.remote_person_uid for p in listing.people] == ["r3"]

    def test_refresh_failure_propagates(self, connection, cache, peer):
        peer.list_people.side_effect = PeerAPIError("down")
        with pytest.raises(PeerAPIError):
            cache.list(connection.id)

    def test_never_fetched_label(self):
        assert RemotePeopleListing().last_fetched == "never"
