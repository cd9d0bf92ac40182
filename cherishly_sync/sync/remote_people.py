"""
Read-through cache of the peer's people.

The cache is derived data: it is refreshed from the peer when asked to,
when empty, or when older than the configured TTL, and every refresh
replaces the connection's rows wholesale.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from cherishly_sync.api.peer_client import PeerClient
from cherishly_sync.storage.db import SyncDatabase
from cherishly_sync.sync.handshake import get_active_connection
from cherishly_sync.sync.models import Connection, RemotePerson
from cherishly_sync.utils.timestamps import format_timestamp, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 300  # seconds


@dataclass
class RemotePeopleListing:
    """Cached remote people and when they were fetched."""

    people: list[RemotePerson] = field(default_factory=list)
    fetched_at: Optional[datetime] = None
    refreshed: bool = False

    @property
    def last_fetched(self) -> str:
        if self.fetched_at is None:
            return "never"
        return self.fetched_at.strftime("%Y-%m-%d %H:%M:%S UTC")


class RemotePeopleCache:
    """
    Serves the peer's people list from the local cache.

    Usage:
        cache = RemotePeopleCache(db, peer_factory)
        listing = cache.list(connection_id)
        listing = cache.list(connection_id, force_refresh=True)
    """

    def __init__(
        self,
        database: SyncDatabase,
        peer_factory: Callable[[Connection], PeerClient],
        ttl_seconds: int = DEFAULT_CACHE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.peer_factory = peer_factory
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def _cached(self, connection_id: str) -> list[RemotePerson]:
        return [
            RemotePerson.from_row(r) for r in self.database.list_remote_people(connection_id)
        ]

    def _is_stale(self, people: list[RemotePerson]) -> bool:
        if not people:
            return True
        fetched = [p.fetched_at for p in people if p.fetched_at is not None]
        if not fetched:
            return True
        return self.clock() - min(fetched) > self.ttl

    def list(self, connection_id: str, force_refresh: bool = False) -> RemotePeopleListing:
        """
        List the peer's people, refreshing the cache when needed.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
            ConnectionRevokedError: If the connection was revoked
            PeerAPIError: If a needed refresh fails
        """
        connection = get_active_connection(self.database, connection_id)
        people = self._cached(connection_id)

        if not force_refresh and not self._is_stale(people):
            fetched_at = min(p.fetched_at for p in people if p.fetched_at is not None)
            return RemotePeopleListing(people=people, fetched_at=fetched_at)

        return self.refresh(connection)

    def refresh(self, connection: Connection) -> RemotePeopleListing:
        """Fetch the peer's people and replace the cached rows."""
        peer_people = self.peer_factory(connection).list_people()
        fetched_at = self.clock()

        count = self.database.replace_remote_people(
            connection.id,
            (
                {
                    "remote_person_uid": p.person_uid,
                    "remote_name": p.name,
                    "remote_relationship_label": p.relationship_label,
                }
                for p in peer_people
            ),
            format_timestamp(fetched_at) or "",
        )
        logger.info(f"Refreshed remote people for {connection.id}: {count} cached")
        return RemotePeopleListing(
            people=self._cached(connection.id), fetched_at=fetched_at, refreshed=True
        )
