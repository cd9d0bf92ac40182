"""
User-triggered sync operations: backfill and run ("sync now").

Backfill queues existing linked people and their moments in the outbox.
Run pushes the outbox to the peer, pulls the peer's pending events and
applies them through the push receiver.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Optional

from cherishly_sync.api.peer_client import PeerAPIError, PeerClient
from cherishly_sync.storage.db import SyncDatabase
from cherishly_sync.sync.handshake import get_active_connection
from cherishly_sync.sync.models import (
    Connection,
    EntityType,
    LinkStatus,
    LocalPerson,
    Moment,
    Operation,
    OutboxEntry,
    PersonLink,
)
from cherishly_sync.sync.payloads import serialize_moment, serialize_person
from cherishly_sync.sync.receiver import PushReceiver
from cherishly_sync.sync.wire import ConflictReport, PulledEvent, SyncEvent

logger = logging.getLogger(__name__)

UP_TO_DATE_MESSAGE = "Already up to date"

DEFAULT_PUSH_BATCH_SIZE = 100
DEFAULT_PULL_BATCH_SIZE = 200

__all__ = [
    "BackfillResult",
    "RunResult",
    "SyncTriggers",
    "drain_outbox",
    "serialize_moment",
    "serialize_person",
]


@dataclass
class BackfillResult:
    """Counts reported by a backfill."""

    people_queued: int = 0
    moments_queued: int = 0
    already_pending: int = 0

    @property
    def total_queued(self) -> int:
        return self.people_queued + self.moments_queued

    @property
    def message(self) -> str:
        if self.total_queued == 0:
            return "Nothing new to queue"
        return (
            f"Queued {self.people_queued} person(s) and "
            f"{self.moments_queued} moment(s)"
        )


@dataclass
class RunResult:
    """Counts reported by a sync run."""

    pushed: int = 0
    pulled: int = 0
    applied: int = 0
    conflicts: list[ConflictReport] = field(default_factory=list)
    remote_conflicts: list[ConflictReport] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.pulled == 0:
            return UP_TO_DATE_MESSAGE
        return (
            f"Pulled {self.pulled} event(s), applied {self.applied}, "
            f"{len(self.conflicts)} conflict(s)"
        )


def _to_sync_event(entry: OutboxEntry) -> SyncEvent:
    return SyncEvent(
        entity_type=entry.entity_type,
        entity_uid=entry.entity_uid,
        operation=entry.operation,
        payload=entry.payload,
    )


def drain_outbox(
    database: SyncDatabase, connection_id: str, after_id: int = 0, limit: int = 200
) -> list[PulledEvent]:
    """
    Hand pending outbox entries to a pulling peer.

    The peer's after_id is its cursor, so it acknowledges every entry up to
    that id; those are marked delivered. Entries served now stay pending
    until a later pull moves past them, which makes a retried pull with the
    same cursor return the same events.

    Args:
        database: Sync database
        connection_id: Connection whose outbox is read
        after_id: Only entries with a larger id are returned
        limit: Maximum entries to return
    """
    if after_id > 0:
        acknowledged = database.acknowledge_outbox(connection_id, after_id)
        if acknowledged:
            logger.info(f"Pulling peer acknowledged {acknowledged} outbox event(s)")
    entries = [
        OutboxEntry.from_row(r)
        for r in database.list_pending_outbox(connection_id, after_id=after_id, limit=limit)
    ]
    if entries:
        logger.info(f"Serving {len(entries)} outbox event(s) to pulling peer")
    return [
        PulledEvent(id=e.id, **_to_sync_event(e).model_dump()) for e in entries
    ]


class SyncTriggers:
    """
    Backfill and run for one database.

    Usage:
        triggers = SyncTriggers(db, peer_factory)
        result = triggers.backfill(connection_id)
        result = triggers.run(connection_id)
        print(result.message)
    """

    def __init__(
        self,
        database: SyncDatabase,
        peer_factory: Callable[[Connection], PeerClient],
        receiver: Optional[PushReceiver] = None,
        push_batch_size: int = DEFAULT_PUSH_BATCH_SIZE,
        pull_batch_size: int = DEFAULT_PULL_BATCH_SIZE,
    ):
        """
        Initialize the triggers.

        Args:
            database: Sync database
            peer_factory: Builds a peer client for a connection
            receiver: Receiver used to apply pulled events
            push_batch_size: Outbox entries per push request
            pull_batch_size: Events requested per pull
        """
        self.database = database
        self.peer_factory = peer_factory
        self.receiver = receiver or PushReceiver(database)
        self.push_batch_size = push_batch_size
        self.pull_batch_size = pull_batch_size

    def _linked_people(self, connection_id: str) -> dict[str, LocalPerson]:
        """Local people with an enabled link, keyed by id."""
        people: dict[str, LocalPerson] = {}
        rows = self.database.list_person_links(connection_id, statuses=[LinkStatus.LINKED.value])
        for link in (PersonLink.from_row(r) for r in rows):
            if not link.is_active_link or not link.local_person_id:
                continue
            row = self.database.get_partner(link.local_person_id)
            if row is None:
                continue
            person = LocalPerson.from_row(row)
            if person.is_syncable:
                people[person.id] = person
        return people

    def backfill(self, connection_id: str) -> BackfillResult:
        """
        Queue linked people and their moments for the next push.

        Entities that already have an undelivered outbox entry are counted
        as already pending and not queued again.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
            ConnectionRevokedError: If the connection was revoked
        """
        connection = get_active_connection(self.database, connection_id)
        people = self._linked_people(connection_id)
        result = BackfillResult()

        for person in people.values():
            queued = self.database.enqueue_outbox(
                connection_id,
                EntityType.PERSON.value,
                person.person_uid,
                Operation.UPSERT.value,
                serialize_person(person),
            )
            if queued:
                result.people_queued += 1
            else:
                result.already_pending += 1

        for row in self.database.list_moments(connection.user_id):
            moment = Moment.from_row(row)
            person_uids = [
                people[pid].person_uid for pid in moment.partner_ids if pid in people
            ]
            if not person_uids:
                continue
            queued = self.database.enqueue_outbox(
                connection_id,
                EntityType.MOMENT.value,
                moment.moment_uid,
                Operation.UPSERT.value,
                serialize_moment(moment, person_uids),
            )
            if queued:
                result.moments_queued += 1
            else:
                result.already_pending += 1

        logger.info(
            f"Backfill on {connection_id}: {result.people_queued} people, "
            f"{result.moments_queued} moments queued, "
            f"{result.already_pending} already pending"
        )
        return result

    def run(self, connection_id: str) -> RunResult:
        """
        Push pending outbox entries, then pull and apply the peer's events.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
            ConnectionRevokedError: If the connection was revoked
            PeerAPIError: If the peer cannot be reached
        """
        connection = get_active_connection(self.database, connection_id)
        peer = self.peer_factory(connection)
        result = RunResult()

        self._push(connection, peer, result)
        self._pull(connection, peer, result)

        logger.info(
            f"Sync run on {connection_id}: pushed {result.pushed}, "
            f"pulled {result.pulled}, applied {result.applied}, "
            f"{len(result.conflicts)} conflict(s)"
        )
        return result

    def _push(self, connection: Connection, peer: PeerClient, result: RunResult) -> None:
        after_id = 0
        while True:
            entries = [
                OutboxEntry.from_row(r)
                for r in self.database.list_pending_outbox(
                    connection.id, after_id=after_id, limit=self.push_batch_size
                )
            ]
            if not entries:
                return

            ids = [e.id for e in entries]
            try:
                response = peer.push_events([_to_sync_event(e) for e in entries])
            except PeerAPIError:
                self.database.record_outbox_attempt(ids)
                raise

            self.database.mark_outbox_delivered(ids)
            self.database.update_cursor(connection.id, last_pushed_outbox_id=ids[-1])
            result.pushed += len(entries)
            result.remote_conflicts.extend(response.conflicts)
            after_id = ids[-1]

    def _pull(self, connection: Connection, peer: PeerClient, result: RunResult) -> None:
        cursor = self.database.get_cursor(connection.id)["last_pulled_outbox_id"]
        while True:
            events = peer.pull_events(after_id=cursor, limit=self.pull_batch_size)
            if not events:
                return

            response = self.receiver.apply_events(
                connection,
                [SyncEvent(**e.model_dump(exclude={"id"})) for e in events],
            )
            result.pulled += len(events)
            result.applied += response.applied
            result.conflicts.extend(response.conflicts)

            cursor = max(cursor, max(e.id for e in events))
            self.database.update_cursor(connection.id, last_pulled_outbox_id=cursor)
            if len(events) < self.pull_batch_size:
                return
