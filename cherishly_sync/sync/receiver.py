"""
Inbound sync event receiver.

Authenticates a server-to-server batch (HMAC over the raw body), then
applies each event on its own: one failing event never aborts the batch.
Anything that cannot be applied safely is written to the conflict log and
reported back to the sender; conflicts are never raised.

Per-event rules:
- person/upsert: update a known person if the payload is strictly newer;
  an unknown person is never created here, only flagged for review
- person/delete: ignored (identity removal is a user decision)
- moment/upsert: every referenced person must have an enabled link;
  existing moments follow last-write-wins
- moment/delete: soft delete
"""

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from cherishly_sync.storage.db import SyncDatabase
from cherishly_sync.sync.conflict import LastWriteWins, WriteDecision
from cherishly_sync.sync.errors import PushAuthError, PushValidationError
from cherishly_sync.sync.matcher import EXACT_CONFIDENCE
from cherishly_sync.sync.models import (
    Connection,
    ConflictType,
    EntityType,
    LocalPerson,
    Moment,
    Operation,
)
from cherishly_sync.sync.payloads import moment_fields, moment_snapshot, person_refs
from cherishly_sync.sync.signing import (
    CONNECTION_HEADER,
    SIGNATURE_HEADER,
    sign_body,
    verify_signature,
)
from cherishly_sync.sync.wire import ConflictReport, PushRequest, PushResponse, SyncEvent
from cherishly_sync.utils.timestamps import format_timestamp, now_iso, parse_timestamp

logger = logging.getLogger(__name__)

# Reasons reported for events that are not conflicts in the log
REASON_UNSUPPORTED = "unsupported_event"
REASON_APPLY_FAILED = "apply_failed"

__all__ = ["PushReceiver", "EventOutcome", "sign_body"]


@dataclass
class EventOutcome:
    """What happened to one event."""

    applied: bool = False
    reason: Optional[str] = None  # Set when the event is reported as a conflict


NOOP = EventOutcome()
APPLIED = EventOutcome(applied=True)


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


class PushReceiver:
    """
    Applies inbound event batches for a connection.

    Usage:
        receiver = PushReceiver(db)
        response = receiver.handle(raw_body, request_headers)

        # Events already authenticated (e.g. pulled from the peer)
        response = receiver.apply_events(connection, events)
    """

    def __init__(self, database: SyncDatabase, resolver: Optional[LastWriteWins] = None):
        """
        Initialize the receiver.

        Args:
            database: Sync database
            resolver: Timestamp comparison strategy (default LastWriteWins())
        """
        self.database = database
        self.resolver = resolver or LastWriteWins()

    # =========================================================================
    # Authentication
    # =========================================================================

    def authenticate(self, raw_body: bytes, headers: Mapping[str, str]) -> Connection:
        """
        Verify the signature headers of a peer request.

        Raises:
            PushAuthError: For missing headers, an unknown or inactive
                connection, or a signature that does not match the body
        """
        signature = _header(headers, SIGNATURE_HEADER)
        connection_id = _header(headers, CONNECTION_HEADER)
        if not signature or not connection_id:
            raise PushAuthError("Missing signature headers")

        row = self.database.get_connection(connection_id)
        if row is None:
            logger.warning("Rejected request for an unknown connection")
            raise PushAuthError("Unknown or inactive connection")
        connection = Connection.from_row(row)
        if not connection.is_active:
            logger.warning(f"Rejected request for inactive connection {connection_id}")
            raise PushAuthError("Unknown or inactive connection")

        if not verify_signature(connection.shared_secret_hash, raw_body, signature):
            logger.warning(f"Rejected request with a bad signature on {connection_id}")
            raise PushAuthError("Invalid signature")

        return connection

    def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> PushResponse:
        """
        Authenticate and apply a pushed batch.

        Raises:
            PushAuthError: If authentication fails
            PushValidationError: If the authenticated body is malformed
        """
        connection = self.authenticate(raw_body, headers)
        try:
            request = PushRequest.model_validate_json(raw_body)
        except ValidationError as e:
            raise PushValidationError(f"Invalid push body: {e.error_count()} error(s)") from e
        return self.apply_events(connection, request.events)

    # =========================================================================
    # Batch application
    # =========================================================================

    def apply_events(self, connection: Connection, events: list[SyncEvent]) -> PushResponse:
        """
        Apply events one by one, each in its own transaction.

        Returns:
            PushResponse with the applied count and per-event conflicts
        """
        if not events:
            return PushResponse()

        applied = 0
        conflicts: list[ConflictReport] = []
        for event in events:
            try:
                with self.database.transaction():
                    outcome = self._apply_event(connection, event)
            except Exception as e:
                logger.error(
                    f"Failed to apply {event.entity_type}/{event.operation} "
                    f"{event.entity_uid}: {e}"
                )
                outcome = EventOutcome(reason=REASON_APPLY_FAILED)

            if outcome.applied:
                applied += 1
            elif outcome.reason:
                conflicts.append(
                    ConflictReport(
                        entity_uid=event.entity_uid,
                        entity_type=event.entity_type,
                        reason=outcome.reason,
                    )
                )

        logger.info(
            f"Applied {applied} of {len(events)} event(s) on connection "
            f"{connection.id}, {len(conflicts)} conflict(s)"
        )
        return PushResponse(applied=applied, conflicts=conflicts)

    def _apply_event(self, connection: Connection, event: SyncEvent) -> EventOutcome:
        logger.debug(f"Applying {event.entity_type}/{event.operation} {event.entity_uid}")
        key = (event.entity_type, event.operation)

        if key == (EntityType.PERSON.value, Operation.UPSERT.value):
            return self._upsert_person(connection, event)
        if key == (EntityType.PERSON.value, Operation.DELETE.value):
            return NOOP
        if key == (EntityType.MOMENT.value, Operation.UPSERT.value):
            return self._upsert_moment(connection, event)
        if key == (EntityType.MOMENT.value, Operation.DELETE.value):
            return self._delete_moment(connection, event)

        logger.warning(f"Unsupported event {event.entity_type}/{event.operation}")
        return EventOutcome(reason=REASON_UNSUPPORTED)

    def _record_conflict(
        self,
        connection: Connection,
        event: SyncEvent,
        conflict_type: ConflictType,
        local_payload: dict[str, Any],
        suggested_resolution: Optional[str] = None,
    ) -> EventOutcome:
        """Log a conflict once per open (entity, type) and report it."""
        existing = self.database.find_open_conflict(
            connection.id, event.entity_type, event.entity_uid, conflict_type.value
        )
        if existing:
            self.database.refresh_conflict_payload(existing["id"], event.payload)
        else:
            self.database.insert_conflict(
                connection_id=connection.id,
                user_id=connection.user_id,
                entity_type=event.entity_type,
                entity_uid=event.entity_uid,
                conflict_type=conflict_type.value,
                local_payload=local_payload,
                remote_payload=event.payload,
                suggested_resolution=suggested_resolution,
            )
        return EventOutcome(reason=conflict_type.value)

    # =========================================================================
    # People
    # =========================================================================

    def _resolve_person(self, connection: Connection, remote_uid: str) -> Optional[LocalPerson]:
        row = self.database.get_partner_by_uid(remote_uid)
        if row is None or row["user_id"] != connection.user_id:
            link = self.database.find_active_link_for_remote(connection.id, remote_uid)
            row = self.database.get_partner(link["local_person_id"]) if link else None
        return LocalPerson.from_row(row) if row else None

    def _upsert_person(self, connection: Connection, event: SyncEvent) -> EventOutcome:
        payload = event.payload
        remote_uid = event.entity_uid

        if self.database.is_remote_excluded(connection.id, remote_uid):
            logger.debug(f"Ignoring excluded person {remote_uid}")
            return NOOP

        person = self._resolve_person(connection, remote_uid)
        if person is not None:
            return self._update_person(connection, event, person)

        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            return self._record_conflict(
                connection, event, ConflictType.MISSING_MAPPING, {}, "create_new"
            )

        folded = name.casefold()
        duplicate = next(
            (
                p
                for p in self.database.list_partners(connection.user_id)
                if p["name"].casefold() == folded
            ),
            None,
        )

        if duplicate is None:
            self.database.upsert_candidate(
                connection_id=connection.id,
                remote_person_uid=remote_uid,
                remote_person_name=name,
                local_person_id=None,
                confidence=0.0,
                reasons=["No matching person found"],
            )
            return self._record_conflict(
                connection, event, ConflictType.MISSING_MAPPING, {}, "create_new"
            )

        local_open = self.database.find_open_link(
            connection.id, local_person_id=duplicate["id"]
        )
        remote_open = self.database.find_open_link(
            connection.id, remote_person_uid=remote_uid
        )
        if local_open is None and remote_open is None:
            self.database.insert_person_link(
                connection_id=connection.id,
                local_person_id=duplicate["id"],
                remote_person_uid=remote_uid,
                link_status="conflict",
                is_enabled=False,
            )
        self.database.upsert_candidate(
            connection_id=connection.id,
            remote_person_uid=remote_uid,
            remote_person_name=name,
            local_person_id=duplicate["id"],
            confidence=EXACT_CONFIDENCE,
            reasons=["Exact name match", "Detected during sync push"],
        )
        logger.info(f"Possible duplicate person {name!r} from connection {connection.id}")
        return self._record_conflict(
            connection,
            event,
            ConflictType.DUPLICATE_DETECTED,
            {
                "id": duplicate["id"],
                "name": duplicate["name"],
                "person_uid": duplicate["person_uid"],
            },
            "link_existing",
        )

    def _update_person(
        self, connection: Connection, event: SyncEvent, person: LocalPerson
    ) -> EventOutcome:
        payload = event.payload
        changes: dict[str, Any] = {}
        if isinstance(payload.get("name"), str) and payload["name"].strip():
            changes["name"] = payload["name"]
        if "relationship_label" in payload:
            changes["relationship_type"] = payload["relationship_label"]

        same_content = all(getattr(person, k) == v for k, v in changes.items())
        remote_ts = parse_timestamp(payload.get("updated_at"))
        result = self.resolver.compare(person.updated_at, remote_ts, same_content)

        if result.decision == WriteDecision.APPLY_REMOTE:
            self.database.update_partner(
                person.id, **changes, updated_at=format_timestamp(remote_ts)
            )
            return APPLIED
        if result.decision == WriteDecision.NO_CHANGE:
            return NOOP

        # The existing person wins silently
        logger.debug(f"Keeping local person {person.id}: {result.reason}")
        return NOOP

    # =========================================================================
    # Moments
    # =========================================================================

    def _upsert_moment(self, connection: Connection, event: SyncEvent) -> EventOutcome:
        payload = event.payload
        refs = person_refs(payload)

        partner_ids: list[str] = []
        missing: list[str] = []
        for remote_uid in refs:
            link = self.database.find_active_link_for_remote(connection.id, remote_uid)
            if link is None:
                missing.append(remote_uid)
            else:
                partner_ids.append(link["local_person_id"])

        if not refs or missing:
            logger.debug(
                f"Moment {event.entity_uid} references unlinked people: {missing or 'none'}"
            )
            return self._record_conflict(
                connection,
                event,
                ConflictType.MISSING_MAPPING,
                {"missing_person_uids": missing},
                "link_existing",
            )

        partner_ids = list(dict.fromkeys(partner_ids))
        remote_ts = parse_timestamp(payload.get("updated_at"))
        existing = self.database.get_moment_by_uid(event.entity_uid, connection.user_id)
        if existing is None and self.database.get_moment_by_uid(event.entity_uid):
            return self._foreign_moment(connection, event)

        if existing is None:
            fields = moment_fields(payload)
            now = now_iso()
            self.database.insert_moment(
                {
                    **fields,
                    "moment_date": fields["moment_date"] or now[:10],
                    "id": str(uuid.uuid4()),
                    "user_id": connection.user_id,
                    "moment_uid": event.entity_uid,
                    "partner_ids": partner_ids,
                    "source": "sync",
                    "updated_at": format_timestamp(remote_ts) or now,
                }
            )
            return APPLIED

        local = Moment.from_row(existing)
        fields = moment_fields(payload, fallback_title=local.title)
        if fields["moment_date"] is None:
            fields["moment_date"] = local.moment_date
        fields["partner_ids"] = partner_ids

        same_content = local.deleted_at is None and all(
            getattr(local, k) == v for k, v in fields.items()
        )
        result = self.resolver.compare(local.updated_at, remote_ts, same_content)

        if result.decision == WriteDecision.APPLY_REMOTE:
            self.database.update_moment(
                event.entity_uid,
                user_id=connection.user_id,
                **fields,
                deleted_at=None,
                updated_at=format_timestamp(remote_ts),
            )
            return APPLIED
        if result.decision == WriteDecision.NO_CHANGE:
            return NOOP

        logger.debug(f"Keeping local moment {event.entity_uid}: {result.reason}")
        return self._record_conflict(
            connection,
            event,
            ConflictType.TIMESTAMP,
            moment_snapshot(existing),
            "keep_local",
        )

    def _delete_moment(self, connection: Connection, event: SyncEvent) -> EventOutcome:
        existing = self.database.get_moment_by_uid(event.entity_uid, connection.user_id)
        if existing is None:
            if self.database.get_moment_by_uid(event.entity_uid):
                return self._foreign_moment(connection, event)
            return NOOP
        if existing["deleted_at"] is not None:
            return NOOP
        now = now_iso()
        self.database.update_moment(
            event.entity_uid, user_id=connection.user_id, deleted_at=now, updated_at=now
        )
        return APPLIED

    def _foreign_moment(self, connection: Connection, event: SyncEvent) -> EventOutcome:
        """The uid is taken by another user's moment; never touch it."""
        logger.warning(
            f"Moment {event.entity_uid} from connection {connection.id} belongs to another user"
        )
        return self._record_conflict(
            connection, event, ConflictType.DUPLICATE_DETECTED, {}, "dismiss"
        )
