"""
Domain records for people and moment synchronization.

Each record mirrors one table row in the sync database. Rows come back from
SQLite as mappings; `from_row` converts them and decodes JSON columns.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from cherishly_sync.utils.timestamps import parse_timestamp


class ConnectionStatus(str, Enum):
    """Lifecycle of a trust relationship with the peer."""

    ACTIVE = "active"
    REVOKED = "revoked"


class LinkStatus(str, Enum):
    """State of a durable person link."""

    LINKED = "linked"
    EXCLUDED = "excluded"
    CONFLICT = "conflict"  # Disabled link awaiting user confirmation


class CandidateStatus(str, Enum):
    """State of a system-suggested pairing."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DISMISSED = "dismissed"


class ConflictType(str, Enum):
    """Why an inbound event could not be applied automatically."""

    MISSING_MAPPING = "missing_mapping"
    DUPLICATE_DETECTED = "duplicate_detected"
    TIMESTAMP = "timestamp"  # Local copy is at least as new as the remote one


class EntityType(str, Enum):
    """Entities carried in sync events."""

    PERSON = "person"
    MOMENT = "moment"


class Operation(str, Enum):
    """Operations carried in sync events."""

    UPSERT = "upsert"
    DELETE = "delete"


def _json_column(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (list, dict)):
        return value
    return json.loads(value)


@dataclass
class Connection:
    """A trust relationship between a local account and a peer account."""

    id: str
    user_id: str
    remote_app: str
    shared_secret_hash: str
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    remote_user_id: Optional[str] = None
    remote_base_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Connection":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            remote_app=row["remote_app"],
            shared_secret_hash=row["shared_secret_hash"],
            status=ConnectionStatus(row["status"]),
            remote_user_id=row["remote_user_id"],
            remote_base_url=row["remote_base_url"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class PairingCode:
    """A short-lived one-time code offered to the peer's user."""

    code: str
    user_id: str
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def seconds_remaining(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds()))


@dataclass
class LocalPerson:
    """A cherished person owned by the local user."""

    id: str
    name: str
    person_uid: str
    user_id: Optional[str] = None
    relationship_type: Optional[str] = None
    archived: bool = False
    merged_into_person_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_syncable(self) -> bool:
        """Archived and merged-away people take no part in sync."""
        return not self.archived and self.merged_into_person_id is None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LocalPerson":
        return cls(
            id=row["id"],
            name=row["name"],
            person_uid=row["person_uid"],
            user_id=row["user_id"],
            relationship_type=row["relationship_type"],
            archived=bool(row["archived"]),
            merged_into_person_id=row["merged_into_person_id"],
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class RemotePerson:
    """A cached row describing a person on the peer. Never authoritative."""

    remote_person_uid: str
    remote_name: str
    remote_relationship_label: Optional[str] = None
    connection_id: Optional[str] = None
    fetched_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "RemotePerson":
        return cls(
            remote_person_uid=row["remote_person_uid"],
            remote_name=row["remote_name"],
            remote_relationship_label=row["remote_relationship_label"],
            connection_id=row["connection_id"],
            fetched_at=parse_timestamp(row["fetched_at"]),
        )


@dataclass
class PersonLink:
    """The durable mapping between a local and a remote identity."""

    connection_id: str
    local_person_id: Optional[str]
    remote_person_uid: Optional[str]
    link_status: LinkStatus = LinkStatus.LINKED
    is_enabled: bool = True
    id: Optional[int] = None

    @property
    def is_active_link(self) -> bool:
        """True for an enabled, confirmed pairing usable by the receiver."""
        return self.link_status == LinkStatus.LINKED and self.is_enabled

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PersonLink":
        return cls(
            id=row["id"],
            connection_id=row["connection_id"],
            local_person_id=row["local_person_id"],
            remote_person_uid=row["remote_person_uid"],
            link_status=LinkStatus(row["link_status"]),
            is_enabled=bool(row["is_enabled"]),
        )


@dataclass
class PersonCandidate:
    """A suggested, unconfirmed pairing surfaced by the push receiver."""

    connection_id: str
    remote_person_uid: str
    remote_person_name: str
    local_person_id: Optional[str] = None
    confidence: float = 0.0
    reasons: list[str] = field(default_factory=list)
    status: CandidateStatus = CandidateStatus.PENDING

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PersonCandidate":
        return cls(
            connection_id=row["connection_id"],
            remote_person_uid=row["remote_person_uid"],
            remote_person_name=row["remote_person_name"],
            local_person_id=row["local_person_id"],
            confidence=row["confidence"] or 0.0,
            reasons=_json_column(row["reasons"], []),
            status=CandidateStatus(row["status"]),
        )


@dataclass
class Conflict:
    """A persisted sync event that could not be applied safely."""

    connection_id: str
    entity_type: str
    entity_uid: str
    conflict_type: ConflictType
    local_payload: dict[str, Any] = field(default_factory=dict)
    remote_payload: dict[str, Any] = field(default_factory=dict)
    suggested_resolution: Optional[str] = None
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    user_id: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Conflict":
        return cls(
            id=row["id"],
            connection_id=row["connection_id"],
            user_id=row["user_id"],
            entity_type=row["entity_type"],
            entity_uid=row["entity_uid"],
            conflict_type=ConflictType(row["conflict_type"]),
            local_payload=_json_column(row["local_payload"], {}),
            remote_payload=_json_column(row["remote_payload"], {}),
            suggested_resolution=row["suggested_resolution"],
            resolution=row["resolution"],
            resolved_at=parse_timestamp(row["resolved_at"]),
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass
class Moment:
    """An event or memory attached to one or more local people."""

    id: str
    moment_uid: str
    title: str
    moment_date: str
    user_id: Optional[str] = None
    description: Optional[str] = None
    happened_at: Optional[str] = None
    event_type: Optional[str] = None
    impact_level: Optional[int] = None
    attachments: list[Any] = field(default_factory=list)
    partner_ids: list[str] = field(default_factory=list)
    source: Optional[str] = None
    deleted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Moment":
        return cls(
            id=row["id"],
            moment_uid=row["moment_uid"],
            title=row["title"],
            moment_date=row["moment_date"],
            user_id=row["user_id"],
            description=row["description"],
            happened_at=row["happened_at"],
            event_type=row["event_type"],
            impact_level=row["impact_level"],
            attachments=_json_column(row["attachments"], []),
            partner_ids=_json_column(row["partner_ids"], []),
            source=row["source"],
            deleted_at=parse_timestamp(row["deleted_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class OutboxEntry:
    """An outbound event waiting to be pushed to (or pulled by) the peer."""

    id: int
    connection_id: str
    entity_type: str
    entity_uid: str
    operation: str
    payload: dict[str, Any] = field(default_factory=dict)
    delivered_at: Optional[datetime] = None
    delivery_attempts: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "OutboxEntry":
        return cls(
            id=row["id"],
            connection_id=row["connection_id"],
            entity_type=row["entity_type"],
            entity_uid=row["entity_uid"],
            operation=row["operation"],
            payload=_json_column(row["payload"], {}),
            delivered_at=parse_timestamp(row["delivered_at"]),
            delivery_attempts=row["delivery_attempts"],
        )
