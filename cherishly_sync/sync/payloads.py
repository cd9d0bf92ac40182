"""
Translation between local rows and sync event payloads.

Outbound payloads reference people by this side's person_uid; the peer
resolves those through its own person links.
"""

from collections.abc import Mapping
from typing import Any, Optional

from cherishly_sync.sync.models import LocalPerson, Moment
from cherishly_sync.utils.timestamps import format_timestamp, parse_timestamp

# Inbound keys that name the people a moment belongs to
PERSON_REF_KEYS = ("person_uid", "person_uids")


def serialize_person(person: LocalPerson) -> dict[str, Any]:
    """Outbound payload for a person upsert."""
    return {
        "person_uid": person.person_uid,
        "name": person.name,
        "relationship_label": person.relationship_type,
        "updated_at": format_timestamp(person.updated_at),
    }


def serialize_moment(moment: Moment, person_uids: list[str]) -> dict[str, Any]:
    """
    Outbound payload for a moment upsert.

    Args:
        moment: The local moment
        person_uids: person_uids of the moment's people, in partner_ids order
    """
    return {
        "moment_uid": moment.moment_uid,
        "title": moment.title,
        "description": moment.description,
        "moment_date": moment.moment_date,
        "happened_at": moment.happened_at or moment.moment_date,
        "category": moment.event_type,
        "impact_level": moment.impact_level,
        "attachments": list(moment.attachments),
        "person_uids": list(person_uids),
        "updated_at": format_timestamp(moment.updated_at),
    }


def person_refs(payload: Mapping[str, Any]) -> list[str]:
    """Remote person uids a moment payload refers to, without duplicates."""
    refs: list[str] = []
    single = payload.get("person_uid")
    if isinstance(single, str) and single:
        refs.append(single)
    many = payload.get("person_uids")
    if isinstance(many, list):
        refs.extend(uid for uid in many if isinstance(uid, str) and uid)
    return list(dict.fromkeys(refs))


def moment_fields(
    payload: Mapping[str, Any], fallback_title: Optional[str] = None
) -> dict[str, Any]:
    """
    Map a remote moment payload onto local moment columns.

    The date comes from happened_at (falling back to moment_date), the type
    from category (falling back to event_type). Attachments and impact pass
    through unchanged.
    """
    happened_at = parse_timestamp(payload.get("happened_at"))
    if happened_at is not None:
        moment_date = happened_at.date().isoformat()
    else:
        moment_date = payload.get("moment_date")
        if moment_date is None:
            updated_at = parse_timestamp(payload.get("updated_at"))
            moment_date = updated_at.date().isoformat() if updated_at else None

    attachments = payload.get("attachments")
    return {
        "title": payload.get("title") or fallback_title or "Untitled moment",
        "description": payload.get("description"),
        "moment_date": moment_date,
        "happened_at": format_timestamp(happened_at),
        "event_type": payload.get("category") or payload.get("event_type"),
        "impact_level": payload.get("impact_level"),
        "attachments": attachments if isinstance(attachments, list) else [],
    }


def moment_snapshot(row: Mapping[str, Any]) -> dict[str, Any]:
    """Conflict-log snapshot of a stored moment row."""
    moment = Moment.from_row(row)
    return {
        "moment_uid": moment.moment_uid,
        "title": moment.title,
        "description": moment.description,
        "moment_date": moment.moment_date,
        "happened_at": moment.happened_at,
        "event_type": moment.event_type,
        "impact_level": moment.impact_level,
        "attachments": moment.attachments,
        "partner_ids": moment.partner_ids,
        "deleted_at": format_timestamp(moment.deleted_at),
        "updated_at": format_timestamp(moment.updated_at),
    }
