"""
Merging duplicate local people, with undo.

A merge moves everything that points at the merged person over to the kept
person, then archives the merged person with merged_into_person_id set so
the sync engine ignores it. A snapshot is written to the merge log so the
merge can be undone.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from cherishly_sync.storage.db import SyncDatabase
from cherishly_sync.sync.errors import MergeError
from cherishly_sync.sync.models import LocalPerson, Moment
from cherishly_sync.utils.timestamps import now_iso

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """What a merge changed."""

    log_id: int
    moments_updated: int = 0
    links_moved: int = 0
    links_dropped: int = 0


def _load_person(database: SyncDatabase, person_id: str) -> LocalPerson:
    row = database.get_partner(person_id)
    if row is None:
        raise MergeError(f"Unknown person: {person_id}")
    return LocalPerson.from_row(row)


def merge_people(database: SyncDatabase, keep_id: str, merge_id: str) -> MergeResult:
    """
    Merge `merge_id` into `keep_id`.

    Moments are repointed (without duplicate entries), links move to the
    kept person unless it already has one on that connection, in which case
    the merged person's link is dropped.

    Raises:
        MergeError: If either person is unknown, they are the same person,
            belong to different users, or either was already merged away
    """
    if keep_id == merge_id:
        raise MergeError("Cannot merge a person into themselves")

    keep = _load_person(database, keep_id)
    merged = _load_person(database, merge_id)
    if keep.user_id != merged.user_id:
        raise MergeError("Cannot merge people that belong to different users")
    if keep.merged_into_person_id is not None:
        raise MergeError(f"{keep.name} has already been merged into another person")
    if merged.merged_into_person_id is not None:
        raise MergeError(f"{merged.name} has already been merged into another person")

    person_snapshot = database.get_partner(merge_id) or {}
    links_snapshot = database.list_links_for_local_person(merge_id)
    keep_connections = {
        link["connection_id"] for link in database.list_links_for_local_person(keep_id)
    }

    affected = [
        Moment.from_row(row)
        for row in database.list_moments(merged.user_id or "", include_deleted=True)
        if merge_id in Moment.from_row(row).partner_ids
    ]
    moments_snapshot = [
        {"moment_uid": m.moment_uid, "partner_ids": m.partner_ids} for m in affected
    ]

    moved = dropped = 0
    with database.transaction():
        now = now_iso()
        for moment in affected:
            partner_ids = [keep_id if pid == merge_id else pid for pid in moment.partner_ids]
            database.update_moment(
                moment.moment_uid,
                partner_ids=list(dict.fromkeys(partner_ids)),
                updated_at=now,
            )

        for link in links_snapshot:
            if link["remote_person_uid"] is None or link["connection_id"] in keep_connections:
                database.delete_link_by_id(link["id"])
                dropped += 1
            else:
                database.reassign_link(link["id"], keep_id)
                keep_connections.add(link["connection_id"])
                moved += 1

        database.update_partner(merge_id, merged_into_person_id=keep_id, archived=True)
        log_id = database.insert_merge_log(
            user_id=merged.user_id or "",
            kept_person_id=keep_id,
            merged_person_id=merge_id,
            merged_person_snapshot=person_snapshot,
            merged_links_snapshot=links_snapshot,
            merged_moments_snapshot=moments_snapshot,
        )

    logger.info(
        f"Merged {merged.name!r} into {keep.name!r}: {len(affected)} moment(s), "
        f"{moved} link(s) moved, {dropped} dropped"
    )
    return MergeResult(
        log_id=log_id,
        moments_updated=len(affected),
        links_moved=moved,
        links_dropped=dropped,
    )


def undo_merge(database: SyncDatabase, log_id: int) -> dict[str, Any]:
    """
    Restore the merged person, its moments and its links from the merge log.

    Returns:
        The merge log entry that was undone

    Raises:
        MergeError: If the entry is unknown, already undone, or the links
            can no longer be restored
    """
    entry = database.get_merge_log(log_id)
    if entry is None:
        raise MergeError(f"Unknown merge: {log_id}")
    if entry["undone_at"] is not None:
        raise MergeError(f"Merge {log_id} has already been undone")

    snapshot = entry["merged_person_snapshot"]
    merged_id = entry["merged_person_id"]
    try:
        with database.transaction():
            database.update_partner(
                merged_id,
                archived=bool(snapshot.get("archived", False)),
                merged_into_person_id=snapshot.get("merged_into_person_id"),
            )
            for moment in entry["merged_moments_snapshot"]:
                database.update_moment(
                    moment["moment_uid"],
                    partner_ids=moment["partner_ids"],
                    updated_at=now_iso(),
                )
            for link in entry["merged_links_snapshot"]:
                database.delete_link_by_id(link["id"])
                database.restore_link(link)
            database.mark_merge_undone(log_id)
    except sqlite3.IntegrityError as e:
        raise MergeError(
            f"Cannot undo merge {log_id}: its links conflict with links made since"
        ) from e

    logger.info(f"Undid merge {log_id}, restored person {merged_id}")
    return entry
