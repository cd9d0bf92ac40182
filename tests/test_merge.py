"""
Unit tests for merging duplicate people and undoing merges.
"""

import json

import pytest

from cherishly_sync.sync.errors import MergeError
from cherishly_sync.sync.merge import merge_people, undo_merge


def partner_ids(db, moment_uid):
    return json.loads(db.get_moment_by_uid(moment_uid)["partner_ids"])


@pytest.fixture
def duplicates(db, add_person, add_moment):
    """Two records for Alex, with moments on each and one shared."""
    keep = add_person("Alex")
    dupe = add_person("Alex K")
    add_moment([dupe], moment_uid="m-dupe")
    add_moment([keep, dupe], moment_uid="m-both")
    add_moment([keep], moment_uid="m-keep")
    return keep, dupe


class TestMergePeople:
    """Tests for merge_people."""

    def test_moments_repointed_without_duplicates(self, db, duplicates):
        keep, dupe = duplicates

        result = merge_people(db, keep, dupe)

        assert result.moments_updated == 2
        assert partner_ids(db, "m-dupe") == [keep]
        assert partner_ids(db, "m-both") == [keep]
        assert partner_ids(db, "m-keep") == [keep]

    def test_merged_person_archived(self, db, duplicates):
        keep, dupe = duplicates
        merge_people(db, keep, dupe)

        merged = db.get_partner(dupe)
        assert merged["archived"] == 1
        assert merged["merged_into_person_id"] == keep
        assert [p["id"] for p in db.list_partners("user-1")] == [keep]

    def test_link_moves_to_kept_person(self, db, connection, duplicates):
        keep, dupe = duplicates
        db.insert_person_link(connection.id, dupe, "r-alex")

        result = merge_people(db, keep, dupe)

        assert result.links_moved == 1
        assert db.find_active_link_for_remote(connection.id, "r-alex")["local_person_id"] == keep

    def test_link_dropped_when_kept_person_already_linked(self, db, connection, duplicates):
        keep, dupe = duplicates
        db.insert_person_link(connection.id, keep, "r-alex")
        db.insert_person_link(connection.id, dupe, "r-alex-2")

        result = merge_people(db, keep, dupe)

        assert result.links_dropped == 1
        remotes = [link["remote_person_uid"] for link in db.list_person_links(connection.id)]
        assert remotes == ["r-alex"]

    def test_local_exclusion_dropped(self, db, connection, duplicates):
        keep, dupe = duplicates
        db.insert_person_link(connection.id, dupe, None, link_status="excluded")

        assert merge_people(db, keep, dupe).links_dropped == 1

    def test_merge_logged(self, db, duplicates):
        keep, dupe = duplicates
        result = merge_people(db, keep, dupe)

        logs = db.list_merge_logs("user-1")
        assert logs[0]["id"] == result.log_id
        assert logs[0]["kept_person_id"] == keep

    def test_self_merge_rejected(self, db, duplicates):
        keep, _ = duplicates
        with pytest.raises(MergeError, match="themselves"):
            merge_people(db, keep, keep)

    def test_unknown_person_rejected(self, db, duplicates):
        keep, _ = duplicates
        with pytest.raises(MergeError, match="Unknown person"):
            merge_people(db, keep, "missing")

    def test_other_users_person_rejected(self, db, add_person, duplicates):
        keep, _ = duplicates
        stranger = add_person("Alex", user_id="user-2")
        with pytest.raises(MergeError, match="different users"):
            merge_people(db, keep, stranger)

    def test_already_merged_rejected(self, db, add_person, duplicates):
        keep, dupe = duplicates
        merge_people(db, keep, dupe)
        other = add_person("Alexander")
        with pytest.raises(MergeError, match="already been merged"):
            merge_people(db, other, dupe)


class TestUndoMerge:
    """Tests for undo_merge."""

    def test_undo_restores_person_moments_and_links(self, db, connection, duplicates):
        keep, dupe = duplicates
        db.insert_person_link(connection.id, dupe, "r-alex")
        result = merge_people(db, keep, dupe)

        undo_merge(db, result.log_id)

        restored = db.get_partner(dupe)
        assert restored["archived"] == 0
        assert restored["merged_into_person_id"] is None
        assert partner_ids(db, "m-dupe") == [dupe]
        assert partner_ids(db, "m-both") == [keep, dupe]
        assert partner_ids(db, "m-keep") == [keep]
        assert db.find_active_link_for_remote(connection.id, "r-alex")["local_person_id"] == dupe
        assert db.list_merge_logs("user-1") == []

    def test_undo_restores_dropped_link(self, db, connection, duplicates):
        keep, dupe = duplicates
        db.insert_person_link(connection.id, keep, "r-alex")
        db.insert_person_link(connection.id, dupe, "r-alex-2")
        result = merge_people(db, keep, dupe)

        undo_merge(db, result.log_id)

        link = db.find_active_link_for_remote(connection.id, "r-alex-2")
        assert link["local_person_id"] == dupe

    def test_undo_twice_rejected(self, db, duplicates):
        keep, dupe = duplicates
        result = merge_people(db, keep, dupe)
        undo_merge(db, result.log_id)
        with pytest.raises(MergeError, match="already been undone"):
            undo_merge(db, result.log_id)

    def test_unknown_log_rejected(self, db):
        with pytest.raises(MergeError, match="Unknown merge"):
            undo_merge(db, 999)

    def test_undo_blocked_by_newer_link(self, db, connection, duplicates):
        keep, dupe = duplicates
        db.insert_person_link(connection.id, dupe, "r-alex")
        result = merge_people(db, keep, dupe)
        # dupe picked up a different link after the merge
        db.insert_person_link(connection.id, dupe, "r-other")

        with pytest.raises(MergeError, match="Cannot undo"):
            undo_merge(db, result.log_id)
        assert db.get_partner(dupe)["archived"] == 1
