"""
Unit tests for the conflict inbox.
"""

import pytest

from cherishly_sync.sync.errors import SyncError
from cherishly_sync.sync.inbox import list_conflicts, resolve_conflict, suggest_local_people
from cherishly_sync.sync.models import ConflictType, LocalPerson


@pytest.fixture
def conflict_id(db, connection):
    return db.insert_conflict(
        connection_id=connection.id,
        user_id=connection.user_id,
        entity_type="person",
        entity_uid="r-jordan",
        conflict_type="missing_mapping",
        local_payload={},
        remote_payload={"name": "Jordan"},
        suggested_resolution="create_new",
    )


def person(person_id, name, **kwargs):
    return LocalPerson(id=person_id, name=name, person_uid=f"uid-{person_id}", **kwargs)


class TestListAndResolve:
    """Tests for listing and resolving conflicts."""

    def test_list_decodes_payloads(self, connection, db, conflict_id):
        conflicts = list_conflicts(db, connection.id)

        assert conflicts[0].id == conflict_id
        assert conflicts[0].conflict_type == ConflictType.MISSING_MAPPING
        assert conflicts[0].remote_payload == {"name": "Jordan"}

    def test_resolve(self, connection, db, conflict_id):
        resolved = resolve_conflict(db, conflict_id, "dismiss")

        assert resolved.is_resolved
        assert resolved.resolution == "dismiss"
        assert list_conflicts(db, connection.id) == []
        assert len(list_conflicts(db, connection.id, unresolved_only=False)) == 1

    def test_resolve_twice_rejected(self, db, conflict_id):
        resolve_conflict(db, conflict_id, "dismiss")
        with pytest.raises(SyncError, match="already resolved"):
            resolve_conflict(db, conflict_id, "create_new")

    def test_unknown_resolution_rejected(self, db, conflict_id):
        with pytest.raises(SyncError, match="Unknown resolution"):
            resolve_conflict(db, conflict_id, "merge")

    def test_missing_conflict_rejected(self, db):
        with pytest.raises(SyncError, match="not found"):
            resolve_conflict(db, 404, "dismiss")


class TestSuggestLocalPeople:
    """Tests for rapidfuzz-backed suggestions."""

    def test_best_match_first(self):
        people = [person("p1", "Sam Lee"), person("p2", "Jordan Smith"), person("p3", "Jordan")]

        suggestions = suggest_local_people("Smith, Jordan", people)

        assert suggestions[0].person.id == "p2"
        assert suggestions[0].score == pytest.approx(1.0)

    def test_weak_matches_dropped(self):
        assert suggest_local_people("Jordan", [person("p1", "Maximilian")]) == []

    def test_archived_people_not_suggested(self):
        people = [person("p1", "Jordan", archived=True)]
        assert suggest_local_people("Jordan", people) == []

    def test_empty_name(self):
        assert suggest_local_people("", [person("p1", "Jordan")]) == []

    def test_limit(self):
        people = [person(f"p{i}", "Jordan") for i in range(5)]
        assert len(suggest_local_people("Jordan", people, limit=2)) == 2
