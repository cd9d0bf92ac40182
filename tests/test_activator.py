"""
Unit tests for mapping activation.

Tests action planning from the mapping diff and the activator's handling of
empty plans, partial failures and reloads.
"""

from unittest.mock import MagicMock

import pytest

from cherishly_sync.sync.activator import NO_CHANGES_MESSAGE, MappingActivator, plan_actions
from cherishly_sync.sync.errors import MappingError
from cherishly_sync.sync.mapping import MappingTarget, build_mapping_state, set_local_action
from cherishly_sync.sync.models import LinkStatus, LocalPerson, PersonLink, RemotePerson
from cherishly_sync.sync.wire import (
    ActivationResponse,
    CreateLocalAction,
    CreateRemoteAction,
    ExcludeAction,
    LinkAction,
)

CONN = "conn-1"


def local(person_id, name):
    return LocalPerson(id=person_id, name=name, person_uid=f"uid-{person_id}")


def remote(uid, name):
    return RemotePerson(remote_person_uid=uid, remote_name=name, connection_id=CONN)


@pytest.fixture
def fresh_state():
    """p1 matches r1, p2 has no match, r2 is unmatched."""
    return build_mapping_state(
        [local("p1", "Alex"), local("p2", "Sam")],
        [remote("r1", "Alex"), remote("r2", "Jordan")],
        [],
        connection_id=CONN,
    )


@pytest.fixture
def committed_state():
    return build_mapping_state(
        [local("p1", "Alex")],
        [remote("r1", "Alex")],
        [PersonLink(connection_id=CONN, local_person_id="p1", remote_person_uid="r1")],
        connection_id=CONN,
    )


class TestPlanActions:
    """Tests for plan_actions."""

    def test_plan_orders_links_before_creates_before_excludes(self, fresh_state):
        state = set_local_action(fresh_state, "p2", MappingTarget.CREATE_REMOTE).state
        actions = plan_actions(state)
        assert [type(a) for a in actions] == [LinkAction, CreateRemoteAction, CreateLocalAction]
        assert actions[0].local_person_id == "p1"
        assert actions[0].remote_person_uid == "r1"
        assert actions[2].remote_name == "Jordan"

    def test_local_exclusion_planned(self, committed_state):
        state = set_local_action(committed_state, "p1", MappingTarget.DO_NOT_SYNC).state
        actions = plan_actions(state)
        assert ExcludeAction(local_person_id="p1") in actions
        # r1 is linked in committed state, so it is not created locally
        assert not any(isinstance(a, CreateLocalAction) for a in actions)

    def test_committed_state_plans_nothing(self, committed_state):
        assert plan_actions(committed_state) == []

    def test_remote_exclusion_planned(self):
        state = build_mapping_state(
            [],
            [remote("r1", "Alex")],
            [
                PersonLink(
                    connection_id=CONN,
                    local_person_id=None,
                    remote_person_uid="r1",
                    link_status=LinkStatus.EXCLUDED,
                )
            ],
            connection_id=CONN,
        )
        assert plan_actions(state) == []


class TestMappingActivator:
    """Tests for MappingActivator."""

    def test_empty_plan_makes_no_call(self, committed_state):
        endpoint = MagicMock()
        loader = MagicMock()
        result = MappingActivator(endpoint, loader).activate(committed_state)

        assert result.submitted is False
        assert result.message == NO_CHANGES_MESSAGE
        endpoint.apply.assert_not_called()
        loader.assert_not_called()

    def test_submits_and_reloads(self, fresh_state, committed_state):
        endpoint = MagicMock()
        endpoint.apply.return_value = ActivationResponse(succeeded=3)
        loader = MagicMock(return_value=committed_state)

        result = MappingActivator(endpoint, loader).activate(fresh_state)

        request = endpoint.apply.call_args[0][0]
        assert request.connection_id == CONN
        assert len(request.actions) == 3
        loader.assert_called_once_with(CONN)
        assert result.submitted is True
        assert result.state is committed_state
        assert result.message == "Applied 3 change(s)"

    def test_partial_failure_reported(self, fresh_state):
        endpoint = MagicMock()
        endpoint.apply.return_value = ActivationResponse(
            succeeded=2, failed=1, errors=["link: boom"]
        )
        result = MappingActivator(endpoint, MagicMock()).activate(fresh_state)

        assert result.failed == 1
        assert result.errors == ["link: boom"]
        assert "1 failed" in result.message

    def test_requires_connection(self):
        state = build_mapping_state([local("p1", "Alex")], [], [])
        with pytest.raises(MappingError):
            MappingActivator(MagicMock(), MagicMock()).activate(state)
