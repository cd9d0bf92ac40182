"""
Turns a staged mapping into a batch of remote-write actions.

Actions are derived from the diff against committed state only, so an
unchanged mapping submits nothing. After submission committed state is
reloaded from storage; the staged mapping is never reused.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Optional, Protocol

from cherishly_sync.sync.errors import MappingError
from cherishly_sync.sync.mapping import MappingState, MappingTarget, compute_diff
from cherishly_sync.sync.wire import (
    ActivationRequest,
    ActivationResponse,
    CreateLocalAction,
    CreateRemoteAction,
    ExcludeAction,
    LinkAction,
    MappingAction,
)

logger = logging.getLogger(__name__)

NO_CHANGES_MESSAGE = "No changes to apply"


class ActivationEndpoint(Protocol):
    """Anything that can apply an activation batch."""

    def apply(self, request: ActivationRequest) -> ActivationResponse: ...


MappingLoader = Callable[[str], MappingState]


@dataclass
class ActivationResult:
    """Outcome of an activation, ready for user-facing messaging."""

    submitted: bool
    message: str
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    actions: list[MappingAction] = field(default_factory=list)
    state: Optional[MappingState] = None


def plan_actions(state: MappingState) -> list[MappingAction]:
    """
    Derive the ordered action list from the mapping diff.

    Order: link, create_remote, create_local, exclude.
    """
    diff = compute_diff(state)
    committed = state.committed

    links: list[MappingAction] = []
    create_remote: list[MappingAction] = []
    create_local: list[MappingAction] = []
    excludes: list[MappingAction] = []

    for local_id in diff.changed_local_ids:
        target = state.local_mappings.get(local_id)
        if target == MappingTarget.CREATE_REMOTE:
            create_remote.append(CreateRemoteAction(local_person_id=local_id))
        elif target == MappingTarget.DO_NOT_SYNC:
            excludes.append(ExcludeAction(local_person_id=local_id))
        elif isinstance(target, str) and not isinstance(target, MappingTarget):
            links.append(LinkAction(local_person_id=local_id, remote_person_uid=target))

    for remote_uid in diff.newly_create_local_uids:
        if committed.is_remote_linked(remote_uid):
            continue
        remote = state.remote_person(remote_uid)
        if remote is None:
            continue
        create_local.append(
            CreateLocalAction(
                remote_person_uid=remote_uid,
                remote_name=remote.remote_name,
                remote_relationship_label=remote.remote_relationship_label,
            )
        )

    remote_excludes = [
        ExcludeAction(remote_person_uid=uid)
        for uid in diff.changed_remote_excludes
        if uid in state.remote_excludes
    ]

    return [*links, *create_remote, *create_local, *remote_excludes, *excludes]


class MappingActivator:
    """
    Submits a staged mapping and reloads committed state.

    Usage:
        activator = MappingActivator(handler, loader)
        result = activator.activate(state)
        if result.submitted:
            state = result.state
    """

    def __init__(self, endpoint: ActivationEndpoint, loader: MappingLoader):
        """
        Initialize the activator.

        Args:
            endpoint: Remote-write endpoint that applies the batch
            loader: Rebuilds a MappingState for a connection id from storage
        """
        self.endpoint = endpoint
        self.loader = loader

    def activate(self, state: MappingState) -> ActivationResult:
        """
        Activate a staged mapping.

        An empty plan makes no endpoint call. Partial failures are reported
        and already-applied actions stay applied.

        Raises:
            MappingError: If the mapping has no connection id
        """
        if not state.connection_id:
            raise MappingError("Mapping has no connection to activate against")

        actions = plan_actions(state)
        if not actions:
            logger.info(NO_CHANGES_MESSAGE)
            return ActivationResult(
                submitted=False, message=NO_CHANGES_MESSAGE, state=state
            )

        logger.info(
            f"Activating {len(actions)} mapping action(s) on connection "
            f"{state.connection_id}"
        )
        response = self.endpoint.apply(
            ActivationRequest(connection_id=state.connection_id, actions=actions)
        )

        if response.failed:
            logger.warning(
                f"{response.failed} of {len(actions)} mapping action(s) failed"
            )
            message = (
                f"Applied {response.succeeded} change(s), "
                f"{response.failed} failed"
            )
        else:
            message = f"Applied {response.succeeded} change(s)"

        return ActivationResult(
            submitted=True,
            message=message,
            succeeded=response.succeeded,
            failed=response.failed,
            errors=list(response.errors),
            actions=actions,
            state=self.loader(state.connection_id),
        )
