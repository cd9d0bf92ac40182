"""
Staged people mapping: building, editing and diffing.

The mapping is an immutable value. Every edit returns a new MappingState
together with the notices the caller should surface (for example when a
remote person is reassigned from one local person to another). Nothing in
this module writes to storage; activation lives in the activator module.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

from cherishly_sync.sync.errors import MappingError
from cherishly_sync.sync.matcher import EXACT_CONFIDENCE, IdentityMatcher
from cherishly_sync.sync.models import (
    LinkStatus,
    LocalPerson,
    PersonLink,
    RemotePerson,
)
from cherishly_sync.utils.logging import get_matching_logger

if TYPE_CHECKING:
    from cherishly_sync.storage.db import SyncDatabase

logger = logging.getLogger(__name__)


class MappingTarget(str, Enum):
    """Non-link decisions a person can be staged with."""

    CREATE_REMOTE = "create_remote"  # Local person: create on the peer
    DO_NOT_SYNC = "do_not_sync"  # Either side: keep out of sync
    CREATE_LOCAL = "create_local"  # Remote person: create locally


# A local person's staged decision: a remote uid or a MappingTarget
LocalDecision = Union[str, MappingTarget]

LOCAL_ACTIONS = (MappingTarget.CREATE_REMOTE, MappingTarget.DO_NOT_SYNC)
REMOTE_ACTIONS = (MappingTarget.CREATE_LOCAL, MappingTarget.DO_NOT_SYNC)


@dataclass(frozen=True)
class CommittedState:
    """
    Snapshot of the durable links the mapping was loaded from.

    Attributes:
        local_links: local person id -> linked remote uid
        remote_excludes: remote uids with an excluded link
        local_excludes: local ids with a local-side excluded link
    """

    local_links: Mapping[str, str] = field(default_factory=dict)
    remote_excludes: frozenset[str] = frozenset()
    local_excludes: frozenset[str] = frozenset()

    @classmethod
    def from_links(cls, links: Iterable[PersonLink]) -> "CommittedState":
        local_links: dict[str, str] = {}
        remote_excludes: set[str] = set()
        local_excludes: set[str] = set()
        for link in links:
            if link.link_status == LinkStatus.LINKED:
                if link.local_person_id and link.remote_person_uid:
                    local_links[link.local_person_id] = link.remote_person_uid
            elif link.link_status == LinkStatus.EXCLUDED:
                if link.remote_person_uid and not link.local_person_id:
                    remote_excludes.add(link.remote_person_uid)
                elif link.local_person_id and not link.remote_person_uid:
                    local_excludes.add(link.local_person_id)
            # Disabled conflict links are pending review, not decisions
        return cls(
            local_links=local_links,
            remote_excludes=frozenset(remote_excludes),
            local_excludes=frozenset(local_excludes),
        )

    def local_decision(self, local_id: str) -> Optional[LocalDecision]:
        """Committed decision for a local person, or None if undecided."""
        if local_id in self.local_links:
            return self.local_links[local_id]
        if local_id in self.local_excludes:
            return MappingTarget.DO_NOT_SYNC
        return None

    def is_remote_linked(self, remote_uid: str) -> bool:
        return remote_uid in self.local_links.values()


@dataclass(frozen=True)
class SuggestedMatch:
    """A pairing proposed by the matcher rather than by a committed link."""

    local_person_id: str
    remote_person_uid: str
    confidence: float
    reason: str


@dataclass(frozen=True)
class MappingNotice:
    """Something the user should be told about after an edit."""

    kind: str  # "reassigned" or "unlinked"
    message: str
    local_person_id: Optional[str] = None
    remote_person_uid: Optional[str] = None


@dataclass(frozen=True)
class MappingState:
    """
    The staged mapping the user is editing.

    Attributes:
        local_mappings: local id -> remote uid or MappingTarget
        remote_excludes: remote uids staged as do-not-sync
        suggested_ids: local ids whose pairing came from the matcher
        local_people: syncable local people, in display order
        remote_people: cached remote people, in listing order
        committed: the durable state this mapping was built from
        suggestions: every pairing the matcher proposed
        connection_id: connection the mapping belongs to
    """

    local_mappings: Mapping[str, LocalDecision]
    remote_excludes: frozenset[str]
    suggested_ids: frozenset[str]
    local_people: tuple[LocalPerson, ...] = ()
    remote_people: tuple[RemotePerson, ...] = ()
    committed: CommittedState = field(default_factory=CommittedState)
    suggestions: tuple[SuggestedMatch, ...] = ()
    connection_id: Optional[str] = None

    def local_person(self, local_id: str) -> LocalPerson:
        for person in self.local_people:
            if person.id == local_id:
                return person
        raise MappingError(f"Unknown local person: {local_id}")

    def remote_person(self, remote_uid: str) -> Optional[RemotePerson]:
        for person in self.remote_people:
            if person.remote_person_uid == remote_uid:
                return person
        return None

    def owner_of(self, remote_uid: str) -> Optional[str]:
        """Local id currently staged as linked to a remote uid."""
        for local_id, target in self.local_mappings.items():
            if target == remote_uid and not isinstance(target, MappingTarget):
                return local_id
        return None

    def resolve_local(self, local_id: str) -> LocalDecision:
        if local_id not in self.local_mappings:
            raise MappingError(f"Unknown local person: {local_id}")
        return self.local_mappings[local_id]

    def resolve_remote(self, remote_uid: str) -> Union[str, MappingTarget]:
        """
        Staged decision for a remote person.

        Returns:
            The linked local id, DO_NOT_SYNC when excluded, else CREATE_LOCAL
        """
        owner = self.owner_of(remote_uid)
        if owner is not None:
            return owner
        if remote_uid in self.remote_excludes:
            return MappingTarget.DO_NOT_SYNC
        return MappingTarget.CREATE_LOCAL

    def display_name(self, local_id: str) -> str:
        try:
            return self.local_person(local_id).name
        except MappingError:
            return local_id


@dataclass(frozen=True)
class MappingUpdate:
    """Result of a reconciler edit."""

    state: MappingState
    notices: tuple[MappingNotice, ...] = ()


@dataclass(frozen=True)
class MappingDiff:
    """
    Differences between the staged mapping and committed state.

    Attributes:
        changed_local_ids: local ids whose decision differs from committed
        changed_remote_excludes: remote uids whose excluded flag differs
        newly_create_local_uids: remote uids resolving to CREATE_LOCAL that
            were not CREATE_LOCAL before (linked or undecided)
    """

    changed_local_ids: tuple[str, ...] = ()
    changed_remote_excludes: tuple[str, ...] = ()
    newly_create_local_uids: tuple[str, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(
            self.changed_local_ids
            or self.changed_remote_excludes
            or self.newly_create_local_uids
        )


# =============================================================================
# Builder
# =============================================================================


def build_mapping_state(
    local_people: Iterable[LocalPerson],
    remote_people: Iterable[RemotePerson],
    links: Iterable[PersonLink],
    matcher: Optional[IdentityMatcher] = None,
    connection_id: Optional[str] = None,
) -> MappingState:
    """
    Build the staged mapping from committed links plus matcher suggestions.

    Committed decisions are loaded as-is and never replaced by a suggestion.
    Every undecided local person is matched against the remote people that
    are neither linked, excluded nor already claimed in this pass.

    Args:
        local_people: Local people; archived and merged-away ones are skipped
        remote_people: Cached remote people in listing order
        links: Committed person links for the connection
        matcher: Matcher to use (default IdentityMatcher())
        connection_id: Connection the mapping belongs to

    Returns:
        The staged MappingState
    """
    matcher = matcher or IdentityMatcher()
    matching_log = get_matching_logger()

    locals_ = tuple(p for p in local_people if p.is_syncable)
    remotes = tuple(remote_people)
    committed = CommittedState.from_links(links)

    local_mappings: dict[str, LocalDecision] = {}
    for person in locals_:
        decision = committed.local_decision(person.id)
        if decision is not None:
            local_mappings[person.id] = decision

    claimed = set(committed.local_links.values()) | set(committed.remote_excludes)
    pool = [r for r in remotes if r.remote_person_uid not in claimed]

    suggested: set[str] = set()
    suggestions: list[SuggestedMatch] = []
    for person in locals_:
        if person.id in local_mappings:
            continue

        best = matcher.best_match(person.name, pool, key=lambda r: r.remote_name)
        if best is None:
            local_mappings[person.id] = MappingTarget.CREATE_REMOTE
            matching_log.debug(f"No match for local {person.id!r} ({person.name})")
            continue

        remote, match = best
        pool.remove(remote)
        local_mappings[person.id] = remote.remote_person_uid
        suggestions.append(
            SuggestedMatch(
                local_person_id=person.id,
                remote_person_uid=remote.remote_person_uid,
                confidence=match.confidence,
                reason=match.reason,
            )
        )
        if match.confidence < EXACT_CONFIDENCE:
            suggested.add(person.id)
        matching_log.info(
            f"Suggest {person.name!r} -> {remote.remote_name!r} "
            f"({match.reason}, {match.confidence:.2f})"
        )

    logger.debug(
        f"Built mapping: {len(locals_)} local, {len(remotes)} remote, "
        f"{len(committed.local_links)} linked, {len(suggestions)} suggested"
    )

    return MappingState(
        local_mappings=local_mappings,
        remote_excludes=committed.remote_excludes,
        suggested_ids=frozenset(suggested),
        local_people=locals_,
        remote_people=remotes,
        committed=committed,
        suggestions=tuple(suggestions),
        connection_id=connection_id,
    )


# =============================================================================
# Reconciler
# =============================================================================


def _known_remote(state: MappingState, remote_uid: str) -> None:
    if state.remote_person(remote_uid) is None and not state.committed.is_remote_linked(
        remote_uid
    ):
        raise MappingError(f"Unknown remote person: {remote_uid}")


def _release_remote(
    state: MappingState,
    mappings: dict[str, LocalDecision],
    remote_uid: str,
    keep_local_id: Optional[str],
    kind: str,
) -> tuple[set[str], list[MappingNotice]]:
    """Reset every other local pointing at remote_uid to CREATE_REMOTE."""
    released: set[str] = set()
    notices: list[MappingNotice] = []
    for local_id, target in list(mappings.items()):
        if local_id == keep_local_id or target != remote_uid:
            continue
        mappings[local_id] = MappingTarget.CREATE_REMOTE
        released.add(local_id)
        remote = state.remote_person(remote_uid)
        remote_name = remote.remote_name if remote else remote_uid
        if kind == "reassigned":
            message = (
                f"{remote_name} was linked to {state.display_name(local_id)}; "
                f"{state.display_name(local_id)} will be created remotely instead"
            )
        else:
            message = (
                f"{state.display_name(local_id)} is no longer linked to "
                f"{remote_name} and will be created remotely instead"
            )
        notices.append(
            MappingNotice(
                kind=kind,
                message=message,
                local_person_id=local_id,
                remote_person_uid=remote_uid,
            )
        )
    return released, notices


def link_local_to(state: MappingState, local_id: str, remote_uid: str) -> MappingUpdate:
    """
    Link a local person to a remote person.

    If another local person held that remote person, it is reset to
    CREATE_REMOTE and a "reassigned" notice is returned.
    """
    state.resolve_local(local_id)
    _known_remote(state, remote_uid)

    mappings = dict(state.local_mappings)
    released, notices = _release_remote(
        state, mappings, remote_uid, keep_local_id=local_id, kind="reassigned"
    )
    mappings[local_id] = remote_uid

    new_state = replace(
        state,
        local_mappings=mappings,
        remote_excludes=state.remote_excludes - {remote_uid},
        suggested_ids=state.suggested_ids - {local_id} - released,
    )
    return MappingUpdate(new_state, tuple(notices))


def set_local_action(
    state: MappingState, local_id: str, action: MappingTarget
) -> MappingUpdate:
    """
    Stage CREATE_REMOTE or DO_NOT_SYNC for a local person.

    Any remote person the local was linked to becomes free.
    """
    if action not in LOCAL_ACTIONS:
        raise MappingError(f"Invalid action for a local person: {action}")
    state.resolve_local(local_id)

    mappings = dict(state.local_mappings)
    mappings[local_id] = action
    new_state = replace(
        state,
        local_mappings=mappings,
        suggested_ids=state.suggested_ids - {local_id},
    )
    return MappingUpdate(new_state)


def link_remote_to(state: MappingState, remote_uid: str, local_id: str) -> MappingUpdate:
    """Link a remote person to a local person (same rules as link_local_to)."""
    return link_local_to(state, local_id, remote_uid)


def set_remote_action(
    state: MappingState, remote_uid: str, action: MappingTarget
) -> MappingUpdate:
    """
    Stage CREATE_LOCAL or DO_NOT_SYNC for a remote person.

    Any local person linked to it is reset to CREATE_REMOTE.
    """
    if action not in REMOTE_ACTIONS:
        raise MappingError(f"Invalid action for a remote person: {action}")
    _known_remote(state, remote_uid)

    mappings = dict(state.local_mappings)
    released, notices = _release_remote(
        state, mappings, remote_uid, keep_local_id=None, kind="unlinked"
    )

    if action == MappingTarget.DO_NOT_SYNC:
        excludes = state.remote_excludes | {remote_uid}
    else:
        excludes = state.remote_excludes - {remote_uid}

    new_state = replace(
        state,
        local_mappings=mappings,
        remote_excludes=excludes,
        suggested_ids=state.suggested_ids - released,
    )
    return MappingUpdate(new_state, tuple(notices))


# =============================================================================
# Diff
# =============================================================================


def _remote_uids(state: MappingState) -> list[str]:
    """Remote uids known to the mapping, listing order first."""
    uids = [p.remote_person_uid for p in state.remote_people]
    seen = set(uids)
    for uid in state.committed.local_links.values():
        if uid not in seen:
            uids.append(uid)
            seen.add(uid)
    return uids


def compute_diff(state: MappingState) -> MappingDiff:
    """Compare the staged mapping with the committed state it was built from."""
    committed = state.committed

    changed_local = [
        person.id
        for person in state.local_people
        if state.local_mappings.get(person.id) != committed.local_decision(person.id)
    ]

    changed_excludes = sorted(state.remote_excludes ^ committed.remote_excludes)

    # Committed state never resolves a remote to CREATE_LOCAL: every remote
    # is linked, excluded or still undecided there
    newly_create_local = [
        uid
        for uid in _remote_uids(state)
        if state.resolve_remote(uid) == MappingTarget.CREATE_LOCAL
    ]

    return MappingDiff(
        changed_local_ids=tuple(changed_local),
        changed_remote_excludes=tuple(changed_excludes),
        newly_create_local_uids=tuple(newly_create_local),
    )


def has_changes(state: MappingState) -> bool:
    """True when activation would submit something."""
    return compute_diff(state).has_changes


# =============================================================================
# Loading
# =============================================================================


def load_mapping_state(
    database: "SyncDatabase",
    connection_id: str,
    user_id: str,
    matcher: Optional[IdentityMatcher] = None,
) -> MappingState:
    """
    Build a mapping from what is in storage right now.

    Reads the user's syncable people, the cached remote people and the
    connection's committed links.
    """
    local_people = [LocalPerson.from_row(r) for r in database.list_partners(user_id)]
    remote_people = [
        RemotePerson.from_row(r) for r in database.list_remote_people(connection_id)
    ]
    links = [PersonLink.from_row(r) for r in database.list_person_links(connection_id)]
    return build_mapping_state(
        local_people, remote_people, links, matcher=matcher, connection_id=connection_id
    )
