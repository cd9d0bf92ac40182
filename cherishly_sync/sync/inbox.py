"""
Conflict inbox: listing and resolving logged sync conflicts.

Resolving only records the user's decision on the conflict; the follow-up
(linking, creating a person) is done through mapping activation.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from rapidfuzz import fuzz, process

from cherishly_sync.storage.db import SyncDatabase
from cherishly_sync.sync.errors import SyncError
from cherishly_sync.sync.models import Conflict, LocalPerson
from cherishly_sync.utils.normalization import normalize_name

logger = logging.getLogger(__name__)

RESOLUTIONS = ("link_existing", "create_new", "dismiss", "keep_local")

# Suggestions scoring below this (0-100) are not offered
DEFAULT_SUGGESTION_CUTOFF = 60.0


@dataclass
class PersonSuggestion:
    """A local person offered for a "link existing" resolution."""

    person: LocalPerson
    score: float  # 0.0 to 1.0


def list_conflicts(
    database: SyncDatabase, connection_id: str, unresolved_only: bool = True
) -> list[Conflict]:
    """List a connection's conflicts, newest first."""
    return [
        Conflict.from_row(row)
        for row in database.list_conflicts(connection_id, unresolved_only=unresolved_only)
    ]


def resolve_conflict(database: SyncDatabase, conflict_id: int, resolution: str) -> Conflict:
    """
    Record how a conflict was resolved.

    Raises:
        SyncError: If the resolution is unknown, or the conflict is missing
            or already resolved
    """
    if resolution not in RESOLUTIONS:
        raise SyncError(
            f"Unknown resolution {resolution!r}; expected one of {', '.join(RESOLUTIONS)}"
        )

    row = database.get_conflict(conflict_id)
    if row is None:
        raise SyncError(f"Conflict not found: {conflict_id}")
    if not database.resolve_conflict(conflict_id, resolution):
        raise SyncError(f"Conflict {conflict_id} is already resolved")

    logger.info(f"Resolved conflict {conflict_id} as {resolution}")
    return Conflict.from_row(database.get_conflict(conflict_id) or row)


def suggest_local_people(
    name: str,
    people: Iterable[LocalPerson],
    limit: int = 3,
    score_cutoff: float = DEFAULT_SUGGESTION_CUTOFF,
) -> list[PersonSuggestion]:
    """
    Rank local people by name similarity to a conflicting remote name.

    Uses rapidfuzz token-sort similarity on normalized names, so word order
    and punctuation do not matter.
    """
    candidates = [p for p in people if p.is_syncable]
    if not name or not candidates:
        return []

    choices = {p.id: normalize_name(p.name) for p in candidates}
    by_id = {p.id: p for p in candidates}
    matches = process.extract(
        normalize_name(name),
        choices,
        scorer=fuzz.token_sort_ratio,
        limit=limit,
        score_cutoff=score_cutoff,
    )
    return [
        PersonSuggestion(person=by_id[key], score=score / 100.0)
        for _, score, key in matches
    ]
