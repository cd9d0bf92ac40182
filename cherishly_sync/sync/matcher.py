"""
Name-based identity matching between local and remote people.

Implements a tiered strategy, strongest signal first:
- Tier 1: Exact name match (case-insensitive)
- Tier 2: Normalized name match (punctuation and spacing ignored)
- Tier 3: First name match
- Tier 4: Partial name match (one name contains the other)

The first tier that fires wins, so a weaker rule can never outscore a
stronger one for the same pair.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Optional, TypeVar

from cherishly_sync.utils.normalization import first_token, normalize_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MatchTier(Enum):
    """Classification of how a name match was determined."""

    EXACT_NAME = "exact_name"
    NORMALIZED_NAME = "normalized_name"
    FIRST_NAME = "first_name"
    PARTIAL_NAME = "partial_name"


@dataclass(frozen=True)
class NameMatch:
    """Result of a successful name comparison."""

    confidence: float  # 0.0 to 1.0
    reason: str  # Human-readable explanation
    tier: MatchTier


EXACT_CONFIDENCE = 0.95
NORMALIZED_CONFIDENCE = 0.90
FIRST_NAME_CONFIDENCE = 0.70
PARTIAL_CONFIDENCE = 0.50

# Suggestions below this are not made
DEFAULT_MIN_CONFIDENCE = PARTIAL_CONFIDENCE

# Shorter first tokens ("J", "A.") are too ambiguous to match on
MIN_FIRST_TOKEN_LENGTH = 2


def match_names(local_name: str, remote_name: str) -> Optional[NameMatch]:
    """
    Compare two display names.

    Args:
        local_name: Display name of the local person
        remote_name: Display name of the remote person

    Returns:
        NameMatch for the first rule that fires, or None if no rule does
    """
    if not local_name or not remote_name:
        return None
    if not local_name.strip() or not remote_name.strip():
        return None

    local_folded = local_name.casefold()
    remote_folded = remote_name.casefold()

    if local_folded == remote_folded:
        return NameMatch(EXACT_CONFIDENCE, "Exact name match", MatchTier.EXACT_NAME)

    local_normalized = normalize_name(local_name)
    remote_normalized = normalize_name(remote_name)
    if local_normalized and local_normalized == remote_normalized:
        return NameMatch(
            NORMALIZED_CONFIDENCE, "Normalized name match", MatchTier.NORMALIZED_NAME
        )

    local_first = first_token(local_name)
    if len(local_first) >= MIN_FIRST_TOKEN_LENGTH and local_first == first_token(
        remote_name
    ):
        return NameMatch(FIRST_NAME_CONFIDENCE, "First name match", MatchTier.FIRST_NAME)

    if local_folded in remote_folded or remote_folded in local_folded:
        return NameMatch(PARTIAL_CONFIDENCE, "Partial name match", MatchTier.PARTIAL_NAME)

    return None


class IdentityMatcher:
    """
    Picks the best remote candidate for a local name.

    Usage:
        matcher = IdentityMatcher()
        best = matcher.best_match("Alex", remote_people, key=lambda p: p.remote_name)
        if best:
            person, match = best
    """

    def __init__(self, min_confidence: float = DEFAULT_MIN_CONFIDENCE):
        """
        Initialize the matcher.

        Args:
            min_confidence: Lowest confidence that still counts as a match
        """
        self.min_confidence = min_confidence

    def match(self, local_name: str, remote_name: str) -> Optional[NameMatch]:
        """Compare two names, honouring min_confidence."""
        result = match_names(local_name, remote_name)
        if result is None or result.confidence < self.min_confidence:
            return None
        return result

    def best_match(
        self,
        name: str,
        candidates: Iterable[T],
        key: Callable[[T], str],
    ) -> Optional[tuple[T, NameMatch]]:
        """
        Find the highest-confidence candidate for a name.

        Ties go to the first candidate encountered, so callers control the
        tie-break through iteration order.

        Args:
            name: Name to match
            candidates: Objects to match against
            key: Extracts the display name from a candidate

        Returns:
            (candidate, match) for the best candidate, or None
        """
        best: Optional[tuple[T, NameMatch]] = None
        for candidate in candidates:
            result = self.match(name, key(candidate))
            if result is None:
                continue
            if best is None or result.confidence > best[1].confidence:
                best = (candidate, result)
                if result.confidence >= EXACT_CONFIDENCE:
                    break
        return best
