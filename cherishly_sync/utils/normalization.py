"""
Name normalization utilities for cross-system people matching.
"""

from __future__ import annotations

import re

# Anything that is not a letter, digit or whitespace in any script.
# \w covers Unicode letters and digits plus the underscore, which is removed too.
_NON_NAME_CHARS = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")


def normalize_name(value: str) -> str:
    """
    Normalize a display name for comparison.

    Lowercases, removes punctuation and symbols (keeping letters and digits
    of every script, so "Zoë" stays "zoë"), and collapses runs of whitespace.

    Args:
        value: Display name to normalize

    Returns:
        Normalized name, or "" for empty input
    """
    if not value:
        return ""

    normalized = _NON_NAME_CHARS.sub("", value.lower())
    return _WHITESPACE.sub(" ", normalized).strip()


def first_token(value: str) -> str:
    """Return the first whitespace-delimited token of a name, lowercased."""
    parts = value.split() if value else []
    return parts[0].casefold() if parts else ""
