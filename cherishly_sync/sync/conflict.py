"""
Last-write-wins comparison for inbound sync writes.

Decides whether a remote copy of a record should overwrite the local one
based on `updated_at`. Equal timestamps favour the existing record.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from cherishly_sync.utils.timestamps import EPOCH


class WriteDecision(Enum):
    """What to do with an inbound copy of an existing record."""

    APPLY_REMOTE = "apply_remote"  # Remote copy is strictly newer
    NO_CHANGE = "no_change"  # Same timestamp and same content; redelivery
    KEEP_LOCAL = "keep_local"  # Local copy is as new or newer; a conflict


@dataclass
class ComparisonResult:
    """
    Result of comparing a local record with an inbound remote copy.

    Attributes:
        decision: What the receiver should do
        reason: Human-readable explanation
        local_updated_at: Local timestamp used for the comparison
        remote_updated_at: Remote timestamp used for the comparison
    """

    decision: WriteDecision
    reason: str
    local_updated_at: datetime
    remote_updated_at: datetime

    @property
    def is_conflict(self) -> bool:
        return self.decision == WriteDecision.KEEP_LOCAL


class LastWriteWins:
    """
    Compares update timestamps of a local record and its remote copy.

    A missing timestamp counts as the epoch, so a remote copy without one
    never overwrites an existing record.

    Usage:
        result = LastWriteWins().compare(local_ts, remote_ts, same_content)
        if result.decision == WriteDecision.APPLY_REMOTE:
            ...
    """

    def compare(
        self,
        local_updated_at: Optional[datetime],
        remote_updated_at: Optional[datetime],
        same_content: bool = False,
    ) -> ComparisonResult:
        """
        Compare two update timestamps.

        Args:
            local_updated_at: When the local record last changed
            remote_updated_at: When the remote copy last changed
            same_content: Whether both copies carry identical content

        Returns:
            ComparisonResult describing the decision
        """
        local_ts = local_updated_at or EPOCH
        remote_ts = remote_updated_at or EPOCH

        if remote_ts > local_ts:
            return ComparisonResult(
                decision=WriteDecision.APPLY_REMOTE,
                reason=f"Remote copy is newer ({remote_ts.isoformat()} > {local_ts.isoformat()})",
                local_updated_at=local_ts,
                remote_updated_at=remote_ts,
            )

        if remote_ts == local_ts and same_content:
            return ComparisonResult(
                decision=WriteDecision.NO_CHANGE,
                reason="Copies are identical",
                local_updated_at=local_ts,
                remote_updated_at=remote_ts,
            )

        if remote_ts == local_ts:
            reason = f"Timestamps are equal ({local_ts.isoformat()}), keeping local copy"
        else:
            reason = f"Local copy is newer ({local_ts.isoformat()} > {remote_ts.isoformat()})"
        return ComparisonResult(
            decision=WriteDecision.KEEP_LOCAL,
            reason=reason,
            local_updated_at=local_ts,
            remote_updated_at=remote_ts,
        )
