"""
Exception hierarchy for the sync engine.

Conflicts are not exceptions here: they are persisted and reported, never
raised.
"""


class SyncError(Exception):
    """Base class for sync engine errors."""

    pass


class PushAuthError(SyncError):
    """
    Raised when an inbound server-to-server request fails authentication.

    Callers must treat every instance the same way regardless of message:
    missing headers, unknown connection and bad signature all map to an
    opaque 401.
    """

    pass


class PushValidationError(SyncError):
    """Raised when an authenticated push body cannot be parsed."""

    pass


class PairingValidationError(SyncError):
    """Raised when a pairing code is malformed (shown to the user as-is)."""

    pass


class PairingError(SyncError):
    """Raised when a pairing code is unknown, expired or already used."""

    GENERIC_MESSAGE = "Invalid or expired pairing code"

    def __init__(self, message: str = GENERIC_MESSAGE):
        super().__init__(message)


class ConnectionNotFoundError(SyncError):
    """Raised when a connection id does not exist."""

    pass


class ConnectionRevokedError(SyncError):
    """Raised when an operation needs an active connection but it is revoked."""

    pass


class MappingError(SyncError):
    """Raised when a mapping edit references an unknown person."""

    pass


class MergeError(SyncError):
    """Raised when two local people cannot be merged (or a merge undone)."""

    pass
