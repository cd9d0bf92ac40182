"""
Pairing codes and connection lifecycle.

Per connection attempt:

    no_code -> code_generated -> (code_accepted | code_expired)

A connection is active from the moment a code is accepted until either
side revokes it. Revoked is terminal; resuming sync needs a new code.
"""

import logging
import secrets
import sqlite3
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from cherishly_sync.api.peer_client import PeerAPIError, PeerClient
from cherishly_sync.storage.db import SyncDatabase
from cherishly_sync.sync.errors import (
    ConnectionNotFoundError,
    ConnectionRevokedError,
    PairingError,
    PairingValidationError,
)
from cherishly_sync.sync.models import Connection, ConnectionStatus, PairingCode
from cherishly_sync.sync.signing import hash_secret
from cherishly_sync.sync.wire import PAIRING_CODE_LENGTH
from cherishly_sync.utils.timestamps import format_timestamp, utcnow

logger = logging.getLogger(__name__)

# No 0/O, 1/I/L: codes are read aloud and typed by hand
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"

DEFAULT_CODE_TTL = timedelta(minutes=10)

# Fresh codes to try when a generated one is still live for another user
MAX_CODE_ATTEMPTS = 5

PeerFactory = Callable[[Connection], PeerClient]
StatusListener = Callable[[str, ConnectionStatus], None]


@dataclass
class AcceptedPairing:
    """A newly established connection and its one-time secret."""

    connection: Connection
    shared_secret: str


def new_code() -> str:
    """Random pairing code from the unambiguous alphabet."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(PAIRING_CODE_LENGTH))


def normalize_code(code: Optional[str]) -> str:
    """
    Normalize and validate a user-entered pairing code.

    Raises:
        PairingValidationError: With a message fit to show the user
    """
    if code is None or not code.strip():
        raise PairingValidationError("Pairing code is required")

    normalized = code.strip().upper()
    if len(normalized) != PAIRING_CODE_LENGTH:
        raise PairingValidationError(
            f"Pairing code must be {PAIRING_CODE_LENGTH} characters"
        )
    if not (normalized.isascii() and normalized.isalnum()):
        raise PairingValidationError("Pairing code may only contain letters and digits")
    return normalized


def get_active_connection(database: SyncDatabase, connection_id: str) -> Connection:
    """
    Load a connection that must be active.

    Raises:
        ConnectionNotFoundError: If it does not exist
        ConnectionRevokedError: If it was revoked
    """
    row = database.get_connection(connection_id)
    if row is None:
        raise ConnectionNotFoundError(f"Connection not found: {connection_id}")
    connection = Connection.from_row(row)
    if not connection.is_active:
        raise ConnectionRevokedError(f"Connection {connection_id} has been revoked")
    return connection


class PairingService:
    """
    Generates and redeems pairing codes and manages connection status.

    Usage:
        service = PairingService(db, peer_factory)

        # On the side showing the code
        pairing = service.generate_code(user_id)

        # On the side that owns the code, when the peer redeems it
        accepted = service.accept_code(code, peer_user_id, "temerio", peer_url)

        # Either side
        service.revoke(connection_id)
    """

    def __init__(
        self,
        database: SyncDatabase,
        peer_factory: Optional[PeerFactory] = None,
        code_ttl: timedelta = DEFAULT_CODE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the pairing service.

        Args:
            database: Sync database
            peer_factory: Builds a peer client for a connection (for revocation)
            code_ttl: Lifetime of generated codes
            clock: Source of the current time
        """
        self.database = database
        self.peer_factory = peer_factory
        self.code_ttl = code_ttl
        self.clock = clock
        self._listeners: list[StatusListener] = []

    # =========================================================================
    # Status listeners
    # =========================================================================

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """
        Register a listener called with (connection_id, status) on changes.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, connection_id: str, status: ConnectionStatus) -> None:
        for listener in list(self._listeners):
            try:
                listener(connection_id, status)
            except Exception as e:
                logger.warning(f"Connection status listener failed: {e}")

    # =========================================================================
    # Pairing
    # =========================================================================

    def generate_code(self, user_id: str) -> PairingCode:
        """
        Create a one-time pairing code for a user.

        Earlier unconsumed codes for the same user stop working.
        """
        now = self.clock()
        expires_at = now + self.code_ttl

        removed = self.database.invalidate_pairing_codes(user_id)
        if removed:
            logger.debug(f"Invalidated {removed} earlier pairing code(s)")
        self.database.purge_pairing_codes(format_timestamp(now) or "")

        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            code = new_code()
            try:
                self.database.insert_pairing_code(
                    code, user_id, format_timestamp(expires_at) or ""
                )
                break
            except sqlite3.IntegrityError:
                logger.debug(f"Pairing code collision (attempt {attempt})")
        else:
            raise PairingError("Could not generate a unique pairing code")

        logger.info(
            f"Generated pairing code for user {user_id}, "
            f"expires in {int(self.code_ttl.total_seconds() // 60)} minutes"
        )
        return PairingCode(code=code, user_id=user_id, expires_at=expires_at, created_at=now)

    def accept_code(
        self,
        code: str,
        accepting_user_id: str,
        remote_app: str,
        remote_base_url: Optional[str] = None,
    ) -> AcceptedPairing:
        """
        Redeem a code generated on this side.

        Creates the connection for the code's owner and a fresh shared
        secret, which is only ever returned here.

        Raises:
            PairingValidationError: If the code is malformed
            PairingError: If the code is unknown, expired or already used
        """
        normalized = normalize_code(code)
        now = format_timestamp(self.clock()) or ""

        consumed = self.database.consume_pairing_code(normalized, now)
        if consumed is None:
            logger.info("Rejected pairing attempt")
            raise PairingError()

        connection_id = str(uuid.uuid4())
        shared_secret = secrets.token_urlsafe(32)
        self.database.insert_connection(
            connection_id=connection_id,
            user_id=consumed["user_id"],
            remote_app=remote_app,
            shared_secret_hash=hash_secret(shared_secret),
            remote_user_id=accepting_user_id,
            remote_base_url=remote_base_url,
        )
        connection = self._load(connection_id)

        logger.info(f"Pairing accepted, connection {connection_id} is active")
        self._notify(connection_id, ConnectionStatus.ACTIVE)
        return AcceptedPairing(connection=connection, shared_secret=shared_secret)

    def register_connection(
        self,
        connection_id: str,
        user_id: str,
        shared_secret: str,
        remote_app: str,
        remote_base_url: Optional[str] = None,
        remote_user_id: Optional[str] = None,
    ) -> Connection:
        """Store this side's copy of a connection the peer just accepted."""
        self.database.insert_connection(
            connection_id=connection_id,
            user_id=user_id,
            remote_app=remote_app,
            shared_secret_hash=hash_secret(shared_secret),
            remote_user_id=remote_user_id,
            remote_base_url=remote_base_url,
        )
        logger.info(f"Registered connection {connection_id} with {remote_app}")
        self._notify(connection_id, ConnectionStatus.ACTIVE)
        return self._load(connection_id)

    def pair_with_peer(
        self,
        code: str,
        user_id: str,
        peer: PeerClient,
        local_app: str,
        remote_app: str,
        local_base_url: Optional[str] = None,
    ) -> Connection:
        """
        Redeem a code shown by the peer and register the resulting connection.

        Raises:
            PairingValidationError: If the code is malformed
            PeerAPIError: If the peer rejects the code or cannot be reached
        """
        normalized = normalize_code(code)
        response = peer.accept_pairing(
            normalized,
            remote_app=local_app,
            remote_user_id=user_id,
            remote_base_url=local_base_url,
        )
        return self.register_connection(
            connection_id=response.connection_id,
            user_id=user_id,
            shared_secret=response.shared_secret,
            remote_app=remote_app,
            remote_base_url=peer.base_url,
            remote_user_id=response.user_id,
        )

    # =========================================================================
    # Revocation
    # =========================================================================

    def revoke(self, connection_id: str, notify_peer: bool = True) -> Connection:
        """
        Revoke a connection and tell the peer (best effort).

        The local revocation stands even if the peer cannot be told.
        Revoking an already-revoked connection does nothing.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
        """
        connection = self._load(connection_id)
        if not connection.is_active:
            logger.debug(f"Connection {connection_id} already revoked")
            return connection

        self.database.update_connection_status(connection_id, ConnectionStatus.REVOKED.value)
        logger.info(f"Revoked connection {connection_id}")
        self._notify(connection_id, ConnectionStatus.REVOKED)

        if notify_peer and self.peer_factory is not None:
            try:
                self.peer_factory(connection).notify_revoked()
            except PeerAPIError as e:
                logger.warning(f"Could not notify peer of revocation: {e}")

        return self._load(connection_id)

    def mark_revoked_by_peer(self, connection_id: str) -> bool:
        """
        Apply a revocation announced by the peer.

        Returns:
            True if the connection was active and is now revoked
        """
        changed = self.database.update_connection_status(
            connection_id, ConnectionStatus.REVOKED.value
        )
        if changed:
            logger.info(f"Peer revoked connection {connection_id}")
            self._notify(connection_id, ConnectionStatus.REVOKED)
        return changed

    def _load(self, connection_id: str) -> Connection:
        row = self.database.get_connection(connection_id)
        if row is None:
            raise ConnectionNotFoundError(f"Connection not found: {connection_id}")
        return Connection.from_row(row)


def describe_code(code: PairingCode, now: Optional[datetime] = None) -> str:
    """One-line description of a code and its remaining lifetime."""
    now = now or utcnow()
    if code.is_expired(now):
        return f"{code.code} (expired)"
    minutes, seconds = divmod(code.seconds_remaining(now), 60)
    return f"{code.code} (expires in {minutes}:{seconds:02d})"

