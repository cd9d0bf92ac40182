"""
Server side of mapping activation.

Applies each action of an activation batch on its own. A failed action is
counted and reported; earlier actions stay applied. Every action replaces
whatever links its people had before, so re-running a batch converges.
"""

import logging
import sqlite3
import uuid
from collections.abc import Callable
from typing import Optional

from cherishly_sync.api.peer_client import PeerAPIError, PeerClient
from cherishly_sync.storage.db import SyncDatabase
from cherishly_sync.sync.errors import MappingError, SyncError
from cherishly_sync.sync.handshake import get_active_connection
from cherishly_sync.sync.models import CandidateStatus, Connection, EntityType, LinkStatus
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

# Resolution recorded on conflicts closed by a manual link
LINKED_MANUALLY = "linked_manually"


class MappingActionHandler:
    """
    Applies activation batches to storage (and to the peer for create_remote).

    Usage:
        handler = MappingActionHandler(db, peer_factory)
        response = handler.apply(ActivationRequest(connection_id=..., actions=[...]))
    """

    def __init__(
        self,
        database: SyncDatabase,
        peer_factory: Optional[Callable[[Connection], PeerClient]] = None,
    ):
        """
        Initialize the handler.

        Args:
            database: Sync database
            peer_factory: Builds a peer client; needed for create_remote
        """
        self.database = database
        self.peer_factory = peer_factory

    def apply(self, request: ActivationRequest) -> ActivationResponse:
        """
        Apply an activation batch.

        Raises:
            ConnectionNotFoundError: If the connection does not exist
            ConnectionRevokedError: If the connection was revoked
        """
        connection = get_active_connection(self.database, request.connection_id)
        response = ActivationResponse()

        for action in request.actions:
            try:
                self._apply_action(connection, action)
            except (SyncError, PeerAPIError, sqlite3.Error) as e:
                response.failed += 1
                response.errors.append(f"{action.type}: {e}")
                logger.warning(f"Mapping action {action.type} failed: {e}")
            else:
                response.succeeded += 1

        logger.info(
            f"Mapping batch on {connection.id}: {response.succeeded} succeeded, "
            f"{response.failed} failed"
        )
        return response

    def _apply_action(self, connection: Connection, action: MappingAction) -> None:
        if isinstance(action, LinkAction):
            self.link(connection, action.local_person_id, action.remote_person_uid)
        elif isinstance(action, CreateRemoteAction):
            self.create_remote(connection, action.local_person_id)
        elif isinstance(action, CreateLocalAction):
            self.create_local(
                connection,
                action.remote_person_uid,
                action.remote_name,
                action.remote_relationship_label,
            )
        elif isinstance(action, ExcludeAction):
            if action.remote_person_uid is not None:
                self.exclude_remote(connection, action.remote_person_uid)
            elif action.local_person_id is not None:
                self.exclude_local(connection, action.local_person_id)
        else:
            raise MappingError(f"Unknown mapping action: {action!r}")

    def _require_partner(self, connection: Connection, local_id: str) -> dict:
        partner = self.database.get_partner(local_id)
        if partner is None or partner["user_id"] != connection.user_id:
            raise MappingError(f"Unknown local person: {local_id}")
        return partner

    # =========================================================================
    # Actions
    # =========================================================================

    def link(self, connection: Connection, local_id: str, remote_uid: str) -> None:
        """Link a local and a remote person, replacing their earlier links."""
        self._require_partner(connection, local_id)
        with self.database.transaction():
            self.database.delete_person_links(
                connection.id, local_person_id=local_id, remote_person_uid=remote_uid
            )
            self.database.insert_person_link(
                connection.id, local_id, remote_uid, link_status=LinkStatus.LINKED.value
            )
            self.database.set_candidate_status(
                connection.id, remote_uid, CandidateStatus.ACCEPTED.value
            )
            resolved = self.database.resolve_open_conflicts(
                connection.id, EntityType.PERSON.value, remote_uid, LINKED_MANUALLY
            )
        logger.debug(f"Linked {local_id} <-> {remote_uid}")
        if resolved:
            logger.info(f"Linking {remote_uid} resolved {resolved} open conflict(s)")

    def create_remote(self, connection: Connection, local_id: str) -> str:
        """
        Create a local person on the peer and link the result.

        Returns:
            The remote person uid
        """
        partner = self._require_partner(connection, local_id)
        if self.peer_factory is None:
            raise MappingError("No peer client configured for create_remote")

        remote_uid = self.peer_factory(connection).create_person(
            person_uid=partner["person_uid"],
            name=partner["name"],
            relationship_label=partner["relationship_type"],
        )
        with self.database.transaction():
            self.database.delete_person_links(
                connection.id, local_person_id=local_id, remote_person_uid=remote_uid
            )
            self.database.insert_person_link(
                connection.id, local_id, remote_uid, link_status=LinkStatus.LINKED.value
            )
            self.database.upsert_remote_person(
                connection.id, remote_uid, partner["name"], partner["relationship_type"]
            )
        logger.debug(f"Created {local_id} remotely as {remote_uid}")
        return remote_uid

    def create_local(
        self,
        connection: Connection,
        remote_uid: str,
        remote_name: str,
        remote_relationship_label: Optional[str] = None,
    ) -> str:
        """
        Create a local person for a remote one and link them.

        The new person shares the remote person_uid unless that uid is
        already taken locally.

        Returns:
            The new local person id
        """
        if not remote_name.strip():
            raise MappingError("Cannot create a person without a name")

        person_uid = remote_uid
        if self.database.get_partner_by_uid(remote_uid) is not None:
            person_uid = str(uuid.uuid4())

        local_id = str(uuid.uuid4())
        with self.database.transaction():
            self.database.insert_partner(
                partner_id=local_id,
                user_id=connection.user_id,
                name=remote_name,
                person_uid=person_uid,
                relationship_type=remote_relationship_label,
            )
            self.database.delete_person_links(connection.id, remote_person_uid=remote_uid)
            self.database.insert_person_link(
                connection.id, local_id, remote_uid, link_status=LinkStatus.LINKED.value
            )
            self.database.set_candidate_status(
                connection.id, remote_uid, CandidateStatus.ACCEPTED.value
            )
        logger.debug(f"Created local person {local_id} for {remote_uid}")
        return local_id

    def exclude_remote(self, connection: Connection, remote_uid: str) -> None:
        """Mark a remote person do-not-sync, dropping any link it had."""
        with self.database.transaction():
            self.database.delete_person_links(connection.id, remote_person_uid=remote_uid)
            self.database.insert_person_link(
                connection.id, None, remote_uid, link_status=LinkStatus.EXCLUDED.value
            )
            self.database.set_candidate_status(
                connection.id, remote_uid, CandidateStatus.DISMISSED.value
            )
        logger.debug(f"Excluded remote person {remote_uid}")

    def exclude_local(self, connection: Connection, local_id: str) -> None:
        """Mark a local person do-not-sync, dropping any link it had."""
        self._require_partner(connection, local_id)
        with self.database.transaction():
            self.database.delete_person_links(connection.id, local_person_id=local_id)
            self.database.insert_person_link(
                connection.id, local_id, None, link_status=LinkStatus.EXCLUDED.value
            )
        logger.debug(f"Excluded local person {local_id}")
