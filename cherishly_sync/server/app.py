"""
HTTP surface for the peer: the server-to-server sync endpoints.

Every endpoint except pairing acceptance is authenticated by the signature
headers over the raw request body. Handlers are async so that all database
work happens on the event loop thread.
"""

import logging
import uuid
from collections.abc import Callable
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from cherishly_sync import __version__
from cherishly_sync.api.peer_client import PeerClient
from cherishly_sync.storage.db import SyncDatabase
from cherishly_sync.sync.errors import (
    ConnectionNotFoundError,
    ConnectionRevokedError,
    PairingError,
    PairingValidationError,
    PushAuthError,
    PushValidationError,
)
from cherishly_sync.sync.handshake import PairingService
from cherishly_sync.sync.models import Connection, LinkStatus, LocalPerson
from cherishly_sync.sync.receiver import PushReceiver
from cherishly_sync.sync.triggers import drain_outbox
from cherishly_sync.sync.wire import (
    CreatePersonRequest,
    CreatePersonResponse,
    PairingAcceptRequest,
    PairingAcceptResponse,
    PeerPerson,
    PeopleResponse,
    PullRequest,
    PullResponse,
    PushResponse,
    RevokeResponse,
)

logger = logging.getLogger(__name__)

UNAUTHORIZED_MESSAGE = "Unauthorized"


def _parse_body(model: type[BaseModel], raw_body: bytes) -> BaseModel:
    """Parse a JSON body; an empty body counts as {}."""
    return model.model_validate_json(raw_body or b"{}")


def _list_shared_people(database: SyncDatabase, connection: Connection) -> list[PeerPerson]:
    """The connection owner's people, minus those marked do-not-sync on it."""
    excluded = {
        row["local_person_id"]
        for row in database.list_person_links(
            connection.id, statuses=[LinkStatus.EXCLUDED.value]
        )
        if row["local_person_id"]
    }
    return [
        PeerPerson(
            person_uid=person.person_uid,
            name=person.name,
            relationship_label=person.relationship_type,
        )
        for person in (LocalPerson.from_row(r) for r in database.list_partners(connection.user_id))
        if person.id not in excluded
    ]


def _create_person_for_peer(
    database: SyncDatabase, connection: Connection, request: CreatePersonRequest
) -> str:
    """
    Create (or find) the local person for a person the peer just shared.

    Returns:
        The local person_uid
    """
    existing = database.find_active_link_for_remote(connection.id, request.person_uid)
    if existing is not None and existing["local_person_id"]:
        partner = database.get_partner(existing["local_person_id"])
        if partner is not None:
            return partner["person_uid"]

    person_uid = request.person_uid
    if database.get_partner_by_uid(person_uid) is not None:
        person_uid = str(uuid.uuid4())

    local_id = str(uuid.uuid4())
    with database.transaction():
        database.insert_partner(
            partner_id=local_id,
            user_id=connection.user_id,
            name=request.name,
            person_uid=person_uid,
            relationship_type=request.relationship_label,
        )
        database.delete_person_links(connection.id, remote_person_uid=request.person_uid)
        database.insert_person_link(
            connection.id, local_id, request.person_uid, link_status=LinkStatus.LINKED.value
        )
    logger.info(f"Created person {local_id} for peer person {request.person_uid}")
    return person_uid


def create_app(
    database: SyncDatabase,
    peer_factory: Optional[Callable[[Connection], PeerClient]] = None,
) -> FastAPI:
    """
    Build the sync API application.

    Args:
        database: Initialized sync database
        peer_factory: Builds peer clients (used by the pairing service)
    """
    app = FastAPI(
        title="Cherishly Sync API",
        description="Server-to-server endpoints for Cherishly/Temerio sync",
        version=__version__,
    )
    receiver = PushReceiver(database)
    pairing = PairingService(database, peer_factory=peer_factory)
    app.state.database = database
    app.state.receiver = receiver
    app.state.pairing = pairing

    # -------------------------------------------------------------------------
    # Error mapping
    # -------------------------------------------------------------------------

    async def auth_error(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=401, content={"error": UNAUTHORIZED_MESSAGE})

    async def bad_request(request: Request, exc: Exception) -> JSONResponse:
        if isinstance(exc, ValidationError):
            message = f"Invalid request body: {exc.error_count()} error(s)"
        else:
            message = str(exc)
        return JSONResponse(status_code=400, content={"error": message})

    async def not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    app.add_exception_handler(PushAuthError, auth_error)
    app.add_exception_handler(PushValidationError, bad_request)
    app.add_exception_handler(PairingValidationError, bad_request)
    app.add_exception_handler(PairingError, bad_request)
    app.add_exception_handler(ValidationError, bad_request)
    app.add_exception_handler(ConnectionNotFoundError, not_found)
    app.add_exception_handler(ConnectionRevokedError, auth_error)

    async def authenticate(request: Request) -> tuple[Connection, bytes]:
        raw_body = await request.body()
        return receiver.authenticate(raw_body, request.headers), raw_body

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"service": "cherishly-sync", "version": __version__, "status": "ok"}

    @app.post("/sync/push", response_model=PushResponse)
    async def push(request: Request):
        """Apply a batch of events pushed by the peer."""
        raw_body = await request.body()
        return receiver.handle(raw_body, request.headers)

    @app.post("/sync/pull", response_model=PullResponse)
    async def pull(request: Request):
        """Hand the peer our pending outbox events."""
        connection, raw_body = await authenticate(request)
        body = _parse_body(PullRequest, raw_body)
        events = drain_outbox(database, connection.id, after_id=body.after_id, limit=body.limit)
        return PullResponse(events=events)

    @app.post("/sync/people", response_model=PeopleResponse)
    async def people(request: Request):
        """List the people the peer may map against."""
        connection, _ = await authenticate(request)
        return PeopleResponse(people=_list_shared_people(database, connection))

    @app.post("/sync/people/create", response_model=CreatePersonResponse)
    async def create_person(request: Request):
        """Create a person on behalf of the peer and link it."""
        connection, raw_body = await authenticate(request)
        body = _parse_body(CreatePersonRequest, raw_body)
        person_uid = _create_person_for_peer(database, connection, body)
        return CreatePersonResponse(person_uid=person_uid)

    @app.post("/sync/connection/revoke", response_model=RevokeResponse)
    async def revoke(request: Request):
        """Record that the peer revoked the connection."""
        connection, _ = await authenticate(request)
        pairing.mark_revoked_by_peer(connection.id)
        return RevokeResponse(status="revoked")

    @app.post("/sync/pairing/accept", response_model=PairingAcceptResponse)
    async def accept_pairing(request: Request):
        """Redeem a pairing code generated on this side."""
        body = _parse_body(PairingAcceptRequest, await request.body())
        accepted = pairing.accept_code(
            body.code,
            accepting_user_id=body.remote_user_id,
            remote_app=body.remote_app,
            remote_base_url=body.remote_base_url,
        )
        return PairingAcceptResponse(
            connection_id=accepted.connection.id,
            shared_secret=accepted.shared_secret,
            user_id=accepted.connection.user_id,
        )

    return app
