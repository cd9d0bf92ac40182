"""Shared fixtures: an in-memory database and small record factories."""

import json
import uuid

import pytest

from cherishly_sync.storage.db import SyncDatabase
from cherishly_sync.sync.models import Connection
from cherishly_sync.sync.signing import CONNECTION_HEADER, SIGNATURE_HEADER, hash_secret, sign_body

USER_ID = "user-1"
SHARED_SECRET = "test-shared-secret"


@pytest.fixture
def db():
    """Create an initialized in-memory database."""
    database = SyncDatabase(":memory:")
    database.initialize()
    return database


@pytest.fixture
def connection(db):
    """An active connection owned by USER_ID."""
    connection_id = str(uuid.uuid4())
    db.insert_connection(
        connection_id=connection_id,
        user_id=USER_ID,
        remote_app="temerio",
        shared_secret_hash=hash_secret(SHARED_SECRET),
        remote_user_id="remote-user",
        remote_base_url="https://peer.example",
    )
    return Connection.from_row(db.get_connection(connection_id))


@pytest.fixture
def add_person(db):
    """Factory inserting a local person and returning its id."""

    def _add(name, person_uid=None, person_id=None, updated_at=None, **kwargs):
        person_id = person_id or f"p-{uuid.uuid4().hex[:8]}"
        db.insert_partner(
            partner_id=person_id,
            user_id=kwargs.pop("user_id", USER_ID),
            name=name,
            person_uid=person_uid or f"uid-{person_id}",
            updated_at=updated_at,
            **kwargs,
        )
        return person_id

    return _add


@pytest.fixture
def add_moment(db):
    """Factory inserting a moment and returning its moment_uid."""

    def _add(partner_ids, moment_uid=None, title="Dinner", updated_at=None, **kwargs):
        moment_uid = moment_uid or f"m-{uuid.uuid4().hex[:8]}"
        db.insert_moment(
            {
                "id": str(uuid.uuid4()),
                "user_id": kwargs.pop("user_id", USER_ID),
                "moment_uid": moment_uid,
                "title": title,
                "moment_date": kwargs.pop("moment_date", "2024-05-01"),
                "partner_ids": partner_ids,
                "updated_at": updated_at,
                **kwargs,
            }
        )
        return moment_uid

    return _add


@pytest.fixture
def sign_request():
    """Factory returning (raw_body, headers) for a signed peer request."""

    def _sign(connection_id, body, secret=SHARED_SECRET):
        raw = json.dumps(body).encode("utf-8")
        headers = {
            CONNECTION_HEADER: connection_id,
            SIGNATURE_HEADER: sign_body(hash_secret(secret), raw),
        }
        return raw, headers

    return _sign
