"""
Wire models for the peer endpoints and the mapping activation batch.

Entity types and operations are plain strings on the wire so that an
unknown value is reported back as a per-event conflict instead of failing
the whole batch.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

# Pairing codes are exactly this long after normalization
PAIRING_CODE_LENGTH = 6


class SyncEvent(BaseModel):
    """One change to a person or a moment."""

    entity_type: str
    entity_uid: str = Field(min_length=1)
    operation: str
    payload: dict[str, Any] = Field(default_factory=dict)


class EmptyRequest(BaseModel):
    """Body of endpoints that take no parameters."""


class PushRequest(BaseModel):
    events: list[SyncEvent] = Field(default_factory=list)


class ConflictReport(BaseModel):
    entity_uid: str
    entity_type: str
    reason: str


class PushResponse(BaseModel):
    applied: int = 0
    conflicts: list[ConflictReport] = Field(default_factory=list)


class PulledEvent(SyncEvent):
    id: int


class PullRequest(BaseModel):
    after_id: int = Field(default=0, ge=0)
    limit: int = Field(default=200, ge=1, le=1000)


class PullResponse(BaseModel):
    events: list[PulledEvent] = Field(default_factory=list)


class PeerPerson(BaseModel):
    person_uid: str
    name: str
    relationship_label: Optional[str] = None


class PeopleResponse(BaseModel):
    people: list[PeerPerson] = Field(default_factory=list)


class CreatePersonRequest(BaseModel):
    person_uid: str = Field(min_length=1)
    name: str = Field(min_length=1)
    relationship_label: Optional[str] = None


class CreatePersonResponse(BaseModel):
    person_uid: str


class PairingAcceptRequest(BaseModel):
    code: str
    remote_app: str = Field(min_length=1)
    remote_user_id: str = Field(min_length=1)
    remote_base_url: Optional[str] = None


class PairingAcceptResponse(BaseModel):
    connection_id: str
    shared_secret: str
    user_id: str


class RevokeResponse(BaseModel):
    status: str


# ---------------------------------------------------------------------------
# Mapping activation batch
# ---------------------------------------------------------------------------


class LinkAction(BaseModel):
    type: Literal["link"] = "link"
    local_person_id: str
    remote_person_uid: str


class CreateRemoteAction(BaseModel):
    type: Literal["create_remote"] = "create_remote"
    local_person_id: str


class CreateLocalAction(BaseModel):
    type: Literal["create_local"] = "create_local"
    remote_person_uid: str
    remote_name: str
    remote_relationship_label: Optional[str] = None


class ExcludeAction(BaseModel):
    """Exclude a remote person, or (local side) mark a local person do-not-sync."""

    type: Literal["exclude"] = "exclude"
    remote_person_uid: Optional[str] = None
    local_person_id: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one_side(self) -> "ExcludeAction":
        if (self.remote_person_uid is None) == (self.local_person_id is None):
            raise ValueError(
                "exclude needs exactly one of remote_person_uid or local_person_id"
            )
        return self


MappingAction = Annotated[
    Union[LinkAction, CreateRemoteAction, CreateLocalAction, ExcludeAction],
    Field(discriminator="type"),
]


class ActivationRequest(BaseModel):
    connection_id: str
    actions: list[MappingAction] = Field(default_factory=list)


class ActivationResponse(BaseModel):
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
