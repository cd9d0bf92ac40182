"""
HTTP client for the peer application's sync endpoints.

Provides a high-level interface to the peer for:
- Listing and creating people
- Pushing and pulling sync events
- Accepting a pairing code and announcing revocation
- Exponential backoff retry for rate limits, server errors and
  connection failures
"""

import json
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Optional

import requests
from pydantic import BaseModel, ValidationError

from cherishly_sync.sync.signing import CONNECTION_HEADER, SIGNATURE_HEADER, sign_body
from cherishly_sync.sync.wire import (
    CreatePersonRequest,
    CreatePersonResponse,
    EmptyRequest,
    PairingAcceptRequest,
    PairingAcceptResponse,
    PeerPerson,
    PeopleResponse,
    PulledEvent,
    PullRequest,
    PullResponse,
    PushRequest,
    PushResponse,
    SyncEvent,
)

if TYPE_CHECKING:
    from cherishly_sync.config.settings import SyncSettings
    from cherishly_sync.sync.models import Connection

# Retry configuration defaults
DEFAULT_TIMEOUT = 15.0  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 30.0  # seconds

logger = logging.getLogger(__name__)


class PeerAPIError(Exception):
    """Raised when a call to the peer fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PeerRateLimitError(PeerAPIError):
    """Raised when the peer keeps rate limiting and retries are exhausted."""

    pass


class PeerClient:
    """
    Client for one connection's peer endpoints.

    Every request except pairing acceptance is signed with the connection
    key and carries the connection id header.

    Usage:
        client = PeerClient("https://peer.example", connection_id, key)

        people = client.list_people()
        response = client.push_events(events)
        events = client.pull_events(after_id=0)
    """

    def __init__(
        self,
        base_url: str,
        connection_id: Optional[str] = None,
        signing_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the peer client.

        Args:
            base_url: Base URL of the peer's sync endpoints
            connection_id: Connection id sent with signed requests
            signing_key: Connection key used for HMAC signatures
            timeout: Per-request timeout in seconds
            max_retries: Maximum attempts for retryable failures
            initial_retry_delay: Initial backoff delay in seconds
            max_retry_delay: Maximum backoff delay in seconds
            session: Optional requests session (a new one by default)
        """
        self.base_url = base_url.rstrip("/")
        self.connection_id = connection_id
        self.signing_key = signing_key
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self.session = session or requests.Session()

    def _retry_with_backoff(
        self, operation: Callable[[], requests.Response], operation_name: str
    ) -> requests.Response:
        """
        Execute a request with exponential backoff retry.

        Args:
            operation: Callable performing the request
            operation_name: Name for logging purposes

        Returns:
            The successful response

        Raises:
            PeerRateLimitError: If retries are exhausted due to rate limits
            PeerAPIError: For other failures
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries):
            is_last = attempt == self.max_retries - 1
            try:
                response = operation()
            except (requests.ConnectionError, requests.Timeout) as e:
                if not is_last:
                    logger.warning(
                        f"{operation_name} could not reach peer, retrying in "
                        f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue
                raise PeerAPIError(f"{operation_name} failed: {e}") from e
            except requests.RequestException as e:
                raise PeerAPIError(f"{operation_name} failed: {e}") from e

            status_code = response.status_code

            if status_code == 429:
                if not is_last:
                    logger.warning(
                        f"{operation_name} rate limited, retrying in "
                        f"{delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                    )
                    time.sleep(delay)
                    delay = min(delay * 2, self.max_retry_delay)
                    continue
                raise PeerRateLimitError(
                    f"Rate limit exceeded for {operation_name} "
                    f"after {self.max_retries} attempts",
                    status_code=status_code,
                )

            if status_code >= 500 and not is_last:
                logger.warning(
                    f"{operation_name} server error ({status_code}), "
                    f"retrying in {delay:.1f}s"
                )
                time.sleep(delay)
                delay = min(delay * 2, self.max_retry_delay)
                continue

            if status_code >= 400:
                logger.error(f"{operation_name} failed with status {status_code}")
                raise PeerAPIError(
                    f"{operation_name} failed with status {status_code}",
                    status_code=status_code,
                )

            return response

        # Should not reach here, but just in case
        raise PeerAPIError(f"{operation_name} failed after all retries")

    def _post(
        self,
        path: str,
        body: BaseModel,
        operation_name: str,
        signed: bool = True,
    ) -> Any:
        raw_body = json.dumps(body.model_dump(mode="json")).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if signed:
            if not self.connection_id or not self.signing_key:
                raise PeerAPIError(f"{operation_name} needs a connection key")
            headers[CONNECTION_HEADER] = self.connection_id
            headers[SIGNATURE_HEADER] = sign_body(self.signing_key, raw_body)

        url = f"{self.base_url}{path}"
        response = self._retry_with_backoff(
            lambda: self.session.post(
                url, data=raw_body, headers=headers, timeout=self.timeout
            ),
            operation_name,
        )
        try:
            return response.json()
        except ValueError as e:
            raise PeerAPIError(f"{operation_name} returned invalid JSON") from e

    @staticmethod
    def _parse(model: type[BaseModel], data: Any, operation_name: str) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise PeerAPIError(f"{operation_name} returned an unexpected body: {e}") from e

    def list_people(self) -> list[PeerPerson]:
        """
        List the peer's people.

        Raises:
            PeerAPIError: If the request fails
        """
        data = self._post("/sync/people", EmptyRequest(), "List people")
        people: list[PeerPerson] = self._parse(PeopleResponse, data, "List people").people
        logger.debug(f"Fetched {len(people)} people from peer")
        return people

    def create_person(
        self, person_uid: str, name: str, relationship_label: Optional[str] = None
    ) -> str:
        """
        Create a person on the peer linked to our person_uid.

        Returns:
            The peer's person uid for the new person
        """
        request = CreatePersonRequest(
            person_uid=person_uid, name=name, relationship_label=relationship_label
        )
        data = self._post("/sync/people/create", request, "Create person")
        result: CreatePersonResponse = self._parse(
            CreatePersonResponse, data, "Create person"
        )
        return result.person_uid

    def push_events(self, events: list[SyncEvent]) -> PushResponse:
        """Push a batch of events to the peer's receiver."""
        data = self._post("/sync/push", PushRequest(events=events), "Push events")
        result: PushResponse = self._parse(PushResponse, data, "Push events")
        return result

    def pull_events(self, after_id: int = 0, limit: int = 200) -> list[PulledEvent]:
        """Pull the peer's undelivered outbox entries after `after_id`."""
        request = PullRequest(after_id=after_id, limit=limit)
        data = self._post("/sync/pull", request, "Pull events")
        result: PullResponse = self._parse(PullResponse, data, "Pull events")
        return result.events

    def notify_revoked(self) -> None:
        """Tell the peer this connection has been revoked."""
        self._post("/sync/connection/revoke", EmptyRequest(), "Notify revoked")

    def accept_pairing(
        self,
        code: str,
        remote_app: str,
        remote_user_id: str,
        remote_base_url: Optional[str] = None,
    ) -> PairingAcceptResponse:
        """
        Redeem a pairing code generated on the peer.

        Unsigned: the code itself is the credential.

        Args:
            code: Pairing code shown to the user by the peer
            remote_app: Our application identifier, as seen by the peer
            remote_user_id: Our user id, as seen by the peer
            remote_base_url: URL at which the peer can reach us
        """
        request = PairingAcceptRequest(
            code=code,
            remote_app=remote_app,
            remote_user_id=remote_user_id,
            remote_base_url=remote_base_url,
        )
        data = self._post("/sync/pairing/accept", request, "Accept pairing", signed=False)
        result: PairingAcceptResponse = self._parse(
            PairingAcceptResponse, data, "Accept pairing"
        )
        return result


def client_for_connection(connection: "Connection", settings: "SyncSettings") -> PeerClient:
    """
    Build a signed client for a stored connection.

    Raises:
        PeerAPIError: If the connection has no peer URL
    """
    base_url = connection.remote_base_url or settings.remote_base_url
    if not base_url:
        raise PeerAPIError(f"Connection {connection.id} has no peer URL")
    return PeerClient(
        base_url,
        connection_id=connection.id,
        signing_key=connection.shared_secret_hash,
        timeout=settings.api_timeout,
        max_retries=settings.api_max_retries,
        initial_retry_delay=settings.api_initial_retry_delay,
        max_retry_delay=settings.api_max_retry_delay,
    )
