"""
Unit tests for pairing codes and the connection lifecycle.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from cherishly_sync.api.peer_client import PeerAPIError
from cherishly_sync.sync.errors import (
    ConnectionNotFoundError,
    ConnectionRevokedError,
    PairingError,
    PairingValidationError,
)
from cherishly_sync.sync.handshake import (
    CODE_ALPHABET,
    PairingService,
    describe_code,
    get_active_connection,
    normalize_code,
)
from cherishly_sync.sync.models import ConnectionStatus
from cherishly_sync.sync.signing import hash_secret
from cherishly_sync.sync.wire import PairingAcceptResponse


class FakeClock:
    """Controllable clock for expiry tests."""

    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(db, clock):
    return PairingService(db, clock=clock)


class TestNormalizeCode:
    """Tests for code validation."""

    def test_normalizes_case_and_whitespace(self):
        assert normalize_code("  abc234 ") == "ABC234"

    def test_required(self):
        with pytest.raises(PairingValidationError, match="required"):
            normalize_code("   ")

    def test_length(self):
        with pytest.raises(PairingValidationError, match="6 characters"):
            normalize_code("ABC23")

    def test_characters(self):
        with pytest.raises(PairingValidationError, match="letters and digits"):
            normalize_code("ABC-23")


class TestGenerateCode:
    """Tests for code generation."""

    def test_code_shape(self, service):
        code = service.generate_code("user-1")
        assert len(code.code) == 6
        assert all(c in CODE_ALPHABET for c in code.code)
        assert code.expires_at - code.created_at == timedelta(minutes=10)

    def test_new_code_invalidates_previous(self, service):
        first = service.generate_code("user-1")
        service.generate_code("user-1")
        with pytest.raises(PairingError):
            service.accept_code(first.code, "remote-user", "temerio")

    def test_describe_code(self, service, clock):
        code = service.generate_code("user-1")
        assert describe_code(code, clock.now) == f"{code.code} (expires in 10:00)"
        assert describe_code(code, clock.now + timedelta(minutes=11)).endswith("(expired)")

    def test_collision_with_live_code_retried(self, service):
        with patch(
            "cherishly_sync.sync.handshake.new_code", side_effect=["AAAAAA", "AAAAAA", "BBBBBB"]
        ):
            first = service.generate_code("user-1")
            second = service.generate_code("user-2")

        assert first.code == "AAAAAA"
        assert second.code == "BBBBBB"

    def test_used_code_value_can_be_reissued(self, service):
        with patch("cherishly_sync.sync.handshake.new_code", return_value="AAAAAA"):
            first = service.generate_code("user-1")
            service.accept_code(first.code, "remote-user", "temerio")
            second = service.generate_code("user-2")

        assert second.code == "AAAAAA"

    def test_gives_up_after_repeated_collisions(self, service):
        with patch("cherishly_sync.sync.handshake.new_code", return_value="AAAAAA"):
            service.generate_code("user-1")
            with pytest.raises(PairingError, match="unique"):
                service.generate_code("user-2")


class TestAcceptCode:
    """Tests for redeeming codes."""

    def test_accept_creates_active_connection(self, db, service):
        code = service.generate_code("user-1")

        accepted = service.accept_code(
            code.code.lower(), "remote-user", "temerio", "https://peer.example"
        )

        connection = accepted.connection
        assert connection.is_active
        assert connection.user_id == "user-1"
        assert connection.remote_user_id == "remote-user"
        assert connection.shared_secret_hash == hash_secret(accepted.shared_secret)
        assert db.get_connection(connection.id)["status"] == "active"

    def test_code_is_single_use(self, service):
        code = service.generate_code("user-1")
        service.accept_code(code.code, "remote-user", "temerio")
        with pytest.raises(PairingError):
            service.accept_code(code.code, "remote-user", "temerio")

    def test_expired_code_rejected_with_generic_message(self, service, clock):
        code = service.generate_code("user-1")
        clock.advance(minutes=11)
        with pytest.raises(PairingError, match="Invalid or expired pairing code"):
            service.accept_code(code.code, "remote-user", "temerio")

    def test_unknown_code_rejected(self, service):
        with pytest.raises(PairingError, match="Invalid or expired pairing code"):
            service.accept_code("ZZZZZZ", "remote-user", "temerio")

    def test_listener_notified(self, service):
        listener = MagicMock()
        unsubscribe = service.subscribe(listener)
        code = service.generate_code("user-1")

        accepted = service.accept_code(code.code, "remote-user", "temerio")

        listener.assert_called_once_with(accepted.connection.id, ConnectionStatus.ACTIVE)
        unsubscribe()
        service.revoke(accepted.connection.id, notify_peer=False)
        assert listener.call_count == 1


class TestPairWithPeer:
    """Tests for redeeming a code generated on the peer."""

    def test_registers_connection_from_peer_response(self, db, service):
        peer = MagicMock()
        peer.base_url = "https://peer.example"
        peer.accept_pairing.return_value = PairingAcceptResponse(
            connection_id="conn-9", shared_secret="s3cret", user_id="peer-user"
        )

        connection = service.pair_with_peer(
            "abc234", "user-1", peer, local_app="cherishly", remote_app="temerio"
        )

        peer.accept_pairing.assert_called_once_with(
            "ABC234", remote_app="cherishly", remote_user_id="user-1", remote_base_url=None
        )
        assert connection.id == "conn-9"
        assert connection.shared_secret_hash == hash_secret("s3cret")
        assert connection.remote_base_url == "https://peer.example"

    def test_malformed_code_never_reaches_peer(self, service):
        peer = MagicMock()
        with pytest.raises(PairingValidationError):
            service.pair_with_peer("x", "user-1", peer, "cherishly", "temerio")
        peer.accept_pairing.assert_not_called()


class TestRevoke:
    """Tests for revocation."""

    def test_revoke_notifies_peer(self, db, connection):
        peer = MagicMock()
        service = PairingService(db, peer_factory=lambda c: peer)

        revoked = service.revoke(connection.id)

        assert revoked.status == ConnectionStatus.REVOKED
        peer.notify_revoked.assert_called_once()

    def test_revoke_stands_when_peer_unreachable(self, db, connection):
        peer = MagicMock()
        peer.notify_revoked.side_effect = PeerAPIError("down")
        service = PairingService(db, peer_factory=lambda c: peer)

        revoked = service.revoke(connection.id)

        assert revoked.status == ConnectionStatus.REVOKED

    def test_revoke_twice_is_noop(self, db, connection):
        peer = MagicMock()
        service = PairingService(db, peer_factory=lambda c: peer)
        service.revoke(connection.id)
        service.revoke(connection.id)
        peer.notify_revoked.assert_called_once()

    def test_revoked_connection_is_unusable(self, db, connection):
        PairingService(db).revoke(connection.id, notify_peer=False)
        with pytest.raises(ConnectionRevokedError):
            get_active_connection(db, connection.id)

    def test_mark_revoked_by_peer(self, db, connection):
        service = PairingService(db)
        assert service.mark_revoked_by_peer(connection.id) is True
        assert service.mark_revoked_by_peer(connection.id) is False

    def test_unknown_connection(self, db):
        with pytest.raises(ConnectionNotFoundError):
            PairingService(db).revoke("missing")
