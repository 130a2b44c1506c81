"""Tests for the AuthenticationService facade."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

from unittest.mock import patch

from sessionkeeper.exceptions import TokenNetworkError, TokenRefreshError
from sessionkeeper.secret_store import KeyringSecretStore, MemorySecretStore
from sessionkeeper.service import AuthenticationService

from tests.conftest import make_token, read_blob, stored_entry, write_blob


class TestLifecycle:
    """Tests for initialize, dispose and build."""

    def test_initialize_once(self, service, secret_store, mock_client) -> None:
        """A second initialize does not reload storage."""
        write_blob(secret_store, [stored_entry("s1")])
        assert [s.id for s in service.initialize()] == ["s1"]
        assert [s.id for s in service.initialize()] == ["s1"]
        assert mock_client.refresh.call_count == 1

    def test_dispose_keeps_storage(self, service, secret_store, scheduler, mock_client) -> None:
        """dispose stops timers and closes the client but keeps stored sessions."""
        write_blob(secret_store, [stored_entry("s1")])
        service.initialize()
        service.dispose()

        assert scheduler.pending() == []
        mock_client.close.assert_awaited_once()
        assert [e["id"] for e in read_blob(secret_store)] == ["s1"]

    def test_context_manager(self, settings, mock_client, secret_store, scheduler) -> None:
        """The service initializes on enter and disposes on exit."""
        write_blob(secret_store, [stored_entry("s1")])
        with AuthenticationService(settings, mock_client, secret_store, scheduler=scheduler) as svc:
            assert [s.id for s in svc.sessions] == ["s1"]
        mock_client.close.assert_awaited_once()

    def test_build(self, settings) -> None:
        """build wires the configured client and secret store."""
        service = AuthenticationService.build(settings)
        assert isinstance(service.secret_store, MemorySecretStore)
        assert service.client.client_id == "cli"
        assert service.client.issuer_url == "https://sso.example.com/realms/demo"
        assert service.bridge.key == "test.sessions"

    def test_build_keyring(self, settings) -> None:
        """The keyring backend is the configured default store."""
        settings.secret_store.backend = "keyring"
        with patch("sessionkeeper.secret_store.keyring"):
            service = AuthenticationService.build(settings)
        assert isinstance(service.secret_store, KeyringSecretStore)


class TestSessionOperations:
    """Tests for listing and removing sessions."""

    def test_get_sessions_by_scope(self, service) -> None:
        """Only sessions with exactly the requested scopes are returned."""
        service.refresher.register(make_token("s1", scope="a b"))
        service.refresher.register(make_token("s2", scope="a"))
        sessions = service.get_sessions(["b", "a"])
        assert [s.id for s in sessions] == ["s1"]
        assert sessions[0].access_token == "at_s1"

    def test_get_sessions_refreshes(self, service) -> None:
        """Expired tokens are refreshed before being returned."""
        service.refresher.register(make_token("s1", expires_in=-5))
        assert service.get_sessions("a b")[0].access_token == "at_refreshed"

    def test_get_sessions_unavailable(self, service, mock_client) -> None:
        """Sessions cut off by the network are returned without access token."""
        service.refresher.register(make_token("s1", expires_in=-5))
        mock_client.refresh.side_effect = TokenNetworkError("offline")
        sessions = service.get_sessions()
        assert [s.id for s in sessions] == ["s1"]
        assert sessions[0].access_token is None

    def test_get_sessions_expired(self, service, mock_client) -> None:
        """Rejected sessions are removed and omitted."""
        service.refresher.register(make_token("s1", expires_in=-5))
        service.refresher.register(make_token("s2"))
        mock_client.refresh.side_effect = TokenRefreshError("invalid_grant")
        assert [s.id for s in service.get_sessions()] == ["s2"]
        assert service.store.get("s1") is None

    def test_remove_session(self, service, recorder, secret_store) -> None:
        """Removing a session emits removed and updates storage."""
        service.refresher.register(make_token("s1"))
        service.refresher.register(make_token("s2"))

        removed = service.remove_session("s1")

        assert removed.id == "s1"
        assert recorder.ids("removed") == ["s1"]
        assert [e["id"] for e in read_blob(secret_store)] == ["s2"]

    def test_remove_last_session_deletes_blob(self, service, secret_store) -> None:
        """The blob disappears with the last session."""
        service.refresher.register(make_token("s1"))
        service.remove_session("s1")
        assert read_blob(secret_store) is None

    def test_remove_unknown(self, service, recorder) -> None:
        """Removing an unknown session is a no-op."""
        assert service.remove_session("nope") is None
        assert recorder.events == []

    def test_clear_sessions(self, service, recorder, secret_store, scheduler) -> None:
        """clear_sessions removes everything in one batch."""
        service.refresher.register(make_token("s1"))
        service.refresher.register(make_token("s2"))

        removed = service.clear_sessions()

        assert [s.id for s in removed] == ["s1", "s2"]
        assert len(recorder.events) == 1
        assert recorder.ids("removed") == ["s1", "s2"]
        assert read_blob(secret_store) is None
        assert scheduler.pending() == []


class TestWatching:
    """Tests for reconciling on secret store changes."""

    def test_external_change_reconciles(self, settings, mock_client, scheduler, recorder) -> None:
        """A change written by another process adds its sessions here."""
        settings.secret_store.watch_changes = True
        shared = MemorySecretStore()
        service = AuthenticationService(settings, mock_client, shared, scheduler=scheduler)
        service.subscribe(recorder)
        service.initialize()

        write_blob(shared, [stored_entry("s9")])

        assert recorder.received.wait(5)
        assert recorder.ids("added") == ["s9"]
        service.dispose()

    def test_other_keys_ignored(self, settings, mock_client, scheduler, recorder) -> None:
        """Changes to unrelated keys do not trigger reconciliation."""
        settings.secret_store.watch_changes = True
        service = AuthenticationService(settings, mock_client, MemorySecretStore(), scheduler=scheduler)
        service.subscribe(recorder)
        service.initialize()

        with patch.object(service, "reconcile") as reconcile:
            service._on_secret_changed("other.sessions")  # noqa: SLF001
            reconcile.assert_not_called()
            service._on_secret_changed("test.sessions")  # noqa: SLF001
            reconcile.assert_called_once_with()
        service.dispose()
