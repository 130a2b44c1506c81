"""Tests for proactive refresh and on-demand access token resolution."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import pytest

from sessionkeeper.exceptions import (
    SessionExpiredError,
    SessionUnavailableError,
    TokenNetworkError,
    TokenRefreshError,
)

from tests.conftest import make_token, read_blob


# ── Proactive timer ─────────────────────────────────────────────────


class TestRefreshTimer:
    """Tests for the per-session refresh timer."""

    def test_timer_fires_before_expiry(self, service, scheduler, mock_client) -> None:
        """The refresh runs refresh_buffer seconds before expiry."""
        service.refresher.register(make_token("s1", expires_in=300))
        scheduler.advance(269)
        mock_client.refresh.assert_not_called()
        scheduler.advance(1)
        mock_client.refresh.assert_called_once_with("rt_s1")

    def test_delay_clamped_to_one_second(self, service) -> None:
        """Lifetimes shorter than the buffer refresh after one second."""
        assert service.refresher.refresh_delay(10) == 1.0
        assert service.refresher.refresh_delay(300) == 270.0

    def test_no_timer_without_lifetime(self, service, scheduler) -> None:
        """Tokens without expires_in are not scheduled."""
        service.refresher.register(make_token("s1", expires_in=None))
        assert scheduler.pending() == []

    def test_one_timer_per_session(self, service, scheduler) -> None:
        """Registering again replaces the previous timer."""
        service.refresher.register(make_token("s1"))
        service.refresher.register(make_token("s1"))
        service.refresher.register(make_token("s2"))
        assert len(scheduler.pending()) == 2

    def test_success_emits_changed(self, service, scheduler, recorder) -> None:
        """A timer refresh updates the token and emits changed."""
        service.refresher.register(make_token("s1"))
        scheduler.advance(270)

        token = service.store.get("s1")
        assert token.access_token == "at_refreshed"
        assert token.refresh_token == "rt_refreshed"
        assert token.account.label == "alice"
        assert recorder.ids("changed") == ["s1"]
        assert [t.when for t in scheduler.pending()] == [540]

    def test_success_persists_rotated_token(self, service, scheduler, secret_store) -> None:
        """The rotated refresh token is written to storage."""
        service.refresher.register(make_token("s1"))
        scheduler.advance(270)
        assert [e["refreshToken"] for e in read_blob(secret_store)] == ["rt_refreshed"]

    def test_network_failure_starts_retry(self, service, scheduler, mock_client, recorder) -> None:
        """An unreachable provider withdraws the access token and retries."""
        mock_client.refresh.side_effect = TokenNetworkError("offline")
        service.refresher.register(make_token("s1"))
        scheduler.advance(270)

        assert service.store.get("s1").access_token is None
        assert service.refresher.retry.active("s1")
        assert recorder.ids("changed") == ["s1"]
        assert recorder.events[-1].changed[0].access_token is None

    def test_terminal_failure_removes_session(
        self, service, scheduler, mock_client, recorder, secret_store
    ) -> None:
        """A rejected refresh token removes the session."""
        service.refresher.register(make_token("s1"))
        mock_client.refresh.side_effect = TokenRefreshError("invalid_grant")
        scheduler.advance(270)

        assert service.store.get("s1") is None
        assert recorder.ids("removed") == ["s1"]
        assert read_blob(secret_store) is None

    def test_drop_cancels_timer(self, service, scheduler, mock_client) -> None:
        """A removed session is never refreshed."""
        service.refresher.register(make_token("s1"))
        service.refresher.drop("s1")
        scheduler.advance(1000)
        mock_client.refresh.assert_not_called()
        assert scheduler.pending() == []

    def test_register_persists(self, service, secret_store) -> None:
        """Registering a session writes it to storage."""
        service.refresher.register(make_token("s1"))
        assert [e["id"] for e in read_blob(secret_store)] == ["s1"]

    def test_register_without_save(self, service, secret_store) -> None:
        """save=False leaves storage untouched."""
        service.refresher.register(make_token("s1"), save=False)
        assert read_blob(secret_store) is None


# ── On-demand resolution ────────────────────────────────────────────


class TestResolveAccess:
    """Tests for RefreshScheduler.resolve_access."""

    def test_cached_token(self, service, mock_client) -> None:
        """A usable cached token is returned without a network call."""
        service.refresher.register(make_token("s1"))
        resolved = service.resolve_access("s1")
        assert resolved.access_token == "at_s1"
        assert resolved.id_token == "id_s1"
        mock_client.refresh.assert_not_called()

    def test_expired_token_refreshes(self, service, mock_client, recorder) -> None:
        """An expired token is refreshed on demand."""
        service.refresher.register(make_token("s1", expires_in=-5))
        resolved = service.resolve_access("s1")
        assert resolved.access_token == "at_refreshed"
        mock_client.refresh.assert_called_once_with("rt_s1")
        assert recorder.ids("changed") == ["s1"]

    def test_withdrawn_token_refreshes(self, service, mock_client) -> None:
        """A session without access token is refreshed on demand."""
        service.refresher.register(make_token("s1", access_token=None))
        assert service.resolve_access("s1").access_token == "at_refreshed"

    def test_unknown_session(self, service) -> None:
        """An unknown session is reported as expired."""
        with pytest.raises(SessionExpiredError, match="Session not found"):
            service.resolve_access("nope")

    def test_network_failure(self, service, mock_client) -> None:
        """Network failures keep the session and start retrying."""
        service.refresher.register(make_token("s1", expires_in=-5))
        mock_client.refresh.side_effect = TokenNetworkError("offline")

        with pytest.raises(SessionUnavailableError, match="network problems") as exc_info:
            service.resolve_access("s1")

        assert exc_info.value.session_id == "s1"
        assert service.store.get("s1") is not None
        assert service.refresher.retry.active("s1")

    def test_terminal_failure(self, service, mock_client, recorder) -> None:
        """A rejected refresh token removes the session."""
        service.refresher.register(make_token("s1", expires_in=-5))
        mock_client.refresh.side_effect = TokenRefreshError("invalid_grant")

        with pytest.raises(SessionExpiredError, match="Session expired"):
            service.resolve_access("s1")

        assert service.store.get("s1") is None
        assert recorder.ids("removed") == ["s1"]

    def test_timeout_is_network_failure(self, service, mock_client, monkeypatch) -> None:
        """A refresh that exceeds its deadline counts as a network failure."""
        service.refresher.register(make_token("s1", expires_in=-5))

        def _timeout(coro, timeout=None):
            coro.close()
            raise TimeoutError

        monkeypatch.setattr("sessionkeeper.refresh.run_async", _timeout)
        with pytest.raises(SessionUnavailableError):
            service.resolve_access("s1")
