"""Proactive token refresh and on-demand access token resolution.

Every registered session with a known lifetime gets one timer that
refreshes it shortly before the access token expires. Refreshes of one
session are serialized by its session lock, whether they come from the
timer, a retry, or a caller asking for an access token.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING

from .exceptions import (
    SessionExpiredError,
    SessionUnavailableError,
    TokenError,
    TokenNetworkError,
)
from .retry import RetryController
from .sync_helpers import run_async
from .types import Account, ResolvedToken, Token


if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import RefreshSettings
    from .providers import OIDCClient
    from .scheduler import ScheduledTask, Scheduler
    from .session import SessionStore


logger = logging.getLogger("sessionkeeper.auth")


class RefreshScheduler:
    """Keeps registered sessions fresh.

    Parameters
    ----------
    client : OIDCClient
        Performs the refresh grant.
    store : SessionStore
        The session store.
    scheduler : Scheduler
        Runs the proactive refresh timers.
    persist : callable
        Writes the current session list to the secret store. Called while
        holding the store's state lock.
    settings : RefreshSettings
        Refresh buffer, retry and poll intervals.
    request_timeout : float
        Seconds to wait for one refresh round trip.
    """

    def __init__(
        self,
        client: OIDCClient,
        store: SessionStore,
        scheduler: Scheduler,
        persist: Callable[[], None],
        settings: RefreshSettings,
        request_timeout: float = 60.0,
    ) -> None:
        """Initialize the refresh scheduler."""
        self._client = client
        self._store = store
        self._scheduler = scheduler
        self._persist = persist
        self._settings = settings
        self._request_timeout = request_timeout
        self.retry = RetryController(self, store, scheduler, settings)

    def refresh_delay(self, expires_in: float) -> float:
        """Seconds until the proactive refresh of a token living ``expires_in``."""
        return max(expires_in - self._settings.refresh_buffer_seconds, 1.0)

    def register(self, token: Token, save: bool = True) -> None:
        """Add or replace a session and arm its refresh timer.

        Parameters
        ----------
        token : Token
            The session to register; an entry with the same id is
            replaced in place.
        save : bool
            Persist the session list afterwards.
        """
        with self._store.lock:
            self._store.upsert(token)
            if token.expires_in is not None:
                delay = self.refresh_delay(token.expires_in)
                task = self._scheduler.call_later(delay, self._on_timer, token.session_id)
                self._store.set_task(token.session_id, task)
                logger.debug("Session %s refresh scheduled in %.0fs", token.session_id, delay)
            if save:
                self._persist()

    def refresh(
        self,
        session_id: str,
        refresh_token: str,
        scope: str,
        account: Account | None = None,
        save: bool = True,
    ) -> Token:
        """Refresh one session over the network and register the result.

        Raises
        ------
        TokenNetworkError
            If the provider could not be reached.
        TokenError
            If the provider rejected the refresh token.
        """
        with self._store.session_lock(session_id):
            try:
                token_set = run_async(self._client.refresh(refresh_token), timeout=self._request_timeout)
            except TimeoutError as exc:
                msg = "Token refresh timed out"
                raise TokenNetworkError(msg, session_id=session_id) from exc
            token = Token.from_token_set(
                token_set,
                scope,
                session_id=session_id,
                account=account,
                refresh_token=refresh_token,
            )
            self.register(token, save=save)
            logger.debug("Session %s refreshed", session_id)
            return token

    def drop(self, session_id: str, notify: bool = True, save: bool = True) -> Token | None:
        """Remove a session, persist, and emit ``removed``.

        Returns
        -------
        Token or None
            The removed token, if the session was registered.
        """
        with self._store.session_lock(session_id):
            self.retry.discard(session_id)
            with self._store.lock:
                token = self._store.remove(session_id)
                if token is not None and save:
                    self._persist()
            if token is not None and notify:
                self._store.notify(removed=[token])
            return token

    def _on_timer(self, task: ScheduledTask, session_id: str) -> None:
        with self._store.session_lock(session_id):
            if not self._store.is_current(session_id, task):
                return
            token = self._store.get(session_id)
            if token is None:
                return
            try:
                refreshed = self.refresh(session_id, token.refresh_token, token.scope, token.account)
            except TokenNetworkError as exc:
                logger.warning("Refreshing session %s failed: %s", session_id, exc)
                self.retry.start(session_id)
                return
            except TokenError as exc:
                logger.warning("Session %s expired: %s", session_id, exc)
                self.drop(session_id)
                return
            self._store.notify(changed=[refreshed])

    def resolve_access(self, session_id: str) -> ResolvedToken:
        """Return a usable access token, refreshing if needed.

        Raises
        ------
        SessionUnavailableError
            If the token could not be refreshed due to network problems.
        SessionExpiredError
            If the session is unknown or the provider rejected it; the
            session has been removed.
        """
        token = self._store.get(session_id)
        if token is not None and token.is_usable:
            logger.debug("Session %s token available from cache", session_id)
            return ResolvedToken(token.access_token, token.id_token)  # type: ignore[arg-type]

        with self._store.session_lock(session_id):
            token = self._store.get(session_id)
            if token is None:
                msg = "Session not found"
                raise SessionExpiredError(msg, session_id=session_id)
            if token.is_usable:
                return ResolvedToken(token.access_token, token.id_token)  # type: ignore[arg-type]

            logger.info("Session %s token expired or unavailable, trying refresh", session_id)
            try:
                refreshed = self.refresh(session_id, token.refresh_token, token.scope, token.account)
            except TokenNetworkError as exc:
                self.retry.start(session_id)
                msg = "Unavailable due to network problems"
                raise SessionUnavailableError(msg, session_id=session_id) from exc
            except TokenError as exc:
                self.drop(session_id)
                msg = "Session expired"
                raise SessionExpiredError(msg, session_id=session_id) from exc

        self._store.notify(changed=[refreshed])
        return ResolvedToken(refreshed.access_token, refreshed.id_token)  # type: ignore[arg-type]
