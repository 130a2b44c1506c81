"""Browser login flow orchestrator.

Coordinates one interactive login: a local redirect listener, the system
browser, the provider's authorization page, and the PKCE code exchange.
Uses blocking futures for synchronization between the caller's thread
and the listener's request handlers.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import re
import secrets
import threading
import webbrowser

from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlencode

from .callback_server import RedirectListener
from .exceptions import AuthenticationError, AuthFlowTimeout, TokenNetworkError, UserFlowError
from .pkce import PKCEChallenge, generate_nonce
from .sync_helpers import run_async
from .types import Session, Token, canonical_scope


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from concurrent.futures import Future

    from .callback_server import ListenerRequest
    from .config import ListenerSettings, OIDCSettings
    from .providers import OIDCClient
    from .refresh import RefreshScheduler
    from .scheduler import ScheduledTask, Scheduler
    from .session import SessionStore


logger = logging.getLogger("sessionkeeper.auth")

# Port the browser actually used, taken from the Host header.
_HOST_PORT = re.compile(r"^[^:]+:(\d+)$")


class LoginFlow:
    """Runs browser logins for one service.

    Parameters
    ----------
    client : OIDCClient
        The provider client.
    refresher : RefreshScheduler
        Registers the new session and arms its refresh timer.
    store : SessionStore
        Receives the ``added`` notification.
    scheduler : Scheduler
        Closes the listener after the grace delay.
    oidc : OIDCSettings
        Service id and API resource.
    listener : ListenerSettings
        Listener address, external URL, callback path and timeouts.
    listener_factory : callable, optional
        Builds the redirect listener (default ``RedirectListener``).
    open_browser : callable, optional
        Opens a URL in the system browser (default ``webbrowser.open``).
    """

    def __init__(
        self,
        client: OIDCClient,
        refresher: RefreshScheduler,
        store: SessionStore,
        scheduler: Scheduler,
        oidc: OIDCSettings,
        listener: ListenerSettings,
        listener_factory: Callable[..., RedirectListener] = RedirectListener,
        open_browser: Callable[[str], Any] = webbrowser.open,
    ) -> None:
        """Initialize the login flow."""
        self._client = client
        self._refresher = refresher
        self._store = store
        self._scheduler = scheduler
        self._oidc = oidc
        self._listener = listener
        self._listener_factory = listener_factory
        self._open_browser = open_browser
        self._lock = threading.Lock()
        self._closing: dict[RedirectListener, ScheduledTask] = {}

    def status_url(self, **params: str) -> str:
        """Build a local status page URL (``/?service=..&login=..``)."""
        return "/?" + urlencode({"service": self._oidc.service_id, **params})

    def create_session(self, scopes: str | Iterable[str]) -> Session:
        """Log in through the browser and register a new session.

        Parameters
        ----------
        scopes : str or iterable of str
            Requested scopes (``openid`` is always added).

        Returns
        -------
        Session
            The new session.

        Raises
        ------
        ListenerError
            If the local listener could not be started.
        AuthFlowTimeout
            If the browser did not complete a step in time.
        UserFlowError
            If the sign-in or the provider reported an error.
        TokenError
            If the code exchange failed.
        """
        flow_id = secrets.token_urlsafe(8)
        scope = canonical_scope(scopes)
        logger.info("Auth flow %s: logging in to %s", flow_id, self._client.issuer_url)
        self._call(self._client.discover())

        nonce = generate_nonce()
        pkce = PKCEChallenge.generate()
        listener = self._listener_factory(
            nonce=nonce,
            callback_path=self._listener.callback_path,
            host=self._listener.host,
            port=self._listener.port,
        )
        port = listener.start()
        base = self._listener.external_url

        try:
            self._open_browser(f"{base}:{port}/signin?nonce={quote(nonce)}")

            signin = self._wait(listener.redirect, flow_id)
            if signin.error:
                signin.redirect(self.status_url(error=signin.error))
                raise UserFlowError(signin.error, provider=self._oidc.service_id, flow_id=flow_id)

            match = _HOST_PORT.match(signin.host)
            redirect_port = int(match.group(1)) if match else port
            redirect_uri = f"{base}:{redirect_port}/{self._listener.callback_path}"

            params = {
                "scope": f"openid {scope}".strip(),
                "redirect_uri": redirect_uri,
                "code_challenge": pkce.challenge,
                "code_challenge_method": pkce.method,
                "nonce": nonce,
            }
            if self._oidc.api_url:
                params["resource"] = self._oidc.api_url
            signin.redirect(self._client.authorization_url(params))

            callback = self._wait(listener.callback, flow_id)
            if callback.error or not callback.code:
                message = callback.error or "No authorization code received"
                callback.redirect(self.status_url(error=message))
                raise UserFlowError(message, provider=self._oidc.service_id, flow_id=flow_id)

            token = self._exchange(callback, redirect_uri, pkce, nonce, scope)
            callback.redirect(self.status_url(login=token.account.label))

            self._refresher.register(token)
            self._store.notify(added=[token])
            logger.info("Auth flow %s: signed in as %s", flow_id, token.account.label)
            return Session.from_token(token)
        finally:
            task = self._scheduler.call_later(
                self._listener.close_grace_seconds, self._close_listener, listener
            )
            with self._lock:
                self._closing[listener] = task

    def _close_listener(self, _task: ScheduledTask, listener: RedirectListener) -> None:
        with self._lock:
            self._closing.pop(listener, None)
        listener.close()

    def close(self) -> None:
        """Close listeners still inside their grace delay.

        Held browser responses are written before each listener stops.
        """
        with self._lock:
            closing, self._closing = self._closing, {}
        for listener, task in closing.items():
            task.cancel()
            listener.close()

    def _wait(self, future: Future[ListenerRequest], flow_id: str) -> ListenerRequest:
        timeout = self._listener.auth_timeout_seconds
        try:
            return future.result(timeout=timeout)
        except TimeoutError:
            msg = f"Timed out waiting for the browser after {timeout:.0f}s"
            raise AuthFlowTimeout(msg, timeout=timeout, flow_id=flow_id) from None

    def _exchange(
        self,
        callback: ListenerRequest,
        redirect_uri: str,
        pkce: PKCEChallenge,
        nonce: str,
        scope: str,
    ) -> Token:
        try:
            token_set = self._call(
                self._client.exchange_code(
                    redirect_uri,
                    callback.code or "",
                    code_verifier=pkce.verifier,
                    nonce=nonce,
                )
            )
        except AuthenticationError as exc:
            callback.redirect(self.status_url(error=exc.message))
            raise
        return Token.from_token_set(token_set, scope)

    def _call(self, coro: Any) -> Any:
        timeout = self._oidc.http_timeout_seconds * 2
        try:
            return run_async(coro, timeout=timeout)
        except TimeoutError as exc:
            msg = "Request to the provider timed out"
            raise TokenNetworkError(msg, provider=self._oidc.service_id) from exc
