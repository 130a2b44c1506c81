"""Authentication service facade.

Wires the session store, refresh scheduler, persistence bridge and login
flow of one OIDC service together and exposes the operations an
application needs: list sessions, log in, log out, resolve tokens, and
watch for changes.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import dataclasses
import logging

from typing import TYPE_CHECKING, Any

from .config import SessionKeeperSettings, get_settings
from .exceptions import SessionExpiredError, SessionUnavailableError
from .flow import LoginFlow
from .persistence import PersistenceBridge
from .providers import OIDCClient
from .refresh import RefreshScheduler
from .scheduler import Scheduler, TimerScheduler
from .secret_store import SecretStore, create_secret_store
from .session import SessionStore
from .sync_helpers import run_async
from .types import ResolvedToken, Session, SessionChangeEvent, canonical_scope


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable


logger = logging.getLogger("sessionkeeper.auth")


class AuthenticationService:
    """Session lifecycle of one OIDC service.

    Parameters
    ----------
    settings : SessionKeeperSettings
        Provider, listener, refresh and storage settings.
    client : OIDCClient
        The provider client.
    secret_store : SecretStore
        Backend holding the persisted session list.
    scheduler : Scheduler, optional
        Timer source (default ``TimerScheduler``).
    **flow_options : Any
        Passed to ``LoginFlow`` (``listener_factory``, ``open_browser``).
    """

    def __init__(
        self,
        settings: SessionKeeperSettings,
        client: OIDCClient,
        secret_store: SecretStore,
        scheduler: Scheduler | None = None,
        **flow_options: Any,
    ) -> None:
        """Initialize the service. Call ``initialize()`` to load stored sessions."""
        self.settings = settings
        self.client = client
        self.secret_store = secret_store
        self.scheduler = scheduler or TimerScheduler()
        self.store = SessionStore()
        self.refresher = RefreshScheduler(
            client,
            self.store,
            self.scheduler,
            persist=self._persist,
            settings=settings.refresh,
            request_timeout=settings.oidc.http_timeout_seconds * 2,
        )
        self.bridge = PersistenceBridge(
            self.store,
            secret_store,
            self.refresher,
            key=settings.storage_key,
            timeout=settings.secret_store.timeout_seconds,
        )
        self.flow = LoginFlow(
            client,
            self.refresher,
            self.store,
            self.scheduler,
            oidc=settings.oidc,
            listener=settings.listener,
            **flow_options,
        )
        self._unsubscribe_secrets: Callable[[], None] | None = None
        self._initialized = False

    @classmethod
    def build(cls, settings: SessionKeeperSettings | None = None, **kwargs: Any) -> AuthenticationService:
        """Create a service with the client and secret store named by ``settings``.

        Parameters
        ----------
        settings : SessionKeeperSettings, optional
            Defaults to the global settings.
        **kwargs : Any
            Passed to the constructor (``scheduler``, flow options).
        """
        settings = settings or get_settings()
        client = OIDCClient(
            settings.oidc.client_id,
            settings.oidc.issuer_url,
            require_id_token_validation=settings.oidc.require_id_token_validation,
            timeout=settings.oidc.http_timeout_seconds,
        )
        store_settings = settings.secret_store
        secret_store = create_secret_store(
            store_settings.backend,
            service_name=store_settings.service_name,
            redis_url=store_settings.redis_url,
            prefix=store_settings.prefix,
            watch=store_settings.watch_changes,
            watch_interval=store_settings.watch_interval_seconds,
        )
        return cls(settings, client, secret_store, **kwargs)

    def __enter__(self) -> AuthenticationService:
        """Initialize on entering the context."""
        self.initialize()
        return self

    def __exit__(self, *args: object) -> None:
        """Dispose on leaving the context."""
        self.dispose()

    def initialize(self) -> list[Session]:
        """Load stored sessions and start watching the secret store.

        Returns
        -------
        list[Session]
            The sessions restored from storage.
        """
        if self._initialized:
            return self.sessions
        logger.info(
            "Configuring %s {auth: %s, api: %s}",
            self.settings.oidc.service_id,
            self.settings.oidc.issuer_url,
            self.settings.oidc.api_url,
        )
        loaded = self.bridge.load_on_startup()
        if self.settings.secret_store.watch_changes:
            self._unsubscribe_secrets = self.secret_store.subscribe(self._on_secret_changed)
        self._initialized = True
        return [Session.from_token(t) for t in loaded]

    def dispose(self) -> None:
        """Stop watching and cancel timers; close login listeners and the provider client.

        Stored sessions are kept.
        """
        if self._unsubscribe_secrets is not None:
            self._unsubscribe_secrets()
            self._unsubscribe_secrets = None
        self.store.cancel_all_tasks()
        self.flow.close()
        run_async(self.client.close())
        run_async(self.secret_store.close())
        self._initialized = False

    def _persist(self) -> None:
        self.bridge.save()

    def _on_secret_changed(self, key: str) -> None:
        if key != self.bridge.key:
            return
        logger.info("Secrets changed, checking for session updates")
        self.reconcile()

    # ── Sessions ────────────────────────────────────────────────────

    @property
    def sessions(self) -> list[Session]:
        """All sessions, without refreshing."""
        return [Session.from_token(t) for t in self.store.list()]

    def get_sessions(self, scopes: str | Iterable[str] | None = None) -> list[Session]:
        """Sessions with exactly these scopes, with resolved access tokens.

        Sessions unavailable due to network problems are returned without
        an access token; sessions the provider rejected are removed and
        omitted.

        Parameters
        ----------
        scopes : str or iterable of str, optional
            Scope set to match; all sessions when omitted.
        """
        tokens = self.store.list(None if scopes is None else canonical_scope(scopes))
        sessions = []
        for token in tokens:
            session = Session.from_token(token)
            try:
                resolved = self.refresher.resolve_access(token.session_id)
            except SessionUnavailableError:
                sessions.append(dataclasses.replace(session, access_token=None))
                continue
            except SessionExpiredError as exc:
                logger.info("Session %s omitted: %s", token.session_id, exc)
                continue
            sessions.append(
                dataclasses.replace(
                    session, access_token=resolved.access_token, id_token=resolved.id_token
                )
            )
        return sessions

    def create_session(self, scopes: str | Iterable[str]) -> Session:
        """Log in through the browser. See ``LoginFlow.create_session``."""
        return self.flow.create_session(scopes)

    def resolve_access(self, session_id: str) -> ResolvedToken:
        """Get a usable access token for a session, refreshing if needed."""
        return self.refresher.resolve_access(session_id)

    def remove_session(self, session_id: str) -> Session | None:
        """Log out of one session.

        Returns
        -------
        Session or None
            The removed session, or None if it was not registered.
        """
        token = self.refresher.drop(session_id)
        if token is None:
            logger.info("Session %s not found", session_id)
            return None
        logger.info("Logged out of session %s", session_id)
        return Session.from_token(token)

    def clear_sessions(self) -> list[Session]:
        """Log out of every session and delete the stored list."""
        removed = []
        for token in self.store.list():
            dropped = self.refresher.drop(token.session_id, notify=False, save=False)
            if dropped is not None:
                removed.append(dropped)
        self.bridge.clear_storage()
        if removed:
            self.store.notify(removed=removed)
        return [Session.from_token(t) for t in removed]

    def reconcile(self) -> SessionChangeEvent:
        """Re-read the stored list after an external change."""
        return self.bridge.reconcile()

    def subscribe(self, listener: Callable[[SessionChangeEvent], None]) -> Callable[[], None]:
        """Register a change feed listener; returns the unsubscribe function."""
        return self.store.subscribe(listener)

