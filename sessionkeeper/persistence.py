"""Persistence of the session list in the secret store.

The blob is a JSON array of stored sessions. Only refresh tokens,
scopes and accounts are written; access tokens are derived again by
refreshing on load. The bridge also reconciles the in-memory list when
another process changes the blob.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import TypeAdapter, ValidationError

from .exceptions import MalformedStorageError, SecretStoreError, TokenError, TokenNetworkError
from .sync_helpers import run_async
from .types import SessionChangeEvent, StoredSession, Token, canonical_scope


if TYPE_CHECKING:
    from collections.abc import Coroutine

    from .refresh import RefreshScheduler
    from .secret_store import SecretStore
    from .session import SessionStore


T = TypeVar("T")

logger = logging.getLogger("sessionkeeper.persistence")

_stored_sessions = TypeAdapter(list[StoredSession])


def serialize_sessions(tokens: list[Token], keep: list[StoredSession] | None = None) -> str:
    """Serialize tokens, followed by any extra stored entries, to the persisted JSON array."""
    stored = [StoredSession.from_token(t) for t in tokens]
    if keep:
        stored.extend(keep)
    return _stored_sessions.dump_json(stored, by_alias=True, exclude_none=True).decode("utf-8")


def parse_stored_sessions(blob: str) -> list[StoredSession]:
    """Parse the persisted JSON array.

    Raises
    ------
    MalformedStorageError
        If the blob is not a JSON array of stored sessions.
    """
    try:
        return _stored_sessions.validate_json(blob)
    except ValidationError as exc:
        msg = f"Stored sessions could not be parsed: {exc.error_count()} errors"
        raise MalformedStorageError(msg) from exc


class PersistenceBridge:
    """Loads, saves and reconciles sessions against one secret store key.

    Parameters
    ----------
    store : SessionStore
        The session store.
    secret_store : SecretStore
        Backend holding the blob.
    refresher : RefreshScheduler
        Used to refresh loaded sessions and to remove sessions.
    key : str
        Secret store key of the blob.
    timeout : float
        Seconds to wait for one secret store operation.
    """

    def __init__(
        self,
        store: SessionStore,
        secret_store: SecretStore,
        refresher: RefreshScheduler,
        key: str,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the bridge."""
        self._store = store
        self._secret_store = secret_store
        self._refresher = refresher
        self.key = key
        self._timeout = timeout

    # ── Raw blob access ─────────────────────────────────────────────

    def _call(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run one secret store operation; a timeout counts as a store failure."""
        try:
            return run_async(coro, timeout=self._timeout)
        except TimeoutError as exc:
            msg = f"Secret store did not answer within {self._timeout}s"
            raise SecretStoreError(msg, key=self.key) from exc

    def read(self) -> list[StoredSession] | None:
        """Read and parse the blob.

        Returns
        -------
        list[StoredSession] or None
            The stored sessions, or None if the key is absent or the
            backend could not be read.

        Raises
        ------
        MalformedStorageError
            If the blob exists but cannot be parsed.
        """
        try:
            blob = self._call(self._secret_store.get(self.key))
        except SecretStoreError as exc:
            logger.warning("Reading stored sessions failed: %s", exc)
            return None
        if blob is None:
            return None
        return parse_stored_sessions(blob)

    def save(self, keep: list[StoredSession] | None = None) -> None:
        """Write the current session list; an empty list deletes the key.

        Parameters
        ----------
        keep : list[StoredSession], optional
            Stored entries not (yet) registered in memory that must stay
            in the blob.
        """
        with self._store.lock:
            tokens = self._store.list()
            try:
                if tokens or keep:
                    self._call(self._secret_store.set(self.key, serialize_sessions(tokens, keep)))
                else:
                    self._call(self._secret_store.delete(self.key))
            except SecretStoreError as exc:
                logger.warning("Saving sessions failed: %s", exc)
                return
        logger.debug("Saved %d sessions", len(tokens))

    def clear_storage(self) -> None:
        """Delete the blob."""
        try:
            self._call(self._secret_store.delete(self.key))
        except SecretStoreError as exc:
            logger.warning("Clearing stored sessions failed: %s", exc)

    # ── Startup ─────────────────────────────────────────────────────

    def load_on_startup(self) -> list[Token]:
        """Restore sessions from the blob by refreshing each one.

        Sessions whose refresh fails due to the network are kept without
        an access token and retried; rejected sessions are dropped.

        Returns
        -------
        list[Token]
            The sessions registered from storage.
        """
        try:
            stored = self.read()
        except MalformedStorageError:
            logger.exception("Stored sessions are malformed; clearing storage")
            with self._store.lock:
                self._store.clear()
                self.clear_storage()
            return []
        if not stored:
            return []

        loaded: list[Token] = []
        for entry in stored:
            if not entry.refresh_token:
                continue
            account = entry.to_account()
            try:
                token = self._refresher.refresh(
                    entry.id, entry.refresh_token, entry.scope, account, save=False
                )
            except TokenNetworkError as exc:
                logger.warning("Session %s kept without access token: %s", entry.id, exc)
                token = Token(
                    session_id=entry.id,
                    refresh_token=entry.refresh_token,
                    scope=canonical_scope(entry.scope),
                    account=account,
                )
                self._refresher.register(token, save=False)
                self._refresher.retry.start(entry.id, notify=False)
            except TokenError as exc:
                logger.warning("Dropping stored session %s: %s", entry.id, exc)
                continue
            loaded.append(token)

        # Rotated refresh tokens and dropped sessions are written back once.
        self.save()
        logger.info("Loaded %d of %d stored sessions", len(loaded), len(stored))
        return loaded

    # ── Reconciliation ──────────────────────────────────────────────

    def reconcile(self) -> SessionChangeEvent:
        """Bring the in-memory list in line with the blob after an external change.

        Returns
        -------
        SessionChangeEvent
            The batch of changes, also delivered to subscribers.
        """
        with self._store.lock:
            try:
                stored = self.read()
            except MalformedStorageError:
                logger.exception("Stored sessions are malformed; dropping all sessions")
                stored = None
                malformed = True
            else:
                malformed = False

            local = {(t.session_id, t.scope): t for t in self._store.list()}
            if stored is None:
                to_add: list[StoredSession] = []
                to_remove = list(local.values())
            else:
                remote = {s.identity: s for s in stored}
                to_add = [s for ident, s in remote.items() if ident not in local]
                to_remove = [t for ident, t in local.items() if ident not in remote]

        removed: list[Token] = []
        for token in to_remove:
            dropped = self._refresher.drop(token.session_id, notify=False, save=False)
            if dropped is not None:
                removed.append(dropped)
        if malformed:
            self.clear_storage()

        added: list[Token] = []
        skipped: list[StoredSession] = []
        rejected = False
        for entry in to_add:
            if not entry.refresh_token:
                continue
            try:
                token = self._refresher.refresh(
                    entry.id, entry.refresh_token, entry.scope, entry.to_account(), save=False
                )
            except TokenNetworkError as exc:
                logger.info("Skipping new session %s for now: %s", entry.id, exc)
                skipped.append(entry)
                continue
            except TokenError as exc:
                logger.warning("Stored session %s was rejected: %s", entry.id, exc)
                rejected = True
                continue
            added.append(token)

        # Entries skipped for network problems stay in the blob for the next pass.
        if added or rejected:
            self.save(keep=skipped)
        if not (added or removed):
            return SessionChangeEvent()
        logger.info("Reconciled sessions: %d added, %d removed", len(added), len(removed))
        return self._store.notify(added=added, removed=removed)
