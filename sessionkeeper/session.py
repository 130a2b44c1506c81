"""In-memory session store with a change feed.

Holds the authoritative list of Tokens, the scheduled task of each
session, and the subscribers notified when sessions are added, removed
or changed. Every mutation cancels the replaced task before the new
state becomes visible.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import threading

from typing import TYPE_CHECKING

from .types import Session, SessionChangeEvent, Token, canonical_scope


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .scheduler import ScheduledTask


logger = logging.getLogger("sessionkeeper.auth")


class SessionStore:
    """Authoritative in-memory list of sessions.

    ``lock`` guards the list, the task map and persistence of both.
    ``session_lock(session_id)`` serializes refreshes of one session and
    must always be acquired before ``lock``, never while holding it.
    """

    def __init__(self) -> None:
        """Initialize an empty store."""
        self.lock = threading.RLock()
        self._tokens: list[Token] = []
        self._tasks: dict[str, ScheduledTask] = {}
        self._session_locks: dict[str, threading.RLock] = {}
        self._listeners: list[Callable[[SessionChangeEvent], None]] = []

    def __len__(self) -> int:
        """Number of registered sessions."""
        with self.lock:
            return len(self._tokens)

    def session_lock(self, session_id: str) -> threading.RLock:
        """Get the per-session lock, creating it on first use."""
        with self.lock:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = self._session_locks[session_id] = threading.RLock()
            return lock

    def list(self, scope: str | Iterable[str] | None = None) -> list[Token]:
        """List sessions, optionally only those with exactly this scope.

        Parameters
        ----------
        scope : str or iterable of str, optional
            Scope set to match after canonicalization. No subset or
            superset matching is performed.

        Returns
        -------
        list[Token]
            Matching tokens in registration order.
        """
        with self.lock:
            if scope is None:
                return list(self._tokens)
            wanted = canonical_scope(scope)
            return [t for t in self._tokens if t.scope == wanted]

    def get(self, session_id: str) -> Token | None:
        """Get the token of a session, or None."""
        with self.lock:
            for token in self._tokens:
                if token.session_id == session_id:
                    return token
            return None

    def upsert(self, token: Token) -> None:
        """Replace the entry sharing ``session_id`` in place, or append.

        The task of the replaced entry is cancelled first.
        """
        with self.lock:
            self.cancel_task(token.session_id)
            for index, existing in enumerate(self._tokens):
                if existing.session_id == token.session_id:
                    self._tokens[index] = token
                    return
            self._tokens.append(token)

    def remove(self, session_id: str) -> Token | None:
        """Remove a session and cancel its task.

        Returns
        -------
        Token or None
            The removed token, if the session was registered.
        """
        with self.lock:
            self.cancel_task(session_id)
            for index, token in enumerate(self._tokens):
                if token.session_id == session_id:
                    return self._tokens.pop(index)
            return None

    def clear(self) -> list[Token]:
        """Remove all sessions and cancel every task.

        Returns
        -------
        list[Token]
            The removed tokens.
        """
        with self.lock:
            for task in self._tasks.values():
                task.cancel()
            self._tasks.clear()
            removed, self._tokens = self._tokens, []
            return removed

    # ── Scheduled tasks ─────────────────────────────────────────────

    def task(self, session_id: str) -> ScheduledTask | None:
        """Get the current scheduled task of a session."""
        with self.lock:
            return self._tasks.get(session_id)

    def set_task(self, session_id: str, task: ScheduledTask) -> None:
        """Install a task for a session, cancelling the previous one."""
        with self.lock:
            previous = self._tasks.get(session_id)
            if previous is not None and previous is not task:
                previous.cancel()
            self._tasks[session_id] = task

    def cancel_task(self, session_id: str) -> None:
        """Cancel and forget the task of a session, if any."""
        with self.lock:
            task = self._tasks.pop(session_id, None)
            if task is not None:
                task.cancel()

    def is_current(self, session_id: str, task: ScheduledTask) -> bool:
        """Whether ``task`` is the live task of ``session_id``."""
        with self.lock:
            return not task.cancelled and self._tasks.get(session_id) is task

    def cancel_all_tasks(self) -> None:
        """Cancel every scheduled task, keeping the sessions."""
        with self.lock:
            for task in self._tasks.values():
                task.cancel()
            self._tasks.clear()

    # ── Change feed ─────────────────────────────────────────────────

    def subscribe(self, listener: Callable[[SessionChangeEvent], None]) -> Callable[[], None]:
        """Register a change feed listener.

        Parameters
        ----------
        listener : callable
            Called with a ``SessionChangeEvent`` for every batch of changes.

        Returns
        -------
        callable
            Function that removes the listener again.
        """
        with self.lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self.lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def notify(
        self,
        added: Iterable[Token | Session] = (),
        removed: Iterable[Token | Session] = (),
        changed: Iterable[Token | Session] = (),
    ) -> SessionChangeEvent:
        """Deliver one batch of changes to every listener.

        Tokens are converted to Sessions without refreshing. Empty
        batches are not delivered. Listener errors are logged.
        """
        event = SessionChangeEvent(
            added=[_as_session(s) for s in added],
            removed=[_as_session(s) for s in removed],
            changed=[_as_session(s) for s in changed],
        )
        if not event:
            return event

        with self.lock:
            listeners = list(self._listeners)

        logger.debug(
            "Sessions changed: %d added, %d removed, %d changed",
            len(event.added),
            len(event.removed),
            len(event.changed),
        )
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Session change listener %r failed", listener)
        return event


def _as_session(item: Token | Session) -> Session:
    """Convert a Token to its Session view."""
    if isinstance(item, Token):
        return Session.from_token(item)
    return item
