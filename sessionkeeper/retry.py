"""Retry and reconnect handling for sessions that lost the network.

A session enters here when a refresh fails because the provider could
not be reached. Its access token is withdrawn, a few bounded retries
follow, and after that the session is polled at a long interval until
the provider answers or the session is removed.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import dataclasses
import logging

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .exceptions import TokenError, TokenNetworkError


if TYPE_CHECKING:
    from .config import RefreshSettings
    from .refresh import RefreshScheduler
    from .scheduler import ScheduledTask, Scheduler
    from .session import SessionStore


logger = logging.getLogger("sessionkeeper.auth")


def retry_delay(attempt: int, base: float = 5.0) -> float:
    """Seconds to wait before bounded retry ``attempt`` (2 -> 20, 3 -> 45)."""
    return base * attempt * attempt


@dataclass
class RetryState:
    """Position of one session in the retry sequence.

    Attributes
    ----------
    attempt : int
        Number of the next refresh attempt (the failure that started the
        sequence is attempt 1).
    deadline : float
        Scheduler time at which the next attempt runs.
    polling : bool
        Whether bounded retries are exhausted and long polling is active.
    """

    attempt: int
    deadline: float
    polling: bool = False
    task: ScheduledTask | None = field(default=None, repr=False, compare=False)


class RetryController:
    """Scheduler-driven retry state machine, one state per session.

    Parameters
    ----------
    refresher : RefreshScheduler
        Performs the actual refresh and owns session removal.
    store : SessionStore
        The session store.
    scheduler : Scheduler
        Runs the retry and poll tasks.
    settings : RefreshSettings
        ``retry_attempts``, ``retry_base_delay_seconds`` and
        ``poll_interval_seconds``.
    """

    def __init__(
        self,
        refresher: RefreshScheduler,
        store: SessionStore,
        scheduler: Scheduler,
        settings: RefreshSettings,
    ) -> None:
        """Initialize the controller."""
        self._refresher = refresher
        self._store = store
        self._scheduler = scheduler
        self._settings = settings
        self._states: dict[str, RetryState] = {}

    def state(self, session_id: str) -> RetryState | None:
        """Get the live retry state of a session, or None."""
        with self._store.lock:
            state = self._states.get(session_id)
            if state is None or state.task is None:
                return None
            if not self._store.is_current(session_id, state.task):
                del self._states[session_id]
                return None
            return state

    def active(self, session_id: str) -> bool:
        """Whether the session is currently retrying or polling."""
        return self.state(session_id) is not None

    def start(self, session_id: str, notify: bool = True) -> None:
        """Enter the retry sequence after a network failure.

        The failed refresh counts as attempt 1: the access token is
        withdrawn and ``changed`` is emitted. Does nothing if the session
        is gone or already retrying.
        """
        with self._store.session_lock(session_id):
            if self.active(session_id):
                return
            with self._store.lock:
                token = self._store.get(session_id)
                if token is None:
                    return
                token = dataclasses.replace(token, access_token=None)
                self._store.upsert(token)
                self._schedule(session_id, attempt=2, polling=False)
            logger.warning(
                "Session %s unavailable due to network problems; retrying",
                session_id,
            )
            if notify:
                self._store.notify(changed=[token])

    def discard(self, session_id: str) -> None:
        """Forget the retry state of a removed session."""
        with self._store.lock:
            state = self._states.pop(session_id, None)
            if state is not None and state.task is not None:
                state.task.cancel()

    def _schedule(self, session_id: str, attempt: int, polling: bool) -> RetryState:
        if polling:
            delay = float(self._settings.poll_interval_seconds)
        else:
            delay = retry_delay(attempt, self._settings.retry_base_delay_seconds)
        task = self._scheduler.call_later(delay, self._on_attempt, session_id)
        state = RetryState(attempt=attempt, deadline=task.when, polling=polling, task=task)
        with self._store.lock:
            self._states[session_id] = state
            self._store.set_task(session_id, task)
        logger.debug(
            "Session %s: %s attempt %d in %.0fs",
            session_id,
            "poll" if polling else "retry",
            attempt,
            delay,
        )
        return state

    def _on_attempt(self, task: ScheduledTask, session_id: str) -> None:
        with self._store.session_lock(session_id):
            if not self._store.is_current(session_id, task):
                return
            state = self._states.get(session_id)
            token = self._store.get(session_id)
            if state is None or token is None:
                return

            try:
                refreshed = self._refresher.refresh(
                    session_id, token.refresh_token, token.scope, token.account
                )
            except TokenNetworkError:
                if not state.polling and state.attempt < self._settings.retry_attempts:
                    self._schedule(session_id, attempt=state.attempt + 1, polling=False)
                else:
                    self._schedule(session_id, attempt=state.attempt + 1, polling=True)
                return
            except TokenError as exc:
                logger.warning("Session %s could not be restored: %s", session_id, exc)
                self._states.pop(session_id, None)
                self._refresher.drop(session_id)
                return

            with self._store.lock:
                self._states.pop(session_id, None)
            logger.info("Session %s restored after %d attempts", session_id, state.attempt)
            self._store.notify(changed=[refreshed])
