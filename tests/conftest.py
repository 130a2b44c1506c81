"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import json
import threading
import time

from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from sessionkeeper.config import SessionKeeperSettings, clear_settings
from sessionkeeper.scheduler import ScheduledTask, Scheduler
from sessionkeeper.secret_store import MemorySecretStore
from sessionkeeper.service import AuthenticationService
from sessionkeeper.sync_helpers import run_async
from sessionkeeper.types import Account, SessionChangeEvent, Token, TokenSet


if TYPE_CHECKING:
    from collections.abc import Callable, Iterator


STORAGE_KEY = "test.sessions"


# ── Virtual clock ───────────────────────────────────────────────────


class FakeScheduler(Scheduler):
    """Scheduler driven by ``advance()`` instead of wall-clock time."""

    def __init__(self) -> None:
        self.clock = 0.0
        self.tasks: list[ScheduledTask] = []

    def now(self) -> float:
        return self.clock

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ScheduledTask:
        task = ScheduledTask(self.clock + max(delay, 0.0), callback, args)
        self.tasks.append(task)
        return task

    def pending(self) -> list[ScheduledTask]:
        """Tasks that have neither run nor been cancelled."""
        return [t for t in self.tasks if t.pending]

    def advance(self, seconds: float) -> None:
        """Move the clock forward, running every task that falls due in order."""
        target = self.clock + seconds
        while True:
            due = [t for t in self.tasks if t.pending and t.when <= target]
            if not due:
                break
            task = min(due, key=lambda t: t.when)
            self.clock = task.when
            task.run()
        self.clock = target


# ── Helpers ─────────────────────────────────────────────────────────


def make_token_set(
    access_token: str = "at_1",
    refresh_token: str | None = "rt_1",
    expires_in: int | None = 300,
    claims: dict[str, Any] | None = None,
    session_state: str | None = None,
) -> TokenSet:
    """Build a provider token set."""
    raw: dict[str, Any] = {"access_token": access_token}
    if session_state:
        raw["session_state"] = session_state
    return TokenSet(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        id_token="id_" + access_token,
        raw=raw,
        issued_at=time.time(),
        claims=claims or {},
    )


def make_token(
    session_id: str = "s1",
    scope: str = "a b",
    access_token: str | None = "at_s1",
    expires_in: int | None = 300,
    label: str = "alice",
) -> Token:
    """Build an in-memory session token."""
    return Token(
        session_id=session_id,
        refresh_token="rt_" + session_id,
        scope=scope,
        account=Account(id="u_" + session_id, label=label),
        access_token=access_token,
        id_token="id_" + session_id,
        expires_in=expires_in,
        expires_at=time.time() + expires_in if expires_in is not None else None,
    )


def stored_entry(session_id: str, scope: str = "a b", label: str = "alice") -> dict[str, Any]:
    """Build one persisted session entry as another process would write it."""
    return {
        "id": session_id,
        "refreshToken": "rt_" + session_id,
        "scope": scope,
        "account": {"id": "u_" + session_id, "label": label},
    }


def write_blob(secret_store: MemorySecretStore, entries: list[dict[str, Any]] | str) -> None:
    """Write the session blob directly to the secret store."""
    blob = entries if isinstance(entries, str) else json.dumps(entries)
    run_async(secret_store.set(STORAGE_KEY, blob))


def read_blob(secret_store: MemorySecretStore) -> list[dict[str, Any]] | None:
    """Read and decode the session blob."""
    blob = run_async(secret_store.get(STORAGE_KEY))
    return None if blob is None else json.loads(blob)


class EventRecorder:
    """Change feed listener that records every batch."""

    def __init__(self) -> None:
        self.events: list[SessionChangeEvent] = []
        self.received = threading.Event()

    def __call__(self, event: SessionChangeEvent) -> None:
        self.events.append(event)
        self.received.set()

    def ids(self, kind: str) -> list[str]:
        """Session ids of one kind (added/removed/changed) across all batches."""
        return [s.id for e in self.events for s in getattr(e, kind)]


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
    """Do not leak cached settings between tests."""
    clear_settings()
    yield
    clear_settings()


@pytest.fixture()
def scheduler() -> FakeScheduler:
    """Create a virtual-clock scheduler."""
    return FakeScheduler()


@pytest.fixture()
def mock_client() -> MagicMock:
    """Create a mock OIDC client."""
    client = MagicMock()
    client.issuer_url = "https://sso.example.com/realms/demo"
    client.discover = AsyncMock()
    client.close = AsyncMock()
    client.refresh = AsyncMock(return_value=make_token_set("at_refreshed", "rt_refreshed"))
    client.exchange_code = AsyncMock(
        return_value=make_token_set(
            "at_login",
            "rt_login",
            claims={"sub": "u_login", "preferred_username": "alice"},
            session_state="sess-login",
        )
    )
    client.authorization_url = MagicMock(return_value="https://sso.example.com/auth?client_id=cli")
    return client


@pytest.fixture()
def secret_store() -> MemorySecretStore:
    """Create a memory secret store."""
    return MemorySecretStore()


@pytest.fixture()
def settings() -> SessionKeeperSettings:
    """Settings for a test service with in-memory storage and no watching."""
    return SessionKeeperSettings(
        oidc={
            "service_id": "demo",
            "issuer_url": "https://sso.example.com/realms/demo",
            "api_url": "https://api.example.com",
            "client_id": "cli",
        },
        secret_store={"backend": "memory", "key": STORAGE_KEY, "watch_changes": False},
    )


@pytest.fixture()
def recorder() -> EventRecorder:
    """Create a change feed recorder."""
    return EventRecorder()


@pytest.fixture()
def service(
    settings: SessionKeeperSettings,
    mock_client: MagicMock,
    secret_store: MemorySecretStore,
    scheduler: FakeScheduler,
    recorder: EventRecorder,
) -> AuthenticationService:
    """Create an uninitialized service subscribed by ``recorder``."""
    svc = AuthenticationService(settings, mock_client, secret_store, scheduler=scheduler)
    svc.subscribe(recorder)
    return svc
