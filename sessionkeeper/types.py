"""Type definitions for SessionKeeper.

Shared session, token and persistence types used across the
store, scheduler, persistence bridge and login flow.
"""

from __future__ import annotations

import time
import uuid

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


#: Account label used when the ID token carries neither a username nor an email.
DEFAULT_ACCOUNT_LABEL = "user@example.com"


def canonical_scope(scopes: str | Iterable[str] | None) -> str:
    """Return the canonical form of a scope set.

    Duplicates and empty items are dropped, the remaining scopes are
    sorted lexicographically and joined with single spaces.

    Parameters
    ----------
    scopes : str or iterable of str or None
        A whitespace-separated scope string or a collection of scopes.

    Returns
    -------
    str
        The canonical scope string (empty for no scopes).
    """
    if scopes is None:
        return ""
    if isinstance(scopes, str):
        scopes = scopes.split()
    return " ".join(sorted({s.strip() for s in scopes if s and s.strip()}))


@dataclass
class TokenSet:
    """Token set returned by the OIDC provider.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    token_type : str
        Token type, typically "Bearer".
    refresh_token : str or None
        Refresh token; providers may omit it on refresh (no rotation).
    expires_in : int or None
        Access token lifetime in seconds from issuance.
    id_token : str or None
        OIDC ID token (JWT).
    scope : str
        Space-separated list of granted scopes.
    raw : dict[str, Any]
        The raw token response from the provider.
    issued_at : float
        Unix timestamp when the token was issued.
    claims : dict[str, Any]
        Claims of the ID token (empty when no ID token was returned).
    """

    access_token: str
    token_type: str = "Bearer"  # noqa: S105
    refresh_token: str | None = None
    expires_in: int | None = None
    id_token: str | None = None
    scope: str = ""
    raw: dict[str, Any] = field(default_factory=dict)
    issued_at: float = field(default_factory=time.time)
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def session_state(self) -> str | None:
        """The provider's ``session_state`` for this login, if any."""
        value = self.raw.get("session_state")
        return str(value) if value else None

    @property
    def expires_at(self) -> float | None:
        """Get the expiry timestamp, or None if no expiry."""
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in


@dataclass(frozen=True)
class Account:
    """Display identity of a session, derived from ID token claims."""

    id: str
    label: str


@dataclass
class Token:
    """In-memory state of one authenticated session.

    Attributes
    ----------
    session_id : str
        Stable identifier of the session.
    refresh_token : str
        Refresh token used to renew the session.
    scope : str
        Canonical scope string.
    account : Account
        Display identity.
    access_token : str or None
        Current access token; ``None`` while unusable after a network failure.
    id_token : str or None
        ID token from the last successful exchange.
    expires_in : int or None
        Lifetime of the access token in seconds.
    expires_at : float or None
        Unix timestamp at which the access token expires.
    """

    session_id: str
    refresh_token: str
    scope: str
    account: Account
    access_token: str | None = None
    id_token: str | None = None
    expires_in: int | None = None
    expires_at: float | None = None

    @property
    def is_expired(self) -> bool:
        """Check if the cached access token is past its expiry."""
        if self.expires_at is None:
            return False
        return time.time() >= self.expires_at

    @property
    def is_usable(self) -> bool:
        """Whether a cached, unexpired access token is available."""
        return self.access_token is not None and not self.is_expired

    @classmethod
    def from_token_set(
        cls,
        token_set: TokenSet,
        scope: str,
        session_id: str | None = None,
        account: Account | None = None,
        refresh_token: str | None = None,
    ) -> Token:
        """Build a Token from a provider token set.

        Parameters
        ----------
        token_set : TokenSet
            Result of a code exchange or refresh.
        scope : str
            The canonical scope the session was requested with.
        session_id : str, optional
            Existing session identifier to keep (refresh); a new login uses
            the provider's ``session_state``.
        account : Account, optional
            Account to fall back to when the token set has no ID token claims.
        refresh_token : str, optional
            Refresh token to keep when the provider did not rotate it.

        Returns
        -------
        Token
            The new in-memory token.
        """
        claims = token_set.claims
        sid = (
            session_id
            or token_set.session_state
            or claims.get("sid")
            or uuid.uuid4().hex
        )
        if claims.get("sub"):
            account = Account(
                id=str(claims["sub"]),
                label=claims.get("preferred_username")
                or claims.get("email")
                or DEFAULT_ACCOUNT_LABEL,
            )
        elif account is None:
            account = Account(id=sid, label=DEFAULT_ACCOUNT_LABEL)

        return cls(
            session_id=sid,
            refresh_token=token_set.refresh_token or refresh_token or "",
            scope=canonical_scope(scope),
            account=account,
            access_token=token_set.access_token,
            id_token=token_set.id_token,
            expires_in=token_set.expires_in,
            expires_at=token_set.expires_at,
        )


@dataclass(frozen=True)
class Session:
    """Public view of an authenticated session.

    Attributes
    ----------
    id : str
        The session identifier.
    access_token : str or None
        The access token (``None`` while the session is unusable).
    id_token : str or None
        The ID token, depending on requested scopes.
    account : Account
        Display identity.
    scopes : list[str]
        Sorted scopes of the session.
    """

    id: str
    access_token: str | None
    id_token: str | None
    account: Account
    scopes: list[str] = field(default_factory=list)

    @classmethod
    def from_token(cls, token: Token) -> Session:
        """Convert a Token without checking expiry or refreshing."""
        return cls(
            id=token.session_id,
            access_token=token.access_token,
            id_token=token.id_token,
            account=token.account,
            scopes=token.scope.split(" ") if token.scope else [],
        )


@dataclass(frozen=True)
class ResolvedToken:
    """Access and ID token pair returned by on-demand resolution."""

    access_token: str
    id_token: str | None = None


@dataclass
class SessionChangeEvent:
    """Batch of session changes delivered to change feed subscribers."""

    added: list[Session] = field(default_factory=list)
    removed: list[Session] = field(default_factory=list)
    changed: list[Session] = field(default_factory=list)

    def __bool__(self) -> bool:
        """An event is truthy when it carries at least one change."""
        return bool(self.added or self.removed or self.changed)


class StoredAccount(BaseModel):
    """Account as persisted in the secret store."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    label: str | None = None
    display_name: str | None = Field(default=None, alias="displayName")


class StoredSession(BaseModel):
    """Session as persisted in the secret store.

    Only the refresh token is persisted; access and ID tokens are
    re-derived by refresh on load.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    refresh_token: str = Field(alias="refreshToken")
    scope: str
    account: StoredAccount

    @property
    def identity(self) -> tuple[str, str]:
        """Reconciliation identity ``(session_id, canonical scope)``."""
        return self.id, canonical_scope(self.scope)

    def to_account(self) -> Account:
        """Convert the stored account, preferring ``label`` over ``displayName``."""
        label = self.account.label or self.account.display_name or DEFAULT_ACCOUNT_LABEL
        return Account(id=self.account.id, label=label)

    @classmethod
    def from_token(cls, token: Token) -> StoredSession:
        """Strip a Token down to its persisted subset."""
        return cls(
            id=token.session_id,
            refresh_token=token.refresh_token,
            scope=token.scope,
            account=StoredAccount(id=token.account.id, label=token.account.label),
        )
