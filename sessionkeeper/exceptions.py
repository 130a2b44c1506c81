"""SessionKeeper exception hierarchy.

All SessionKeeper-specific exceptions inherit from SessionKeeperException,
enabling catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import Any


class SessionKeeperException(Exception):
    """Base exception for all SessionKeeper errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize SessionKeeper exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (session_id, key, provider, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items() if v is not None)
            if ctx:
                return f"{self.message} ({ctx})"
        return self.message


class SecretStoreError(SessionKeeperException):
    """Secret store operation failed.

    Raised by secret store backends when the underlying keychain,
    keyring or Redis server rejects a read, write or delete.
    """

    def __init__(self, message: str, key: str | None = None, **context: Any) -> None:
        """Initialize secret store error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        key : str, optional
            The secret key involved.
        **context : Any
            Additional context.
        """
        super().__init__(message, key=key, **context)
        self.key = key


class MalformedStorageError(SessionKeeperException):
    """The persisted session blob could not be parsed.

    Treated as corrupted state: all sessions are dropped and
    the stored blob is cleared.
    """


class AuthenticationError(SessionKeeperException):
    """Base exception for all authentication failures.

    Raised when an authentication operation fails, including
    the login flow, token exchange, or session management.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The issuer or provider name.
        flow_id : str, optional
            The unique identifier of the login flow that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, **context)
        self.provider = provider
        self.flow_id = flow_id


class UserFlowError(AuthenticationError):
    """The login flow reported an explicit error.

    Raised when the redirect or callback request carries an error,
    e.g. the provider denied consent or the sign-in nonce did not match.
    """


class ListenerError(AuthenticationError):
    """The local redirect listener failed.

    Raised when the listener cannot bind its port or stops
    before the login flow completes.
    """


class AuthFlowTimeout(ListenerError):
    """Login flow timed out.

    Raised when the browser does not reach the local listener
    within the configured timeout.
    """

    def __init__(
        self,
        message: str,
        timeout: float,
        provider: str | None = None,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        provider : str, optional
            The issuer or provider name.
        flow_id : str, optional
            The unique identifier of the login flow.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, flow_id=flow_id, timeout=timeout, **context)
        self.timeout = timeout


class TokenError(AuthenticationError):
    """Base exception for token-related failures.

    Raised when token operations (validation, refresh, exchange) fail.
    """


class TokenRefreshError(TokenError):
    """Token refresh failed.

    Terminal failure: the refresh token was rejected, revoked, or the
    provider answered with a non-retryable error.
    """


class TokenNetworkError(TokenRefreshError):
    """Token refresh failed because the provider was unreachable.

    Transient failure: the session is kept and the refresh is retried.
    """


class SessionUnavailableError(AuthenticationError):
    """Session is temporarily unusable.

    Raised by on-demand access token resolution when the token could not be
    refreshed due to network problems. The session itself is kept.
    """

    def __init__(self, message: str, session_id: str | None = None, **context: Any) -> None:
        """Initialize unavailable error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        session_id : str, optional
            The affected session.
        **context : Any
            Additional context.
        """
        super().__init__(message, session_id=session_id, **context)
        self.session_id = session_id


class SessionExpiredError(AuthenticationError):
    """Session was lost permanently.

    Raised by on-demand access token resolution when the provider rejected
    the refresh token; the session has been removed.
    """

    def __init__(self, message: str, session_id: str | None = None, **context: Any) -> None:
        """Initialize expired error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        session_id : str, optional
            The removed session.
        **context : Any
            Additional context.
        """
        super().__init__(message, session_id=session_id, **context)
        self.session_id = session_id
