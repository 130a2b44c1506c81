"""SessionKeeper - OIDC login and session lifecycle for desktop tools.

Runs the browser login with PKCE, keeps sessions fresh with proactive
refresh, retries through network outages, and persists sessions in the
OS keyring (or Redis) shared between processes.
"""

from .config import SessionKeeperSettings, clear_settings, get_settings, reload_settings
from .exceptions import (
    AuthenticationError,
    AuthFlowTimeout,
    ListenerError,
    MalformedStorageError,
    SecretStoreError,
    SessionExpiredError,
    SessionKeeperException,
    SessionUnavailableError,
    TokenError,
    TokenNetworkError,
    TokenRefreshError,
    UserFlowError,
)
from .providers import OIDCClient
from .secret_store import (
    KeyringSecretStore,
    MemorySecretStore,
    RedisSecretStore,
    SecretStore,
)
from .service import AuthenticationService
from .types import Account, ResolvedToken, Session, SessionChangeEvent, canonical_scope


__version__ = "0.1.0"

__all__ = [
    "Account",
    "AuthFlowTimeout",
    "AuthenticationError",
    "AuthenticationService",
    "KeyringSecretStore",
    "ListenerError",
    "MalformedStorageError",
    "MemorySecretStore",
    "OIDCClient",
    "RedisSecretStore",
    "ResolvedToken",
    "SecretStore",
    "SecretStoreError",
    "Session",
    "SessionChangeEvent",
    "SessionExpiredError",
    "SessionKeeperException",
    "SessionKeeperSettings",
    "SessionUnavailableError",
    "TokenError",
    "TokenNetworkError",
    "TokenRefreshError",
    "UserFlowError",
    "canonical_scope",
    "clear_settings",
    "get_settings",
    "reload_settings",
]
