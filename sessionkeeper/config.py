"""Configuration system for SessionKeeper using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.sessionkeeper] section (project-level)
3. ./sessionkeeper.toml (project-level, explicit)
4. ~/.config/sessionkeeper/config.toml (user-level, overrides project)
5. The file named by SESSIONKEEPER_CONFIG_FILE
6. Environment variables (highest priority)

Environment variables use SESSIONKEEPER_ prefix with nested delimiter __.
Example: SESSIONKEEPER_OIDC__CLIENT_ID, SESSIONKEEPER_REFRESH__POLL_INTERVAL_SECONDS
"""

from __future__ import annotations

import logging
import os
import sys
import tomllib

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


logger = logging.getLogger("sessionkeeper.config")


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    # Project-level pyproject.toml [tool.sessionkeeper] (lowest file priority)
    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("sessionkeeper.toml")
    if project_toml.exists():
        files.append(project_toml)

    # User-level config (overrides project configs)
    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "sessionkeeper" / "config.toml"
    else:
        user_config = Path("~/.config/sessionkeeper/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("SESSIONKEEPER_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring invalid config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("sessionkeeper", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "redis_url",
}

_REDACTED = "********"

# (display name, attribute) of every settings section.
_SECTIONS = (
    ("OIDC Provider", "oidc"),
    ("Redirect Listener", "listener"),
    ("Refresh", "refresh"),
    ("Secret Store", "secret_store"),
    ("Logging", "log"),
)


class OIDCSettings(BaseSettings):
    """Identity provider of one authentication service.

    Environment prefix: SESSIONKEEPER_OIDC__
    Example: SESSIONKEEPER_OIDC__ISSUER_URL=https://sso.example.com/realms/demo

    TOML section: [tool.sessionkeeper.oidc]
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONKEEPER_OIDC__",
        extra="ignore",
    )

    service_id: str = Field(
        default="sessionkeeper",
        description="Identifier of the service, shown on the local status page",
    )
    issuer_url: str = Field(
        default="",
        description="OIDC issuer URL used for endpoint discovery",
    )
    api_url: str = Field(
        default="",
        description="Resource (audience) the access tokens are requested for",
    )
    client_id: str = Field(
        default="",
        description="Public OAuth2 client ID (no secret, PKCE is always used)",
    )
    require_id_token_validation: bool = Field(
        default=True,
        description="Verify ID token signature, issuer, audience and nonce",
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for requests to the provider",
    )

    @field_validator("issuer_url", "api_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class ListenerSettings(BaseSettings):
    """Local redirect listener used by the browser login.

    Environment prefix: SESSIONKEEPER_LISTENER__
    Example: SESSIONKEEPER_LISTENER__PORT=0
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONKEEPER_LISTENER__",
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = Field(default=0, ge=0, le=65535, description="0 picks a free port")
    external_url: str = Field(
        default="http://localhost",
        description="Base URL the browser uses to reach the listener (without port)",
    )
    callback_path: str = "callback"
    auth_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Maximum seconds to wait for each browser step",
    )
    close_grace_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Delay before the listener is closed after a login",
    )

    @field_validator("external_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("callback_path")
    @classmethod
    def _strip_slashes(cls, v: str) -> str:
        return v.strip("/")


class RefreshSettings(BaseSettings):
    """Proactive refresh, retry and poll timing.

    Environment prefix: SESSIONKEEPER_REFRESH__
    Example: SESSIONKEEPER_REFRESH__REFRESH_BUFFER_SECONDS=60
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONKEEPER_REFRESH__",
        extra="ignore",
    )

    refresh_buffer_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Seconds before access token expiry to refresh",
    )
    retry_attempts: int = Field(
        default=3,
        ge=1,
        description="Bounded refresh attempts after a network failure (including the first)",
    )
    retry_base_delay_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Retry n waits base * n^2 seconds",
    )
    poll_interval_seconds: float = Field(
        default=1800.0,
        gt=0,
        description="Interval of the long poll after bounded retries are exhausted",
    )


class SecretStoreSettings(BaseSettings):
    """Where the session list is persisted.

    Environment prefix: SESSIONKEEPER_SECRET_STORE__
    Example: SESSIONKEEPER_SECRET_STORE__BACKEND=keyring
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONKEEPER_SECRET_STORE__",
        extra="ignore",
    )

    backend: Literal["memory", "keyring", "redis"] = Field(
        default="keyring",
        description="Secret storage backend: memory, keyring, or redis",
    )
    service_name: str = Field(
        default="sessionkeeper",
        description="Keyring service name",
    )
    key: str = Field(
        default="",
        description="Key of the session blob (defaults to '<service_id>.sessions')",
    )
    redis_url: str = "redis://localhost:6379/0"
    prefix: str = "sessionkeeper"
    watch_changes: bool = Field(
        default=True,
        description="Reconcile sessions when another process changes the blob",
    )
    watch_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Keyring polling interval used to detect external changes",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait for one secret store read or write",
    )


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: SESSIONKEEPER_LOG__
    Example: SESSIONKEEPER_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONKEEPER_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class SessionKeeperSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.sessionkeeper] section
    3. ./sessionkeeper.toml (project-level)
    4. ~/.config/sessionkeeper/config.toml (user-level, overrides project)
    5. SESSIONKEEPER_CONFIG_FILE
    6. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONKEEPER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    oidc: OIDCSettings = Field(default_factory=OIDCSettings)
    listener: ListenerSettings = Field(default_factory=ListenerSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    secret_store: SecretStoreSettings = Field(default_factory=SecretStoreSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Let environment variables override TOML files and explicit values."""
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    def __init__(self, **data: Any) -> None:
        # Load TOML configuration first
        toml_config = _load_toml_config()

        # Merge TOML config with explicit data (explicit takes precedence)
        merged = _deep_merge(toml_config, data)
        super().__init__(**merged)

    @property
    def storage_key(self) -> str:
        """Secret store key of the session blob."""
        return self.secret_store.key or f"{self.oidc.service_id}.sessions"

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = ["# SessionKeeper Configuration", "# Generated by: sessionkeeper config --toml", ""]

        section_names = [attr for _, attr in _SECTIONS]
        all_data = self.model_dump(
            exclude=dict.fromkeys(section_names, _SENSITIVE_FIELDS),
        )

        for section_name in section_names:
            section_data = all_data.get(section_name, {})
            lines.append(f"[{section_name}]")
            for field_name, field_value in section_data.items():
                if isinstance(field_value, bool):
                    value_str = "true" if field_value else "false"
                elif isinstance(field_value, str):
                    value_str = f'"{field_value}"'
                else:
                    value_str = str(field_value)
                lines.append(f"{field_name} = {value_str}")
            section_cls = type(getattr(self, section_name))
            lines.extend(
                f'{rn} = "{_REDACTED}"'
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )
            lines.append("")

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["SessionKeeper Configuration", "=" * 60, ""]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr in _SECTIONS},
        )

        for display_name, attr_name in _SECTIONS:
            section_data = all_data.get(attr_name, {})
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in section_data.items():
                # Truncate long values
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:28} = {value_str}")
            section_cls = type(getattr(self, attr_name))
            lines.extend(
                f"  {rn:28} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> SessionKeeperSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return SessionKeeperSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> SessionKeeperSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
