"""OpenID Connect client for a public (PKCE) desktop application.

Performs endpoint discovery, builds authorization URLs, exchanges
authorization codes and refreshes tokens. Failures are classified so
that an unreachable provider (``TokenNetworkError``) can be told apart
from a rejected refresh token (``TokenRefreshError``).
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import time

from typing import Any
from urllib.parse import urlencode

import httpx

from authlib.common.encoding import json_loads, urlsafe_b64decode
from authlib.jose import JsonWebKey, JsonWebToken

from .exceptions import AuthenticationError, TokenError, TokenNetworkError, TokenRefreshError
from .log import redact_sensitive_data
from .types import TokenSet


logger = logging.getLogger("sessionkeeper.auth")

# Gateway and availability errors are treated like an unreachable provider.
_TRANSIENT_STATUS = frozenset({502, 503, 504})


def decode_claims(id_token: str) -> dict[str, Any]:
    """Decode the payload of a JWT without verifying its signature.

    Parameters
    ----------
    id_token : str
        The compact-serialized ID token.

    Returns
    -------
    dict[str, Any]
        The claims, or an empty dict if the token is not a JWT.
    """
    try:
        payload = id_token.split(".")[1]
        claims = json_loads(urlsafe_b64decode(payload.encode("ascii")))
    except (IndexError, ValueError, UnicodeError):
        logger.warning("Could not decode ID token claims")
        return {}
    return claims if isinstance(claims, dict) else {}


class OIDCClient:
    """OIDC client with auto-discovery from the issuer URL.

    Parameters
    ----------
    client_id : str
        The OAuth2 client ID (public client, no secret).
    issuer_url : str
        The OIDC issuer URL used for discovery.
    require_id_token_validation : bool
        Verify ID token signature, issuer, audience and nonce on code
        exchange (default ``True``).
    timeout : float
        HTTP timeout in seconds for provider requests.
    http_client : httpx.AsyncClient, optional
        Pre-configured client (e.g. with a mock transport for testing).
    """

    def __init__(
        self,
        client_id: str,
        issuer_url: str,
        *,
        require_id_token_validation: bool = True,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the OIDC client."""
        self.client_id = client_id
        self.issuer_url = issuer_url.rstrip("/")
        self.require_id_token_validation = require_id_token_validation
        self.timeout = timeout
        self.authorize_url = ""
        self.token_url = ""
        self._jwks_uri = ""
        self._jwks_data: dict[str, Any] | None = None
        self._discovered = False
        self._http_client = http_client

    @property
    def discovered(self) -> bool:
        """Whether endpoint discovery has completed."""
        return self._discovered

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def discover(self) -> None:
        """Resolve endpoints from ``/.well-known/openid-configuration``.

        Raises
        ------
        TokenNetworkError
            If the issuer is unreachable.
        AuthenticationError
            If the discovery document is invalid or names another issuer.
        """
        if self._discovered:
            return
        url = f"{self.issuer_url}/.well-known/openid-configuration"
        try:
            client = await self._get_client()
            resp = await client.get(url, timeout=self.timeout)
            resp.raise_for_status()
            config = resp.json()
        except httpx.HTTPError as exc:
            self._raise_classified(exc, "OIDC discovery", AuthenticationError)
        except ValueError as exc:
            msg = f"OIDC discovery returned invalid JSON: {exc}"
            raise AuthenticationError(msg, provider=self.issuer_url) from exc

        discovered_issuer = str(config.get("issuer", "")).rstrip("/")
        if discovered_issuer != self.issuer_url:
            msg = f"OIDC issuer mismatch: expected '{self.issuer_url}', got '{discovered_issuer}'"
            raise AuthenticationError(msg, provider=self.issuer_url)

        self.authorize_url = config.get("authorization_endpoint", "")
        self.token_url = config.get("token_endpoint", "")
        self._jwks_uri = config.get("jwks_uri", "")
        if not self.authorize_url or not self.token_url:
            msg = "OIDC discovery document lacks authorization or token endpoint"
            raise AuthenticationError(msg, provider=self.issuer_url)
        self._discovered = True
        logger.debug("Discovered OIDC endpoints for %s", self.issuer_url)

    def authorization_url(self, params: dict[str, str]) -> str:
        """Build the provider authorization URL.

        Parameters
        ----------
        params : dict[str, str]
            Request parameters (scope, redirect_uri, code_challenge, nonce, ...).
            ``response_type`` and ``client_id`` are filled in.

        Returns
        -------
        str
            The full authorization URL.
        """
        if not self.authorize_url:
            msg = "Authorization endpoint unknown; call discover() first"
            raise AuthenticationError(msg, provider=self.issuer_url)
        query = {"client_id": self.client_id, "response_type": "code", **params}
        return f"{self.authorize_url}?{urlencode(query)}"

    async def exchange_code(
        self,
        redirect_uri: str,
        code: str,
        *,
        code_verifier: str,
        nonce: str | None = None,
    ) -> TokenSet:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        redirect_uri : str
            The redirect URI used in the authorization request.
        code : str
            The authorization code from the callback.
        code_verifier : str
            The PKCE verifier matching the sent challenge.
        nonce : str, optional
            The nonce sent in the authorization request.

        Returns
        -------
        TokenSet
            The token set, with validated ID token claims.

        Raises
        ------
        TokenError
            If the exchange is rejected or the ID token is invalid.
        """
        await self.discover()
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.client_id,
            "code_verifier": code_verifier,
        }
        raw = await self._token_request(data, "Token exchange", TokenError)

        id_token = raw.get("id_token")
        claims: dict[str, Any] = {}
        if id_token and self.require_id_token_validation:
            claims = await self.validate_id_token(id_token, nonce=nonce)
        elif id_token:
            claims = decode_claims(id_token)
        return self._token_set(raw, claims)

    async def refresh(self, refresh_token: str) -> TokenSet:
        """Refresh tokens with a refresh token.

        Raises
        ------
        TokenNetworkError
            If the provider could not be reached.
        TokenRefreshError
            If the provider rejected the refresh token.
        """
        await self.discover()
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
        }
        raw = await self._token_request(data, "Token refresh", TokenRefreshError)
        id_token = raw.get("id_token")
        claims = decode_claims(id_token) if id_token else {}
        return self._token_set(raw, claims)

    async def _token_request(
        self,
        data: dict[str, str],
        what: str,
        error_cls: type[TokenError],
    ) -> dict[str, Any]:
        """POST to the token endpoint and return the JSON body."""
        try:
            client = await self._get_client()
            resp = await client.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            raw = resp.json()
        except httpx.HTTPError as exc:
            self._raise_classified(exc, what, error_cls)
        except ValueError as exc:
            msg = f"{what} returned invalid JSON"
            raise error_cls(msg, provider=self.issuer_url) from exc

        if not isinstance(raw, dict) or "access_token" not in raw:
            msg = f"{what} response has no access_token"
            raise error_cls(msg, provider=self.issuer_url)
        logger.debug("%s response: %s", what, redact_sensitive_data(raw))
        return raw

    def _raise_classified(
        self,
        exc: httpx.HTTPError,
        what: str,
        error_cls: type[AuthenticationError],
    ) -> None:
        """Re-raise an httpx error as network or terminal failure."""
        if isinstance(exc, httpx.TransportError):
            msg = f"{what} request failed: {exc}"
            raise TokenNetworkError(msg, provider=self.issuer_url) from exc
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            if status in _TRANSIENT_STATUS:
                msg = f"{what} failed: provider unavailable ({status})"
                raise TokenNetworkError(msg, provider=self.issuer_url) from exc
            msg = f"{what} failed: {status}"
            raise error_cls(msg, provider=self.issuer_url, status=status) from exc
        msg = f"{what} failed: {exc}"
        raise error_cls(msg, provider=self.issuer_url) from exc

    def _token_set(self, raw: dict[str, Any], claims: dict[str, Any]) -> TokenSet:
        expires_in = raw.get("expires_in")
        return TokenSet(
            access_token=raw["access_token"],
            token_type=raw.get("token_type", "Bearer"),
            refresh_token=raw.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            id_token=raw.get("id_token"),
            scope=raw.get("scope", ""),
            raw=raw,
            issued_at=time.time(),
            claims=claims,
        )

    async def _fetch_jwks(self) -> dict[str, Any]:
        """Fetch the JWKS key set from the provider."""
        if self._jwks_data is not None:
            return self._jwks_data
        if not self._jwks_uri:
            msg = "JWKS URI not available (run discovery first)"
            raise TokenError(msg, provider=self.issuer_url)
        try:
            client = await self._get_client()
            resp = await client.get(self._jwks_uri, timeout=self.timeout)
            resp.raise_for_status()
            self._jwks_data = resp.json()
        except httpx.HTTPError as exc:
            self._raise_classified(exc, "JWKS fetch", TokenError)
        return self._jwks_data  # type: ignore[return-value]

    async def validate_id_token(self, id_token: str, nonce: str | None = None) -> dict[str, Any]:
        """Validate an ID token and return its claims.

        Checks signature (via JWKS), issuer, audience, expiry, and nonce.

        Raises
        ------
        TokenError
            If validation fails for any reason.
        """
        await self.discover()
        jwks_data = await self._fetch_jwks()

        jwt = JsonWebToken(["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"])
        claims_options: dict[str, Any] = {
            "iss": {"essential": True, "value": self.issuer_url},
            "aud": {"essential": True, "value": self.client_id},
            "exp": {"essential": True},
        }
        if nonce:
            claims_options["nonce"] = {"essential": True, "value": nonce}

        try:
            key_set = JsonWebKey.import_key_set(jwks_data)
            claims = jwt.decode(id_token, key_set, claims_options=claims_options)
            claims.validate()
        except Exception as exc:
            msg = f"ID token validation failed: {exc}"
            raise TokenError(msg, provider=self.issuer_url) from exc

        return dict(claims)
