"""Tests for the OIDC client against a mocked provider."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import json
import time

from base64 import urlsafe_b64encode
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from authlib.jose import JsonWebKey, JsonWebToken

from sessionkeeper.exceptions import (
    AuthenticationError,
    TokenError,
    TokenNetworkError,
    TokenRefreshError,
)
from sessionkeeper.providers import OIDCClient, decode_claims


ISSUER = "https://sso.example.com/realms/demo"
TOKEN_URL = f"{ISSUER}/protocol/openid-connect/token"
JWKS_URL = f"{ISSUER}/protocol/openid-connect/certs"

DISCOVERY = {
    "issuer": ISSUER,
    "authorization_endpoint": f"{ISSUER}/protocol/openid-connect/auth",
    "token_endpoint": TOKEN_URL,
    "jwks_uri": JWKS_URL,
}


def _segment(data: dict) -> str:
    return urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()


def unsigned_jwt(claims: dict) -> str:
    """Build a JWT whose claims can be read without verification."""
    return f"{_segment({'alg': 'none'})}.{_segment(claims)}."


class MockProvider:
    """Routes requests to a discovery document, JWKS and token responses.

    Set ``token_response`` to an ``httpx.Response`` or an exception.
    """

    def __init__(self) -> None:
        self.discovery = dict(DISCOVERY)
        self.discovery_response: httpx.Response | Exception | None = None
        self.jwks: dict = {"keys": []}
        self.token_response: httpx.Response | Exception = httpx.Response(
            200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 300}
        )
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url.endswith("/.well-known/openid-configuration"):
            return self._answer(self.discovery_response or httpx.Response(200, json=self.discovery))
        if url == JWKS_URL:
            return httpx.Response(200, json=self.jwks)
        if url == TOKEN_URL:
            return self._answer(self.token_response)
        return httpx.Response(404)

    @staticmethod
    def _answer(response):
        if isinstance(response, Exception):
            raise response
        return response

    def form(self, index: int = -1) -> dict[str, str]:
        """Decoded form body of a recorded request."""
        body = self.requests[index].content.decode()
        return {k: v[0] for k, v in parse_qs(body).items()}


@pytest.fixture()
def provider() -> MockProvider:
    """Create a mock provider."""
    return MockProvider()


@pytest.fixture()
def client(provider) -> OIDCClient:
    """Create a client wired to the mock provider, without ID token validation."""
    http = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    return OIDCClient("cli", ISSUER, require_id_token_validation=False, http_client=http)


@pytest.fixture(scope="module")
def signing_key():
    """Generate an RSA signing key."""
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "k1"})


def signed_id_token(key, **overrides) -> str:
    """Sign an ID token for the demo client."""
    now = int(time.time())
    claims = {
        "iss": ISSUER,
        "aud": "cli",
        "sub": "u1",
        "iat": now,
        "exp": now + 300,
        "nonce": "n1",
        "preferred_username": "alice",
    }
    claims.update(overrides)
    token = JsonWebToken(["RS256"]).encode({"alg": "RS256", "kid": "k1"}, claims, key)
    return token.decode("ascii")


# ── Claims ──────────────────────────────────────────────────────────


class TestDecodeClaims:
    """Tests for decode_claims."""

    def test_decodes_payload(self) -> None:
        """The payload of a JWT is returned as a dict."""
        assert decode_claims(unsigned_jwt({"sub": "u1", "sid": "s"})) == {"sub": "u1", "sid": "s"}

    @pytest.mark.parametrize("token", ["garbage", "a.!!!.c", f"x.{_segment(['list'])}.y"])
    def test_garbage(self, token) -> None:
        """Anything but a JWT with an object payload gives no claims."""
        assert decode_claims(token) == {}


# ── Discovery ───────────────────────────────────────────────────────


class TestDiscovery:
    """Tests for OIDCClient.discover."""

    @pytest.mark.asyncio
    async def test_discovers_endpoints(self, client, provider) -> None:
        """Endpoints are read from the discovery document once."""
        await client.discover()
        await client.discover()
        assert client.discovered
        assert client.token_url == TOKEN_URL
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_issuer_mismatch(self, client, provider) -> None:
        """A document naming another issuer is rejected."""
        provider.discovery["issuer"] = "https://evil.example.com"
        with pytest.raises(AuthenticationError, match="issuer mismatch"):
            await client.discover()
        assert not client.discovered

    @pytest.mark.asyncio
    async def test_missing_endpoints(self, client, provider) -> None:
        """A document without token endpoint is rejected."""
        del provider.discovery["token_endpoint"]
        with pytest.raises(AuthenticationError, match="lacks"):
            await client.discover()

    @pytest.mark.asyncio
    async def test_unreachable(self, client, provider) -> None:
        """Connection failures are network errors."""
        provider.discovery_response = httpx.ConnectError("refused")
        with pytest.raises(TokenNetworkError):
            await client.discover()

    @pytest.mark.asyncio
    async def test_not_found(self, client, provider) -> None:
        """A missing discovery document is a terminal error."""
        provider.discovery_response = httpx.Response(404)
        with pytest.raises(AuthenticationError) as exc_info:
            await client.discover()
        assert not isinstance(exc_info.value, TokenNetworkError)
        assert exc_info.value.context["status"] == 404

    @pytest.mark.asyncio
    async def test_authorization_url(self, client) -> None:
        """The URL carries client id, response type and the given params."""
        with pytest.raises(AuthenticationError, match="discover"):
            client.authorization_url({"scope": "openid"})
        await client.discover()
        url = urlparse(client.authorization_url({"scope": "openid a", "nonce": "n1"}))
        query = {k: v[0] for k, v in parse_qs(url.query).items()}
        assert url.path.endswith("/auth")
        assert query == {"client_id": "cli", "response_type": "code", "scope": "openid a", "nonce": "n1"}


# ── Token requests ──────────────────────────────────────────────────


class TestRefresh:
    """Tests for OIDCClient.refresh and its failure classification."""

    @pytest.mark.asyncio
    async def test_success(self, client, provider) -> None:
        """A refresh returns the new token set with ID token claims."""
        provider.token_response = httpx.Response(
            200,
            json={
                "access_token": "at2",
                "refresh_token": "rt2",
                "expires_in": "300",
                "id_token": unsigned_jwt({"sub": "u1", "email": "a@b.c"}),
                "session_state": "sess",
            },
        )
        token_set = await client.refresh("rt1")

        assert token_set.access_token == "at2"
        assert token_set.refresh_token == "rt2"
        assert token_set.expires_in == 300
        assert token_set.claims == {"sub": "u1", "email": "a@b.c"}
        assert token_set.session_state == "sess"
        assert provider.form() == {"grant_type": "refresh_token", "refresh_token": "rt1", "client_id": "cli"}

    @pytest.mark.asyncio
    async def test_rejected(self, client, provider) -> None:
        """A 400 invalid_grant is a terminal refresh error."""
        provider.token_response = httpx.Response(400, json={"error": "invalid_grant"})
        with pytest.raises(TokenRefreshError) as exc_info:
            await client.refresh("rt1")
        assert not isinstance(exc_info.value, TokenNetworkError)
        assert exc_info.value.context["status"] == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [502, 503, 504])
    async def test_unavailable(self, client, provider, status) -> None:
        """Gateway errors count as an unreachable provider."""
        provider.token_response = httpx.Response(status)
        with pytest.raises(TokenNetworkError):
            await client.refresh("rt1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")]
    )
    async def test_transport_errors(self, client, provider, error) -> None:
        """Transport failures are network errors."""
        await client.discover()
        provider.token_response = error
        with pytest.raises(TokenNetworkError):
            await client.refresh("rt1")

    @pytest.mark.asyncio
    async def test_missing_access_token(self, client, provider) -> None:
        """A response without access token is rejected."""
        provider.token_response = httpx.Response(200, json={"token_type": "Bearer"})
        with pytest.raises(TokenRefreshError, match="no access_token"):
            await client.refresh("rt1")

    @pytest.mark.asyncio
    async def test_invalid_json(self, client, provider) -> None:
        """A non-JSON body is rejected."""
        provider.token_response = httpx.Response(200, content=b"<html>")
        with pytest.raises(TokenRefreshError, match="invalid JSON"):
            await client.refresh("rt1")


class TestExchangeCode:
    """Tests for OIDCClient.exchange_code."""

    @pytest.mark.asyncio
    async def test_without_validation(self, client, provider) -> None:
        """The PKCE verifier is sent and claims are decoded."""
        provider.token_response = httpx.Response(
            200, json={"access_token": "at", "id_token": unsigned_jwt({"sub": "u1"})}
        )
        token_set = await client.exchange_code("http://localhost:1/callback", "code1", code_verifier="v")

        assert token_set.claims == {"sub": "u1"}
        assert provider.form() == {
            "grant_type": "authorization_code",
            "code": "code1",
            "redirect_uri": "http://localhost:1/callback",
            "client_id": "cli",
            "code_verifier": "v",
        }

    @pytest.mark.asyncio
    async def test_validated_id_token(self, provider, signing_key) -> None:
        """A signed ID token is verified against the provider's JWKS."""
        provider.jwks = {"keys": [signing_key.as_dict(is_private=False)]}
        provider.token_response = httpx.Response(
            200, json={"access_token": "at", "id_token": signed_id_token(signing_key)}
        )
        http = httpx.AsyncClient(transport=httpx.MockTransport(provider))
        client = OIDCClient("cli", ISSUER, http_client=http)

        token_set = await client.exchange_code("http://localhost:1/callback", "c", code_verifier="v", nonce="n1")

        assert token_set.claims["sub"] == "u1"
        assert token_set.claims["preferred_username"] == "alice"
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides", [{"nonce": "other"}, {"aud": "someone-else"}, {"iss": "https://evil.example.com"}]
    )
    async def test_invalid_id_token(self, provider, signing_key, overrides) -> None:
        """Wrong nonce, audience or issuer fail the exchange."""
        provider.jwks = {"keys": [signing_key.as_dict(is_private=False)]}
        provider.token_response = httpx.Response(
            200, json={"access_token": "at", "id_token": signed_id_token(signing_key, **overrides)}
        )
        http = httpx.AsyncClient(transport=httpx.MockTransport(provider))
        client = OIDCClient("cli", ISSUER, http_client=http)

        with pytest.raises(TokenError, match="ID token validation failed"):
            await client.exchange_code("http://localhost:1/callback", "c", code_verifier="v", nonce="n1")


class TestClose:
    """Tests for OIDCClient.close."""

    @pytest.mark.asyncio
    async def test_close(self, client) -> None:
        """Closing twice is safe."""
        await client.discover()
        await client.close()
        await client.close()
