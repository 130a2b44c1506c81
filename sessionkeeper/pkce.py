"""PKCE (Proof Key for Code Exchange) and nonce generation.

RFC 7636 binds the authorization code to a locally generated verifier.
Only the S256 method (base64url SHA-256 of the verifier) is used.
"""

from __future__ import annotations

import hashlib
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass


def generate_nonce(length: int = 16) -> str:
    """Generate a single-use nonce for one login flow.

    The same value guards the local ``/signin`` page and is bound into
    the ID token by the provider.
    """
    return secrets.token_urlsafe(length)


def _s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE verifier with its derived challenge.

    Attributes
    ----------
    verifier : str
        High-entropy secret kept by the client until the code exchange.
    challenge : str
        ``BASE64URL(SHA256(verifier))`` sent with the authorization request.
    method : str
        Always ``"S256"``.
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, length: int = 48) -> PKCEChallenge:
        """Create a fresh verifier/challenge pair.

        Parameters
        ----------
        length : int
            Random bytes in the verifier (default 48, i.e. 64 characters;
            RFC 7636 allows 43 to 128 characters).
        """
        verifier = secrets.token_urlsafe(length)
        return cls(verifier=verifier, challenge=_s256(verifier))

    def matches(self, verifier: str) -> bool:
        """Check a verifier against this challenge."""
        return secrets.compare_digest(_s256(verifier), self.challenge)
