"""Random token generation for OAuth state and PKCE."""

import base64
import hashlib
import secrets
from dataclasses import dataclass

# RFC 7636 allows 43-128 characters.
PKCE_VERIFIER_BYTES = 64  # -> 86 characters


@dataclass(frozen=True)
class PKCEPair:
    """A PKCE code verifier and its S256 challenge."""

    verifier: str
    challenge: str


def generate_token(length: int = 32) -> str:
    """Generate a secure random url-safe token from ``length`` random bytes."""
    return secrets.token_urlsafe(length)


def generate_state() -> str:
    """Generate a 256-bit OAuth state value for CSRF binding."""
    return secrets.token_urlsafe(32)


def generate_exchange_id() -> str:
    """Generate the opaque id a browser uses to find its pending exchange."""
    return secrets.token_urlsafe(24)


def compute_code_challenge(verifier: str) -> str:
    """Compute ``base64url(sha256(verifier))`` without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_pair() -> PKCEPair:
    """Generate a PKCE verifier drawn from the unreserved alphabet and its challenge."""
    verifier = secrets.token_urlsafe(PKCE_VERIFIER_BYTES)
    return PKCEPair(verifier=verifier, challenge=compute_code_challenge(verifier))
