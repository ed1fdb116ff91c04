"""Crypto primitives: constant-time comparison, authenticated encryption, key derivation."""

import base64
import hashlib
import hmac
import os
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from wishcraft.core.config import settings
from wishcraft.core.exceptions import DecryptionError

# Keys the digests compared in constant_time_equals. Never leaves the process.
_COMPARE_KEY = os.urandom(32)


def _to_bytes(value: bytes | str) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def constant_time_equals(a: bytes | str, b: bytes | str) -> bool:
    """Return True iff ``a`` and ``b`` are equal, in time independent of their contents.

    Both inputs are first reduced to fixed-length keyed digests, so a length
    mismatch costs exactly as much as a full comparison of equal-length values.
    """
    digest_a = hmac.new(_COMPARE_KEY, _to_bytes(a), hashlib.sha256).digest()
    digest_b = hmac.new(_COMPARE_KEY, _to_bytes(b), hashlib.sha256).digest()
    return hmac.compare_digest(digest_a, digest_b)


def derive_key(secret: bytes | str, context: str, salt: bytes | str | None = None) -> bytes:
    """Derive a per-purpose Fernet key from a master secret.

    Args:
        secret: The master secret (usually ``settings.encryption_key``).
        context: Purpose label, e.g. ``"session"`` or ``"pii"``. Keys derived for
            different contexts are independent.
        salt: HKDF salt. Defaults to the deployment's ``encryption_salt``.

    Returns:
        A url-safe base64 encoded 32-byte key, usable with Fernet or HMAC.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_to_bytes(salt if salt is not None else settings.encryption_salt),
        info=f"wishcraft:{context}".encode(),
    )
    return base64.urlsafe_b64encode(hkdf.derive(_to_bytes(secret)))


def encrypt(plaintext: bytes | str, key: bytes) -> str:
    """Encrypt and authenticate ``plaintext`` with a Fernet key."""
    return Fernet(key).encrypt(_to_bytes(plaintext)).decode()


def decrypt(ciphertext: bytes | str, key: bytes) -> str:
    """Decrypt a Fernet token.

    Raises:
        DecryptionError: If the token was tampered with, truncated, or
            encrypted under a different key.
    """
    try:
        return Fernet(key).decrypt(_to_bytes(ciphertext)).decode()
    except (InvalidToken, ValueError, UnicodeDecodeError) as e:
        raise DecryptionError() from e


@lru_cache(maxsize=8)
def purpose_key(context: str) -> bytes:
    """Get the cached key for ``context`` derived from the configured master key."""
    return derive_key(settings.encryption_key, context)


def encrypt_pii(value: str) -> str:
    """Encrypt personally identifiable data for storage."""
    return encrypt(value, purpose_key("pii"))


def decrypt_pii(encrypted: str) -> str:
    """Decrypt a value produced by :func:`encrypt_pii`."""
    return decrypt(encrypted, purpose_key("pii"))


def normalize_email(email: str) -> str:
    """Canonical form used for every email comparison."""
    return email.strip().lower()


def email_index(email: str) -> str:
    """Keyed blind index for equality lookups on encrypted email columns."""
    return hmac.new(
        purpose_key("email-index"),
        normalize_email(email).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def sign_value(value: str, context: str) -> str:
    """Return a base64url HMAC-SHA256 signature of ``value`` for ``context``."""
    digest = hmac.new(purpose_key(context), value.encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


def verify_signed_value(value: str, signature: str, context: str) -> bool:
    """Check a signature produced by :func:`sign_value`."""
    return constant_time_equals(sign_value(value, context), signature)
