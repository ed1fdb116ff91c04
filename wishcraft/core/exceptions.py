"""Error taxonomy for the access-control core.

Every error raised by the core derives from :class:`WishcraftError` and carries
a ``kind`` naming its category. HTTP handlers in ``wishcraft.main`` map kinds to
responses; services never translate them into HTTP errors themselves.
"""

import enum
from typing import Any


class ErrorKind(str, enum.Enum):
    """Categories of failure, each with its own propagation policy."""

    CRYPTO_FAILURE = "crypto_failure"
    STATE_OR_PKCE_MISMATCH = "state_or_pkce_mismatch"
    EXPIRED_EXCHANGE = "expired_exchange"
    UPSTREAM_EXCHANGE_FAILURE = "upstream_exchange_failure"
    AUTHORIZATION_DENIED = "authorization_denied"
    LIFECYCLE_VIOLATION = "lifecycle_violation"
    RATE_LIMITED = "rate_limited"


class WishcraftError(Exception):
    """Base class for all core errors."""

    kind: ErrorKind
    code: str = "error"
    message: str = "Request failed"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.message
        self.context = context
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------


class CryptoFailure(WishcraftError):
    kind = ErrorKind.CRYPTO_FAILURE


class DecryptionError(CryptoFailure):
    code = "decryption_failed"
    message = "Ciphertext could not be authenticated"


class SignatureInvalid(CryptoFailure):
    code = "signature_invalid"
    message = "Invalid signature"


# ---------------------------------------------------------------------------
# OAuth flow
# ---------------------------------------------------------------------------


class StateOrPKCEMismatch(WishcraftError):
    kind = ErrorKind.STATE_OR_PKCE_MISMATCH


class StateMismatch(StateOrPKCEMismatch):
    code = "state_mismatch"
    message = "Invalid or already used authorization state"


class PKCEMismatch(StateOrPKCEMismatch):
    code = "pkce_mismatch"
    message = "Code verifier does not match the authorization request"


class ExpiredExchange(WishcraftError):
    kind = ErrorKind.EXPIRED_EXCHANGE
    code = "exchange_expired"
    message = "Authorization request has expired, please sign in again"


class UpstreamExchangeFailure(WishcraftError):
    kind = ErrorKind.UPSTREAM_EXCHANGE_FAILURE


class ExchangeFailed(UpstreamExchangeFailure):
    code = "exchange_failed"
    message = "Identity provider rejected the token exchange"


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class AuthorizationDenied(WishcraftError):
    kind = ErrorKind.AUTHORIZATION_DENIED
    message = "Not permitted"


class Unauthenticated(AuthorizationDenied):
    code = "unauthenticated"
    message = "Not authenticated"


class PermissionDenied(AuthorizationDenied):
    code = "permission_denied"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class LifecycleViolation(WishcraftError):
    kind = ErrorKind.LIFECYCLE_VIOLATION
    status_code: int = 409


class RegistryNotFound(LifecycleViolation):
    code = "registry_not_found"
    message = "Registry not found"
    status_code = 404


class CollaborationDisabled(LifecycleViolation):
    code = "collaboration_disabled"
    message = "Collaboration is not enabled for this registry"


class LimitReached(LifecycleViolation):
    code = "limit_reached"
    message = "Maximum collaborators limit reached"


class AlreadyCollaborator(LifecycleViolation):
    code = "already_collaborator"
    message = "User is already a collaborator"


class InvitationNotFound(LifecycleViolation):
    code = "invitation_not_found"
    message = "Invitation not found"
    status_code = 404


class InvitationNotPending(LifecycleViolation):
    code = "invitation_not_pending"
    message = "Invitation is no longer pending"


class EmailMismatch(LifecycleViolation):
    code = "email_mismatch"
    message = "Email mismatch - invitation not for this user"
    status_code = 403


class InvitationExpired(LifecycleViolation):
    code = "invitation_expired"
    message = "Invitation has expired"
    status_code = 410


class CollaboratorNotFound(LifecycleViolation):
    code = "collaborator_not_found"
    message = "Collaborator not found"
    status_code = 404


class InvalidInvitation(LifecycleViolation):
    code = "invalid_invitation"
    message = "Invalid invitation"
    status_code = 422


class InvalidCollaborationSettings(LifecycleViolation):
    code = "invalid_collaboration_settings"
    message = "Invalid collaboration settings"
    status_code = 422

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors), errors=errors)
        self.errors = errors


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class RateLimited(WishcraftError):
    kind = ErrorKind.RATE_LIMITED
    code = "rate_limited"
    message = "Too many attempts, please try again later"

    def __init__(self, retry_after: int) -> None:
        super().__init__(retry_after=retry_after)
        self.retry_after = retry_after
