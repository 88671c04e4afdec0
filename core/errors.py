"""
core/errors.py -- Typed failure outcomes for the security core.

Every operation in auth/ reports failure by raising one of these. Callers (the
chat front end, the terminal API, the CLI) catch SecurityError and branch on
the concrete type or on ``code``; wording shown to users is their business.

Retry policy lives on the class: only TransientError and ConflictError are
``retryable``. DatastoreError covers any other driver failure (bad data,
schema drift) and is not retried. Everything else is a definitive answer and must not be retried
automatically.

Layer rule: no imports from api/, auth/ or chat/.
"""

from __future__ import annotations


class SecurityError(Exception):
    """Base class for all typed outcomes of the security core."""

    code: str = "security_error"
    retryable: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self.args[0])


class NotFoundError(SecurityError):
    """Referenced user or session does not exist."""

    code = "not_found"


class RateLimitExceeded(SecurityError):
    """Rate limit exceeded. Please try again later."""

    code = "rate_limited"


class InvalidTokenError(SecurityError):
    """Invalid session token."""

    code = "invalid_token"


class ExpiredTokenError(SecurityError):
    """Session token expired."""

    code = "expired_token"


class AlreadyUsedError(SecurityError):
    """Session token already used."""

    code = "already_used"


class InvalidTwoFACodeError(SecurityError):
    """Invalid 2FA code."""

    code = "invalid_2fa_code"


class TwoFARequiredError(SecurityError):
    """2FA must be enabled for this operation."""

    code = "2fa_required"


class AccountLockedError(SecurityError):
    """Account is locked. Unlock it with a 2FA code first."""

    code = "account_locked"


class TransientError(SecurityError):
    """Datastore unavailable or timed out."""

    code = "transient"
    retryable = True


class ConflictError(SecurityError):
    """Uniqueness conflict while generating an identifier."""

    code = "conflict"
    retryable = True


class DatastoreError(SecurityError):
    """The datastore rejected the statement."""

    code = "datastore_error"
