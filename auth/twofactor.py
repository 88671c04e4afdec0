"""
auth/twofactor.py -- Confirmation codes, TOTP verification, and 2FA enrollment.

Two different second-factor mechanisms live here:

  Confirmation codes (issue_code / verify_code)
      Short random codes that authorize one sensitive state change (enable or
      disable 2FA). 90 second lifetime, consumed by the same UPDATE that
      reports success. Only the newest live code per (user, action) counts.

  TOTP (verify_totp)
      RFC 6238 codes from the user's authenticator app, checked with pyotp
      against the enrolled secret with a +/- totp_valid_window step tolerance
      (default 2 steps = 60 seconds each way). This is what gates unlock.

Every failed check appends a twofa_failed audit entry, and every check first
asks the RateLimiter whether the user has failed too often recently.

Enrollment ties the pieces together: enable() requires a fresh "enable"
confirmation code plus a TOTP for the new secret, stores the secret and
issues the recovery key in the same call, returning its plaintext once.
Neither enable() nor disable() may touch the secret of a locked account:
unlock() trusts whatever secret is stored.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import pyotp

from auth.activity import SecurityLog
from auth.models import EventType, TwoFactorAction, TwoFactorCode, TwoFactorEnrollment
from auth.ratelimit import RateLimiter
from auth.recovery import RecoveryKeyService
from auth.store import SecurityStore
from auth.tokens import generate_confirmation_code, normalize_code
from core.clock import SecureRandom, SystemClock
from core.errors import AccountLockedError, InvalidTwoFACodeError, NotFoundError, TwoFARequiredError

logger = logging.getLogger("acetrade.twofactor")

CODE_TTL = timedelta(seconds=90)
TOTP_ISSUER = "Ace Trade"


def check_totp(secret: str | None, code: str, for_time: datetime, valid_window: int = 2) -> bool:
    """Verify a 6-digit TOTP code. Malformed input or secret is a mismatch."""
    if not secret or not code:
        return False
    code = code.strip().replace(" ", "")
    if len(code) != 6 or not code.isdigit():
        return False
    try:
        return pyotp.TOTP(secret).verify(code, for_time=for_time, valid_window=valid_window)
    except ValueError:
        return False


class TwoFactorService:
    def __init__(
        self,
        store: SecurityStore,
        limiter: RateLimiter,
        activity: SecurityLog,
        recovery: RecoveryKeyService,
        clock: SystemClock,
        rng: SecureRandom,
        valid_window: int = 2,
    ) -> None:
        self._store = store
        self._limiter = limiter
        self._activity = activity
        self._recovery = recovery
        self._clock = clock
        self._rng = rng
        self.valid_window = valid_window

    # ------------------------------------------------------------------
    # Confirmation codes
    # ------------------------------------------------------------------

    def issue_code(self, user_id: int, action: TwoFactorAction) -> str:
        """Create a confirmation code for ``action`` and return it to the caller.

        Not safe to retry blindly after a TransientError: a code may already
        exist. Issuing again simply supersedes it, since only the newest code
        validates.
        """
        if self._store.get_user(user_id) is None:
            raise NotFoundError(f"User {user_id} not found.")
        code = generate_confirmation_code(self._rng)
        self._store.create_twofa_code(
            TwoFactorCode(
                user_id=user_id,
                code=code,
                action=TwoFactorAction(action),
                expires_at=self._clock.now() + CODE_TTL,
            )
        )
        return code

    def verify_code(self, user_id: int, code: str, action: TwoFactorAction) -> bool:
        self._limiter.check_failed_attempts(user_id)
        ok = self._store.consume_twofa_code(user_id, normalize_code(code), TwoFactorAction(action), self._clock.now())
        if not ok:
            self._limiter.record_failed_attempt(user_id, f"code:{TwoFactorAction(action).value}")
        return ok

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------

    def verify_totp(self, user_id: int, code: str) -> bool:
        self._limiter.check_failed_attempts(user_id)
        user = self._store.get_user(user_id)
        secret = user.totp_secret if user is not None and user.is_2fa_enabled else None
        ok = check_totp(secret, code, self._clock.now(), self.valid_window)
        if not ok and user is not None:
            self._limiter.record_failed_attempt(user_id, "totp")
        return ok

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def begin_enrollment(self, user_id: int) -> TwoFactorEnrollment:
        """Generate a new secret and its otpauth:// URI. Nothing is stored yet."""
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.")
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.account_id, issuer_name=TOTP_ISSUER)
        return TwoFactorEnrollment(secret=secret, provisioning_uri=uri)

    def enable(
        self,
        user_id: int,
        secret: str,
        totp_code: str,
        confirmation_code: str,
        current_totp_code: str | None = None,
    ) -> str:
        """Turn on 2FA with ``secret`` and return a new recovery key (shown once).

        The TOTP is checked before the confirmation code so a typo in the
        authenticator code does not burn the confirmation code. Re-enabling
        rotates both the secret and the recovery key, and needs a valid code
        from the currently enrolled secret. Refused while the account is
        locked, since the unlock check trusts the stored secret.
        """
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.")
        if user.account_locked:
            raise AccountLockedError()
        if user.is_2fa_enabled:
            if not current_totp_code or not self.verify_totp(user_id, current_totp_code):
                raise InvalidTwoFACodeError("A code from the current authenticator is required.")
        self._limiter.check_failed_attempts(user_id)
        if not check_totp(secret, totp_code, self._clock.now(), self.valid_window):
            self._limiter.record_failed_attempt(user_id, "totp")
            raise InvalidTwoFACodeError()
        if not self.verify_code(user_id, confirmation_code, TwoFactorAction.enable):
            raise InvalidTwoFACodeError("Invalid or expired confirmation code.")

        if not self._store.enable_twofa(user_id, secret):
            # Lockdown won the race between the checks above and the update.
            raise AccountLockedError()
        recovery_key = self._recovery.issue(user_id)
        self._activity.append(user_id, EventType.twofa_enabled, {"recovery_key_issued": True})
        logger.info("2FA enabled for user_id=%s", user_id)
        return recovery_key

    def disable(self, user_id: int, totp_code: str, confirmation_code: str) -> None:
        """Turn off 2FA. Refused while the account is locked."""
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.")
        if not user.is_2fa_enabled:
            raise TwoFARequiredError("2FA is not enabled.")
        if user.account_locked:
            raise AccountLockedError()
        if not self.verify_totp(user_id, totp_code):
            raise InvalidTwoFACodeError()
        if not self.verify_code(user_id, confirmation_code, TwoFactorAction.disable):
            raise InvalidTwoFACodeError("Invalid or expired confirmation code.")
        if not self._store.disable_twofa(user_id):
            # Lockdown won the race between the checks above and the update.
            raise AccountLockedError()
        self._activity.append(user_id, EventType.twofa_disabled, {})
        logger.info("2FA disabled for user_id=%s", user_id)
