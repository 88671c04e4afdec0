"""
auth/lockdown.py -- Active <-> Locked account state machine.

    Active --lockdown()--> Locked      requires 2FA enabled
    Locked --unlock(totp)--> Active    requires a valid TOTP

lockdown() is one transaction in the store: lock flag, session destruction,
pending-token burn, and the audit row commit together or not at all.
unlock() on an Active account is a successful no-op (returns False).
"""

from __future__ import annotations

import logging

from auth.activity import SecurityLog
from auth.models import EventType
from auth.store import SecurityStore
from auth.twofactor import TwoFactorService
from core.clock import SystemClock
from core.errors import InvalidTwoFACodeError, NotFoundError

logger = logging.getLogger("acetrade.lockdown")


class LockdownService:
    def __init__(
        self,
        store: SecurityStore,
        twofactor: TwoFactorService,
        activity: SecurityLog,
        clock: SystemClock,
    ) -> None:
        self._store = store
        self._twofactor = twofactor
        self._activity = activity
        self._clock = clock

    def lockdown(self, user_id: int) -> int:
        """Lock the account. Returns how many active sessions were destroyed.

        Raises NotFoundError or TwoFARequiredError with nothing changed.
        """
        destroyed = self._store.lock_account(user_id, self._clock.now(), {"action": "emergency_lockdown"})
        logger.warning("Account lockdown for user_id=%s (%d sessions destroyed)", user_id, destroyed)
        return destroyed

    def unlock(self, user_id: int, totp_code: str) -> bool:
        """Unlock with a TOTP code.

        Returns True if the account went from Locked to Active, False if it was
        already Active. Raises InvalidTwoFACodeError (state unchanged) or
        RateLimitExceeded after repeated failures.
        """
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.")
        if not user.account_locked:
            return False
        if not self._twofactor.verify_totp(user_id, totp_code):
            raise InvalidTwoFACodeError()
        if not self._store.unlock_account(user_id):
            # A concurrent unlock got there first.
            return False
        self._activity.append(user_id, EventType.account_unlock, {"action": "account_unlocked", "verified_by_2fa": True})
        logger.info("Account unlocked for user_id=%s", user_id)
        return True

    def is_locked(self, user_id: int) -> bool:
        user = self._store.get_user(user_id)
        return bool(user is not None and user.account_locked)
