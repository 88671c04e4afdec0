"""
auth/recovery.py -- Single-use recovery key tied to 2FA enrollment.

The plaintext key exists only in the return value of issue(). The users row
holds a bcrypt hash plus a used marker; issuing again overwrites both, which
is how a previous key is invalidated.

verify() cannot push bcrypt into SQL, so it checks the hash in Python and then
consumes with a compare-and-set on the exact hash it verified. Two concurrent
verifications of the same key both pass bcrypt, but only one UPDATE matches
``recovery_key_used = 0``.
"""

from __future__ import annotations

import logging

from auth.activity import SecurityLog
from auth.models import EventType
from auth.ratelimit import RateLimiter
from auth.store import SecurityStore
from auth.tokens import generate_recovery_key, hash_secret, normalize_code, verify_secret
from core.clock import SecureRandom, SystemClock
from core.errors import NotFoundError

logger = logging.getLogger("acetrade.recovery")


class RecoveryKeyService:
    def __init__(
        self,
        store: SecurityStore,
        limiter: RateLimiter,
        activity: SecurityLog,
        clock: SystemClock,
        rng: SecureRandom,
        rounds: int = 12,
    ) -> None:
        self._store = store
        self._limiter = limiter
        self._activity = activity
        self._clock = clock
        self._rng = rng
        self.rounds = rounds

    def issue(self, user_id: int) -> str:
        key = generate_recovery_key(self._rng)
        if not self._store.set_recovery_key(user_id, hash_secret(key, self.rounds), self._clock.now()):
            raise NotFoundError(f"User {user_id} not found.")
        self._activity.append(user_id, EventType.recovery_key_generated, {})
        return key

    def exists(self, user_id: int) -> bool:
        """True if the user holds a recovery key that has not been used yet."""
        user = self._store.get_user(user_id)
        return bool(user is not None and user.recovery_key_hash and not user.recovery_key_used)

    def verify(self, user_id: int, key: str) -> bool:
        """Check ``key`` and consume it. True at most once per issued key."""
        self._limiter.check_failed_attempts(user_id)
        user = self._store.get_user(user_id)
        if user is None or not user.recovery_key_hash or user.recovery_key_used:
            return False
        if not verify_secret(normalize_code(key), user.recovery_key_hash):
            self._limiter.record_failed_attempt(user_id, "recovery_key")
            return False
        if not self._store.consume_recovery_key(user_id, user.recovery_key_hash):
            return False
        self._activity.append(user_id, EventType.recovery_key_used, {})
        logger.info("Recovery key used for user_id=%s", user_id)
        return True
