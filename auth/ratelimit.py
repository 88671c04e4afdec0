"""
auth/ratelimit.py -- Per-user throttles backed by rows already in the datastore.

Two counters, neither with its own storage:
  - issuance: one_time_sessions created in the trailing hour. The check runs
    inside issue() before the insert, and the insert is the "record" step.
  - failed second-factor attempts: twofa_failed entries in the security log
    within the lockout window.

Both are throttles, not security boundaries: two concurrent callers can both
pass the check and overshoot by one, and the issuance count shrinks whenever
cleanup removes expired rows. Counting rows the database already holds
keeps the limit shared across every process without an extra store.
"""

from __future__ import annotations

from datetime import timedelta

from auth.activity import SecurityLog
from auth.models import EventType
from auth.store import SecurityStore
from core.clock import SystemClock
from core.errors import RateLimitExceeded

ISSUANCE_WINDOW = timedelta(hours=1)


class RateLimiter:
    def __init__(
        self,
        store: SecurityStore,
        activity: SecurityLog,
        clock: SystemClock,
        max_per_hour: int = 10,
        max_failed_attempts: int = 5,
        lockout_minutes: int = 15,
    ) -> None:
        self._store = store
        self._activity = activity
        self._clock = clock
        self.max_per_hour = max_per_hour
        self.max_failed_attempts = max_failed_attempts
        self.lockout = timedelta(minutes=lockout_minutes)

    def check(self, user_id: int) -> None:
        """Raise RateLimitExceeded if the user is at the hourly issuance ceiling.

        Counts surviving one_time_sessions rows only. Cleanup deletes every
        expired row, including ones created inside the trailing hour, so a
        cleanup run frees those slots early. Worst case a user gets the
        ceiling again after each cleanup interval.
        """
        since = self._clock.now() - ISSUANCE_WINDOW
        if self._store.count_one_time_sessions_since(user_id, since) >= self.max_per_hour:
            raise RateLimitExceeded("Rate limit exceeded. Please try again later.")

    def check_failed_attempts(self, user_id: int) -> None:
        """Raise RateLimitExceeded once too many second-factor checks have failed recently."""
        since = self._clock.now() - self.lockout
        if self._activity.count_since(user_id, EventType.twofa_failed, since) >= self.max_failed_attempts:
            raise RateLimitExceeded("Too many failed verification attempts. Please try again later.")

    def record_failed_attempt(self, user_id: int, kind: str) -> None:
        self._activity.append(user_id, EventType.twofa_failed, {"check": kind})
