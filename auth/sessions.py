"""
auth/sessions.py -- One-time login tokens and the active-session directory.

Token lifecycle:
  issue()   -> row inserted, used = 0, expires_at = now + TTL
  redeem()  -> used flipped to 1 by one guarded UPDATE; expiry checked after
  cleanup() -> rows past expiry deleted on a fixed interval

The order in redeem() matters. The flip happens first and commits even when
the token turns out to be expired: an expired single-use credential is dead
either way, and checking expiry first would reopen the read-then-write window
the guarded UPDATE exists to close.

The token value leaves this module exactly once, in the IssuedToken returned
to issue()'s caller. It is never logged and never written to the audit trail.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.activity import SecurityLog
from auth.models import ActiveSession, EventType, IssuedToken, OneTimeSession, RedeemedSession
from auth.ratelimit import RateLimiter
from auth.store import SecurityStore
from auth.tokens import build_redemption_url, generate_session_token
from core.clock import SecureRandom, SystemClock
from core.errors import AccountLockedError, ConflictError, ExpiredTokenError, NotFoundError

logger = logging.getLogger("acetrade.sessions")

# Fresh tokens to try after a uniqueness conflict before giving up.
_MAX_TOKEN_ATTEMPTS = 3


class TokenService:
    def __init__(
        self,
        store: SecurityStore,
        limiter: RateLimiter,
        activity: SecurityLog,
        clock: SystemClock,
        rng: SecureRandom,
        expiry_minutes: int = 5,
        terminal_url: str = "",
        auth_path: str = "/auth/login",
    ) -> None:
        self._store = store
        self._limiter = limiter
        self._activity = activity
        self._clock = clock
        self._rng = rng
        self.expiry_minutes = expiry_minutes
        self.terminal_url = terminal_url
        self.auth_path = auth_path

    def issue(self, user_id: int, ip: str | None = None, device: str | None = None) -> IssuedToken:
        """Mint a one-time session token for ``user_id``.

        Raises NotFoundError, AccountLockedError, RateLimitExceeded (nothing
        inserted), ConflictError after repeated token collisions, or
        TransientError. After a TransientError the insert may or may not have
        landed; check recent_issuances() before asking for another token.
        """
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.")
        if user.account_locked:
            raise AccountLockedError()
        self._limiter.check(user_id)

        for attempt in range(1, _MAX_TOKEN_ATTEMPTS + 1):
            now = self._clock.now()
            session = OneTimeSession(
                user_id=user_id,
                token=generate_session_token(self._rng),
                ip=ip,
                device=device,
                created_at=now,
                expires_at=now + timedelta(minutes=self.expiry_minutes),
            )
            try:
                session_id = self._store.create_one_time_session(session)
                break
            except ConflictError:
                logger.warning("Session token collision for user_id=%s (attempt %d)", user_id, attempt)
                if attempt == _MAX_TOKEN_ATTEMPTS:
                    raise

        self._activity.append(user_id, EventType.session_generated, {"session_id": session_id}, ip=ip, device=device)
        return IssuedToken(token=session.token, expires_at=session.expires_at, expiry_minutes=self.expiry_minutes)

    def build_url(self, token: str) -> str:
        return build_redemption_url(self.terminal_url, self.auth_path, token)

    def redeem(self, token: str) -> RedeemedSession:
        """Consume ``token`` exactly once.

        Raises InvalidTokenError, AlreadyUsedError, ExpiredTokenError or
        AccountLockedError. Of any number of concurrent callers with the same
        token, at most one returns. A refused redemption still burns the token
        and is not logged as validated.
        """
        session, owner, locked = self._store.claim_one_time_session(token)
        if session.expires_at <= self._clock.now():
            raise ExpiredTokenError()
        if locked:
            logger.warning("Redemption refused for locked user_id=%s", owner.user_id)
            raise AccountLockedError()
        self._activity.append(
            owner.user_id,
            EventType.session_validated,
            {"session_id": session.id},
            ip=session.ip,
            device=session.device,
        )
        return owner

    def cleanup(self) -> int:
        """Delete expired one-time sessions. Returns the number removed."""
        removed = self._store.delete_expired_one_time_sessions(self._clock.now())
        logger.info("Cleaned up %d expired sessions", removed)
        return removed

    def recent_issuances(self, user_id: int, limit: int = 10) -> list[OneTimeSession]:
        """Recently issued one-time sessions (newest first), token values blanked."""
        return self._store.list_one_time_sessions(user_id, limit)


class ActiveSessionDirectory:
    """Logged-in terminal sessions: list, count, revoke, and record after redemption."""

    def __init__(self, store: SecurityStore, activity: SecurityLog, clock: SystemClock) -> None:
        self._store = store
        self._activity = activity
        self._clock = clock

    def create(self, user_id: int, ip: str | None = None, device: str | None = None) -> ActiveSession:
        session = ActiveSession(user_id=user_id, ip=ip, device=device, created_at=self._clock.now())
        session.id = self._store.create_active_session(session)
        return session

    def list_sessions(self, user_id: int) -> list[ActiveSession]:
        return self._store.list_active_sessions(user_id)

    def count_sessions(self, user_id: int) -> int:
        return self._store.count_active_sessions(user_id)

    def revoke(self, user_id: int, session_id: int) -> bool:
        removed = self._store.delete_active_session(user_id, session_id)
        if removed:
            self._activity.append(user_id, EventType.session_revoked, {"active_session_id": session_id})
        return removed
