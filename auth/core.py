"""
auth/core.py -- SecurityCore: the one object front ends talk to.

Replaces process-wide singletons with explicit wiring. Build it once with a
store, settings, and optionally a clock and RNG; tests pass a controllable
clock and a throwaway SQLite store.

    core = SecurityCore(SecurityStore(settings.database_url), settings)
    issued = core.issue_token(user_id)
    url = core.build_redemption_url(issued.token)

Every public method maps to one exposed operation. Failures are raised as
core.errors.SecurityError subclasses.
"""

from __future__ import annotations

from auth.activity import SecurityLog
from auth.lockdown import LockdownService
from auth.models import (
    ActiveSession,
    IssuedToken,
    OneTimeSession,
    RedeemedSession,
    SecurityLogEntry,
    Tier,
    TwoFactorAction,
    TwoFactorEnrollment,
    User,
)
from auth.ratelimit import RateLimiter
from auth.recovery import RecoveryKeyService
from auth.sessions import ActiveSessionDirectory, TokenService
from auth.store import SecurityStore
from auth.twofactor import TwoFactorService
from auth.users import UserService
from core.clock import SecureRandom, SystemClock
from core.config import Settings


class SecurityCore:
    def __init__(
        self,
        store: SecurityStore,
        settings: Settings,
        clock: SystemClock | None = None,
        rng: SecureRandom | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.rng = rng or SecureRandom()

        self.activity = SecurityLog(store, self.clock, default_limit=settings.activity_limit)
        self.limiter = RateLimiter(
            store,
            self.activity,
            self.clock,
            max_per_hour=settings.max_sessions_per_hour,
            max_failed_attempts=settings.twofa_max_failed_attempts,
            lockout_minutes=settings.twofa_lockout_minutes,
        )
        self.tokens = TokenService(
            store,
            self.limiter,
            self.activity,
            self.clock,
            self.rng,
            expiry_minutes=settings.session_expiry_minutes,
            terminal_url=settings.trade_terminal_url,
            auth_path=settings.trade_terminal_auth_path,
        )
        self.sessions = ActiveSessionDirectory(store, self.activity, self.clock)
        self.recovery = RecoveryKeyService(
            store, self.limiter, self.activity, self.clock, self.rng, rounds=settings.recovery_key_rounds
        )
        self.twofactor = TwoFactorService(
            store,
            self.limiter,
            self.activity,
            self.recovery,
            self.clock,
            self.rng,
            valid_window=settings.totp_valid_window,
        )
        self.lockdowns = LockdownService(store, self.twofactor, self.activity, self.clock)
        self.users = UserService(store, self.activity, self.clock, self.rng)

    # ------------------------------------------------------------------
    # One-time tokens
    # ------------------------------------------------------------------

    def issue_token(self, user_id: int, ip: str | None = None, device: str | None = None) -> IssuedToken:
        return self.tokens.issue(user_id, ip=ip, device=device)

    def build_redemption_url(self, token: str) -> str:
        return self.tokens.build_url(token)

    def redeem_token(self, token: str) -> RedeemedSession:
        return self.tokens.redeem(token)

    def run_cleanup(self) -> int:
        """Delete expired tokens and retry any queued audit writes."""
        removed = self.tokens.cleanup()
        self.activity.flush_pending()
        return removed

    def recent_issuances(self, user_id: int, limit: int = 10) -> list[OneTimeSession]:
        return self.tokens.recent_issuances(user_id, limit)

    # ------------------------------------------------------------------
    # Active sessions
    # ------------------------------------------------------------------

    def record_active_session(self, user_id: int, ip: str | None = None, device: str | None = None) -> ActiveSession:
        return self.sessions.create(user_id, ip=ip, device=device)

    def list_active_sessions(self, user_id: int) -> list[ActiveSession]:
        return self.sessions.list_sessions(user_id)

    def revoke_active_session(self, user_id: int, session_id: int) -> bool:
        return self.sessions.revoke(user_id, session_id)

    def count_active_sessions(self, user_id: int) -> int:
        return self.sessions.count_sessions(user_id)

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    def issue_twofa_code(self, user_id: int, action: TwoFactorAction | str) -> str:
        return self.twofactor.issue_code(user_id, TwoFactorAction(action))

    def verify_twofa_code(self, user_id: int, code: str, action: TwoFactorAction | str) -> bool:
        return self.twofactor.verify_code(user_id, code, TwoFactorAction(action))

    def verify_totp(self, user_id: int, code: str) -> bool:
        return self.twofactor.verify_totp(user_id, code)

    def begin_twofa_enrollment(self, user_id: int) -> TwoFactorEnrollment:
        return self.twofactor.begin_enrollment(user_id)

    def enable_twofa(
        self,
        user_id: int,
        secret: str,
        totp_code: str,
        confirmation_code: str,
        current_totp_code: str | None = None,
    ) -> str:
        return self.twofactor.enable(user_id, secret, totp_code, confirmation_code, current_totp_code)

    def disable_twofa(self, user_id: int, totp_code: str, confirmation_code: str) -> None:
        self.twofactor.disable(user_id, totp_code, confirmation_code)

    # ------------------------------------------------------------------
    # Recovery key
    # ------------------------------------------------------------------

    def issue_recovery_key(self, user_id: int) -> str:
        return self.recovery.issue(user_id)

    def recovery_key_exists(self, user_id: int) -> bool:
        return self.recovery.exists(user_id)

    def verify_recovery_key(self, user_id: int, key: str) -> bool:
        return self.recovery.verify(user_id, key)

    # ------------------------------------------------------------------
    # Lockdown
    # ------------------------------------------------------------------

    def lockdown(self, user_id: int) -> int:
        return self.lockdowns.lockdown(user_id)

    def unlock(self, user_id: int, totp_code: str) -> bool:
        return self.lockdowns.unlock(user_id, totp_code)

    def is_locked(self, user_id: int) -> bool:
        return self.lockdowns.is_locked(user_id)

    # ------------------------------------------------------------------
    # Activity
    # ------------------------------------------------------------------

    def recent_activity(self, user_id: int, days: int = 7, limit: int | None = None) -> list[SecurityLogEntry]:
        return self.activity.recent(user_id, days=days, limit=limit)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def register_user(self, chat_id: int, referral_code: str | None = None) -> User:
        return self.users.register(chat_id, referral_code)

    def user_exists(self, chat_id: int) -> bool:
        return self.users.exists(chat_id)

    def get_user(self, user_id: int) -> User | None:
        return self.users.get(user_id)

    def get_user_by_chat_id(self, chat_id: int) -> User | None:
        return self.users.get_by_chat_id(chat_id)

    def get_user_by_account_id(self, account_id: str) -> User | None:
        return self.users.get_by_account_id(account_id)

    def update_last_login(self, user_id: int) -> None:
        self.users.update_last_login(user_id)

    def upgrade_tier(self, user_id: int, tier: Tier | str) -> None:
        self.users.upgrade_tier(user_id, tier)
