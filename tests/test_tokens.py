"""
tests/test_tokens.py -- One-time session token lifecycle.

Covers:
  - issue -> redeem inside the 5 minute window succeeds exactly once
  - redeem after expiry fails with ExpiredTokenError and still burns the token
  - unknown tokens fail with InvalidTokenError
  - hourly issuance ceiling (10) and its window rolling over
  - redemption URL shape and the actionable-URL guard
  - cleanup of expired rows
  - concurrent redemption: exactly one winner
"""

from __future__ import annotations

import threading

import pytest

from auth.models import EventType, Tier
from auth.tokens import build_redemption_url, is_actionable_url, normalize_code
from core.errors import (
    AccountLockedError,
    AlreadyUsedError,
    ConflictError,
    ExpiredTokenError,
    InvalidTokenError,
    NotFoundError,
    RateLimitExceeded,
)


class TestIssueAndRedeem:
    def test_redeem_within_window_returns_owner(self, core, clock, user):
        issued = core.issue_token(user.id, device="Telegram Bot")
        assert issued.expiry_minutes == 5

        clock.advance(minutes=4)
        redeemed = core.redeem_token(issued.token)

        assert redeemed.user_id == user.id
        assert redeemed.tier == Tier.basic
        assert redeemed.is_2fa_enabled is False

    def test_expires_five_minutes_after_issue(self, core, clock, user):
        start = clock.now()
        issued = core.issue_token(user.id)
        assert (issued.expires_at - start).total_seconds() == 300

    def test_second_redeem_is_already_used(self, core, user):
        issued = core.issue_token(user.id)
        core.redeem_token(issued.token)
        with pytest.raises(AlreadyUsedError):
            core.redeem_token(issued.token)

    def test_redeem_after_expiry_fails_and_burns(self, core, clock, user):
        issued = core.issue_token(user.id)
        clock.advance(minutes=6)
        with pytest.raises(ExpiredTokenError):
            core.redeem_token(issued.token)
        # The failed attempt still consumed the token.
        with pytest.raises(AlreadyUsedError):
            core.redeem_token(issued.token)

    def test_redeem_exactly_at_expiry_is_expired(self, core, clock, user):
        issued = core.issue_token(user.id)
        clock.advance(minutes=5)
        with pytest.raises(ExpiredTokenError):
            core.redeem_token(issued.token)

    def test_unknown_token_is_invalid(self, core):
        with pytest.raises(InvalidTokenError):
            core.redeem_token("not-a-real-token")

    def test_issue_for_unknown_user(self, core):
        with pytest.raises(NotFoundError):
            core.issue_token(424242)

    def test_issue_refused_while_locked(self, core, user, enable_2fa):
        enable_2fa(user.id)
        core.lockdown(user.id)
        with pytest.raises(AccountLockedError):
            core.issue_token(user.id)

    def test_redeem_refused_when_locked_mid_flight(self, core, user, lock_in_place):
        issued = core.issue_token(user.id)
        lock_in_place(user.id)

        with pytest.raises(AccountLockedError):
            core.redeem_token(issued.token)
        events = [e.event_type for e in core.recent_activity(user.id)]
        assert EventType.session_validated.value not in events
        with pytest.raises(AlreadyUsedError):
            core.redeem_token(issued.token)

    def test_tokens_are_unique(self, core, user):
        tokens = {core.issue_token(user.id).token for _ in range(10)}
        assert len(tokens) == 10
        assert all(len(t) >= 43 for t in tokens)

    def test_issue_and_redeem_are_audited_without_token(self, core, user):
        issued = core.issue_token(user.id, ip="10.0.0.7", device="Telegram Bot")
        core.redeem_token(issued.token)

        events = [e.event_type for e in core.recent_activity(user.id)]
        assert EventType.session_generated.value in events
        assert EventType.session_validated.value in events
        for entry in core.recent_activity(user.id):
            assert issued.token not in str(entry.details)


class TestTokenCollisions:
    def test_collision_is_regenerated(self, scripted_core, user):
        taken, fresh = "t" * 43, "f" * 43
        core = scripted_core(tokens=[taken, taken, fresh])
        core.issue_token(user.id)

        issued = core.issue_token(user.id)

        assert issued.token == fresh
        assert len(core.recent_issuances(user.id)) == 2

    def test_three_collisions_raise_conflict(self, scripted_core, user):
        taken = "t" * 43
        core = scripted_core(tokens=[taken] * 4)
        core.issue_token(user.id)

        with pytest.raises(ConflictError):
            core.issue_token(user.id)
        assert len(core.recent_issuances(user.id)) == 1


class TestIssuanceRateLimit:
    def test_eleventh_issue_in_an_hour_is_refused(self, core, clock, user):
        for _ in range(10):
            core.issue_token(user.id)
            clock.advance(minutes=1)
        with pytest.raises(RateLimitExceeded):
            core.issue_token(user.id)
        # Nothing was inserted for the refused attempt.
        assert len(core.recent_issuances(user.id, limit=50)) == 10

    def test_window_rolls_over(self, core, clock, user):
        for _ in range(10):
            core.issue_token(user.id)
        clock.advance(minutes=61)
        assert core.issue_token(user.id).token

    def test_cleanup_frees_expired_slots(self, core, clock, user):
        for _ in range(10):
            core.issue_token(user.id)
        clock.advance(minutes=6)
        with pytest.raises(RateLimitExceeded):
            core.issue_token(user.id)

        # Expired rows are gone, so the trailing-hour count starts over.
        assert core.run_cleanup() == 10
        assert core.issue_token(user.id).token

    def test_limit_is_per_user(self, core, make_user):
        first, second = make_user(), make_user()
        for _ in range(10):
            core.issue_token(first.id)
        assert core.issue_token(second.id).token


class TestRedemptionUrl:
    def test_url_shape(self, core):
        assert core.build_redemption_url("abc_DEF-123") == "https://trade.example.com/auth/login?token=abc_DEF-123"

    def test_token_is_url_encoded(self):
        url = build_redemption_url("https://trade.example.com", "/auth/login", "a+b/c=")
        assert url == "https://trade.example.com/auth/login?token=a%2Bb%2Fc%3D"

    @pytest.mark.parametrize(
        "url",
        [
            "https://trade.example.com/auth/login?token=x",
            "https://10.1.2.3/auth/login?token=x",
        ],
    )
    def test_actionable(self, url):
        assert is_actionable_url(url) is True

    @pytest.mark.parametrize(
        "url",
        [
            "http://trade.example.com/auth/login?token=x",
            "https://localhost/auth/login?token=x",
            "https://127.0.0.1:3000/auth/login?token=x",
            "https://0.0.0.0/auth/login?token=x",
            "https://[::1]/auth/login?token=x",
            "not a url",
            "",
        ],
    )
    def test_not_actionable(self, url):
        assert is_actionable_url(url) is False

    def test_normalize_code(self):
        assert normalize_code(" ab12-cd34 ") == "AB12CD34"


class TestCleanup:
    def test_removes_only_expired(self, core, clock, user):
        core.issue_token(user.id)
        clock.advance(minutes=6)
        fresh = core.issue_token(user.id)

        assert core.run_cleanup() == 1
        remaining = core.recent_issuances(user.id)
        assert len(remaining) == 1
        assert remaining[0].expires_at == fresh.expires_at

    def test_nothing_to_clean(self, core, user):
        core.issue_token(user.id)
        assert core.run_cleanup() == 0

    def test_recent_issuances_blank_the_token(self, core, user):
        core.issue_token(user.id, device="Telegram Bot")
        listed = core.recent_issuances(user.id)
        assert listed[0].token == ""
        assert listed[0].device == "Telegram Bot"
        assert listed[0].used is False


class TestConcurrentRedeem:
    def test_exactly_one_winner(self, core, user):
        issued = core.issue_token(user.id)
        workers = 8
        barrier = threading.Barrier(workers)
        outcomes: list[str] = []
        outcomes_lock = threading.Lock()

        def attempt() -> None:
            barrier.wait()
            try:
                core.redeem_token(issued.token)
                result = "ok"
            except AlreadyUsedError:
                result = "used"
            except Exception as exc:  # surfaced in the assertion below
                result = type(exc).__name__
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1, outcomes
        assert outcomes.count("used") == workers - 1, outcomes
