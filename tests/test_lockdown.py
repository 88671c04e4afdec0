"""
tests/test_lockdown.py -- Emergency lockdown state machine.

Covers:
  - lockdown requires 2FA and changes nothing without it
  - lockdown destroys active sessions and burns pending one-time tokens
  - the lock flag, session deletion and audit row are all-or-nothing
  - unlock with a valid TOTP; wrong code leaves the account locked
  - unlock of an active account is a False no-op
"""

from __future__ import annotations

import pytest

from auth.models import EventType
from core.errors import (
    AlreadyUsedError,
    InvalidTwoFACodeError,
    NotFoundError,
    TransientError,
    TwoFARequiredError,
)


def test_lockdown_requires_2fa(core, user):
    core.record_active_session(user.id)
    with pytest.raises(TwoFARequiredError):
        core.lockdown(user.id)
    assert core.is_locked(user.id) is False
    assert core.count_active_sessions(user.id) == 1


def test_lockdown_unknown_user(core):
    with pytest.raises(NotFoundError):
        core.lockdown(31337)


def test_lockdown_destroys_sessions(core, user, enable_2fa):
    enable_2fa(user.id)
    for _ in range(3):
        core.record_active_session(user.id)

    assert core.lockdown(user.id) == 3
    assert core.is_locked(user.id) is True
    assert core.list_active_sessions(user.id) == []

    entry = next(e for e in core.recent_activity(user.id) if e.event_type == EventType.account_lockdown.value)
    assert entry.details["sessions_destroyed"] == 3
    assert entry.details["account_locked"] is True


def test_lockdown_burns_pending_tokens(core, user, enable_2fa):
    enable_2fa(user.id)
    issued = core.issue_token(user.id)
    core.lockdown(user.id)
    with pytest.raises(AlreadyUsedError):
        core.redeem_token(issued.token)


def test_lockdown_leaves_other_users_alone(core, make_user, enable_2fa):
    target, bystander = make_user(), make_user()
    enable_2fa(target.id)
    core.record_active_session(target.id)
    core.record_active_session(bystander.id)

    core.lockdown(target.id)
    assert core.count_active_sessions(bystander.id) == 1
    assert core.is_locked(bystander.id) is False


def test_lockdown_is_atomic(core, store, user, enable_2fa, monkeypatch):
    enable_2fa(user.id)
    core.record_active_session(user.id)
    core.record_active_session(user.id)

    def failing_insert(conn, entry):
        raise TransientError("audit insert failed")

    monkeypatch.setattr(store, "_insert_log", failing_insert)
    with pytest.raises(TransientError):
        core.lockdown(user.id)
    monkeypatch.undo()

    assert core.is_locked(user.id) is False
    assert core.count_active_sessions(user.id) == 2


def test_unlock_with_totp(core, user, enable_2fa, totp):
    secret, _ = enable_2fa(user.id)
    core.lockdown(user.id)

    assert core.unlock(user.id, totp(secret)) is True
    assert core.is_locked(user.id) is False
    events = [e.event_type for e in core.recent_activity(user.id)]
    assert EventType.account_unlock.value in events


def test_unlock_with_wrong_code_stays_locked(core, user, enable_2fa, totp):
    secret, _ = enable_2fa(user.id)
    core.lockdown(user.id)

    with pytest.raises(InvalidTwoFACodeError):
        core.unlock(user.id, totp(secret, counter_offset=5))
    assert core.is_locked(user.id) is True


def test_unlock_active_account_is_noop(core, user, enable_2fa, totp):
    secret, _ = enable_2fa(user.id)
    assert core.unlock(user.id, totp(secret)) is False


def test_lock_unlock_lock_again(core, user, enable_2fa, totp):
    secret, _ = enable_2fa(user.id)
    core.lockdown(user.id)
    core.unlock(user.id, totp(secret))
    core.record_active_session(user.id)
    assert core.lockdown(user.id) == 1
    assert core.is_locked(user.id) is True


def test_lockdown_of_locked_account_reruns_destruction(core, user, enable_2fa):
    enable_2fa(user.id)
    core.lockdown(user.id)
    core.record_active_session(user.id)
    assert core.lockdown(user.id) == 1
    assert core.count_active_sessions(user.id) == 0
