"""
tests/test_recovery.py -- Single-use recovery key.

Covers issue/exists/verify, single use, re-issue invalidating the old key,
and that only the bcrypt hash is stored.
"""

from __future__ import annotations

import threading

import pytest

from auth.models import EventType
from core.errors import NotFoundError


def test_no_key_before_issue(core, user):
    assert core.recovery_key_exists(user.id) is False
    assert core.verify_recovery_key(user.id, "ANYTHING") is False


def test_issue_then_verify_once(core, user):
    key = core.issue_recovery_key(user.id)
    assert core.recovery_key_exists(user.id) is True

    assert core.verify_recovery_key(user.id, key) is True
    assert core.recovery_key_exists(user.id) is False
    assert core.verify_recovery_key(user.id, key) is False


def test_only_hash_is_stored(core, user):
    key = core.issue_recovery_key(user.id)
    stored = core.get_user(user.id)
    assert stored.recovery_key_hash
    assert key not in stored.recovery_key_hash
    assert stored.recovery_key_hash.startswith("$2")


def test_wrong_key_does_not_consume(core, user):
    key = core.issue_recovery_key(user.id)
    assert core.verify_recovery_key(user.id, "0" * 32) is False
    assert core.verify_recovery_key(user.id, key) is True


def test_key_accepts_pasted_formatting(core, user):
    key = core.issue_recovery_key(user.id)
    pasted = "-".join(key[i : i + 4] for i in range(0, len(key), 4)).lower()
    assert core.verify_recovery_key(user.id, pasted) is True


def test_reissue_invalidates_previous_key(core, user):
    old = core.issue_recovery_key(user.id)
    new = core.issue_recovery_key(user.id)
    assert old != new
    assert core.verify_recovery_key(user.id, old) is False
    assert core.verify_recovery_key(user.id, new) is True


def test_issue_for_unknown_user(core):
    with pytest.raises(NotFoundError):
        core.issue_recovery_key(987654)


def test_usage_is_audited(core, user):
    key = core.issue_recovery_key(user.id)
    core.verify_recovery_key(user.id, key)
    events = [e.event_type for e in core.recent_activity(user.id)]
    assert EventType.recovery_key_generated.value in events
    assert EventType.recovery_key_used.value in events


def test_concurrent_verify_has_one_winner(core, user):
    key = core.issue_recovery_key(user.id)
    workers = 6
    barrier = threading.Barrier(workers)
    results: list[bool] = []
    lock = threading.Lock()

    def attempt() -> None:
        barrier.wait()
        ok = core.verify_recovery_key(user.id, key)
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
