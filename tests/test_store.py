"""
tests/test_store.py -- SecurityStore behaviour not covered through the services.

Covers driver-error translation, ping, and timezone handling of stored times.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import DataError

from auth.models import OneTimeSession, SecurityLogEntry, User
from auth.store import SecurityStore
from core.errors import ConflictError, DatastoreError, TransientError


def test_ping(store):
    assert store.ping() is True


def test_unreachable_database_is_transient(tmp_path):
    missing = tmp_path / "no-such-dir" / "db.sqlite"
    with pytest.raises(TransientError) as excinfo:
        SecurityStore(f"sqlite:///{missing}")
    assert excinfo.value.retryable is True


def test_rejected_statement_is_typed(store, monkeypatch):
    def bad_data(conn, entry):
        raise DataError("INSERT INTO security_logs ...", {}, Exception("invalid input"))

    monkeypatch.setattr(store, "_insert_log", bad_data)
    entry = SecurityLogEntry(user_id=1, event_type="session_generated", created_at=datetime.now(timezone.utc))
    with pytest.raises(DatastoreError) as excinfo:
        store.insert_log(entry)
    assert excinfo.value.retryable is False
    assert excinfo.value.code == "datastore_error"


def test_duplicate_account_id_is_conflict(store):
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    store.create_user(User(chat_id=1, account_id="AAAAAAAAAAAA", registered_at=now))
    with pytest.raises(ConflictError) as excinfo:
        store.create_user(User(chat_id=2, account_id="AAAAAAAAAAAA", registered_at=now))
    assert excinfo.value.retryable is True


def test_duplicate_token_is_conflict(store):
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    uid = store.create_user(User(chat_id=1, account_id="BBBBBBBBBBBB", registered_at=now))
    session = OneTimeSession(user_id=uid, token="dup", created_at=now, expires_at=now + timedelta(minutes=5))
    store.create_one_time_session(session)
    with pytest.raises(ConflictError):
        store.create_one_time_session(session)


def test_offset_datetimes_are_normalized_to_utc(store):
    plus_two = timezone(timedelta(hours=2))
    local = datetime(2026, 1, 1, 14, 0, tzinfo=plus_two)
    uid = store.create_user(User(chat_id=3, account_id="CCCCCCCCCCCC", registered_at=local))

    stored = store.get_user(uid).registered_at
    assert stored.tzinfo == timezone.utc
    assert stored == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
