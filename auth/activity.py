"""
auth/activity.py -- Append-only security activity log.

append() is fire-and-forget: the security action it records has already
happened, so a failed audit write must not turn that success into an error.
Failed entries are kept in an in-memory queue and retried by flush_pending(),
which the periodic cleanup loop calls. The queue is bounded; when it overflows
the oldest entries are dropped with an error log line.

Lockdown is the one exception: its audit row is written inside the lockdown
transaction (see SecurityStore.lock_account), so it is all-or-nothing with the
state change.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timedelta

from auth.models import EventType, SecurityLogEntry
from auth.store import SecurityStore
from core.clock import SystemClock
from core.errors import SecurityError

logger = logging.getLogger("acetrade.activity")

_MAX_PENDING = 1000


class SecurityLog:
    def __init__(self, store: SecurityStore, clock: SystemClock, default_limit: int = 20) -> None:
        self._store = store
        self._clock = clock
        self._default_limit = default_limit
        self._pending: deque[SecurityLogEntry] = deque()
        self._lock = threading.Lock()

    def append(
        self,
        user_id: int,
        event_type: EventType | str,
        details: dict | None = None,
        ip: str | None = None,
        device: str | None = None,
    ) -> None:
        entry = SecurityLogEntry(
            user_id=user_id,
            event_type=EventType(event_type).value,
            details=details or {},
            ip=ip,
            device=device,
            created_at=self._clock.now(),
        )
        try:
            self._store.insert_log(entry)
        except SecurityError:
            logger.warning("Audit write failed for user_id=%s event=%s; queued for retry", user_id, entry.event_type)
            self._enqueue(entry)

    def _enqueue(self, entry: SecurityLogEntry) -> None:
        with self._lock:
            if len(self._pending) >= _MAX_PENDING:
                dropped = self._pending.popleft()
                logger.error("Audit retry queue full; dropped event=%s user_id=%s", dropped.event_type, dropped.user_id)
            self._pending.append(entry)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def flush_pending(self) -> int:
        """Retry queued entries in order. Returns how many were written.

        Stops at the first failure so ordering is preserved for the next run.
        """
        written = 0
        while True:
            with self._lock:
                if not self._pending:
                    break
                entry = self._pending[0]
            try:
                self._store.insert_log(entry)
            except SecurityError:
                logger.warning("Audit retry failed; %d entries still pending", self.pending_count)
                break
            with self._lock:
                if self._pending and self._pending[0] is entry:
                    self._pending.popleft()
            written += 1
        return written

    def recent(self, user_id: int, days: int = 7, limit: int | None = None) -> list[SecurityLogEntry]:
        """Entries from the last ``days`` days, newest first, capped at ``limit``."""
        since = self._clock.now() - timedelta(days=days)
        return self._store.list_logs(user_id, since, limit or self._default_limit)

    def count_since(self, user_id: int, event_type: EventType, since: datetime) -> int:
        return self._store.count_events_since(user_id, EventType(event_type).value, since)
