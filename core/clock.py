"""
core/clock.py -- Time and randomness providers.

Every component that needs "now" or random bytes receives one of these objects
in its constructor instead of calling datetime.now() or the secrets module
directly. Tests swap in a controllable clock to walk across expiry boundaries
without sleeping.

All datetimes are timezone-aware UTC.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SecureRandom:
    """Thin wrapper over the secrets module (CSPRNG backed)."""

    def token_hex(self, nbytes: int) -> str:
        return secrets.token_hex(nbytes)

    def token_urlsafe(self, nbytes: int) -> str:
        return secrets.token_urlsafe(nbytes)
