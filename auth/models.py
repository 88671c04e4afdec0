"""
auth/models.py -- Domain dataclasses for the session & account-security core.

Pattern: Data class (pure data container, zero logic). Stores build these from
rows; services and routes do the work.

Layer rule: no imports from api/ or chat/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Tier(str, Enum):
    basic = "basic"
    pro = "pro"


class TwoFactorAction(str, Enum):
    """Sensitive state change a short confirmation code authorizes."""

    enable = "enable"
    disable = "disable"


class EventType(str, Enum):
    session_generated = "session_generated"
    session_validated = "session_validated"
    session_revoked = "session_revoked"
    account_lockdown = "account_lockdown"
    account_unlock = "account_unlock"
    user_registered = "user_registered"
    referral_registration = "referral_registration"
    tier_upgraded = "tier_upgraded"
    twofa_enabled = "twofa_enabled"
    twofa_disabled = "twofa_disabled"
    twofa_failed = "twofa_failed"
    recovery_key_generated = "recovery_key_generated"
    recovery_key_used = "recovery_key_used"


@dataclass
class User:
    """Identity anchor linking a Telegram chat to a trading account.

    totp_secret is present only while 2FA is enabled. recovery_key_used is
    meaningful only when recovery_key_hash is set. A locked account always
    has 2FA enabled: lockdown refuses without it and disable refuses while
    locked.
    """

    chat_id: int
    account_id: str
    id: int | None = None
    tier: Tier = Tier.basic
    is_2fa_enabled: bool = False
    totp_secret: str | None = None
    recovery_key_hash: str | None = None
    recovery_key_used: bool = False
    recovery_key_created_at: datetime | None = None
    account_locked: bool = False
    referral_code: str | None = None
    referred_by: int | None = None
    registered_at: datetime | None = None
    last_login: datetime | None = None


@dataclass
class OneTimeSession:
    """Single-use login credential.

    ``token`` is blanked when the record is listed for display; only issue()
    ever hands the real value out.
    """

    user_id: int
    token: str
    expires_at: datetime
    id: int | None = None
    ip: str | None = None
    device: str | None = None
    created_at: datetime | None = None
    used: bool = False


@dataclass
class ActiveSession:
    user_id: int
    id: int | None = None
    ip: str | None = None
    device: str | None = None
    created_at: datetime | None = None


@dataclass
class TwoFactorCode:
    user_id: int
    code: str
    action: TwoFactorAction
    expires_at: datetime
    id: int | None = None
    used: bool = False


@dataclass
class SecurityLogEntry:
    """Append-only audit record. Never updated or deleted."""

    user_id: int
    event_type: str
    details: dict = field(default_factory=dict)
    id: int | None = None
    ip: str | None = None
    device: str | None = None
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime
    expiry_minutes: int


@dataclass(frozen=True)
class RedeemedSession:
    user_id: int
    tier: Tier
    is_2fa_enabled: bool


@dataclass(frozen=True)
class TwoFactorEnrollment:
    """A freshly generated TOTP secret awaiting confirmation. Not persisted."""

    secret: str
    provisioning_uri: str
