"""
auth/tokens.py -- Credential generation, secret hashing, and redemption URLs.

Security design decisions:
  One-time session tokens: secrets.token_urlsafe(32) gives 256 bits of
       entropy, far beyond the 128-bit floor. Uniqueness is still enforced by
       a UNIQUE index; a collision surfaces as ConflictError and the issuer
       regenerates.

  Confirmation codes: 4 random bytes as 8 uppercase hex characters. Their
       strength comes from the 90 second lifetime plus the failed-attempt
       throttle, not from length.

  Recovery keys: 16 random bytes as 32 uppercase hex characters, stored only
       as a bcrypt hash. hash_secret() / verify_secret() are the single hashing
       pair; the cost factor is one setting (RECOVERY_KEY_ROUNDS).

  Redemption URLs: build_redemption_url() is a pure concatenation.
       is_actionable_url() is the guard the chat layer must pass before it
       renders the URL as a button: a misconfigured base URL (plain http,
       localhost) must never be offered to a user as a link.

Layer rule: no imports from api/ or chat/.
"""

from __future__ import annotations

import hmac
import ipaddress
from typing import TYPE_CHECKING
from urllib.parse import quote, urlsplit

import bcrypt

if TYPE_CHECKING:
    from core.clock import SecureRandom

_UNSAFE_HOSTS = frozenset({"localhost", "localhost.localdomain", "0.0.0.0", "::", "::1"})

# ---------------------------------------------------------------------------
# Generators
# ---------------------------------------------------------------------------


def generate_session_token(rng: SecureRandom) -> str:
    return rng.token_urlsafe(32)


def generate_confirmation_code(rng: SecureRandom) -> str:
    """8-character uppercase hex code for enable/disable 2FA confirmations."""
    return rng.token_hex(4).upper()


def generate_recovery_key(rng: SecureRandom) -> str:
    return rng.token_hex(16).upper()


def generate_account_id(rng: SecureRandom) -> str:
    """12-character uppercase hex account id, shareable with support staff."""
    return rng.token_hex(6).upper()


def generate_referral_code(rng: SecureRandom) -> str:
    return rng.token_hex(4).upper()


def normalize_code(code: str) -> str:
    """Strip whitespace and dashes, uppercase. Users paste codes in many shapes."""
    return "".join(code.split()).replace("-", "").upper()


# ---------------------------------------------------------------------------
# Secret hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_secret(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of a high-value secret (recovery key)."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_secret(plain: str, hashed: str) -> bool:
    """Return True if ``plain`` matches the bcrypt hash. Malformed hashes are a mismatch."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ---------------------------------------------------------------------------
# Redemption URL
# ---------------------------------------------------------------------------


def build_redemption_url(base_url: str, auth_path: str, token: str) -> str:
    """Return ``{base_url}{auth_path}?token={token}``. Pure; no validation."""
    return f"{base_url}{auth_path}?token={quote(token, safe='')}"


def is_actionable_url(url: str) -> bool:
    """Return True if ``url`` may be shown to a user as a clickable action.

    Requires https and a host that is neither a loopback nor an unspecified
    address. Anything unparsable is not actionable.
    """
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError:
        return False
    if parts.scheme != "https" or not host:
        return False
    if host in _UNSAFE_HOSTS:
        return False
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return True
    return not (addr.is_loopback or addr.is_unspecified)
