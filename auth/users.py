"""
auth/users.py -- User registration and lookups for the chat identity.

Registration generates an opaque 12-character account id and an 8-character
referral code. Both are protected by UNIQUE indexes; a collision comes back
as ConflictError and is retried with fresh values. A duplicate chat id is
also a ConflictError but is final: the user is already registered.
"""

from __future__ import annotations

import logging

from auth.activity import SecurityLog
from auth.models import EventType, Tier, User
from auth.store import SecurityStore
from auth.tokens import generate_account_id, generate_referral_code
from core.clock import SecureRandom, SystemClock
from core.errors import ConflictError, NotFoundError

logger = logging.getLogger("acetrade.users")

_MAX_ID_ATTEMPTS = 3


class UserService:
    def __init__(self, store: SecurityStore, activity: SecurityLog, clock: SystemClock, rng: SecureRandom) -> None:
        self._store = store
        self._activity = activity
        self._clock = clock
        self._rng = rng

    def register(self, chat_id: int, referral_code: str | None = None) -> User:
        """Create a basic-tier user for ``chat_id``.

        Unknown referral codes are ignored rather than rejected. Raises
        ConflictError("User already registered") for a known chat id.
        """
        referrer = self._store.get_user_by_referral_code(referral_code.strip().upper()) if referral_code else None
        referrer_id = referrer.id if referrer is not None else None

        for attempt in range(1, _MAX_ID_ATTEMPTS + 1):
            user = User(
                chat_id=chat_id,
                account_id=generate_account_id(self._rng),
                referral_code=generate_referral_code(self._rng),
                tier=Tier.basic,
                referred_by=referrer_id,
                registered_at=self._clock.now(),
            )
            try:
                user.id = self._store.create_user(user)
                break
            except ConflictError:
                if self._store.get_user_by_chat_id(chat_id) is not None:
                    raise ConflictError("User already registered.") from None
                logger.warning("Account id collision on registration (attempt %d)", attempt)
                if attempt == _MAX_ID_ATTEMPTS:
                    raise

        if referrer_id is not None:
            self._activity.append(
                user.id,
                EventType.referral_registration,
                {"referrer_id": referrer_id, "referral_code": referral_code},
            )
        self._activity.append(
            user.id,
            EventType.user_registered,
            {
                "chat_id": chat_id,
                "account_id": user.account_id,
                "referred_by": referrer_id,
                "referral_code": referral_code,
            },
        )
        logger.info("Registered user_id=%s account_id=%s", user.id, user.account_id)
        return user

    def exists(self, chat_id: int) -> bool:
        return self._store.get_user_by_chat_id(chat_id) is not None

    def get(self, user_id: int) -> User | None:
        return self._store.get_user(user_id)

    def get_by_chat_id(self, chat_id: int) -> User | None:
        return self._store.get_user_by_chat_id(chat_id)

    def get_by_account_id(self, account_id: str) -> User | None:
        """Look up by the shareable account id (used for recovery). Case-insensitive."""
        return self._store.get_user_by_account_id(account_id.strip().upper())

    def update_last_login(self, user_id: int) -> None:
        self._store.update_last_login(user_id, self._clock.now())

    def get_tier(self, user_id: int) -> Tier:
        user = self._store.get_user(user_id)
        return user.tier if user is not None else Tier.basic

    def upgrade_tier(self, user_id: int, tier: Tier | str) -> None:
        """Set the user's tier. Raises ValueError for an unknown tier."""
        try:
            new_tier = Tier(tier)
        except ValueError:
            raise ValueError(f"Invalid tier: {tier!r}") from None
        if not self._store.set_tier(user_id, new_tier):
            raise NotFoundError(f"User {user_id} not found.")
        self._activity.append(user_id, EventType.tier_upgraded, {"new_tier": new_tier.value})
