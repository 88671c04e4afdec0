"""
auth/store.py -- SQLAlchemy Core persistence layer for the security core.

Pattern: Repository + Data Mapper. SecurityStore is the repository (the only
side-effect channel of the core); the _row_to_* functions are the mappers.
Services never touch SQL directly.

Single-use semantics:
  Every "use exactly once" operation is ONE guarded UPDATE whose rowcount
  decides the winner:
    - token redemption:      SET used = 1 WHERE token = :t AND used = 0
    - 2FA code verification: SET used = 1 WHERE id = <latest live code> AND
                             code = :c AND used = 0
    - recovery key:          SET recovery_key_used = 1 WHERE recovery_key_hash
                             = :verified_hash AND recovery_key_used = 0
  Never select-inspect-update: two callers racing on the same credential must
  not both see it as unused. Exclusion is the database's job, not a Python
  lock's, because several processes share one database.

Lockdown:
  lock_account() runs the flag flip, session destruction, pending-token
  invalidation and the audit insert inside one engine.begin() block. Any
  exception rolls all of it back.

Errors:
  Driver exceptions never leave this module. IntegrityError becomes
  ConflictError (caller regenerates the identifier), connection / timeout
  failures become TransientError (caller may retry), and any other DBAPIError
  becomes DatastoreError (not retried). Typed SecurityError
  raised inside a transaction passes through untouched after rollback.

Time:
  The store never asks the database for NOW(). Callers pass ``now`` from the
  injected clock so expiry decisions are consistent and testable.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    false,
    func,
    select,
    true,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.types import TypeDecorator

from auth.models import (
    ActiveSession,
    EventType,
    OneTimeSession,
    RedeemedSession,
    SecurityLogEntry,
    Tier,
    TwoFactorAction,
    TwoFactorCode,
    User,
)
from core.errors import (
    AlreadyUsedError,
    ConflictError,
    DatastoreError,
    InvalidTokenError,
    NotFoundError,
    TransientError,
    TwoFARequiredError,
)

logger = logging.getLogger("acetrade.store")


class UTCDateTime(TypeDecorator):
    """Store naive UTC, hand back aware UTC.

    SQLite has no timezone-aware type. Normalizing on the way in keeps string
    comparisons in WHERE clauses correct regardless of the caller's offset.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("chat_id", BigInteger, nullable=False, unique=True),
    Column("account_id", String(12), nullable=False, unique=True),
    Column("referral_code", String(16), unique=True),
    Column("tier", String(10), nullable=False, default=Tier.basic.value),
    Column("is_2fa_enabled", Boolean, nullable=False, default=False),
    Column("totp_secret", Text),  # NULL unless 2FA is enabled
    Column("recovery_key_hash", Text),  # bcrypt hash, never the key itself
    Column("recovery_key_used", Boolean, nullable=False, default=False),
    Column("recovery_key_created_at", UTCDateTime),
    Column("account_locked", Boolean, nullable=False, default=False),
    Column("referred_by", Integer, ForeignKey("users.id")),
    Column("registered_at", UTCDateTime, nullable=False),
    Column("last_login", UTCDateTime),
)

_one_time_sessions = Table(
    "one_time_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("token", String(64), nullable=False, unique=True),
    Column("ip", String(64)),
    Column("device", Text),
    Column("created_at", UTCDateTime, nullable=False),
    Column("expires_at", UTCDateTime, nullable=False),
    Column("used", Boolean, nullable=False, default=False),
    Index("ix_one_time_sessions_user_created", "user_id", "created_at"),
    Index("ix_one_time_sessions_expires", "expires_at"),
)

_active_sessions = Table(
    "active_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("ip", String(64)),
    Column("device", Text),
    Column("created_at", UTCDateTime, nullable=False),
)

_twofa_codes = Table(
    "twofa_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("code", String(16), nullable=False),
    Column("action_type", String(10), nullable=False),
    Column("expires_at", UTCDateTime, nullable=False),
    Column("used", Boolean, nullable=False, default=False),
    Index("ix_twofa_codes_user_action", "user_id", "action_type"),
)

_security_logs = Table(
    "security_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("event_type", String(40), nullable=False),
    Column("ip", String(64)),
    Column("device", Text),
    Column("details", Text, nullable=False, default="{}"),  # JSON object
    Column("created_at", UTCDateTime, nullable=False),
    Index("ix_security_logs_user_created", "user_id", "created_at"),
)

_referrals = Table(
    "referrals",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("referrer_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("referee_id", Integer, ForeignKey("users.id"), nullable=False, unique=True),
    Column("status", String(20), nullable=False, default="pending"),
    Column("created_at", UTCDateTime, nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind the writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SecurityStore:
    """Repository for every table the security core touches.

    Usage:
        store = SecurityStore("sqlite:///acetrade_auth.db", timeout=5.0)
        user_id = store.create_user(User(chat_id=42, account_id="A1B2C3D4E5F6", registered_at=now))
        store.create_one_time_session(OneTimeSession(user_id=user_id, token=t, expires_at=exp, created_at=now))
        store.close()
    """

    def __init__(self, db_url: str, timeout: float = 5.0) -> None:
        if db_url.startswith("sqlite"):
            # sqlite3 waits up to `timeout` seconds on a locked database
            # before raising OperationalError("database is locked").
            self.engine: Engine = create_engine(
                db_url,
                connect_args={"check_same_thread": False, "timeout": timeout},
            )
            event.listen(self.engine, "connect", _set_wal_mode)
        else:
            self.engine = create_engine(db_url, pool_timeout=timeout, pool_pre_ping=True)
        with self._begin() as conn:
            _metadata.create_all(conn)

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        """Open a transaction and translate driver errors into typed ones."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            raise ConflictError("Uniqueness conflict; regenerate and retry.") from exc
        except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
            logger.warning("Datastore unavailable: %s", exc.__class__.__name__)
            raise TransientError("Datastore unavailable; safe to retry.") from exc
        except DBAPIError as exc:
            logger.error("Datastore rejected statement: %s", exc.__class__.__name__)
            raise DatastoreError() from exc

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._begin() as conn:
                conn.execute(select(1))
        except TransientError:
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a user (and the referral row when referred_by is set).

        Raises ConflictError if chat_id, account_id or referral_code collides.
        Both inserts share one transaction so a referral never points at a
        user that was rolled back.
        """
        with self._begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    chat_id=user.chat_id,
                    account_id=user.account_id,
                    referral_code=user.referral_code,
                    tier=Tier(user.tier).value,
                    is_2fa_enabled=user.is_2fa_enabled,
                    totp_secret=user.totp_secret,
                    account_locked=user.account_locked,
                    referred_by=user.referred_by,
                    registered_at=user.registered_at,
                )
            )
            user_id = result.inserted_primary_key[0]
            if user.referred_by is not None:
                conn.execute(
                    _referrals.insert().values(
                        referrer_id=user.referred_by,
                        referee_id=user_id,
                        status="pending",
                        created_at=user.registered_at,
                    )
                )
        return user_id

    def get_user(self, user_id: int) -> User | None:
        with self._begin() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_chat_id(self, chat_id: int) -> User | None:
        with self._begin() as conn:
            row = conn.execute(_users.select().where(_users.c.chat_id == chat_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_account_id(self, account_id: str) -> User | None:
        with self._begin() as conn:
            row = conn.execute(_users.select().where(_users.c.account_id == account_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_referral_code(self, referral_code: str) -> User | None:
        with self._begin() as conn:
            row = conn.execute(_users.select().where(_users.c.referral_code == referral_code)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_last_login(self, user_id: int, now: datetime) -> None:
        with self._begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=now))

    def set_tier(self, user_id: int, tier: Tier) -> bool:
        """Returns True if a row was updated, False if user_id was not found."""
        with self._begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(tier=Tier(tier).value))
        return result.rowcount > 0

    def list_referrals(self, referrer_id: int) -> list[int]:
        """Return referee user ids for a referrer, oldest first."""
        with self._begin() as conn:
            rows = conn.execute(
                select(_referrals.c.referee_id)
                .where(_referrals.c.referrer_id == referrer_id)
                .order_by(_referrals.c.id)
            ).fetchall()
        return [r.referee_id for r in rows]

    # ------------------------------------------------------------------
    # Second factor on the user row
    # ------------------------------------------------------------------

    def enable_twofa(self, user_id: int, totp_secret: str) -> bool:
        """Store a new TOTP secret. False when the user is missing or locked."""
        with self._begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.account_locked == false()))
                .values(is_2fa_enabled=True, totp_secret=totp_secret)
            )
        return result.rowcount > 0

    def disable_twofa(self, user_id: int) -> bool:
        """Clear the secret and the recovery key, but only on an unlocked account.

        The account_locked guard keeps "locked implies 2FA enabled" true even
        if a lockdown lands between the caller's checks and this statement.
        Returns False when the user is missing or locked.
        """
        with self._begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.account_locked == false()))
                .values(
                    is_2fa_enabled=False,
                    totp_secret=None,
                    recovery_key_hash=None,
                    recovery_key_used=False,
                    recovery_key_created_at=None,
                )
            )
        return result.rowcount > 0

    def set_recovery_key(self, user_id: int, key_hash: str, now: datetime) -> bool:
        """Overwrite the recovery key hash and reset the used marker."""
        with self._begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(recovery_key_hash=key_hash, recovery_key_used=False, recovery_key_created_at=now)
            )
        return result.rowcount > 0

    def consume_recovery_key(self, user_id: int, key_hash: str) -> bool:
        """Mark the recovery key used iff it is still ``key_hash`` and unused.

        ``key_hash`` is the hash the caller just verified against. Guarding on
        it also loses the race against a concurrent re-issue cleanly.
        """
        with self._begin() as conn:
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == user_id)
                    & (_users.c.recovery_key_hash == key_hash)
                    & (_users.c.recovery_key_used == false())
                )
                .values(recovery_key_used=True)
            )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Lockdown
    # ------------------------------------------------------------------

    def lock_account(self, user_id: int, now: datetime, details: dict | None = None) -> int:
        """Lock the account and destroy its sessions in one transaction.

        Steps, all or nothing:
          1. set account_locked, guarded by is_2fa_enabled
          2. delete every active session
          3. burn every unused one-time token so a pending link cannot log in
          4. append the account_lockdown audit row

        Raises NotFoundError / TwoFARequiredError from step 1 with nothing
        applied. Returns the number of active sessions destroyed.
        """
        with self._begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.is_2fa_enabled == true()))
                .values(account_locked=True)
            )
            if result.rowcount == 0:
                exists = conn.execute(select(_users.c.id).where(_users.c.id == user_id)).first()
                if exists is None:
                    raise NotFoundError(f"User {user_id} not found.")
                raise TwoFARequiredError("2FA must be enabled to use lockdown feature.")
            destroyed = conn.execute(_active_sessions.delete().where(_active_sessions.c.user_id == user_id)).rowcount
            conn.execute(
                _one_time_sessions.update()
                .where((_one_time_sessions.c.user_id == user_id) & (_one_time_sessions.c.used == false()))
                .values(used=True)
            )
            self._insert_log(
                conn,
                SecurityLogEntry(
                    user_id=user_id,
                    event_type=EventType.account_lockdown.value,
                    details={**(details or {}), "sessions_destroyed": destroyed, "account_locked": True},
                    created_at=now,
                ),
            )
        return destroyed

    def unlock_account(self, user_id: int) -> bool:
        """Clear the lock flag. False if the account was not locked."""
        with self._begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.account_locked == true()))
                .values(account_locked=False)
            )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # One-time sessions
    # ------------------------------------------------------------------

    def count_one_time_sessions_since(self, user_id: int, since: datetime) -> int:
        with self._begin() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_one_time_sessions)
                .where((_one_time_sessions.c.user_id == user_id) & (_one_time_sessions.c.created_at > since))
            ).scalar()
        return result or 0

    def create_one_time_session(self, session: OneTimeSession) -> int:
        """Insert a one-time session. Raises ConflictError on a duplicate token."""
        with self._begin() as conn:
            result = conn.execute(
                _one_time_sessions.insert().values(
                    user_id=session.user_id,
                    token=session.token,
                    ip=session.ip,
                    device=session.device,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                    used=False,
                )
            )
        return result.inserted_primary_key[0]

    def claim_one_time_session(self, token: str) -> tuple[OneTimeSession, RedeemedSession, bool]:
        """Atomically flip ``used`` and return the session, its owner, and the lock flag.

        The UPDATE is the first statement of the transaction, so of N callers
        racing on one token exactly one sees rowcount == 1. Expiry is not
        checked here: the caller decides that after the flip has committed.

        Raises InvalidTokenError for an unknown token, AlreadyUsedError if the
        flip lost.
        """
        with self._begin() as conn:
            result = conn.execute(
                _one_time_sessions.update()
                .where((_one_time_sessions.c.token == token) & (_one_time_sessions.c.used == false()))
                .values(used=True)
            )
            row = conn.execute(
                select(
                    _one_time_sessions,
                    _users.c.tier.label("user_tier"),
                    _users.c.is_2fa_enabled.label("user_2fa"),
                    _users.c.account_locked.label("user_locked"),
                )
                .join(_users, _users.c.id == _one_time_sessions.c.user_id)
                .where(_one_time_sessions.c.token == token)
            ).fetchone()
            if result.rowcount != 1:
                if row is None:
                    raise InvalidTokenError()
                raise AlreadyUsedError()
        if row is None:
            # Token row exists but its user does not: treat as invalid.
            raise InvalidTokenError()
        owner = RedeemedSession(user_id=row.user_id, tier=Tier(row.user_tier), is_2fa_enabled=bool(row.user_2fa))
        return _row_to_one_time_session(row), owner, bool(row.user_locked)

    def list_one_time_sessions(self, user_id: int, limit: int = 10) -> list[OneTimeSession]:
        """Recent one-time sessions, newest first, with the token value blanked."""
        with self._begin() as conn:
            rows = conn.execute(
                _one_time_sessions.select()
                .where(_one_time_sessions.c.user_id == user_id)
                .order_by(_one_time_sessions.c.created_at.desc(), _one_time_sessions.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_one_time_session(r, redact=True) for r in rows]

    def delete_expired_one_time_sessions(self, now: datetime) -> int:
        with self._begin() as conn:
            result = conn.execute(_one_time_sessions.delete().where(_one_time_sessions.c.expires_at < now))
        return result.rowcount

    # ------------------------------------------------------------------
    # Active sessions
    # ------------------------------------------------------------------

    def create_active_session(self, session: ActiveSession) -> int:
        with self._begin() as conn:
            result = conn.execute(
                _active_sessions.insert().values(
                    user_id=session.user_id,
                    ip=session.ip,
                    device=session.device,
                    created_at=session.created_at,
                )
            )
        return result.inserted_primary_key[0]

    def list_active_sessions(self, user_id: int) -> list[ActiveSession]:
        """Return the user's active sessions (newest first)."""
        with self._begin() as conn:
            rows = conn.execute(
                _active_sessions.select()
                .where(_active_sessions.c.user_id == user_id)
                .order_by(_active_sessions.c.created_at.desc(), _active_sessions.c.id.desc())
            ).fetchall()
        return [_row_to_active_session(r) for r in rows]

    def delete_active_session(self, user_id: int, session_id: int) -> bool:
        """Delete a session. user_id is part of the predicate to prevent IDOR.

        Returns True if a session was removed, False if not found or wrong owner.
        """
        with self._begin() as conn:
            result = conn.execute(
                _active_sessions.delete().where(
                    (_active_sessions.c.id == session_id) & (_active_sessions.c.user_id == user_id)
                )
            )
        return result.rowcount > 0

    def count_active_sessions(self, user_id: int) -> int:
        with self._begin() as conn:
            result = conn.execute(
                select(func.count()).select_from(_active_sessions).where(_active_sessions.c.user_id == user_id)
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # 2FA confirmation codes
    # ------------------------------------------------------------------

    def create_twofa_code(self, code: TwoFactorCode) -> int:
        with self._begin() as conn:
            result = conn.execute(
                _twofa_codes.insert().values(
                    user_id=code.user_id,
                    code=code.code,
                    action_type=TwoFactorAction(code.action).value,
                    expires_at=code.expires_at,
                    used=False,
                )
            )
        return result.inserted_primary_key[0]

    def consume_twofa_code(self, user_id: int, code: str, action: TwoFactorAction, now: datetime) -> bool:
        """Mark the code used iff it is the newest live code for (user, action).

        Older unused codes for the same action stop validating the moment a
        newer one is issued.
        """
        latest = (
            select(func.max(_twofa_codes.c.id))
            .where(
                (_twofa_codes.c.user_id == user_id)
                & (_twofa_codes.c.action_type == TwoFactorAction(action).value)
                & (_twofa_codes.c.used == false())
                & (_twofa_codes.c.expires_at > now)
            )
            .scalar_subquery()
        )
        with self._begin() as conn:
            result = conn.execute(
                _twofa_codes.update()
                .where((_twofa_codes.c.id == latest) & (_twofa_codes.c.code == code) & (_twofa_codes.c.used == false()))
                .values(used=True)
            )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Security log
    # ------------------------------------------------------------------

    def _insert_log(self, conn: Connection, entry: SecurityLogEntry) -> int:
        result = conn.execute(
            _security_logs.insert().values(
                user_id=entry.user_id,
                event_type=entry.event_type,
                ip=entry.ip,
                device=entry.device,
                details=json.dumps(entry.details or {}, default=str),
                created_at=entry.created_at,
            )
        )
        return result.inserted_primary_key[0]

    def insert_log(self, entry: SecurityLogEntry) -> int:
        with self._begin() as conn:
            return self._insert_log(conn, entry)

    def list_logs(self, user_id: int, since: datetime, limit: int = 20) -> list[SecurityLogEntry]:
        with self._begin() as conn:
            rows = conn.execute(
                _security_logs.select()
                .where((_security_logs.c.user_id == user_id) & (_security_logs.c.created_at >= since))
                .order_by(_security_logs.c.created_at.desc(), _security_logs.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_log(r) for r in rows]

    def count_events_since(self, user_id: int, event_type: str, since: datetime) -> int:
        with self._begin() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_security_logs)
                .where(
                    (_security_logs.c.user_id == user_id)
                    & (_security_logs.c.event_type == event_type)
                    & (_security_logs.c.created_at > since)
                )
            ).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        chat_id=row.chat_id,
        account_id=row.account_id,
        referral_code=row.referral_code,
        tier=Tier(row.tier),
        is_2fa_enabled=bool(row.is_2fa_enabled),
        totp_secret=row.totp_secret,
        recovery_key_hash=row.recovery_key_hash,
        recovery_key_used=bool(row.recovery_key_used),
        recovery_key_created_at=row.recovery_key_created_at,
        account_locked=bool(row.account_locked),
        referred_by=row.referred_by,
        registered_at=row.registered_at,
        last_login=row.last_login,
    )


def _row_to_one_time_session(row, redact: bool = False) -> OneTimeSession:
    return OneTimeSession(
        id=row.id,
        user_id=row.user_id,
        token="" if redact else row.token,
        ip=row.ip,
        device=row.device,
        created_at=row.created_at,
        expires_at=row.expires_at,
        used=bool(row.used),
    )


def _row_to_active_session(row) -> ActiveSession:
    return ActiveSession(
        id=row.id,
        user_id=row.user_id,
        ip=row.ip,
        device=row.device,
        created_at=row.created_at,
    )


def _row_to_log(row) -> SecurityLogEntry:
    return SecurityLogEntry(
        id=row.id,
        user_id=row.user_id,
        event_type=row.event_type,
        ip=row.ip,
        device=row.device,
        details=json.loads(row.details or "{}"),
        created_at=row.created_at,
    )
