"""
chat/intents.py -- Closed set of chat intents and their handler table.

The chat front end receives opaque callback strings ("open_session",
"revoke_session_17", "agree_tos:AB12CD34") and slash commands ("/unlock
123456"). parse_callback() / parse_command() turn those into a ParsedIntent;
IntentDispatcher runs the matching handler against SecurityCore and returns an
IntentResult with plain data. Wording, menus, and keyboards stay in the front
end.

Only intents that reach the security core are listed. Pure navigation
(help pages, menus, "decline terms") parses to None and never gets here.

IntentDispatcher refuses to start if any Intent lacks a handler, so adding a
member without wiring it fails at construction instead of at the first click.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from auth.core import SecurityCore
from auth.models import TwoFactorAction, User
from auth.tokens import is_actionable_url
from core.errors import NotFoundError, SecurityError

logger = logging.getLogger("acetrade.chat")


class Intent(str, Enum):
    agree_tos = "agree_tos"
    open_session = "open_session"
    active_sessions = "active_sessions"
    revoke_session = "revoke_session"
    enable_2fa = "enable_2fa"
    disable_2fa = "disable_2fa"
    recovery_key = "recovery_key"
    twofa_status = "twofa_status"
    my_account = "my_account"
    security_dashboard = "security_dashboard"
    recent_activity = "recent_activity"
    confirm_lockdown = "confirm_lockdown"
    cancel_lockdown = "cancel_lockdown"
    unlock = "unlock"


@dataclass(frozen=True)
class ParsedIntent:
    intent: Intent
    argument: str | None = None


@dataclass
class IntentResult:
    intent: Intent
    ok: bool
    data: dict = field(default_factory=dict)
    error: str | None = None  # SecurityError.code when ok is False


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

# Exact callback strings. "view_sessions" is an older alias of active_sessions.
_CALLBACKS: dict[str, Intent] = {
    "open_session": Intent.open_session,
    "active_sessions": Intent.active_sessions,
    "view_sessions": Intent.active_sessions,
    "enable_2fa": Intent.enable_2fa,
    "disable_2fa": Intent.disable_2fa,
    "recovery_key": Intent.recovery_key,
    "my_account": Intent.my_account,
    "security_dashboard": Intent.security_dashboard,
    "recent_activity": Intent.recent_activity,
    "confirm_lockdown": Intent.confirm_lockdown,
    "cancel_lockdown": Intent.cancel_lockdown,
}

# Callbacks that carry an argument after a fixed prefix.
_CALLBACK_PREFIXES: tuple[tuple[str, Intent], ...] = (
    ("revoke_session_", Intent.revoke_session),
    ("agree_tos:", Intent.agree_tos),
)

_COMMANDS: dict[str, Intent] = {
    "/sessions": Intent.active_sessions,
    "/revoke": Intent.revoke_session,
    "/enable_2fa": Intent.enable_2fa,
    "/disable_2fa": Intent.disable_2fa,
    "/recovery_key": Intent.recovery_key,
    "/2fa_status": Intent.twofa_status,
    "/account": Intent.my_account,
    "/activity": Intent.recent_activity,
    "/unlock": Intent.unlock,
}


def parse_callback(data: str) -> ParsedIntent | None:
    """Map callback data to an intent. None for navigation or unknown data."""
    if data == "agree_tos":
        return ParsedIntent(Intent.agree_tos)
    intent = _CALLBACKS.get(data)
    if intent is not None:
        return ParsedIntent(intent)
    for prefix, prefixed in _CALLBACK_PREFIXES:
        if data.startswith(prefix) and len(data) > len(prefix):
            return ParsedIntent(prefixed, data[len(prefix) :])
    return None


def parse_command(text: str) -> ParsedIntent | None:
    """Map a slash command ("/unlock 123456") to an intent."""
    parts = text.strip().split(maxsplit=1)
    if not parts:
        return None
    # Telegram appends "@botname" to commands in group chats.
    intent = _COMMANDS.get(parts[0].split("@", 1)[0].lower())
    if intent is None:
        return None
    argument = parts[1].strip() if len(parts) > 1 else None
    return ParsedIntent(intent, argument or None)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

Handler = Callable[[SecurityCore, int, "str | None"], dict]


def _require_user(core: SecurityCore, chat_id: int) -> User:
    user = core.get_user_by_chat_id(chat_id)
    if user is None:
        raise NotFoundError("User not registered.")
    return user


def _agree_tos(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    existing = core.get_user_by_chat_id(chat_id)
    if existing is not None:
        return {"account_id": existing.account_id, "created": False}
    user = core.register_user(chat_id, referral_code=argument)
    return {
        "account_id": user.account_id,
        "tier": user.tier.value,
        "registered_at": user.registered_at,
        "referred": user.referred_by is not None,
        "created": True,
    }


def _open_session(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    issued = core.issue_token(user.id, ip=None, device="Telegram Bot")
    url = core.build_redemption_url(issued.token)
    return {
        "url": url,
        "actionable": is_actionable_url(url),
        "expires_at": issued.expires_at,
        "expiry_minutes": issued.expiry_minutes,
    }


def _active_sessions(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    return {"sessions": core.list_active_sessions(user.id)}


def _revoke_session(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    try:
        session_id = int(argument or "")
    except ValueError:
        raise NotFoundError("Unknown session id.") from None
    if not core.revoke_active_session(user.id, session_id):
        raise NotFoundError("Session not found or already revoked.")
    return {"session_id": session_id, "sessions": core.list_active_sessions(user.id)}


def _enable_2fa(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    return {"code": core.issue_twofa_code(user.id, TwoFactorAction.enable), "ttl_seconds": 90}


def _disable_2fa(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    return {"code": core.issue_twofa_code(user.id, TwoFactorAction.disable), "ttl_seconds": 90}


def _recovery_key(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    return {"available": core.recovery_key_exists(user.id)}


def _twofa_status(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    return {"twofa_enabled": user.is_2fa_enabled, "recovery_key_available": core.recovery_key_exists(user.id)}


def _my_account(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    return {
        "account_id": user.account_id,
        "tier": user.tier.value,
        "twofa_enabled": user.is_2fa_enabled,
        "locked": user.account_locked,
        "registered_at": user.registered_at,
    }


def _security_dashboard(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    return {
        "twofa_enabled": user.is_2fa_enabled,
        "recovery_key_available": core.recovery_key_exists(user.id),
        "active_sessions": core.count_active_sessions(user.id),
        "locked": user.account_locked,
        "recent_activity": core.recent_activity(user.id, days=7, limit=5),
    }


def _recent_activity(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    return {"entries": core.recent_activity(user.id, days=7)}


def _confirm_lockdown(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    return {"sessions_destroyed": core.lockdown(user.id)}


def _cancel_lockdown(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    return {}


def _unlock(core: SecurityCore, chat_id: int, argument: str | None) -> dict:
    user = _require_user(core, chat_id)
    if not argument:
        return {"locked": core.is_locked(user.id), "code_required": True}
    return {"unlocked": core.unlock(user.id, argument), "locked": False}


HANDLERS: dict[Intent, Handler] = {
    Intent.agree_tos: _agree_tos,
    Intent.open_session: _open_session,
    Intent.active_sessions: _active_sessions,
    Intent.revoke_session: _revoke_session,
    Intent.enable_2fa: _enable_2fa,
    Intent.disable_2fa: _disable_2fa,
    Intent.recovery_key: _recovery_key,
    Intent.twofa_status: _twofa_status,
    Intent.my_account: _my_account,
    Intent.security_dashboard: _security_dashboard,
    Intent.recent_activity: _recent_activity,
    Intent.confirm_lockdown: _confirm_lockdown,
    Intent.cancel_lockdown: _cancel_lockdown,
    Intent.unlock: _unlock,
}


class IntentDispatcher:
    def __init__(self, core: SecurityCore, handlers: dict[Intent, Handler] | None = None) -> None:
        self._core = core
        self._handlers = dict(HANDLERS if handlers is None else handlers)
        missing = [i.value for i in Intent if i not in self._handlers]
        if missing:
            raise ValueError(f"No handler registered for intents: {', '.join(missing)}")

    def dispatch(self, chat_id: int, parsed: ParsedIntent) -> IntentResult:
        """Run the handler for ``parsed``. SecurityError becomes a failed result."""
        handler = self._handlers[parsed.intent]
        try:
            data = handler(self._core, chat_id, parsed.argument)
        except SecurityError as exc:
            logger.info("Intent %s failed for chat_id=%s: %s", parsed.intent.value, chat_id, exc.code)
            return IntentResult(intent=parsed.intent, ok=False, error=exc.code)
        return IntentResult(intent=parsed.intent, ok=True, data=data)
