#!/usr/bin/env python3
"""
Ace Trade -- operator CLI for the session & account-security store.

Usage:
  python main.py cleanup
  python main.py status --user-id 42
  python main.py status --account-id A1B2C3D4E5F6 --json
  python main.py activity --user-id 42 --days 30
  python main.py register 123456789 --referral AB12CD34

Settings come from the environment / .env exactly as for the API
(DATABASE_URL, SERVICE_TOKEN or DEBUG=true, ...). Exit status is 0 on
success, 1 on a security-core error, 2 on bad arguments.
"""

import argparse
import dataclasses
import json
import sys
from datetime import datetime
from enum import Enum
from typing import Optional

from auth.core import SecurityCore
from auth.models import User
from auth.store import SecurityStore
from core.config import get_settings
from core.errors import NotFoundError, SecurityError


def _to_jsonable(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=_to_jsonable))


def _resolve_user(core: SecurityCore, args: argparse.Namespace) -> User:
    if args.user_id is not None:
        user = core.get_user(args.user_id)
    else:
        user = core.get_user_by_account_id(args.account_id)
    if user is None:
        raise NotFoundError("No such user.")
    return user


def _add_user_selector(parser: argparse.ArgumentParser) -> None:
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--user-id", type=int, metavar="ID", help="Internal user id")
    group.add_argument("--account-id", metavar="ACCOUNT", help="12-character account id shown to the user")


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_cleanup(core: SecurityCore, args: argparse.Namespace) -> None:
    removed = core.run_cleanup()
    pending = core.activity.pending_count
    if args.json:
        _print_json({"removed": removed, "pending_audit_entries": pending})
        return
    print(f"  Removed {removed} expired one-time session(s).")
    if pending:
        print(f"  [!] {pending} audit entr{'y' if pending == 1 else 'ies'} still queued (datastore unavailable).")


def cmd_status(core: SecurityCore, args: argparse.Namespace) -> None:
    user = _resolve_user(core, args)
    status = {
        "user_id": user.id,
        "account_id": user.account_id,
        "tier": user.tier,
        "locked": user.account_locked,
        "twofa_enabled": user.is_2fa_enabled,
        "recovery_key_available": core.recovery_key_exists(user.id),
        "active_sessions": core.count_active_sessions(user.id),
        "last_login": user.last_login,
    }
    if args.json:
        _print_json(status)
        return
    print(f"\nAccount {user.account_id} (user {user.id})")
    print("─" * 40)
    for key, value in status.items():
        if key in ("user_id", "account_id"):
            continue
        shown = _to_jsonable(value) if isinstance(value, (datetime, Enum)) else value
        print(f"  {key:<24}{'-' if shown is None else shown}")
    print()


def cmd_activity(core: SecurityCore, args: argparse.Namespace) -> None:
    user = _resolve_user(core, args)
    entries = core.recent_activity(user.id, days=args.days, limit=args.limit)
    if args.json:
        _print_json([dataclasses.asdict(e) for e in entries])
        return
    if not entries:
        print(f"  No security events for {user.account_id} in the last {args.days} day(s).")
        return
    for entry in entries:
        stamp = entry.created_at.strftime("%Y-%m-%d %H:%M:%S") if entry.created_at else "?"
        where = " ".join(part for part in (entry.ip, entry.device) if part)
        print(f"  {stamp}  {entry.event_type:<24}{where}")


def cmd_register(core: SecurityCore, args: argparse.Namespace) -> None:
    user = core.register_user(args.chat_id, referral_code=args.referral)
    if args.json:
        _print_json({"user_id": user.id, "account_id": user.account_id, "referral_code": user.referral_code})
        return
    print(f"  Registered chat {user.chat_id} as account {user.account_id} (user {user.id}).")
    if user.referred_by is not None:
        print(f"  Referred by user {user.referred_by}.")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="acetrade",
        description="Operator tools for the Ace Trade session & account-security store.",
    )
    # --json is accepted after the subcommand name.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", help="Emit JSON instead of human-readable output")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("cleanup", parents=[common], help="Delete expired one-time sessions and flush queued audit entries")

    status = sub.add_parser("status", parents=[common], help="Show lock, 2FA and session state for a user")
    _add_user_selector(status)

    activity = sub.add_parser("activity", parents=[common], help="List recent security events for a user")
    _add_user_selector(activity)
    activity.add_argument("--days", type=int, default=7, help="Look-back window in days (default: 7)")
    activity.add_argument("--limit", type=int, default=None, help="Maximum entries (default: ACTIVITY_LIMIT)")

    register = sub.add_parser("register", parents=[common], help="Register a Telegram chat id as a new user")
    register.add_argument("chat_id", type=int, help="Telegram chat id")
    register.add_argument("--referral", metavar="CODE", default=None, help="Referral code of the inviting user")
    return parser


_COMMANDS = {
    "cleanup": cmd_cleanup,
    "status": cmd_status,
    "activity": cmd_activity,
    "register": cmd_register,
}


def main(argv: Optional[list[str]] = None, core: Optional[SecurityCore] = None) -> int:
    args = build_parser().parse_args(argv)

    store = None
    if core is None:
        settings = get_settings()
        store = SecurityStore(settings.database_url, timeout=settings.db_timeout_seconds)
        core = SecurityCore(store, settings)

    try:
        _COMMANDS[args.command](core, args)
    except SecurityError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1
    finally:
        if store is not None:
            store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
