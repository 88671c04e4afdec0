"""
api/routes/v1/users.py -- Per-user security state for the trading terminal.

Routes:
  GET    /users/{user_id}/sessions                 -- list active terminal sessions
  DELETE /users/{user_id}/sessions/{session_id}    -- revoke one session
  GET    /users/{user_id}/status                   -- lock / 2FA / recovery summary
  POST   /users/{user_id}/recovery-key/verify      -- check and burn a recovery key

IDOR guard: DELETE passes user_id to the store; the store deletes only when
the session belongs to that user, so a foreign session id is a plain 404.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from api.dependencies import get_core, require_service_token
from api.models import ActiveSessionRow, RecoveryKeyVerifyRequest, RecoveryKeyVerifyResponse, SecurityStatusResponse
from auth.core import SecurityCore
from auth.models import User
from core.errors import NotFoundError

router = APIRouter(dependencies=[Depends(require_service_token)])


def _get_user_or_404(core: SecurityCore, user_id: int) -> User:
    user = core.get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found.")
    return user


@router.get("/users/{user_id}/sessions", response_model=list[ActiveSessionRow])
def list_sessions(user_id: int, core: SecurityCore = Depends(get_core)) -> list[ActiveSessionRow]:
    """Active terminal sessions for the user, newest first."""
    _get_user_or_404(core, user_id)
    return [ActiveSessionRow.from_session(s) for s in core.list_active_sessions(user_id)]


@router.delete("/users/{user_id}/sessions/{session_id}", status_code=204)
def revoke_session(user_id: int, session_id: int, core: SecurityCore = Depends(get_core)) -> Response:
    if not core.revoke_active_session(user_id, session_id):
        raise NotFoundError("Session not found or already revoked.")
    return Response(status_code=204)


@router.get("/users/{user_id}/status", response_model=SecurityStatusResponse)
def security_status(user_id: int, core: SecurityCore = Depends(get_core)) -> SecurityStatusResponse:
    user = _get_user_or_404(core, user_id)
    return SecurityStatusResponse(
        locked=user.account_locked,
        twofa_enabled=user.is_2fa_enabled,
        recovery_key_available=core.recovery_key_exists(user_id),
        active_sessions=core.count_active_sessions(user_id),
    )


@router.post("/users/{user_id}/recovery-key/verify", response_model=RecoveryKeyVerifyResponse)
def verify_recovery_key(
    user_id: int,
    body: RecoveryKeyVerifyRequest,
    core: SecurityCore = Depends(get_core),
) -> RecoveryKeyVerifyResponse:
    """Check a recovery key. A matching key is consumed and will not verify again."""
    _get_user_or_404(core, user_id)
    return RecoveryKeyVerifyResponse(valid=core.verify_recovery_key(user_id, body.key))
