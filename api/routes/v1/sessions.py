"""
api/routes/v1/sessions.py -- One-time token redemption for the trading terminal.

Routes:
  POST /api/v1/sessions/redeem   -- consume a one-time token, open an active session

The terminal calls this when a browser lands on its auth path with
?token=... in the URL. A successful redemption is the only way a chat user
becomes logged in on the terminal.

Outcome mapping (applied by the SecurityError handler in api/main.py):
  invalid_token  -> 401
  already_used   -> 409
  expired_token  -> 410
  account_locked -> 423

Security:
  The token never appears in logs or in the response.
  POST /redeem is rate-limited per client address (Settings.redeem_rate_limit)
  on top of the token's own single-use guarantee.
"""

import logging

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_core, require_service_token
from api.limiter import limiter
from api.models import RedeemRequest, RedeemResponse
from auth.core import SecurityCore
from core.config import get_settings

logger = logging.getLogger("acetrade.api.sessions")

router = APIRouter(dependencies=[Depends(require_service_token)])


# Route decorator outermost so FastAPI registers the rate-limited wrapper.
@router.post("/sessions/redeem", response_model=RedeemResponse)
@limiter.limit(get_settings().redeem_rate_limit)
def redeem_session(
    request: Request,
    body: RedeemRequest,
    core: SecurityCore = Depends(get_core),
) -> RedeemResponse:
    """Redeem a one-time token and record the resulting terminal session.

    The token is burned before anything else is checked. A lockdown that
    lands between issue and redemption has already burned the token; a
    lockdown racing the redemption itself is refused by the core as
    account_locked.
    """
    redeemed = core.redeem_token(body.token)
    session = core.record_active_session(redeemed.user_id, ip=body.ip, device=body.device)
    core.update_last_login(redeemed.user_id)
    logger.info("Terminal session %s opened for user_id=%s", session.id, redeemed.user_id)
    return RedeemResponse.from_redeemed(redeemed, session)
