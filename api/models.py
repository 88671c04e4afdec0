"""
API request and response models for the Ace Trade terminal API.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import ActiveSession, RedeemedSession

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RedeemRequest(BaseModel):
    """Request body for POST /api/v1/sessions/redeem.

    ip and device describe the browser the terminal saw; they are recorded on
    the resulting active session.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=128)
    ip: Optional[str] = Field(default=None, max_length=64)
    device: Optional[str] = Field(default=None, max_length=255)


class RecoveryKeyVerifyRequest(BaseModel):
    """Request body for POST /api/v1/users/{user_id}/recovery-key/verify."""

    model_config = ConfigDict(str_strip_whitespace=True)

    key: str = Field(min_length=1, max_length=64)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ActiveSessionRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    ip: Optional[str]
    device: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_session(cls, session: ActiveSession) -> "ActiveSessionRow":
        return cls(id=session.id, ip=session.ip, device=session.device, created_at=session.created_at)


class RedeemResponse(BaseModel):
    """Identity the terminal logs the browser in as."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    tier: str
    is_2fa_enabled: bool
    session: ActiveSessionRow

    @classmethod
    def from_redeemed(cls, redeemed: RedeemedSession, session: ActiveSession) -> "RedeemResponse":
        return cls(
            user_id=redeemed.user_id,
            tier=redeemed.tier.value,
            is_2fa_enabled=redeemed.is_2fa_enabled,
            session=ActiveSessionRow.from_session(session),
        )


class SecurityStatusResponse(BaseModel):
    """Response for GET /api/v1/users/{user_id}/status."""

    model_config = ConfigDict(frozen=True)

    locked: bool
    twofa_enabled: bool
    recovery_key_available: bool
    active_sessions: int


class RecoveryKeyVerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
