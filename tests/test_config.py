"""
tests/test_config.py -- Settings validation.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings


def test_debug_generates_service_token():
    settings = Settings(debug=True, service_token="")
    assert len(settings.service_token) >= 32


def test_production_requires_service_token():
    with pytest.raises(ValidationError, match="SERVICE_TOKEN is required"):
        Settings(debug=False, service_token="")


def test_short_service_token_rejected():
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(debug=True, service_token="short")


def test_defaults():
    settings = Settings(debug=True)
    assert settings.session_expiry_minutes == 5
    assert settings.max_sessions_per_hour == 10
    assert settings.totp_valid_window == 2
    assert settings.trade_terminal_auth_path == "/auth/login"


def test_terminal_url_trailing_slash_stripped():
    settings = Settings(debug=True, trade_terminal_url="https://trade.example.com/")
    assert settings.trade_terminal_url == "https://trade.example.com"


@pytest.mark.parametrize("rounds", [3, 32])
def test_recovery_key_rounds_bounds(rounds):
    with pytest.raises(ValidationError):
        Settings(debug=True, recovery_key_rounds=rounds)
