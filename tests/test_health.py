"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' against a reachable store
  - No service token required
"""

from __future__ import annotations


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    resp = api_client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert data["components"]["app"] == "ok"
    assert data["components"]["database"] == "ok"


def test_health_no_service_token_required(api_client):
    """Health endpoint is reachable without the X-Service-Token header."""
    resp = api_client.get("/api/v1/health", headers={"X-Service-Token": ""})
    assert resp.status_code == 200


def test_health_reports_degraded_database(api_client, store, monkeypatch):
    monkeypatch.setattr(store, "ping", lambda: False)
    data = api_client.get("/api/v1/health").json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "error"
