"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version and auth_mode
  - No authentication required
"""

from __future__ import annotations

from api.main import __version__


def test_health_returns_status_version_and_mode(api_client):
    resp = api_client.client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": __version__, "auth_mode": "hybrid"}


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any credential headers."""
    resp = api_client.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_unknown_route_uses_error_envelope(api_client):
    resp = api_client.client.get("/api/v1/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "http_404"
