"""Tests for the agentmem HTTP server (health endpoints + Streamable HTTP transport)."""

import stat
from unittest.mock import MagicMock, patch

import pytest
from starlette.testclient import TestClient

from agentmem.server.http_server import api_key_path, create_http_app, get_or_create_api_key


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_server():
    """Create a mock MCP Server object for testing."""
    server = MagicMock()
    server.name = "agentmem"
    return server


@pytest.fixture
def app(mock_server):
    """Create an HTTP app with auth disabled."""
    return create_http_app(mock_server, api_key=None)


@pytest.fixture
def app_with_auth(mock_server):
    """Create an HTTP app with auth enabled."""
    return create_http_app(mock_server, api_key="test-secret-key")


# ============================================================================
# App creation
# ============================================================================

def test_create_http_app(mock_server):
    app = create_http_app(mock_server)
    route_paths = {r.path for r in app.routes}
    assert {"/mcp", "/health", "/memory/health"} <= route_paths


# ============================================================================
# Liveness
# ============================================================================

def test_health_endpoint(app):
    from agentmem import __version__

    with TestClient(app) as client:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "server": "agentmem", "version": __version__}


def test_health_endpoint_needs_no_key(app_with_auth):
    with TestClient(app_with_auth) as client:
        assert client.get("/health").status_code == 200


# ============================================================================
# Memory health report
# ============================================================================

@pytest.fixture
def _fresh_bridge(_reset_bridge):
    yield


def test_memory_health_requires_auth(app_with_auth, _fresh_bridge):
    with TestClient(app_with_auth) as client:
        resp = client.get("/memory/health")
        assert resp.status_code == 401
        assert resp.json()["error"] == "Unauthorized"


def test_memory_health_report(app_with_auth, _fresh_bridge):
    from agentmem.bridge import store

    store("life-admin", "schedule", "Dentist Thursday 3pm")
    with TestClient(app_with_auth) as client:
        resp = client.get("/memory/health", headers={"X-API-Key": "test-secret-key"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["overview"]["active"] == 1
        assert data["per_agent"][0]["agent_id"] == "life-admin"
        assert isinstance(data["warnings"], list)


def test_memory_health_failure_is_500(app):
    with patch("agentmem.bridge.health", side_effect=RuntimeError("disk gone")):
        with TestClient(app) as client:
            resp = client.get("/memory/health")
            assert resp.status_code == 500
            assert resp.json()["error"] == "Health report failed"


# ============================================================================
# MCP transport auth
# ============================================================================

def test_mcp_endpoint_requires_auth(app_with_auth):
    with TestClient(app_with_auth) as client:
        resp = client.post("/mcp/", json={"jsonrpc": "2.0", "method": "tools/list", "id": 1})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Unauthorized"


def test_mcp_endpoint_wrong_key(app_with_auth):
    with TestClient(app_with_auth) as client:
        resp = client.post(
            "/mcp/",
            json={"jsonrpc": "2.0", "method": "tools/list", "id": 1},
            headers={"X-API-Key": "wrong-key"},
        )
        assert resp.status_code == 401


def test_mcp_endpoint_auth_via_query_param(app_with_auth):
    with TestClient(app_with_auth, raise_server_exceptions=False) as client:
        resp = client.post(
            "/mcp/?api_key=test-secret-key",
            json={"jsonrpc": "2.0", "method": "tools/list", "id": 1},
        )
        # The mock server can't speak MCP, so anything but 401 means auth passed
        assert resp.status_code != 401


def test_no_auth_mode(app):
    with TestClient(app, raise_server_exceptions=False) as client:
        resp = client.post("/mcp/", json={"jsonrpc": "2.0", "method": "tools/list", "id": 1})
        assert resp.status_code != 401


# ============================================================================
# API key management
# ============================================================================

def test_api_key_generation(tmp_agentmem_dir):
    key = get_or_create_api_key()
    path = api_key_path()
    assert path == tmp_agentmem_dir / "api_key"
    assert len(key) > 20
    mode = path.stat().st_mode
    assert mode & stat.S_IRWXG == 0
    assert mode & stat.S_IRWXO == 0


def test_api_key_persistence(tmp_agentmem_dir):
    assert get_or_create_api_key() == get_or_create_api_key()


def test_api_key_reads_existing(tmp_agentmem_dir):
    (tmp_agentmem_dir / "api_key").write_text("my-custom-key\n")
    assert get_or_create_api_key() == "my-custom-key"
