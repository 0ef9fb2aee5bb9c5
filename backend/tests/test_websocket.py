# tests/test_websocket.py — WebSocket handshake, health, and security tests
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient
from starlette.websockets import WebSocketDisconnect

from auth import AuthService
from main import app, VERSION


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    """Health endpoint returns OK"""
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "OK"
    assert data["version"] == VERSION
    assert data["database"] == "connected"
    assert data["realtime"]["bus"] == "local"


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient):
    """Responses include security headers"""
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.headers.get("X-Content-Type-Options") == "nosniff"
    assert resp.headers.get("X-Frame-Options") == "DENY"
    assert "X-Request-ID" in resp.headers or "x-request-id" in resp.headers


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient):
    resp = await client.get("/api/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Correlation-ID"] == "req-123"


@pytest.mark.asyncio
async def test_cors_headers(client: AsyncClient):
    """CORS preflight succeeds for the configured client origin"""
    resp = await client.options(
        "/api/boards",
        headers={
            "Origin": "http://localhost:5173",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "X-Connection-ID",
        },
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "http://localhost:5173"


@pytest.mark.asyncio
async def test_request_timing_header(client: AsyncClient):
    """Responses include timing header"""
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    headers_lower = {k.lower(): v for k, v in resp.headers.items()}
    assert "x-response-time" in headers_lower


@pytest.mark.asyncio
async def test_error_body_carries_request_id(client: AsyncClient):
    resp = await client.get("/api/auth/me", headers={"X-Request-ID": "req-456"})
    assert resp.status_code == 401
    assert resp.json()["request_id"] == "req-456"


@pytest.mark.asyncio
async def test_unknown_route_uses_error_shape(client: AsyncClient):
    resp = await client.get("/api/nothing-here")
    assert resp.status_code == 404
    assert "message" in resp.json()


@pytest.mark.asyncio
async def test_ws_stats(client: AsyncClient):
    resp = await client.get("/api/ws/stats")
    assert resp.status_code == 200
    assert resp.json() == {"total_connections": 0, "rooms": 0, "bus": "local"}


def test_ws_without_token_is_closed():
    with pytest.raises(WebSocketDisconnect) as exc:
        with TestClient(app).websocket_connect("/ws"):
            pass
    assert exc.value.code == 4001


def test_ws_with_bad_token_is_closed():
    with pytest.raises(WebSocketDisconnect) as exc:
        with TestClient(app).websocket_connect("/ws?token=not-a-jwt"):
            pass
    assert exc.value.code == 4001


def test_ws_binary_frame_is_acked_as_malformed(monkeypatch):
    async def resolve_user(token, db):
        return SimpleNamespace(id="u-ws", name="Wes", email="wes@example.com", avatar="")

    monkeypatch.setattr(AuthService, "user_from_token", resolve_user)
    with TestClient(app).websocket_connect("/ws?token=anything") as ws:
        assert ws.receive_json()["type"] == "connected"

        ws.send_bytes(b"\x00\x01")
        reply = ws.receive_json()
        assert reply["type"] == "ack"
        assert reply["ok"] is False
        assert reply["error"] == {"status": 400, "message": "Malformed message"}

        # the socket stays usable
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"
