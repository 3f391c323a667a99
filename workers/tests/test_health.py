"""Tests for the health and metrics routes."""

import json

from oli_workers import health


def _split(raw: bytes) -> tuple[str, dict]:
    head, _, body = raw.decode().partition("\r\n\r\n")
    return head.split("\r\n")[0], json.loads(body)


async def test_metrics_route():
    status, body = _split(await health.route("GET", "/metrics", "postgresql://unused", 1))
    assert status == "HTTP/1.1 200 OK"
    assert "recompute_runs" in body


async def test_health_ok(monkeypatch):
    async def _ok(db_url):
        return "ok"

    monkeypatch.setattr(health, "check_db", _ok)
    status, body = _split(await health.route("GET", "/health", "postgresql://unused", 2))
    assert status == "HTTP/1.1 200 OK"
    assert body["status"] == "ok"
    assert body["pipeline_version"] == 2


async def test_health_degraded(monkeypatch):
    async def _error(db_url):
        return "error"

    monkeypatch.setattr(health, "check_db", _error)
    status, body = _split(await health.route("GET", "/health", "postgresql://unused", 1))
    assert status == "HTTP/1.1 503 Service Unavailable"
    assert body["db"] == "error"


async def test_unknown_path():
    status, _ = _split(await health.route("GET", "/nope", "postgresql://unused", 1))
    assert status == "HTTP/1.1 404 Not Found"


async def test_method_not_allowed():
    status, _ = _split(await health.route("POST", "/health", "postgresql://unused", 1))
    assert status == "HTTP/1.1 405 Method Not Allowed"
