"""Tests for /api/v1/healthz and /api/v1/stats/metrics."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from streamrelay.infrastructure.config.schema import AppConfig
from streamrelay.interfaces.app import create_app


@pytest.fixture()
def client() -> Iterator[TestClient]:
    with TestClient(create_app(AppConfig(environment="test"))) as c:
        yield c


class TestHealthz:
    def test_ok(self, client: TestClient) -> None:
        resp = client.get("/api/v1/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestMetricsEndpoint:
    def test_returns_200(self, client: TestClient) -> None:
        assert client.get("/api/v1/stats/metrics").status_code == 200

    def test_contains_counters(self, client: TestClient) -> None:
        data = client.get("/api/v1/stats/metrics").json()
        assert "uptime_seconds" in data
        assert data["segments"]["requests"] == 0
        assert data["prefetch"]["segment_stored"] == 0
        assert data["playlists"] == {"rewritten": 0, "errors": 0}

    def test_contains_runtime_sizes(self, client: TestClient) -> None:
        runtime = client.app.state.proxy_runtime  # type: ignore[attr-defined]
        runtime.segment_cache.put("https://cdn/a.ts", b"a", {})
        data = client.get("/api/v1/stats/metrics").json()
        assert data["runtime"]["segment_cache"]["entries"] == 1
        assert data["runtime"]["segment_cache"]["enabled"] is True
        assert data["runtime"]["tail_prefetch"]["entries"] == 0

    def test_segment_request_reflected(self, client: TestClient) -> None:
        client.app.state.metrics.segments.requests += 1  # type: ignore[attr-defined]
        data = client.get("/api/v1/stats/metrics").json()
        assert data["segments"]["requests"] == 1
