"""Endpoint tests for /m3u8-proxy, /ts-proxy and /sub-proxy."""

from __future__ import annotations

from collections.abc import Iterator
from urllib.parse import quote

import httpx
import pytest
import respx
from fastapi.testclient import TestClient

from streamrelay.infrastructure.config.schema import AppConfig, ProxyConfig
from streamrelay.interfaces.api.proxy.router import _parse_kb
from streamrelay.interfaces.app import create_app

_MEDIA = "https://cdn.example.com/movie.mp4"
_PLAYLIST = "https://cdn.example.com/hls/index.m3u8"
_SUB = "https://cdn.example.com/subs/en.vtt"
_TEN_MIB = 10 * 1024 * 1024
_MALFORMED = "http://[::1/x.ts"


def _q(url: str) -> str:
    return quote(url, safe="")


@pytest.fixture()
def config() -> AppConfig:
    return AppConfig(environment="test")


@pytest.fixture()
def client(config: AppConfig) -> Iterator[TestClient]:
    with TestClient(create_app(config)) as c:
        yield c


@pytest.fixture()
def upstream_mock() -> Iterator[respx.MockRouter]:
    with respx.mock(assert_all_called=False) as router:
        yield router


class TestParseKb:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            (None, 512),
            ("", 512),
            ("abc", 512),
            ("10", 512),
            ("63", 512),
            ("64", 64),
            ("1024kb", 1024),
            ("99999", 2048),
        ],
    )
    def test_parse(self, raw: str | None, expected: int) -> None:
        assert _parse_kb(raw, default=512, maximum=2048) == expected


class TestValidation:
    @pytest.mark.parametrize("path", ["/m3u8-proxy", "/ts-proxy", "/sub-proxy"])
    def test_missing_url(self, client: TestClient, path: str) -> None:
        resp = client.get(path)
        assert resp.status_code == 400
        assert resp.json() == {"error": "URL parameter required"}
        assert resp.headers["access-control-allow-origin"] == "*"


class TestMalformedUrl:
    @pytest.mark.parametrize("path", ["/m3u8-proxy", "/ts-proxy", "/sub-proxy"])
    def test_json_error_with_cors(self, client: TestClient, path: str) -> None:
        resp = client.get(f"{path}?url={_q(_MALFORMED)}")

        assert resp.status_code == 500
        assert resp.headers["content-type"] == "application/json"
        assert resp.headers["access-control-allow-origin"] == "*"
        assert resp.json()["error"]


class TestPlaylistEndpoint:
    def test_rewrites_with_request_host(
        self, client: TestClient, upstream_mock: respx.MockRouter
    ) -> None:
        upstream_mock.get(_PLAYLIST).respond(200, text="#EXTM3U\nlow/index.m3u8")

        resp = client.get(f"/m3u8-proxy?url={_q(_PLAYLIST)}")

        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/vnd.apple.mpegurl"
        assert resp.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert "http://testserver/m3u8-proxy?url=" in resp.text

    def test_forwarded_proto(
        self, client: TestClient, upstream_mock: respx.MockRouter
    ) -> None:
        upstream_mock.get(_PLAYLIST).respond(200, text="#EXTM3U\nlow/index.m3u8")
        resp = client.get(
            f"/m3u8-proxy?url={_q(_PLAYLIST)}",
            headers={"X-Forwarded-Proto": "https"},
        )
        assert "https://testserver/m3u8-proxy?url=" in resp.text

    def test_forwards_headers_param(
        self, client: TestClient, upstream_mock: respx.MockRouter
    ) -> None:
        route = upstream_mock.get(_PLAYLIST).respond(200, text="#EXTM3U")
        headers = _q('{"Referer":"https://site/"}')
        client.get(f"/m3u8-proxy?url={_q(_PLAYLIST)}&headers={headers}")
        assert route.calls.last.request.headers["referer"] == "https://site/"

    def test_malformed_headers_param_ignored(
        self, client: TestClient, upstream_mock: respx.MockRouter
    ) -> None:
        upstream_mock.get(_PLAYLIST).respond(200, text="#EXTM3U")
        resp = client.get(f"/m3u8-proxy?url={_q(_PLAYLIST)}&headers=%7Bnope")
        assert resp.status_code == 200

    def test_upstream_status_forwarded(
        self, client: TestClient, upstream_mock: respx.MockRouter
    ) -> None:
        upstream_mock.get(_PLAYLIST).respond(403)
        resp = client.get(f"/m3u8-proxy?url={_q(_PLAYLIST)}")
        assert resp.status_code == 403
        assert resp.json() == {"error": "M3U8 fetch failed: 403"}

    def test_transport_error_is_500(
        self, client: TestClient, upstream_mock: respx.MockRouter
    ) -> None:
        upstream_mock.get(_PLAYLIST).mock(side_effect=httpx.ConnectError("refused"))
        resp = client.get(f"/m3u8-proxy?url={_q(_PLAYLIST)}")
        assert resp.status_code == 500
        assert "error" in resp.json()


class TestPublicBaseUrl:
    def test_configured_base_used(self, upstream_mock: respx.MockRouter) -> None:
        config = AppConfig(
            environment="test",
            proxy=ProxyConfig(public_base_url="https://relay.example.org/"),
        )
        upstream_mock.get(_PLAYLIST).respond(200, text="#EXTM3U\nseg.ts")
        with TestClient(create_app(config)) as client:
            resp = client.get(f"/m3u8-proxy?url={_q(_PLAYLIST)}")
        assert "https://relay.example.org/ts-proxy?url=" in resp.text


class TestSegmentEndpoint:
    def test_force_200(
        self, client: TestClient, upstream_mock: respx.MockRouter
    ) -> None:
        route = upstream_mock.get(_MEDIA).respond(
            206,
            headers={"Content-Range": "bytes 0-99/1000"},
            content=b"x" * 100,
        )

        resp = client.get(
            f"/ts-proxy?url={_q(_MEDIA)}&force200=1",
            headers={"Range": "bytes=0-99"},
        )

        assert resp.status_code == 200
        assert "content-range" not in resp.headers
        assert resp.headers["accept-ranges"] == "bytes"
        assert resp.headers["access-control-allow-origin"] == "*"
        assert "range" not in route.calls.last.request.headers

    def test_range_passthrough(
        self, client: TestClient, upstream_mock: respx.MockRouter
    ) -> None:
        upstream_mock.get(_MEDIA).respond(
            206,
            headers={
                "Content-Range": "bytes 10-19/1000",
                "Content-Type": "application/octet-stream",
            },
            content=b"0123456789",
        )

        resp = client.get(f"/ts-proxy?url={_q(_MEDIA)}", headers={"Range": "bytes=10-19"})

        assert resp.status_code == 206
        assert resp.headers["content-range"] == "bytes 10-19/1000"
        assert resp.headers["content-type"] == "video/mp4"
        assert resp.content == b"0123456789"

    def test_synthesized_partial_response(
        self, client: TestClient, upstream_mock: respx.MockRouter
    ) -> None:
        upstream_mock.head(_MEDIA).respond(
            200, headers={"Content-Length": str(_TEN_MIB)}
        )

        def handler(request: httpx.Request) -> httpx.Response:
            rng = request.headers.get("range")
            if rng == "bytes=0-524287":
                return httpx.Response(
                    206,
                    headers={"Content-Range": f"bytes 0-524287/{_TEN_MIB}"},
                    content=b"s" * 524288,
                )
            # Background tail window request.
            start = _TEN_MIB - 256 * 1024
            return httpx.Response(
                206,
                headers={"Content-Range": f"bytes {start}-{_TEN_MIB - 1}/{_TEN_MIB}"},
                content=b"t" * (256 * 1024),
            )

        upstream_mock.get(_MEDIA).mock(side_effect=handler)

        resp = client.get(f"/ts-proxy?url={_q(_MEDIA)}&progressiveOpen=0")

        assert resp.status_code == 206
        assert resp.headers["content-range"] == f"bytes 0-524287/{_TEN_MIB}"
        assert resp.headers["content-length"] == "524288"
        assert len(resp.content) == 524288

    def test_upstream_status_forwarded(
        self, client: TestClient, upstream_mock: respx.MockRouter
    ) -> None:
        upstream_mock.get(_MEDIA).respond(404)
        resp = client.get(f"/ts-proxy?url={_q(_MEDIA)}", headers={"Range": "bytes=0-1"})
        assert resp.status_code == 404
        assert resp.json() == {"error": "TS fetch failed: 404"}


class TestSubtitleEndpoint:
    def test_defaults(self, client: TestClient, upstream_mock: respx.MockRouter) -> None:
        upstream_mock.get(_SUB).respond(200, content=b"WEBVTT\n\n00:00.000 --> 00:01.000\nHi")

        resp = client.get(f"/sub-proxy?url={_q(_SUB)}")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/vtt")
        assert resp.headers["cache-control"] == "public, max-age=3600"
        assert resp.headers["access-control-allow-origin"] == "*"
        assert resp.content.startswith(b"WEBVTT")

    def test_upstream_error(
        self, client: TestClient, upstream_mock: respx.MockRouter
    ) -> None:
        upstream_mock.get(_SUB).respond(404)
        resp = client.get(f"/sub-proxy?url={_q(_SUB)}")
        assert resp.status_code == 404
        assert resp.json() == {"error": "subtitle fetch failed: 404"}


class TestProxyDisabled:
    def test_routes_not_mounted(self) -> None:
        config = AppConfig(environment="test", proxy=ProxyConfig(enabled=False))
        with TestClient(create_app(config)) as client:
            assert client.get(f"/ts-proxy?url={_q(_MEDIA)}").status_code == 404
            assert client.get("/api/v1/healthz").json()["status"] == "ok"
