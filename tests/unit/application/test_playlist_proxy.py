"""Tests for PlaylistProxyUseCase."""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest
import respx

from streamrelay.application.use_cases import PlaylistProxyUseCase
from streamrelay.domain.entities.media import UpstreamStatusError
from streamrelay.infrastructure.proxy import ProxyRuntime
from streamrelay.infrastructure.proxy.playlist_rewriter import rewrite_playlist

_PLAYLIST = "https://cdn.example.com/hls/index.m3u8"
_BASE = "http://proxy.local"

_MEDIA_PLAYLIST = "\n".join(
    [
        "#EXTM3U",
        '#EXT-X-KEY:METHOD=AES-128,URI="https://cdn.example.com/hls/key.bin"',
        "#EXTINF:6.0,",
        "seg001.ts",
        "#EXTINF:6.0,",
        "seg002.ts",
        "#EXT-X-ENDLIST",
    ]
)


def _uc(runtime: ProxyRuntime, spawner: object | None = None) -> PlaylistProxyUseCase:
    return PlaylistProxyUseCase(
        upstream=runtime.upstream,
        prefetcher=runtime.prefetcher,
        spawner=spawner or runtime.spawner,  # type: ignore[arg-type]
        rewrite=rewrite_playlist,
        metrics=runtime.metrics,
    )


class TestPlaylistProxyUseCase:
    @respx.mock
    @pytest.mark.asyncio()
    async def test_rewrites_and_sets_headers(self, runtime: ProxyRuntime) -> None:
        respx.get(_PLAYLIST).respond(200, text=_MEDIA_PLAYLIST)
        spawner = MagicMock()

        result = await _uc(runtime, spawner).execute(_PLAYLIST, {}, _BASE)

        assert result.status_code == 200
        assert result.headers["Content-Type"] == "application/vnd.apple.mpegurl"
        assert result.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
        assert result.headers["Access-Control-Allow-Origin"] == "*"
        text = (result.body or b"").decode()
        assert text.count(f"{_BASE}/ts-proxy?url=") == 3
        assert runtime.metrics.playlists_rewritten == 1
        # The prefetch coroutine is handed to the spawner; close it unawaited.
        spawner.spawn.assert_called_once()
        spawner.spawn.call_args.args[0].close()

    @respx.mock
    @pytest.mark.asyncio()
    async def test_prefetches_key_and_segments(self, runtime: ProxyRuntime) -> None:
        respx.get(_PLAYLIST).respond(200, text=_MEDIA_PLAYLIST)
        key = respx.get("https://cdn.example.com/hls/key.bin").respond(
            200, content=b"k" * 16
        )
        seg1 = respx.get("https://cdn.example.com/hls/seg001.ts").respond(
            200, content=b"1"
        )
        seg2 = respx.get("https://cdn.example.com/hls/seg002.ts").respond(
            200, content=b"2"
        )

        await _uc(runtime).execute(_PLAYLIST, {"Referer": "https://site/"}, _BASE)
        assert await runtime.spawner.drain(timeout=1.0)

        assert key.called and seg1.called and seg2.called
        assert seg1.calls.last.request.headers["referer"] == "https://site/"
        assert runtime.segment_cache.get("https://cdn.example.com/hls/key.bin")
        assert len(runtime.segment_cache) == 3
        assert runtime.metrics.prefetch.segment_stored == 3

    @respx.mock
    @pytest.mark.asyncio()
    async def test_prefetch_failures_do_not_fail_request(
        self, runtime: ProxyRuntime
    ) -> None:
        respx.get(_PLAYLIST).respond(200, text=_MEDIA_PLAYLIST)
        respx.get(url__startswith="https://cdn.example.com/hls/s").mock(
            side_effect=httpx.ConnectError("down")
        )
        respx.get("https://cdn.example.com/hls/key.bin").respond(500)

        result = await _uc(runtime).execute(_PLAYLIST, {}, _BASE)
        assert await runtime.spawner.drain(timeout=1.0)

        assert result.status_code == 200
        assert len(runtime.segment_cache) == 0

    @respx.mock
    @pytest.mark.asyncio()
    async def test_no_prefetch_for_master_playlist(self, runtime: ProxyRuntime) -> None:
        respx.get(_PLAYLIST).respond(
            200, text="#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=1\nlow.m3u8"
        )
        spawner = MagicMock()

        result = await _uc(runtime, spawner).execute(_PLAYLIST, {}, _BASE)

        assert f"{_BASE}/m3u8-proxy?url=" in (result.body or b"").decode()
        spawner.spawn.assert_not_called()

    @respx.mock
    @pytest.mark.asyncio()
    async def test_upstream_error(self, runtime: ProxyRuntime) -> None:
        respx.get(_PLAYLIST).respond(403)

        with pytest.raises(UpstreamStatusError) as exc_info:
            await _uc(runtime).execute(_PLAYLIST, {}, _BASE)

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "M3U8 fetch failed: 403"
        assert runtime.metrics.playlist_errors == 1
