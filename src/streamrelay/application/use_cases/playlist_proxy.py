"""Playlist proxy use case.

Fetch an HLS playlist -> rewrite every URI to route via the proxy
-> warm the segment cache with the keys and segments it references.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Coroutine, Iterable, Mapping
from typing import Any, Protocol

import structlog

from streamrelay.application.use_cases.media_response import MediaResponse
from streamrelay.domain.entities.media import RewrittenPlaylist, UpstreamStatusError

log = structlog.get_logger(__name__)

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"

# ---------------------------------------------------------------------------
# Protocols: what this use case needs from its collaborators.
# ---------------------------------------------------------------------------


class _TextResponse(Protocol):
    status_code: int

    @property
    def text(self) -> str: ...


class _PlaylistUpstream(Protocol):
    def fetch(
        self, url: str, forward: Mapping[str, str] | None = None
    ) -> Awaitable[_TextResponse]: ...


class _Prefetcher(Protocol):
    def prefetch_many(
        self, urls: Iterable[str], forward: Mapping[str, str] | None
    ) -> Coroutine[Any, Any, int]: ...


class _Spawner(Protocol):
    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> object: ...


class _PlaylistMetrics(Protocol):
    playlists_rewritten: int
    playlist_errors: int


_RewriteFn = Callable[..., RewrittenPlaylist]


class PlaylistProxyUseCase:
    def __init__(
        self,
        *,
        upstream: _PlaylistUpstream,
        prefetcher: _Prefetcher,
        spawner: _Spawner,
        rewrite: _RewriteFn,
        metrics: _PlaylistMetrics,
    ) -> None:
        self._upstream = upstream
        self._prefetcher = prefetcher
        self._spawner = spawner
        self._rewrite = rewrite
        self._metrics = metrics

    async def execute(
        self,
        url: str,
        forward: Mapping[str, str],
        proxy_base: str,
    ) -> MediaResponse:
        """Return the rewritten playlist.

        Raises:
            UpstreamStatusError: upstream answered with a non-2xx status.
            httpx.HTTPError: transport failure (propagated to the caller).
        """
        resp = await self._upstream.fetch(url, forward)
        if not 200 <= resp.status_code < 300:
            self._metrics.playlist_errors += 1
            log.warning("playlist_fetch_failed", url=url, status_code=resp.status_code)
            raise UpstreamStatusError(
                resp.status_code, f"M3U8 fetch failed: {resp.status_code}"
            )

        rewritten = self._rewrite(resp.text, url, proxy_base, forward)
        self._metrics.playlists_rewritten += 1

        prefetch_urls = rewritten.prefetch_urls
        if prefetch_urls:
            self._spawner.spawn(
                self._prefetcher.prefetch_many(prefetch_urls, forward),
                name=f"prefetch:{url}",
            )

        log.debug(
            "playlist_rewritten",
            url=url,
            segments=len(rewritten.segment_urls),
            keys=len(rewritten.key_urls),
        )
        return MediaResponse(
            status_code=200,
            headers={
                "Content-Type": PLAYLIST_CONTENT_TYPE,
                "Cache-Control": "no-cache, no-store, must-revalidate",
                "Access-Control-Allow-Origin": "*",
            },
            body=rewritten.text.encode("utf-8"),
        )
