from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Mapping
from typing import Any, Protocol

import structlog

from streamrelay.application.use_cases.media_response import MediaResponse
from streamrelay.domain.entities.media import UpstreamStatusError

log = structlog.get_logger(__name__)

DEFAULT_SUBTITLE_TYPE = "text/vtt"


class _SubtitleUpstream(Protocol):
    def open_stream(
        self,
        url: str,
        forward: Mapping[str, str] | None = None,
        *,
        range_header: str | None = None,
    ) -> Awaitable[Any]: ...

    def iter_body(self, resp: Any) -> AsyncIterator[bytes]: ...


class _SubtitleMetrics(Protocol):
    subtitles_served: int


class SubtitleProxyUseCase:
    """Pass a subtitle file through with CORS and a sane content type."""

    def __init__(
        self, *, upstream: _SubtitleUpstream, metrics: _SubtitleMetrics
    ) -> None:
        self._upstream = upstream
        self._metrics = metrics

    async def execute(self, url: str, forward: Mapping[str, str]) -> MediaResponse:
        resp = await self._upstream.open_stream(url, forward)
        if not 200 <= resp.status_code < 300:
            await resp.aclose()
            log.warning("subtitle_fetch_failed", url=url, status_code=resp.status_code)
            raise UpstreamStatusError(
                resp.status_code, f"subtitle fetch failed: {resp.status_code}"
            )

        self._metrics.subtitles_served += 1
        headers = {
            "Content-Type": resp.headers.get("content-type") or DEFAULT_SUBTITLE_TYPE,
            "Cache-Control": "public, max-age=3600",
            "Access-Control-Allow-Origin": "*",
        }
        # Bodies are relayed raw, so length and encoding stay consistent.
        for name in ("Content-Length", "Content-Encoding"):
            value = resp.headers.get(name.lower())
            if value:
                headers[name] = value
        return MediaResponse(
            status_code=200,
            headers=headers,
            stream=self._upstream.iter_body(resp),
        )
