"""Upstream HTTP access for the media proxy.

Every call merges the caller's forwarding headers over a default browser
``User-Agent`` (CDNs routinely reject library user agents) and acquires a
shared semaphore while the connection is being set up, so a burst of
playlist prefetches cannot stampede a single CDN.  The semaphore is
released as soon as response headers arrive; body streaming is not
bounded by it.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping

import httpx
import structlog

from streamrelay.infrastructure.config.defaults import DEFAULT_USER_AGENT

log = structlog.get_logger(__name__)

STREAM_CHUNK_SIZE = 65536


def merge_headers(
    forward: Mapping[str, str] | None,
    *,
    user_agent: str = DEFAULT_USER_AGENT,
    range_header: str | None = None,
) -> dict[str, str]:
    """Build outgoing headers: default UA < forwarded headers < Range.

    Any ``Range`` key in *forward* is dropped; only *range_header* decides
    what range goes upstream.
    """
    headers: dict[str, str] = {"User-Agent": user_agent}
    for key, value in (forward or {}).items():
        if key.lower() == "range":
            continue
        if key.lower() == "user-agent":
            headers["User-Agent"] = value
            continue
        headers[key] = value
    if range_header:
        headers["Range"] = range_header
    return headers


class UpstreamClient:
    """Thin wrapper around a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        max_concurrent: int = 50,
    ) -> None:
        self._client = http_client
        self._user_agent = user_agent
        self._semaphore = asyncio.Semaphore(max_concurrent)

    def headers_for(
        self, forward: Mapping[str, str] | None, range_header: str | None = None
    ) -> dict[str, str]:
        return merge_headers(
            forward, user_agent=self._user_agent, range_header=range_header
        )

    async def head(
        self, url: str, forward: Mapping[str, str] | None = None
    ) -> httpx.Response:
        """Issue a HEAD request. Raises ``httpx.HTTPError`` on transport errors."""
        async with self._semaphore:
            return await self._client.head(url, headers=self.headers_for(forward))

    async def fetch(
        self,
        url: str,
        forward: Mapping[str, str] | None = None,
        *,
        range_header: str | None = None,
    ) -> httpx.Response:
        """GET and read the full body (playlists, keys, probes, tail windows)."""
        async with self._semaphore:
            return await self._client.get(
                url, headers=self.headers_for(forward, range_header)
            )

    async def open_stream(
        self,
        url: str,
        forward: Mapping[str, str] | None = None,
        *,
        range_header: str | None = None,
    ) -> httpx.Response:
        """GET with a streamed body. The caller owns ``aclose()``.

        ``Accept-Encoding: identity`` keeps upstream ``Content-Length`` and
        ``Content-Range`` valid for the bytes actually relayed.
        """
        headers = self.headers_for(forward, range_header)
        headers.setdefault("Accept-Encoding", "identity")
        async with self._semaphore:
            return await self._client.send(
                self._client.build_request("GET", url, headers=headers),
                stream=True,
            )

    def iter_body(self, resp: httpx.Response) -> AsyncIterator[bytes]:
        return iter_body(resp)


async def iter_body(resp: httpx.Response) -> AsyncIterator[bytes]:
    """Yield a streamed response body and close it when done or abandoned."""
    try:
        async for chunk in resp.aiter_raw(chunk_size=STREAM_CHUNK_SIZE):
            yield chunk
    finally:
        await resp.aclose()
