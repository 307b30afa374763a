"""HLS playlist rewriting.

When a CDN requires ``Referer`` (or other headers) on **all** HLS
sub-requests (variant playlists, keys, ``.ts`` segments), a player that
only sends them for the first playlist fetch gets 403s halfway through.
Rewriting every URI in the playlist to point back at the proxy, with
the original URL and the forwarding headers encoded in the query,
keeps every follow-up request on the proxy, which then fetches
server-side with the right headers.

Relative URIs are resolved against the playlist URL first, so the
rewritten playlist works no matter where the proxy itself is mounted.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from urllib.parse import urljoin, urlsplit

from streamrelay.domain.entities.media import RewrittenPlaylist
from streamrelay.infrastructure.proxy.routing import (
    PLAYLIST_ENDPOINT,
    SEGMENT_ENDPOINT,
    build_proxy_url,
    is_playlist_url,
)

_KEY_TAG = "#EXT-X-KEY:"
_URI_ATTR_TAGS = ("#EXT-X-MEDIA:", "#EXT-X-I-FRAME-STREAM-INF:")

_ABSOLUTE_URL_RE = re.compile(r'https?://[^"\s]+')
_URI_ATTR_RE = re.compile(r'URI="([^"]+)"')


def resolve_uri(uri: str, playlist_url: str) -> str | None:
    """Resolve *uri* against *playlist_url*; None if the result is not http(s)."""
    try:
        resolved = urljoin(playlist_url, uri.strip())
        parts = urlsplit(resolved)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return resolved


def rewrite_playlist(
    content: str,
    playlist_url: str,
    proxy_base: str,
    headers: Mapping[str, str] | None = None,
) -> RewrittenPlaylist:
    """Route every key, rendition and segment URI in *content* via the proxy.

    - ``#EXT-X-KEY``: the absolute key URL becomes a segment-endpoint URL
      and is queued for prefetch (keys are tiny and block playback).
    - ``#EXT-X-MEDIA`` / ``#EXT-X-I-FRAME-STREAM-INF``: the ``URI="..."``
      attribute becomes a playlist-endpoint URL.
    - URI lines: ``.m3u8`` targets become playlist-endpoint URLs,
      everything else a segment-endpoint URL queued for prefetch.

    Lines that cannot be resolved are kept verbatim so the playlist stays
    structurally valid.
    """
    out: list[str] = []
    segment_urls: list[str] = []
    key_urls: list[str] = []

    for line in content.split("\n"):
        if line.startswith("#"):
            if line.startswith(_KEY_TAG):
                line = _rewrite_key_line(line, proxy_base, headers, key_urls)
            elif line.startswith(_URI_ATTR_TAGS):
                line = _rewrite_uri_attribute(line, playlist_url, proxy_base, headers)
            out.append(line)
            continue

        if not line.strip():
            out.append(line)
            continue

        resolved = resolve_uri(line, playlist_url)
        if resolved is None:
            out.append(line)
            continue

        # Keep CRLF playlists consistent.
        eol = "\r" if line.endswith("\r") else ""
        if is_playlist_url(resolved):
            out.append(
                build_proxy_url(proxy_base, PLAYLIST_ENDPOINT, resolved, headers) + eol
            )
        else:
            segment_urls.append(resolved)
            out.append(
                build_proxy_url(proxy_base, SEGMENT_ENDPOINT, resolved, headers) + eol
            )

    return RewrittenPlaylist(
        text="\n".join(out),
        segment_urls=segment_urls,
        key_urls=key_urls,
    )


def _rewrite_key_line(
    line: str,
    proxy_base: str,
    headers: Mapping[str, str] | None,
    key_urls: list[str],
) -> str:
    m = _ABSOLUTE_URL_RE.search(line)
    if not m:
        return line
    key_url = m.group(0)
    key_urls.append(key_url)
    proxied = build_proxy_url(proxy_base, SEGMENT_ENDPOINT, key_url, headers)
    return line.replace(key_url, proxied, 1)


def _rewrite_uri_attribute(
    line: str,
    playlist_url: str,
    proxy_base: str,
    headers: Mapping[str, str] | None,
) -> str:
    m = _URI_ATTR_RE.search(line)
    if not m:
        return line
    resolved = resolve_uri(m.group(1), playlist_url)
    if resolved is None:
        return line
    proxied = build_proxy_url(proxy_base, PLAYLIST_ENDPOINT, resolved, headers)
    return line[: m.start(1)] + proxied + line[m.end(1) :]
