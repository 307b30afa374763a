"""Proxy URL construction and the aggregation-API facing stream transform.

Proxy URLs carry the original absolute URL and the forwarding headers
as query parameters::

    <base>/ts-proxy?url=<encoded url>&headers=<encoded JSON>

``extract_original_url`` reverses that (and understands the URL shapes
of a few other proxies), so streams that were already proxied once can
be re-processed without double wrapping.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from typing import Any, Literal
from urllib.parse import parse_qs, quote, unquote, urlsplit

PLAYLIST_ENDPOINT = "m3u8-proxy"
SEGMENT_ENDPOINT = "ts-proxy"
SUBTITLE_ENDPOINT = "sub-proxy"

Endpoint = Literal["m3u8-proxy", "ts-proxy", "sub-proxy"]

# Characters encodeURIComponent leaves alone; players and other proxies
# in the ecosystem produce URLs in that form.
_URI_COMPONENT_SAFE = "-_.!~*'()"

_PLAYLIST_EXT_RE = re.compile(r"\.m3u8(\?|$)", re.IGNORECASE)
_FILE_EXT_RE = re.compile(r"\.(mp4|mkv)(\?|$)", re.IGNORECASE)

_OWN_ENDPOINT_PATHS = tuple(
    f"/{name}" for name in (PLAYLIST_ENDPOINT, SEGMENT_ENDPOINT, SUBTITLE_ENDPOINT)
)
_FOREIGN_PROXY_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"/api/[^/]+/proxy\?url=(.+)$"),
    re.compile(r"/proxy\?.*url=([^&]+)"),
    re.compile(r"/stream/proxy/(.+)$"),
    re.compile(r"/p/(.+)$"),
)

# Hosts that serve plain files without a telling extension.
_DIRECT_FILE_HOST_MARKERS: tuple[str, ...] = ("pixeldrain.",)
_DIRECT_FILE_HOSTS: frozenset[str] = frozenset(
    {"video-downloads.googleusercontent.com"}
)


def encode_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def encode_headers(headers: Mapping[str, str] | None) -> str:
    return encode_component(
        json.dumps(dict(headers or {}), separators=(",", ":"), ensure_ascii=False)
    )


def build_proxy_url(
    base_url: str,
    endpoint: Endpoint,
    target_url: str,
    headers: Mapping[str, str] | None = None,
    *,
    always_include_headers: bool = True,
) -> str:
    """Route *target_url* through *endpoint* of the proxy at *base_url*."""
    url = f"{base_url.rstrip('/')}/{endpoint}?url={encode_component(target_url)}"
    if headers or always_include_headers:
        url += f"&headers={encode_headers(headers)}"
    return url


def is_playlist_url(url: str) -> bool:
    return _PLAYLIST_EXT_RE.search(url) is not None


def parse_forward_headers(raw: str | None) -> dict[str, str]:
    """Decode the ``headers`` query parameter.

    Malformed JSON or a non-object payload means "no headers"; values
    are coerced to strings.
    """
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(k): str(v) for k, v in parsed.items() if v is not None}


def extract_original_url(proxy_url: str) -> str:
    """Return the upstream URL wrapped inside a proxy URL.

    Unrecognized or non-absolute input is returned unchanged.
    """
    try:
        parsed = urlsplit(proxy_url)
    except ValueError:
        return proxy_url
    if not parsed.scheme or not parsed.netloc:
        return proxy_url

    query = parse_qs(parsed.query)
    if parsed.path.endswith(_OWN_ENDPOINT_PATHS) and "url" in query:
        return query["url"][0]

    if "/proxy/" in parsed.path:
        m = re.search(r"/proxy/(.+)$", parsed.path)
        if m:
            decoded = unquote(m.group(1))
            while "%2F" in decoded:
                again = unquote(decoded)
                if again == decoded:
                    break
                decoded = again
            return decoded

    if "url" in query:
        return query["url"][0]

    for pattern in _FOREIGN_PROXY_PATTERNS:
        m = pattern.search(proxy_url)
        if m:
            return unquote(m.group(1))
    return proxy_url


def classify_stream_url(url: str) -> Literal["segment", "playlist"]:
    """Decide which endpoint should serve *url*.

    Direct files (``.mp4``/``.mkv`` and known file hosts) go to the range
    aware segment endpoint; everything else is treated as HLS.
    """
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        host = ""
    if host in _DIRECT_FILE_HOSTS or any(m in host for m in _DIRECT_FILE_HOST_MARKERS):
        return "segment"
    if _FILE_EXT_RE.search(url):
        return "segment"
    return "playlist"


def process_streams_for_proxy(
    streams: Iterable[Any], server_url: str
) -> list[Any]:
    """Rewrite stream descriptors so players fetch them through this proxy.

    Each mapping with a string ``url`` gets its ``url`` replaced by a
    proxy URL and loses its ``headers`` (they travel inside the proxy
    URL instead, so upstream auth requirements never reach the client).
    Anything else passes through unchanged.
    """
    out: list[Any] = []
    for stream in streams:
        if not isinstance(stream, Mapping) or not isinstance(stream.get("url"), str):
            out.append(stream)
            continue
        original = extract_original_url(stream["url"])
        headers = stream.get("headers") or {}
        endpoint: Endpoint = (
            SEGMENT_ENDPOINT
            if classify_stream_url(original) == "segment"
            else PLAYLIST_ENDPOINT
        )
        rewritten = {k: v for k, v in stream.items() if k != "headers"}
        rewritten["url"] = build_proxy_url(
            server_url,
            endpoint,
            original,
            headers,
            always_include_headers=False,
        )
        out.append(rewritten)
    return out
