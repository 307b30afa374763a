"""Range negotiation: decide which byte range to request upstream.

Players and upstream hosts disagree about ranges in many small ways:
some players re-issue ``bytes=0-`` repeatedly to probe the size, some
hosts answer an open range with the whole multi-GB file, and some
ignore ``Range`` entirely.  :class:`RangeNegotiator` turns the client's
``Range`` header (plus what it remembers about the URL) into the range
that is actually sent upstream:

1. ``force200``: the upstream call carries no ``Range`` (handled by
   the caller via :attr:`RangePlan.effective_range` being ignored).
2. ``bytes=0-``: progressive growth (default) or a one-shot clamp.
3. No range, unknown size: HEAD, then a ``bytes=0-0`` probe.
4. No range, known size: optional synthesized initial chunk.
5. Anything else: passed through verbatim.

Response shaping helpers (content type inference, ``Content-Length``
derivation) live here as well because they depend on the same header
parsing.
"""

from __future__ import annotations

import re
import time
from collections import OrderedDict
from collections.abc import Callable, Mapping

import httpx
import structlog

from streamrelay.domain.entities.media import (
    ByteRange,
    ContentRange,
    RangePlan,
    ResourceSize,
    SegmentOptions,
)
from streamrelay.infrastructure.proxy.upstream import UpstreamClient

log = structlog.get_logger(__name__)

PROGRESSIVE_MAX_END = 256 * 1024 * 1024 - 1

_RANGE_RE = re.compile(r"^bytes=(\d+)-(\d*)\s*$", re.IGNORECASE)
_CONTENT_RANGE_RE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)", re.IGNORECASE)
_CONTENT_RANGE_TOTAL_RE = re.compile(r"/(\d+)$")

_GENERIC_TYPE_RE = re.compile(
    r"application/octet-stream|application/(x-)?zip", re.IGNORECASE
)
_EXTENSION_TYPES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\.mkv(\?|$)", re.IGNORECASE), "video/x-matroska"),
    (re.compile(r"\.mp4(\?|$)", re.IGNORECASE), "video/mp4"),
    (re.compile(r"\.m3u8(\?|$)", re.IGNORECASE), "application/vnd.apple.mpegurl"),
    (re.compile(r"\.ts(\?|$)", re.IGNORECASE), "video/mp2t"),
)


# ---------------------------------------------------------------------------
# Header parsing
# ---------------------------------------------------------------------------


def parse_range_header(value: str | None) -> ByteRange | None:
    """Parse a single ``bytes=a-b`` / ``bytes=a-`` range.

    Multi-range and suffix (``bytes=-N``) forms return None; they are
    forwarded upstream untouched.
    """
    if not value:
        return None
    m = _RANGE_RE.match(value.strip())
    if not m:
        return None
    start = int(m.group(1))
    end = int(m.group(2)) if m.group(2) else None
    if end is not None and end < start:
        return None
    return ByteRange(start=start, end=end)


def is_open_full_range(value: str | None) -> bool:
    """True for ``bytes=0-`` (the "give me everything" request)."""
    parsed = parse_range_header(value)
    return parsed is not None and parsed.is_open and parsed.start == 0


def parse_open_suffix(value: str | None) -> int | None:
    """Start offset of an open range ``bytes=N-``, else None."""
    parsed = parse_range_header(value)
    if parsed is None or not parsed.is_open:
        return None
    return parsed.start


def parse_content_range(value: str | None) -> ContentRange | None:
    """Parse ``bytes a-b/total`` (``total`` may be ``*``)."""
    if not value:
        return None
    m = _CONTENT_RANGE_RE.search(value)
    if not m:
        return None
    total = None if m.group(3) == "*" else int(m.group(3))
    return ContentRange(start=int(m.group(1)), end=int(m.group(2)), total=total)


def parse_total_size(content_range: str | None) -> int | None:
    """Total size from the tail of a ``Content-Range`` header."""
    if not content_range:
        return None
    m = _CONTENT_RANGE_TOTAL_RE.search(content_range.strip())
    return int(m.group(1)) if m else None


def _positive_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        number = int(value.strip())
    except ValueError:
        return None
    return number if number > 0 else None


# ---------------------------------------------------------------------------
# Response shaping
# ---------------------------------------------------------------------------


def infer_content_type(upstream_type: str | None, url: str) -> str:
    """Keep a specific upstream type; otherwise guess from the URL extension."""
    if upstream_type and not _GENERIC_TYPE_RE.search(upstream_type):
        return upstream_type
    for pattern, content_type in _EXTENSION_TYPES:
        if pattern.search(url):
            return content_type
    return "application/octet-stream"


def derive_content_length(headers: Mapping[str, str]) -> str | None:
    """``Content-Length`` as sent, or the span of ``Content-Range``."""
    lower = {k.lower(): v for k, v in headers.items()}
    length = lower.get("content-length")
    if length:
        return length
    parsed = parse_content_range(lower.get("content-range"))
    if parsed is None:
        return None
    return str(parsed.length)


def build_relay_headers(
    upstream: Mapping[str, str],
    url: str,
    *,
    force_200: bool = False,
    accept_ranges: str | None = None,
) -> dict[str, str]:
    """Headers for a relayed media body.

    ``Content-Range`` is dropped under ``force_200`` because the status is
    normalized to 200.  ``Accept-Ranges`` falls back to *accept_ranges*
    (e.g. from a HEAD response) and then to ``bytes``.
    """
    lower = {k.lower(): v for k, v in upstream.items()}
    headers: dict[str, str] = {
        "Content-Type": infer_content_type(lower.get("content-type"), url),
    }
    length = derive_content_length(lower)
    if length:
        headers["Content-Length"] = length
    headers["Accept-Ranges"] = lower.get("accept-ranges") or accept_ranges or "bytes"
    content_range = lower.get("content-range")
    if content_range and not force_200:
        headers["Content-Range"] = content_range
    if lower.get("content-encoding"):
        headers["Content-Encoding"] = lower["content-encoding"]
    headers["Cache-Control"] = "public, max-age=3600"
    headers["Access-Control-Allow-Origin"] = "*"
    return headers


# ---------------------------------------------------------------------------
# Negotiation state
# ---------------------------------------------------------------------------


class RangeNegotiator:
    """Per-URL range state plus the HEAD/probe size discovery.

    Progressive state has no TTL: ``last_end`` only grows, so a stale
    entry at worst over-fetches a little.  It is bounded by
    ``max_tracked_urls`` (least recently touched URL evicted), which
    simply restarts that URL at the first chunk.

    Not thread-safe; safe for single-threaded asyncio (all state
    mutations happen between awaits).
    """

    def __init__(
        self,
        *,
        upstream: UpstreamClient,
        clamp_ttl_seconds: float = 300.0,
        progressive_max_end: int = PROGRESSIVE_MAX_END,
        max_tracked_urls: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._upstream = upstream
        self._clamp_ttl = clamp_ttl_seconds
        self._progressive_max_end = progressive_max_end
        self._max_tracked = max_tracked_urls
        self._clock = clock
        self._clamped_at: dict[str, float] = {}
        self._progressive: OrderedDict[str, int] = OrderedDict()

    # ------------------------------------------------------------------
    # State inspection (stats endpoint, tests)
    # ------------------------------------------------------------------

    @property
    def progressive_tracked(self) -> int:
        return len(self._progressive)

    @property
    def clamp_tracked(self) -> int:
        return len(self._clamped_at)

    def progressive_last_end(self, url: str) -> int | None:
        return self._progressive.get(url)

    def seed_progressive(self, url: str, last_end: int) -> None:
        """Set the progressive high-water mark for *url* explicitly."""
        self._remember_progressive(url, last_end)

    # ------------------------------------------------------------------
    # Planning (no I/O)
    # ------------------------------------------------------------------

    def plan(
        self, url: str, client_range: str | None, options: SegmentOptions
    ) -> RangePlan:
        """Compute the effective upstream range for this request."""
        if not is_open_full_range(client_range) or options.force_200:
            strategy = "passthrough" if client_range else "none"
            return RangePlan(
                client_range=client_range,
                effective_range=client_range,
                strategy=strategy,
            )

        if options.progressive_open:
            next_end = self._next_progressive_end(url, options.open_chunk_bytes)
            return RangePlan(
                client_range=client_range,
                effective_range=ByteRange(0, next_end).header_value(),
                applied_clamp=True,
                strategy="progressive",
            )

        if options.clamp_open and self._claim_clamp(url):
            return RangePlan(
                client_range=client_range,
                effective_range=ByteRange(
                    0, options.open_chunk_bytes - 1
                ).header_value(),
                applied_clamp=True,
                strategy="clamp",
            )

        return RangePlan(
            client_range=client_range,
            effective_range=client_range,
            strategy="passthrough",
        )

    def _next_progressive_end(self, url: str, increment: int) -> int:
        previous = self._progressive.get(url)
        if previous is None:
            next_end = increment - 1
        else:
            next_end = min(previous + increment, self._progressive_max_end)
            # Never shrink, even if the cap was lowered after the fact.
            next_end = max(next_end, previous)
        self._remember_progressive(url, next_end)
        log.debug(
            "progressive_open_expand",
            url=url,
            previous_end=previous,
            next_end=next_end,
            increment=increment,
        )
        return next_end

    def _remember_progressive(self, url: str, last_end: int) -> None:
        self._progressive[url] = last_end
        self._progressive.move_to_end(url)
        while len(self._progressive) > self._max_tracked:
            self._progressive.popitem(last=False)

    def _claim_clamp(self, url: str) -> bool:
        """True (and start a TTL window) if *url* was not clamped recently."""
        now = self._clock()
        last = self._clamped_at.get(url)
        if last is not None and now - last <= self._clamp_ttl:
            return False
        self._clamped_at[url] = now
        return True

    @staticmethod
    def should_synthesize(
        plan: RangePlan, total: int | None, options: SegmentOptions
    ) -> bool:
        """Whether to replace a range-less request with a bounded first chunk.

        Only runs when the raw ``progressiveOpen`` flag is exactly ``"0"``;
        some upstream hosts depend on that combination.
        """
        return (
            not options.force_200
            and plan.effective_range is None
            and total is not None
            and not options.no_synth
            and options.progressive_open_flag == "0"
        )

    @staticmethod
    def synthetic_range(total: int, options: SegmentOptions) -> str:
        end = max(0, min(options.init_chunk_bytes - 1, total - 1))
        return f"bytes=0-{end}"

    # ------------------------------------------------------------------
    # Size discovery (I/O)
    # ------------------------------------------------------------------

    async def discover_size(
        self, url: str, forward: Mapping[str, str] | None = None
    ) -> ResourceSize:
        """Learn the total size via HEAD, falling back to a ``bytes=0-0`` probe.

        Never raises for upstream failures; an unknown size is a valid answer.
        """
        total: int | None = None
        accept_ranges: str | None = None

        try:
            head = await self._upstream.head(url, forward)
            if head.is_success:
                total = _positive_int(head.headers.get("content-length"))
                accept_ranges = head.headers.get("accept-ranges")
                log.debug(
                    "head_ok", url=url, total=total, accept_ranges=accept_ranges
                )
            else:
                log.debug("head_status", url=url, status_code=head.status_code)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.debug("head_failed", url=url, error=str(exc))

        if total is not None:
            return ResourceSize(total=total, accept_ranges=accept_ranges, source="head")

        try:
            probe = await self._upstream.open_stream(
                url, forward, range_header="bytes=0-0"
            )
            try:
                if probe.status_code == 206:
                    total = parse_total_size(probe.headers.get("content-range"))
                    await probe.aread()
                    log.debug("probe_ok", url=url, total=total)
                else:
                    log.debug("probe_status", url=url, status_code=probe.status_code)
            finally:
                await probe.aclose()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.debug("probe_failed", url=url, error=str(exc))

        if total is not None:
            return ResourceSize(
                total=total, accept_ranges=accept_ranges, source="probe"
            )
        return ResourceSize(accept_ranges=accept_ranges)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def sweep_clamp_state(self) -> int:
        """Drop clamp windows older than the TTL; return entries left."""
        now = self._clock()
        expired = [u for u, ts in self._clamped_at.items() if now - ts > self._clamp_ttl]
        for url in expired:
            del self._clamped_at[url]
        if expired:
            log.debug("clamp_state_swept", expired=len(expired))
        return len(self._clamped_at)
