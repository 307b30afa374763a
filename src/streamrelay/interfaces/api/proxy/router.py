"""Media proxy endpoints (playlist, segment, subtitle)."""

from __future__ import annotations

import re
from typing import cast

import httpx
import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from streamrelay.application.use_cases import MediaResponse
from streamrelay.domain.entities.media import SegmentOptions, UpstreamStatusError
from streamrelay.infrastructure.proxy.routing import parse_forward_headers
from streamrelay.interfaces.app_state import AppState

log = structlog.get_logger(__name__)

router = APIRouter(tags=["proxy"])

_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")
_MIN_KB = 64

_CORS = {"Access-Control-Allow-Origin": "*"}


def _parse_kb(raw: str | None, *, default: int, maximum: int) -> int:
    """Leading integer of *raw*; below 64 or unparsable -> default, capped."""
    m = _LEADING_INT_RE.match(raw or "")
    if not m:
        return default
    value = int(m.group(1))
    if value < _MIN_KB:
        return default
    return min(value, maximum)


def segment_options_from_query(request: Request) -> SegmentOptions:
    q = request.query_params
    return SegmentOptions(
        debug=q.get("debug") == "1",
        no_synth=q.get("noSynth") == "1",
        force_200=q.get("force200") == "1",
        clamp_open=q.get("clampOpen") != "0",
        progressive_open=q.get("progressiveOpen") != "0",
        progressive_open_flag=q.get("progressiveOpen"),
        tail_prefetch=q.get("tailPrefetch") != "0",
        tail_prefetch_kb=_parse_kb(q.get("tailPrefetchKB"), default=256, maximum=2048),
        open_chunk_kb=_parse_kb(q.get("openChunkKB"), default=4096, maximum=16384),
        init_chunk_kb=_parse_kb(q.get("initChunkKB"), default=512, maximum=2048),
    )


def proxy_base_url(request: Request, configured: str | None) -> str:
    """Public base URL of this proxy as seen by the player."""
    if configured:
        return configured
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    proto = proto.split(",")[0].strip()
    host = request.headers.get("host") or request.url.netloc
    return f"{proto}://{host}"


def _missing_url() -> JSONResponse:
    return JSONResponse(
        status_code=400, content={"error": "URL parameter required"}, headers=_CORS
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"error": message}, headers=_CORS
    )


def _to_response(result: MediaResponse) -> Response:
    if result.stream is not None:
        stream = result.stream
        return StreamingResponse(
            stream,
            status_code=result.status_code,
            headers=result.headers,
            background=BackgroundTask(_close_stream, stream),
        )
    return Response(
        content=result.body or b"",
        status_code=result.status_code,
        headers=result.headers,
    )


async def _close_stream(stream: object) -> None:
    # Async generators release the upstream connection in their finally block.
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


@router.get("/m3u8-proxy")
async def m3u8_proxy(
    request: Request,
    url: str | None = Query(default=None, description="Absolute playlist URL."),
    headers: str | None = Query(default=None, description="JSON request headers."),
) -> Response:
    """Fetch an HLS playlist and route every URI in it through this proxy."""
    if not url:
        return _missing_url()
    state = cast(AppState, request.app.state)
    forward = parse_forward_headers(headers)
    base = proxy_base_url(request, state.config.proxy.public_base_url)

    try:
        result = await state.playlist_uc.execute(url, forward, base)
    except UpstreamStatusError as e:
        return _error(e.status_code, e.message)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        log.warning("playlist_proxy_error", url=url, error=str(e))
        return _error(500, str(e) or type(e).__name__)
    return _to_response(result)


@router.get("/ts-proxy")
async def ts_proxy(
    request: Request,
    url: str | None = Query(default=None, description="Absolute media URL."),
    headers: str | None = Query(default=None, description="JSON request headers."),
) -> Response:
    """Range-aware relay for segments, keys and direct media files."""
    if not url:
        return _missing_url()
    state = cast(AppState, request.app.state)
    forward = parse_forward_headers(headers)
    options = segment_options_from_query(request)

    try:
        result = await state.segment_uc.execute(
            url, forward, request.headers.get("range"), options
        )
    except UpstreamStatusError as e:
        return _error(e.status_code, e.message)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        log.warning("segment_proxy_error", url=url, error=str(e))
        return _error(500, str(e) or type(e).__name__)
    return _to_response(result)


@router.get("/sub-proxy")
async def sub_proxy(
    request: Request,
    url: str | None = Query(default=None, description="Absolute subtitle URL."),
    headers: str | None = Query(default=None, description="JSON request headers."),
) -> Response:
    if not url:
        return _missing_url()
    state = cast(AppState, request.app.state)
    forward = parse_forward_headers(headers)

    try:
        result = await state.subtitle_uc.execute(url, forward)
    except UpstreamStatusError as e:
        return _error(e.status_code, e.message)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        log.warning("subtitle_proxy_error", url=url, error=str(e))
        return _error(500, str(e) or type(e).__name__)
    return _to_response(result)
