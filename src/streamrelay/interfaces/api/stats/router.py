"""Runtime metrics endpoint."""

from __future__ import annotations

from typing import cast

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from streamrelay.interfaces.app_state import AppState

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("/metrics")
async def metrics(request: Request) -> JSONResponse:
    """Return in-memory runtime metrics.

    Includes segment outcome counters, prefetch outcomes, playlist
    counters and the current size of every proxy cache.
    """
    state = cast(AppState, request.app.state)
    runtime = state.proxy_runtime
    return JSONResponse(
        content={
            **state.metrics.snapshot(),
            "runtime": runtime.snapshot(),
        }
    )
