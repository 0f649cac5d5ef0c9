from __future__ import annotations

import structlog
from fastapi import APIRouter, Request, Response

from holter.db.probe import run_probe
from holter.errors import ProbeFailure


router = APIRouter(tags=["health"])
log = structlog.get_logger("holter.health")


@router.get("/healthz")
async def healthz(request: Request) -> Response:
    state = request.app.state.holter
    if state.probe is None:
        return Response(status_code=200)

    try:
        await run_probe(state.probe, state.probe_timeout)
    except ProbeFailure as exc:
        log.warning("healthz_probe_failed", error=str(exc), cause=repr(exc.__cause__))
        return Response(status_code=500)
    return Response(status_code=200)
