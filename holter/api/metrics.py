from __future__ import annotations

from fastapi import APIRouter, Request, Response


router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def metrics(request: Request) -> Response:
    registry = request.app.state.holter.registry
    return Response(content=registry.render(), media_type=registry.content_type)
