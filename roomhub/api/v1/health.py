"""Liveness endpoint."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request
from pydantic import BaseModel

from roomhub import __version__

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: str
    realtime: bool


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    return HealthResponse(
        status="healthy",
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        realtime=getattr(request.app.state, "realtime", None) is not None,
    )
