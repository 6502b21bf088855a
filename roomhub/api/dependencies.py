"""Shared FastAPI dependencies."""

from fastapi import Header, HTTPException
from starlette.requests import HTTPConnection

from roomhub.core.config import get_settings
from roomhub.core.realtime.context import RealtimeContext


def get_realtime(connection: HTTPConnection) -> RealtimeContext:
    """The hub built for this application (works for HTTP and WebSocket routes)."""
    context = getattr(connection.app.state, "realtime", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Realtime hub not started")
    return context


async def get_admin_token(x_admin_token: str = Header(default="", alias="X-Admin-Token")) -> str:
    """
    Validate the admin token used by the room service's membership webhook.

    Raises:
        HTTPException: 401 if the token is missing, 500 if not configured, 403 if invalid
    """
    if not x_admin_token:
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTH_EXPIRED", "message": "Missing admin token"},
        )

    expected_token = get_settings().ADMIN_TOKEN
    if not expected_token:
        raise HTTPException(
            status_code=500,
            detail={"code": "INTERNAL_ERROR", "message": "Admin token not configured"},
        )

    if x_admin_token != expected_token:
        raise HTTPException(
            status_code=403,
            detail={"code": "FORBIDDEN", "message": "Invalid admin token"},
        )

    return x_admin_token


__all__ = ["get_realtime", "get_admin_token"]
