"""API route aggregation."""
from fastapi import APIRouter

from roomhub.api.v1 import health, realtime

api_router = APIRouter()

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(health.router, tags=["health"])
v1_router.include_router(realtime.router, prefix="/realtime", tags=["realtime"])

api_router.include_router(v1_router)
