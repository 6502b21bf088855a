"""
RoomHub - realtime messaging and presence service entrypoint.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from roomhub import __version__
from roomhub.api import api_router
from roomhub.core.config import get_settings
from roomhub.core.realtime.context import RealtimeContext
from roomhub.utils.logging import setup_logging

settings = get_settings()

setup_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
logger = logging.getLogger(__name__)


def create_app(context: Optional[RealtimeContext] = None) -> FastAPI:
    """Build the application.

    ``context`` lets callers supply a pre-wired hub (e.g. an in-memory
    membership authority); otherwise one is built from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting RoomHub...")
        realtime = context or RealtimeContext.build(get_settings())
        app.state.realtime = realtime
        await realtime.start()

        yield

        logger.info("Shutting down RoomHub...")
        await realtime.stop()
        app.state.realtime = None

    app = FastAPI(
        title="RoomHub",
        description="Realtime messaging and presence for chat rooms",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api")
    app.mount("/metrics", make_asgi_app())

    @app.get("/")
    async def root():
        return {
            "name": "RoomHub",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
            "health": "/api/v1/health",
        }

    return app


app = create_app()


def main() -> None:
    uvicorn.run(
        "roomhub.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
