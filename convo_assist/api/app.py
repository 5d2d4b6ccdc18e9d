"""
FastAPI application setup for the conversation assistant server.

This module:
- Creates and configures the FastAPI application
- Registers routes and the ``/ws`` session hub endpoint
- Owns the storage, analysis and hub instances on ``app.state``
- Releases them on shutdown
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from convo_assist import __version__
from convo_assist.analysis.base import AnalysisBackend
from convo_assist.analysis.factory import create_analyzer
from convo_assist.api.routes import router
from convo_assist.api.websocket import SessionHub, websocket_endpoint
from convo_assist.config.config import analysis_config, load_config
from convo_assist.protocol import WS_PATH
from convo_assist.storage.base import StorageBackend
from convo_assist.storage.memory import MemoryStorage

logger = logging.getLogger(__name__)


def create_app(
    storage: Optional[StorageBackend] = None,
    analyzer: Optional[AnalysisBackend] = None,
) -> FastAPI:
    """
    Build the server application.

    Args:
        storage: Storage backend (default: in-memory)
        analyzer: Analysis backend (default: the one named in the config file)

    Returns:
        The configured FastAPI application
    """
    if analyzer is None:
        analyzer = create_analyzer(analysis_config(load_config()))
    storage = storage or MemoryStorage()

    app = FastAPI(
        title="Conversation Assistant API",
        description="Live conversation sessions with transcription, topics and action items",
        version=__version__,
    )

    # Add CORS middleware for frontend communication
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],  # Vite dev servers
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.storage = storage
    app.state.analyzer = analyzer
    app.state.hub = SessionHub(storage)

    app.include_router(router)

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": "Invalid request body"})

    # Register WebSocket endpoint
    @app.websocket(WS_PATH)
    async def ws_endpoint(websocket: WebSocket) -> None:
        """WebSocket endpoint for session relays."""
        await websocket_endpoint(websocket)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await app.state.hub.close_all()
        await app.state.analyzer.close()
        await app.state.storage.close()
        logger.info("Server resources released")

    return app
