"""Roomchat Backend Application.

This is the main entry point for the roomchat backend service: a multi-room
real-time chat server.

Modules:
    - chat: room sessions, message relay, history and search
    - auth: identity resolution and room secret hashing
    - audit: DuckDB-based moderation audit log
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.audit.router import router as audit_router
from app.chat.errors import ChatError
from app.chat.router import router as chat_router
from app.chat.service import build_chat_service
from app.config import AppConfig, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every TCP connection made by link previews.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Map a ChatError raised by an HTTP endpoint to {ok: false, error}."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_result())


def create_app(
    config: Optional[AppConfig] = None,
    clock: Callable[[], float] = time.time,
    preview_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Explicit configuration; ``get_config()`` is used when omitted.
        clock: Time source for the chat core.
        preview_transport: Optional httpx transport for link previews.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        app_config = config or get_config()

        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in roomchat.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, app_config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", app_config.logging.level.upper())

        chat = build_chat_service(app_config, clock=clock, preview_transport=preview_transport)
        await chat.start()
        app.state.chat = chat
        logger.info(
            f"Server running on http://{app_config.server.host}:{app_config.server.port}"
        )

        yield  # Application runs here

        # Shutdown
        chat.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Roomchat API",
        description="Multi-room real-time chat backend",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(ChatError, chat_error_handler)

    # Register all routers
    app.include_router(chat_router)
    app.include_router(audit_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
