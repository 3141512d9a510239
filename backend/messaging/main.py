"""Messaging Backend Application.

This is the main entry point for the real-time messaging service that backs
the marketplace's direct messages and group rooms.

Modules:
    - auth: JWT verification for socket handshakes and REST calls
    - chat: presence, dispatch, delivery tracking, replay, typing indicators
    - store: DuckDB persistence behind an async, time-bounded gateway
    - client: reconnecting WebSocket client
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from messaging.chat import MessagingHub, rest_router, ws_router
from messaging.config import AppConfig, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# websockets logs every frame at DEBUG; httpx/httpcore log every connection.
for _noisy in (
    "websockets",
    "websockets.client",
    "websockets.server",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Explicit configuration (tests pass one with an in-memory
            store). Defaults to the process-wide config.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        cfg = config or get_config()

        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in messaging.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, cfg.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", cfg.logging.level.upper())

        app.state.hub = MessagingHub.from_config(cfg)
        logger.info(
            "Messaging hub ready on http://%s:%s (store=%s)",
            cfg.server.host, cfg.server.port, cfg.store.db_path,
        )

        yield  # Application runs here

        # Shutdown
        await app.state.hub.shutdown()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Messaging API",
        description="Real-time messaging: presence, delivery receipts, rooms and typing indicators",
        version="0.1.0",
        lifespan=lifespan,
    )

    origins = (config or get_config()).server.allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ws_router)
    app.include_router(rest_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object with the number of open connections.
        """
        hub = getattr(app.state, "hub", None)
        return {"status": "ok", "connections": len(hub.registry) if hub else 0}

    return app
