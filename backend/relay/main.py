"""Chat Relay Backend Application.

This is the main entry point for the relay service: clients connect over a
WebSocket, announce a display name and exchange messages globally, in rooms
and in direct conversations.

Modules:
    - chat: presence, scoped history, routing and the WebSocket gateway
    - config: YAML-backed settings

Run with ``uvicorn relay.main:app`` or ``python -m relay.main``.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relay.chat.dispatcher import Dispatcher
from relay.chat.history import HistoryStore
from relay.chat.manager import ConnectionManager
from relay.chat.registry import SessionRegistry
from relay.chat.router import router as chat_router
from relay.config import AppSettings, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn's per-request access log drowns the relay's own output
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppSettings = app.state.config

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in relay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    logger.info(
        f"Relay ready on http://{config.server.host}:{config.server.port} "
        f"(history capacity {config.chat.history_capacity} per scope)"
    )

    yield  # Application runs here

    # Shutdown: history is memory-only and does not outlive the process
    app.state.history.clear()
    logger.info("Application shutdown complete")


def create_app(config: Optional[AppSettings] = None) -> FastAPI:
    """Build the FastAPI application and its relay state.

    The registry, history and dispatcher are created here and stored on
    ``app.state``; each call yields a fresh, independent relay.

    Args:
        config: Settings to use. Defaults to ``get_config()``.
    """
    config = config or get_config()

    app = FastAPI(
        title="Chat Relay API",
        description="Real-time chat relay with presence, rooms, direct messages and history",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    registry = SessionRegistry(anonymous_name=config.chat.anonymous_name)
    history = HistoryStore(capacity=config.chat.history_capacity)
    connections = ConnectionManager()

    app.state.config = config
    app.state.registry = registry
    app.state.history = history
    app.state.connections = connections
    app.state.dispatcher = Dispatcher(
        registry,
        history,
        connections,
        default_page_size=config.chat.default_page_size,
    )

    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_config()
    uvicorn.run(app, host=settings.server.host, port=settings.server.port)
