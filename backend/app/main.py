"""Showtime Chat Backend Application.

This is the main entry point for the real-time chat service of the
Showtime movie-ticket site. Accounts, bookings and showtimes live in other
services; this one only verifies their login tokens.

Modules:
    - chat: WebSocket chat with presence, global and direct rooms
    - auth: Bearer token verification
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.chat.router import router as chat_router
from app.chat.session import get_chat_service
from app.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in ("httpx", "httpcore", "websockets"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in showtime.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    service = get_chat_service()
    logger.info(
        "Chat service ready: global_room=%s store=%s",
        service.rooms.global_room_id(),
        type(service.store).__name__,
    )

    yield  # Application runs here

    # Shutdown
    service.store.close()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Showtime Chat API",
    description="Real-time chat service for the Showtime movie-ticket site",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
