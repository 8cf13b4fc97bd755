"""SchoolChat Backend Application.

This is the main entry point for the SchoolChat chat server, the realtime
group chat layer of the school-management dashboard.

Modules:
    - groups: group directory and membership (REST, DuckDB)
    - messages: paginated message history (REST, DuckDB)
    - notifications: per-user notification delivery
    - realtime: WebSocket hub with group rooms
    - session: client-side ChatSession consuming all of the above
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from schoolchat.config import get_config
from schoolchat.groups.router import router as groups_router
from schoolchat.groups.service import GroupService
from schoolchat.messages.router import router as messages_router
from schoolchat.messages.service import MessageService
from schoolchat.notifications.router import router as notifications_router
from schoolchat.realtime.router import router as realtime_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every request and connection; websockets logs every
# frame at debug level.
for _noisy in (
    "httpx",
    "httpcore",
    "websockets",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    # Open the stores up front so a bad database path fails at startup
    GroupService.get_instance()
    MessageService.get_instance()
    logger.info(
        f"Chat server running on http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    # Shutdown
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="SchoolChat API",
    description="Realtime group chat service for the school dashboard",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(groups_router)
app.include_router(messages_router)
app.include_router(notifications_router)
app.include_router(realtime_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def run() -> None:
    """Serve the app with uvicorn using the ``server`` settings."""
    server = get_config().server
    uvicorn.run(
        "schoolchat.main:app",
        host=server.host,
        port=server.port,
        log_level=server.log_level,
    )
