"""Chatline Backend Application.

Main entry point of the realtime chat delivery service: live connections,
presence, message fan-out and read state.

Modules:
    - chat: Connection registry, presence, delivery, read state, groups
    - users: User directory reads and presence settings
    - auth: Bearer token validation
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatline.chat.router import router as chat_router, ws_router
from chatline.chat.service import ChatService
from chatline.config import get_config
from chatline.errors import ChatError, chat_error_handler
from chatline.users.router import me_router, router as users_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in ("urllib3", "httpx", "httpcore", "websockets", "uvicorn.access"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chatline.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    ChatService.get_instance()
    logger.info(
        f"Chatline ready on http://{config.server.host}:{config.server.port} "
        f"(presence broadcast {'on' if config.presence.broadcast_enabled else 'off'})"
    )

    yield  # Application runs here

    # Shutdown
    ChatService.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chatline API",
    description="Realtime chat delivery, presence and unread tracking",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ChatError, chat_error_handler)

# Register all routers
app.include_router(chat_router)
app.include_router(users_router)
app.include_router(me_router)
app.include_router(ws_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the number of live connections.
    """
    return {
        "status": "ok",
        "connections": ChatService.get_instance().registry.connection_count(),
    }
