"""chatsync Backend Application.

This is the main entry point for the chatsync service: a chat client core
that keeps named rooms synchronized with a document store and exposes the
grouped timelines to a UI over HTTP and WebSocket.

Modules:
    - store: Document store contract and DuckDB implementation
    - sync: Per-room sync engines, grouping, reactions, lifecycle
    - users: Sign-in and persisted room listener lists
    - chat: HTTP and WebSocket endpoints, view broadcasting
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chatsync.chat.manager import broadcaster
from chatsync.chat.router import router as chat_router, set_chat_client, set_user_service
from chatsync.config import get_config
from chatsync.store.duckdb_store import DuckDBDocumentStore
from chatsync.sync.client import ChatClient
from chatsync.sync.lifecycle import ListenerManager
from chatsync.sync.session import SessionContext
from chatsync.users.service import UserService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chatsync.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = DuckDBDocumentStore(config.store.db_path)
    session = SessionContext()
    listeners = ListenerManager(store, session, config.sync)
    client = ChatClient(
        store,
        session,
        listeners,
        default_room_id=config.sync.default_selected_room_id,
        reaction_palette=config.reactions.palette,
    )
    users = UserService(store, session, default_room_ids=config.sync.default_room_ids)

    set_chat_client(client)
    set_user_service(users)
    broadcaster.attach(client, users)
    logger.info(
        "Sync layer ready: store=%s history_limit=%d",
        config.store.db_path,
        config.sync.history_limit,
    )

    yield  # Application runs here

    # Shutdown: stop every room before the UI goes away
    broadcaster.detach()
    listeners.shutdown()
    users.sign_out()
    set_chat_client(None)
    set_user_service(None)
    store.close()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="chatsync API",
    description="Room synchronization and message grouping for a document-store backed chat",
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


def run() -> None:
    """Run the API with uvicorn using the configured bind address."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "chatsync.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
    )
