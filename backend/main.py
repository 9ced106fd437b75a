"""FastAPI application entry point for the escalation backend.

This module initializes the FastAPI application with all middleware,
routers, and lifespan handlers configured.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router, set_escalation_service
from api.websocket import set_event_bus, websocket_router
from config import configure_logging, settings
from conversation import ConversationManager, ConversationStore
from escalation_service import EscalationService
from events import EventBus
from reasoning import create_reasoning_client
from tournament import TournamentScheduler

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Creates the event bus, reasoning client, conversation store, manager,
    tournament scheduler and service on startup; drains the store on
    shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_reasoning=settings.use_mock_reasoning,
        reasoning_model=settings.reasoning_model,
    )

    event_bus = EventBus()
    client = create_reasoning_client(event_bus=event_bus, config=settings)
    store = ConversationStore(
        ttl_seconds=settings.session_ttl_minutes * 60,
        event_bus=event_bus,
        history_retention_seconds=settings.event_history_retention_minutes * 60,
    )
    manager = ConversationManager(store, client, event_bus=event_bus, config=settings)
    scheduler = TournamentScheduler(client, event_bus=event_bus, config=settings)
    service = EscalationService(manager, scheduler, event_bus=event_bus, config=settings)

    # Register dependencies with routes
    set_escalation_service(service)
    set_event_bus(event_bus)

    # Store on app.state for access
    app.state.escalation_service = service
    app.state.conversation_store = store

    store.start_sweep_loop(interval_seconds=settings.session_sweep_interval_seconds)

    logger.info("resources_initialized")
    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await app.state.conversation_store.drain()
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Escalation Reasoning Backend",
    description="Multi-turn escalation conversations and hypothesis tournaments "
    "against a remote reasoning service.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["escalation"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points to API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "Escalation Reasoning Backend",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
