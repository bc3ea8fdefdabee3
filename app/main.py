"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.api.v1 import files
from app.api.v1.router import api_router
from app.config import get_settings
from app.core.exceptions import NotFoundError, QueueNotReadyError, TemplateValidationError
from app.database import engine
from app.services.queue import QueueManager
from app.services.storage import storage_service

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    storage_service.initialize()

    # Producer only: the API never runs jobs. A broker outage at startup
    # leaves the manager not ready and submissions answer 503.
    queue_manager = QueueManager()
    await queue_manager.start(reconnect_on_failure=True)
    app.state.queue_manager = queue_manager

    yield

    # Shutdown
    await queue_manager.stop()
    await engine.dispose()


app = FastAPI(
    title="HubSpot PDF Generator",
    description="Multi-tenant PDF generation for HubSpot portals",
    version="0.1.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(QueueNotReadyError)
async def queue_not_ready_handler(request: Request, exc: QueueNotReadyError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={"detail": str(exc)},
        headers={"Retry-After": "30"},
    )


@app.exception_handler(TemplateValidationError)
async def template_validation_handler(request: Request, exc: TemplateValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"detail": {"message": str(exc), "missing": exc.missing}},
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    if settings.debug:
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "type": type(exc).__name__},
        )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include API router
app.include_router(api_router, prefix="/api/v1")

# Public file URLs handed out by storage
app.include_router(files.router, prefix="/files", tags=["files"])


@app.get("/health")
async def health_check(request: Request) -> dict[str, str]:
    """Health check endpoint."""
    queue_manager = getattr(request.app.state, "queue_manager", None)
    queue_ready = queue_manager is not None and queue_manager.is_ready()
    return {
        "status": "healthy" if queue_ready else "degraded",
        "queue": "ready" if queue_ready else "unavailable",
    }
