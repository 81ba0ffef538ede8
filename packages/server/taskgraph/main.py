"""
Task Graph API Server

Entry point for the FastAPI application.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from taskgraph.core.config import get_settings
from taskgraph.core.database import init_db
from taskgraph.core.errors import TaskGraphError
from taskgraph.core.logging import configure_logging
from taskgraph.api.v1 import router as api_v1_router

settings = get_settings()
log = structlog.get_logger()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Task Graph",
        description="Per-user tasks with subtasks, blocking dependencies, and recurrence.",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type", "X-User-Id"],
    )

    @app.exception_handler(TaskGraphError)
    async def task_graph_error_handler(request: Request, exc: TaskGraphError):
        log.info("api.domain_error", code=exc.code, path=request.url.path, message=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})

    # API routes
    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for liveness checks."""
        return {"status": "ok"}

    @app.get("/ready", tags=["System"])
    async def readiness_check():
        """Readiness check endpoint for startup checks."""
        return {"status": "ready"}

    @app.on_event("startup")
    async def on_startup():
        await init_db()
        log.info("Task Graph starting", debug=settings.debug)

    @app.on_event("shutdown")
    async def on_shutdown():
        log.info("Task Graph shutting down")

    return app


app = create_app()
