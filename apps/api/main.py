"""
Finance Imports API - FastAPI application entry point
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import httpx
import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import Response

from apps.api.middleware.env_context import EnvironmentContextMiddleware
from apps.api.routers import ai_usage, imports
from packages.common.config import Settings, get_settings
from packages.common.database import DatabaseRouter, current_storage
from packages.common.notion_client import NotionClient
from packages.domain.ai_usage import AiUsageService
from packages.domain.imports import AiCategorizer, ImportService, ProgressStore, RecordStore
from packages.domain.imports.repository import AiUsageLedger

VERSION = "0.1.0"
SHUTDOWN_GRACE_SECONDS = 30


def configure_logging(log_level: str = "INFO"):
    """Configure structured logging"""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


def create_app(
    settings: Optional[Settings] = None,
    anthropic_client: Optional[Any] = None,
    notion_http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Application settings (defaults to environment/.env)
        anthropic_client: AsyncAnthropic-compatible client override
        notion_http_client: httpx client override for the Notion API
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager"""
        logger.info("starting_finance_imports_api",
                    environment=settings.environment,
                    version=VERSION)

        db = DatabaseRouter(settings)
        await db.init()

        notion = NotionClient(settings, http_client=notion_http_client)
        categorizer = AiCategorizer(
            settings,
            client=anthropic_client,
            ledger=AiUsageLedger(db),
        )
        import_service = ImportService(
            progress=ProgressStore(settings.progress_retention_seconds),
            categorizer=categorizer,
            record_store=RecordStore(notion, db, settings),
            db=db,
            settings=settings,
        )

        app.state.settings = settings
        app.state.db = db
        app.state.import_service = import_service
        app.state.ai_usage_service = AiUsageService(db)

        yield

        logger.info("shutting_down_finance_imports_api")
        try:
            await asyncio.wait_for(import_service.drain(), timeout=SHUTDOWN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("import_sessions_abandoned_on_shutdown")
        await notion.aclose()
        await db.close()

    app = FastAPI(
        title="Finance Imports API",
        description="Bank statement import pipeline: deduplication, entity matching and AI categorization",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.environment != "production" else None,
        redoc_url="/redoc" if settings.environment != "production" else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.environment != "production" else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(EnvironmentContextMiddleware)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle validation errors with structured logging"""
        logger.warning("validation_error",
                       path=request.url.path,
                       errors=len(exc.errors()))
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": jsonable_errors(exc)},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected errors"""
        logger.error("unhandled_exception",
                     path=request.url.path,
                     error=str(exc),
                     exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "Internal server error",
                "request_id": request.headers.get("x-request-id"),
            },
        )

    app.include_router(imports.router, prefix="/api/v1")
    app.include_router(ai_usage.router, prefix="/api/v1")

    @app.get("/health", tags=["System"])
    async def health_check(request: Request):
        """Health check endpoint for Docker and monitoring"""
        storage = current_storage.get()
        try:
            async with request.app.state.db.session(storage) as session:
                await session.execute(text("SELECT 1"))

            return {
                "status": "healthy",
                "environment": settings.environment,
                "version": VERSION,
                "services": {
                    "database": "connected",
                    "ai": "configured" if settings.claude_api_key or anthropic_client else "missing_key",
                    "notion": "configured" if settings.notion_api_token or notion_http_client else "missing_token",
                },
                "env": storage.label,
            }
        except Exception as e:
            logger.error("health_check_failed", error=str(e))
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "unhealthy",
                    "error": str(e),
                }
            )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Prometheus metrics endpoint"""
        if not settings.metrics_enabled:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"detail": "Metrics disabled"}
            )

        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST,
        )

    @app.get("/", tags=["System"])
    async def root():
        """API root endpoint"""
        return {
            "name": "Finance Imports API",
            "version": VERSION,
            "environment": settings.environment,
            "docs": "/docs" if settings.environment != "production" else None,
        }

    return app


def jsonable_errors(exc: RequestValidationError):
    # ctx may hold exception instances, which are not JSON serializable
    return [
        {key: value for key, value in error.items() if key != "ctx"}
        for error in exc.errors()
    ]


configure_logging(get_settings().log_level)
app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "apps.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
