"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic.alias_generators import to_camel
from api.routes import health, imports
from core.config import settings
from core.database import engine, async_session_maker
from core.exceptions import ETLException, ErrorCategory, NoImportRunningError
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.registry import ImportRegistry
from ingestion.scheduler import ImportScheduler

setup_logging()

logger = logging.getLogger(__name__)

STATUS_BY_CATEGORY = {
    ErrorCategory.CONCURRENCY: 409,
    ErrorCategory.CANCELLED: 409,
    ErrorCategory.TRANSIENT: 503,
    ErrorCategory.RESOURCE: 503,
    ErrorCategory.PERMANENT: 422,
    ErrorCategory.INTERNAL: 500,
}


def status_for(error: ETLException) -> int:
    if isinstance(error, NoImportRunningError):
        return 404
    return STATUS_BY_CATEGORY.get(error.category, 500)


def error_body(error: ETLException) -> dict:
    details = {
        to_camel(key): value
        for key, value in error.context.items()
        if key != "error_timestamp"
    }
    return {
        "error": error.message,
        "code": error.code,
        "category": error.category,
        "details": details,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the run registry and scheduler; cancel running work on shutdown"""
    logger.info("Starting Mafia Stats Import API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    registry = ImportRegistry(async_session_maker, engine)
    app.state.registry = registry

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = ImportScheduler(registry)
        scheduler.start()

    yield

    logger.info("Shutting down Mafia Stats Import API")
    if scheduler is not None:
        scheduler.stop()
    await registry.shutdown()
    await engine.dispose()


# Create FastAPI app
app = FastAPI(
    title="Mafia Stats Import API",
    description="Control API for the resumable gomafia.pro import pipeline",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)


@app.exception_handler(ETLException)
async def etl_exception_handler(request: Request, exc: ETLException):
    status_code = status_for(exc)
    request_id = getattr(request.state, "request_id", None)
    log = logger.error if status_code >= 500 else logger.info
    log(
        f"[{request_id}] {request.method} {request.url.path} -> {status_code} [{exc.code}] {exc.message}",
        extra={"error_context": exc.to_dict()}
    )
    return JSONResponse(status_code=status_code, content=error_body(exc))


# Include routers
app.include_router(health.router)
app.include_router(imports.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Mafia Stats Import API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "trigger": "/import/trigger",
            "status": "/import/status",
            "logs": "/import/logs",
            "retry": "/import/retry",
        }
    }
