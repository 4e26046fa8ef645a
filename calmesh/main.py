"""Main FastAPI application entry point."""

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from calmesh.config import GoogleOAuthConfig, get_settings
from calmesh.database import close_database, get_database
from calmesh.errors import CalmeshError
from calmesh.utils.rate_limit import limiter

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


def build_services(app: FastAPI) -> None:
    """Wire the token vault, provider, engines and job queue onto app.state."""
    from calmesh.auth.google import init_token_vault
    from calmesh.jobs.queue import SyncJobQueue, set_job_queue
    from calmesh.sync import (
        ConflictResolver,
        GoogleCalendarProvider,
        IngestionEngine,
        PropagationEngine,
    )

    settings = get_settings()
    oauth = GoogleOAuthConfig.from_settings(settings)
    if not oauth.is_configured():
        logger.warning("Google OAuth client is not configured; token refresh will fail")

    vault = init_token_vault(oauth)
    provider = GoogleCalendarProvider(vault)
    propagation = PropagationEngine(provider, settings)
    ingestion = IngestionEngine(provider, propagation, settings=settings)

    queue = SyncJobQueue(ingestion.sync_calendar, settings=settings)
    set_job_queue(queue)

    app.state.token_vault = vault
    app.state.ingestion_engine = ingestion
    app.state.conflict_resolver = ConflictResolver(provider, propagation)
    app.state.job_queue = queue


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    logger.info("Starting calmesh...")
    logger.info(f"Public URL: {settings.public_url}")
    logger.info(f"Database: {settings.database_path}")

    await get_database()
    logger.info("Database initialized")

    if os.path.exists(settings.encryption_key_file):
        from calmesh.config import get_encryption_key
        from calmesh.encryption import init_encryption_manager

        init_encryption_manager(get_encryption_key())
        logger.info("Encryption manager initialized")
    else:
        logger.warning(f"Encryption key file not found at {settings.encryption_key_file}")

    build_services(app)
    app.state.job_queue.start()

    try:
        from calmesh.jobs.scheduler import setup_scheduler
        setup_scheduler()
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")

    yield

    logger.info("Shutting down...")

    try:
        from calmesh.jobs.scheduler import shutdown_scheduler
        shutdown_scheduler()
    except Exception as e:
        logger.error(f"Error stopping scheduler: {e}")

    from calmesh.jobs.queue import set_job_queue
    await app.state.job_queue.stop()
    set_job_queue(None)

    await close_database()
    logger.info("Shutdown complete")


app = FastAPI(
    title="calmesh",
    description="Multi-account Google Calendar synchronization with conflict reconciliation",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    try:
        db = await get_database()
        await db.execute("SELECT 1")
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "error": str(e)},
        )


from calmesh.api import api_router  # noqa: E402

app.include_router(api_router)


@app.exception_handler(CalmeshError)
async def calmesh_exception_handler(request: Request, exc: CalmeshError):
    """Map domain errors to JSON responses with their status code."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "calmesh.main:app",
        host="0.0.0.0",
        port=3000,
        log_level=settings.log_level.lower(),
        reload=False,
    )
