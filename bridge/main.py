"""
Main FastAPI application entry point
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.middleware.base import BaseHTTPMiddleware

from bridge.__version__ import __version__
from bridge.api.v1.api import api_router
from bridge.core.config import settings
from bridge.core.logging import setup_logging
from bridge.db.database import get_db
from bridge.services import graph_service as graph_module
from bridge.services.notification_queue import notification_queue

logger = logging.getLogger(__name__)

# Configure logging first
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await notification_queue.start()
    try:
        yield
    finally:
        await notification_queue.stop()
        await graph_module.graph_service.aclose()


# Create FastAPI app instance
app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_PREFIX}/openapi.json",
    debug=settings.DEBUG,
    lifespan=lifespan,
)


class HealthCheckLoggingFilter(BaseHTTPMiddleware):
    """Middleware to suppress logging for health check endpoints."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/health":
            logging.disable(logging.CRITICAL)
            try:
                return await call_next(request)
            finally:
                logging.disable(logging.NOTSET)
        return await call_next(request)


app.add_middleware(HealthCheckLoggingFilter)

# Include API router
app.include_router(api_router, prefix=settings.API_PREFIX)


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check endpoint with database connectivity verification."""
    db_status = "unknown"
    db_error = None
    try:
        db.execute(text("SELECT 1")).scalar()
        db_status = "connected"
    except Exception as e:
        db_status = "error"
        db_error = str(e)
        # Only log failures
        logger.error(f"Database health check failed: {e}")

    if db_status != "connected":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "environment": settings.ENVIRONMENT,
                "version": __version__,
                "database": db_status,
                "error": db_error,
            },
        )

    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
        "version": __version__,
        "database": db_status,
    }


if __name__ == "__main__":
    import os

    import uvicorn

    # Use 127.0.0.1 for security unless explicitly overridden
    host = os.getenv("UVICORN_HOST", "127.0.0.1")
    port = int(os.getenv("UVICORN_PORT", "8000"))
    uvicorn.run(app, host=host, port=port)
