"""Base FastAPI service with common functionality."""
from datetime import datetime, timezone

from fastapi import FastAPI, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from capturebot import __version__
from capturebot.core.db import get_db
from capturebot.core.logging import setup_logging, get_logger


def create_app(service_name: str) -> FastAPI:
    """Create FastAPI application with common configuration."""
    # Setup logging
    setup_logging(service_name)
    logger = get_logger(__name__)

    app = FastAPI(
        title=f"CaptureBot - {service_name.title()}",
        description=f"CaptureBot {service_name} service",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    @app.get("/healthz")
    async def health_check(db: AsyncSession = Depends(get_db)):
        """Health check endpoint."""
        try:
            # Test database connection
            await db.execute(text("SELECT 1"))
            logger.debug(f"{service_name} health check passed")
            return JSONResponse(
                status_code=200,
                content={
                    "status": "healthy",
                    "service": service_name,
                    "version": __version__,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            )
        except Exception as e:
            logger.error(f"{service_name} health check failed: {e}")
            return JSONResponse(
                status_code=503,
                content={
                    "status": "unhealthy",
                    "service": service_name,
                    "error": str(e),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            )

    return app
