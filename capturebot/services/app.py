"""CaptureBot cron trigger service.

Each scheduled job is exposed as a POST endpoint protected by the shared
cron secret. Failed authorisation attempts are counted per client and
rejected with 429 once the limit is reached.
"""

import secrets
from typing import Optional, Dict, Any

import uvicorn
from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from capturebot import __version__
from capturebot.core.db import AsyncSessionLocal
from capturebot.core.logging import get_logger
from capturebot.core.ratelimit import RateLimiter, build_counter_store
from capturebot.core.settings import Settings, get_settings
from capturebot.core.time import get_current_utc_time
from capturebot.interests.weights import decay_stale_interests
from capturebot.merger.pipeline import run_container_merges
from capturebot.scheduler.delivery import get_delivery_handler, run_delivery_tick
from capturebot.services.base import create_app
from capturebot.trender.pipeline import run_trend_detection

SERVICE_NAME = "capturebot"

app = create_app(SERVICE_NAME)
logger = get_logger(__name__)


class JobResponse(BaseModel):
    """Response model for a triggered job."""
    status: str
    job: str
    stats: Dict[str, Any] = Field(default_factory=dict)


def get_app_settings() -> Settings:
    return get_settings()


def get_rate_limiter(request: Request) -> RateLimiter:
    """Limiter stored on the app, built from settings on first use."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        settings = get_settings()
        limiter = RateLimiter(
            build_counter_store(settings.redis_url),
            max_attempts=settings.auth_max_attempts,
            window_seconds=settings.auth_window_seconds,
        )
        request.app.state.rate_limiter = limiter
    return limiter


def client_key(request: Request) -> str:
    """Client address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


async def verify_cron_secret(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    limiter: RateLimiter = Depends(get_rate_limiter)
) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>``."""
    if not settings.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="CRON_SECRET is not configured"
        )

    expected = f"Bearer {settings.cron_secret}"
    provided = request.headers.get("authorization", "")
    if secrets.compare_digest(provided.encode(), expected.encode()):
        return

    key = f"auth:{client_key(request)}"
    result = await limiter.hit(key)
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many attempts. Try again later.",
            headers={"Retry-After": str(int(result.reset_in) or 1)},
        )
    logger.warning("Rejected cron trigger with invalid credentials", extra={'client': key})
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@app.get("/")
async def root():
    """Root endpoint."""
    settings = get_settings()
    return {
        "service": SERVICE_NAME,
        "version": __version__,
        "environment": settings.environment,
        "completion_enabled": bool(settings.openai_api_key),
        "delivery_enabled": bool(settings.delivery_webhook_url),
        "endpoints": {
            "health": "/healthz",
            "trends_run": "/trends/run (POST)",
            "containers_merge": "/containers/merge (POST)",
            "delivery_run": "/delivery/run (POST)",
            "interests_decay": "/interests/decay (POST)",
        }
    }


@app.post("/trends/run", response_model=JobResponse, dependencies=[Depends(verify_cron_secret)])
async def run_trends_endpoint():
    """Detect, narrate and store trends for every active user."""
    try:
        stats = await run_trend_detection()
    except Exception as e:
        logger.error(f"Trend detection failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Trend detection failed: {e}")
    return JobResponse(status="success", job="trends", stats=stats.to_dict())


@app.post("/containers/merge", response_model=JobResponse, dependencies=[Depends(verify_cron_secret)])
async def merge_containers_endpoint():
    """Suggest and execute container merges for every user."""
    try:
        stats = await run_container_merges()
    except Exception as e:
        logger.error(f"Container merge run failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Container merge run failed: {e}")
    return JobResponse(status="success", job="merge", stats=stats.to_dict())


@app.post("/delivery/run", response_model=JobResponse, dependencies=[Depends(verify_cron_secret)])
async def run_delivery_endpoint(settings: Settings = Depends(get_app_settings)):
    """Deliver to every user whose report time is now."""
    handler = get_delivery_handler(settings)
    try:
        stats = await run_delivery_tick(handler, settings=settings)
    except Exception as e:
        logger.error(f"Delivery tick failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Delivery tick failed: {e}")
    finally:
        if handler is not None:
            await handler.aclose()
    return JobResponse(status="success", job="delivery", stats=stats.to_dict())


@app.post("/interests/decay", response_model=JobResponse, dependencies=[Depends(verify_cron_secret)])
async def decay_interests_endpoint(user_id: Optional[str] = None):
    """Decay the weight of stale interests."""
    try:
        async with AsyncSessionLocal() as session:
            decayed = await decay_stale_interests(session, get_current_utc_time(), user_id=user_id)
    except Exception as e:
        logger.error(f"Interest decay failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Interest decay failed: {e}")
    return JobResponse(status="success", job="decay", stats={"decayed": decayed})


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event handler."""
    logger.info("Shutting down capturebot service")


if __name__ == "__main__":
    settings = get_settings()
    logger.info("Starting capturebot service via uvicorn")
    uvicorn.run(
        "capturebot.services.app:app",
        host=settings.service_host,
        port=settings.service_port or 8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
