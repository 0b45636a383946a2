from fastapi import APIRouter
from fastapi.responses import JSONResponse
from datetime import datetime
from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from line_summarizer.config import settings
from line_summarizer.core.logging_config import get_logger
from line_summarizer.core.cache import cache
from line_summarizer.models.organization import Organization

router = APIRouter()
logger = get_logger(__name__)


@router.get("/health")
async def health_check():
    """
    Health check endpoint.

    Verifies:
    - MongoDB connectivity (critical)
    - Redis connectivity (if configured)
    - Dashboard token secret
    - LINE channel credentials and the summary model key

    Returns 200 if all critical checks pass, 503 otherwise.
    """

    checks = {
        "application": "healthy",
        "mongodb": "unknown",
        "redis": "unknown" if settings.REDIS_URL else "not_configured",
        "jwt_hs256": "unknown",
        "line_channel": "unknown",
        "summary_model": "unknown",
    }

    try:
        await Organization.find().limit(1).to_list()
        checks["mongodb"] = "healthy"
    except PyMongoError as e:
        logger.error("health_check_mongodb_failed", error=str(e))
        checks["mongodb"] = f"unhealthy: {type(e).__name__}"

    if settings.REDIS_URL:
        if cache.enabled:
            try:
                await cache.redis.ping()
                checks["redis"] = "healthy"
            except (RedisError, OSError) as e:
                logger.error("health_check_redis_failed", error=str(e))
                checks["redis"] = f"unhealthy: {type(e).__name__}"
        else:
            checks["redis"] = "degraded: cache disabled"

    if settings.JWT_SECRET_KEY and len(settings.JWT_SECRET_KEY) >= 32:
        checks["jwt_hs256"] = f"healthy (algorithm: {settings.JWT_ALGORITHM})"
    else:
        checks["jwt_hs256"] = "unhealthy: JWT_SECRET_KEY too short or missing"

    if not settings.LINE_CHANNEL_SECRET:
        # Every webhook is rejected with 401 until the secret is set
        checks["line_channel"] = "unhealthy: LINE_CHANNEL_SECRET missing"
    elif not settings.LINE_CHANNEL_ACCESS_TOKEN:
        checks["line_channel"] = "degraded: no access token (names fall back, no replies)"
    else:
        checks["line_channel"] = "healthy"

    if settings.GEMINI_API_KEY:
        checks["summary_model"] = f"healthy (model: {settings.GEMINI_MODEL})"
    else:
        checks["summary_model"] = "degraded: GEMINI_API_KEY missing, summaries will fail"

    critical_checks = [checks["mongodb"]]

    all_healthy = all(
        status.startswith("healthy") or status.startswith("degraded")
        for status in critical_checks
    )

    overall_status = "healthy" if all_healthy else "degraded"
    status_code = 200 if all_healthy else 503

    response_data = {
        "status": overall_status,
        "service": "line-summarizer",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "checks": checks,
    }

    return JSONResponse(content=response_data, status_code=status_code)


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
        "webhook": "/webhook/line",
    }
