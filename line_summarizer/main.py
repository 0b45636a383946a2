from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from line_summarizer.config import settings
from line_summarizer.core.logging_config import setup_logging, get_logger
from line_summarizer.core.rate_limit import limiter
from line_summarizer.core.cache import cache
from line_summarizer.db.mongodb import init_db, close_db
from line_summarizer.middleware.access_log import AccessLogMiddleware, RequestContextMiddleware
from line_summarizer.routes import messages, ops, organizations, rooms, sessions, summaries, webhook
from line_summarizer.services.automation_forwarder import get_automation_forwarder
from line_summarizer.services.line_client import get_line_client
from line_summarizer.services.maintenance import MaintenanceLoop

# Setup structured logging BEFORE any other imports that might log
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(
        "application_startup",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        log_level=settings.LOG_LEVEL,
    )

    try:
        await init_db()
        logger.info("database_initialized", database=settings.DATABASE_NAME)
    except Exception as e:
        logger.error(
            "database_initialization_failed",
            error=str(e),
            database_url=settings.MONGODB_URL,
            exc_info=True,
        )
        raise

    # Optional, graceful degradation if Redis unavailable
    await cache.initialize()

    line_client = get_line_client()
    await line_client.start()

    if not settings.LINE_CHANNEL_SECRET:
        logger.warning("line_channel_secret_missing", message="All webhook deliveries will be rejected")

    maintenance = MaintenanceLoop()
    maintenance.start()

    yield

    logger.info("application_shutdown")

    await maintenance.stop()
    await get_automation_forwarder().drain()
    await line_client.close()
    await cache.close()
    await close_db()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.API_VERSION,
    description="""
**Turns LINE group conversations into bounded chat sessions and summarizes each one.**

## Key Features
- **LINE Webhook Ingestion**: Signature-verified, events processed independently
- **Session Lifecycle**: Sessions close after a message limit or an idle period, then get summarized
- **Multi-tenant**: Rooms belong to organizations, linked with an activation code
- **Dashboard API**: Rooms, sessions, transcripts and summaries per organization
- **Audit Trail**: Every sensitive dashboard action is recorded

## Architecture
- **Database**: MongoDB with Beanie ODM
- **Cache**: Optional Redis for membership and LINE profile lookups
- **Summaries**: Gemini generateContent
- **Authentication**: HS256 JWT issued by the identity service
- **Observability**: Prometheus metrics and structured logging with correlation IDs
    """,
    docs_url="/docs" if settings.ENABLE_DOCS else None,
    redoc_url="/redoc" if settings.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if settings.ENABLE_DOCS else None,
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_group_untemplated=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, endpoint="/metrics")

# ========== Middleware Stack ==========
# Middleware executes in REVERSE order of registration.
#
# Execution Order:
# 1. RequestContextMiddleware (attaches user id from the bearer token)
# 2. AccessLogMiddleware (correlation id, request/response logging)
# 3. CORSMiddleware
# 4. Route Handler

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

app.add_middleware(AccessLogMiddleware)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(ops.router, tags=["operations"])
app.include_router(webhook.router, tags=["webhook"])
app.include_router(organizations.router, prefix=settings.API_PREFIX, tags=["organizations"])
app.include_router(rooms.router, prefix=settings.API_PREFIX, tags=["rooms"])
app.include_router(sessions.router, prefix=settings.API_PREFIX, tags=["sessions"])
app.include_router(messages.router, prefix=settings.API_PREFIX, tags=["messages"])
app.include_router(summaries.router, prefix=settings.API_PREFIX, tags=["summaries"])


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    from fastapi.openapi.utils import get_openapi

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )

    if settings.ENABLE_DOCS:
        openapi_schema["components"] = openapi_schema.get("components", {})
        openapi_schema["components"]["securitySchemes"] = {
            "BearerAuth": {
                "type": "http",
                "scheme": "bearer",
                "bearerFormat": "JWT",
                "description": "JWT access token from the identity service. Format: `Bearer <token>`."
            }
        }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "line_summarizer.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=False,  # Custom access log middleware
    )
