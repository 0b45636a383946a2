from contextlib import contextmanager
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie
from pymongo.errors import PyMongoError

from line_summarizer.models.organization import Organization
from line_summarizer.models.organization_member import OrganizationMember
from line_summarizer.models.room import Room
from line_summarizer.models.chat_session import ChatSession
from line_summarizer.models.message import Message
from line_summarizer.models.summary import Summary
from line_summarizer.models.audit_log import AuditLog
from line_summarizer.models.invite_code import InviteCode
from line_summarizer.models.line_event_raw import LineEventRaw
from line_summarizer.config import settings
from line_summarizer.core import metrics
from line_summarizer.core.exceptions import StorageError
from line_summarizer.core.logging_config import get_logger

logger = get_logger(__name__)

DOCUMENT_MODELS = [
    Organization,
    OrganizationMember,
    Room,
    ChatSession,
    Message,
    Summary,
    AuditLog,
    InviteCode,
    LineEventRaw,
]

_client: Optional[AsyncIOMotorClient] = None


async def init_db() -> AsyncIOMotorClient:
    """
    Connect to MongoDB and initialize Beanie with every document model.

    Connection pool configuration:
    - maxPoolSize=50: Maximum number of connections (prevents exhaustion)
    - minPoolSize=5: Pre-allocated connections (reduces latency)
    - serverSelectionTimeoutMS=5000: Fail fast if MongoDB is down
    """
    global _client
    try:
        client = AsyncIOMotorClient(
            settings.MONGODB_URL,
            maxPoolSize=50,
            minPoolSize=5,
            maxIdleTimeMS=45000,
            serverSelectionTimeoutMS=5000,
            retryWrites=True,
            retryReads=True,
            tz_aware=False,  # All timestamps are naive UTC
        )

        await client.admin.command('ping')
        logger.info("mongodb_connected", database=settings.DATABASE_NAME)

        await init_beanie(
            database=client[settings.DATABASE_NAME],
            document_models=DOCUMENT_MODELS
        )

        logger.info("beanie_initialized", document_models=len(DOCUMENT_MODELS))

    except PyMongoError as e:
        logger.error("mongodb_connection_failed", error=str(e))
        raise

    _client = client
    return client


async def close_db() -> None:
    global _client
    if _client:
        _client.close()
        _client = None
        logger.info("mongodb_connection_closed")


@contextmanager
def storage_operation(operation: str, collection: str, **context):
    """
    Wrap a write so driver failures surface as StorageError.

    Usage:
        with storage_operation("insert", "messages", session_id=sid):
            await message.insert()

    Failures are logged at error severity and re-raised.
    """
    try:
        yield
    except PyMongoError as e:
        metrics.mongodb_operations_total.labels(
            operation=operation, collection=collection, status="error"
        ).inc()
        logger.error(
            "storage_write_failed",
            operation=operation,
            collection=collection,
            error_type=type(e).__name__,
            error=str(e),
            **context,
        )
        raise StorageError(f"{operation} on {collection} failed: {e}") from e
    else:
        metrics.mongodb_operations_total.labels(
            operation=operation, collection=collection, status="success"
        ).inc()
