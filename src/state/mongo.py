import os
import logging
from typing import Optional, Tuple
from urllib.parse import urlparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None

# (keys, name) pairs for the prompt log collection
LOG_INDEXES = (
    ([("created_at", -1)], "created_at_desc_v1"),
    ([("caller_id", 1), ("created_at", -1)], "caller_created_at_v1"),
)


def _get_db_name_from_uri(uri: str) -> str:
    # path like "/quotagate" or possibly empty
    parsed = urlparse(uri)
    if parsed.path and len(parsed.path) > 1:
        return parsed.path.lstrip("/")
    return os.getenv("MONGODB_DB", "quotagate")


async def init_mongo(uri: str) -> Tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    """Connect to ``uri``, ping it and ensure the ``logs`` indexes.

    Pool tuning is read from MONGODB_* environment variables. Datetimes come
    back timezone-aware so stored ``reset_at`` values compare against UTC now.
    """
    global _client

    max_pool = int(os.getenv("MONGODB_MAX_POOL_SIZE", "100"))
    min_pool = int(os.getenv("MONGODB_MIN_POOL_SIZE", "0"))
    connect_timeout_ms = int(os.getenv("MONGODB_CONNECT_TIMEOUT_MS", "10000"))
    socket_timeout_ms = int(os.getenv("MONGODB_SOCKET_TIMEOUT_MS", "20000"))

    try:
        _client = AsyncIOMotorClient(
            uri,
            tz_aware=True,
            maxPoolSize=max_pool,
            minPoolSize=min_pool,
            connectTimeoutMS=connect_timeout_ms,
            socketTimeoutMS=socket_timeout_ms,
        )
        db_name = _get_db_name_from_uri(uri)
        db = _client[db_name]

        # quota calls will fail on their own if the server stays unreachable
        try:
            await db.command("ping")
            logger.info("Connected to MongoDB database '%s'", db_name)
        except Exception as e:  # pragma: no cover
            logger.warning("MongoDB ping failed: %s", e)

        await _ensure_indexes(db)
        return _client, db
    except Exception as e:
        logger.exception("Failed to initialize MongoDB: %s", e)
        raise


async def close_mongo() -> None:
    global _client
    if _client is not None:
        _client.close()
    _client = None


async def _ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    col = db["logs"]
    try:
        for keys, name in LOG_INDEXES:
            await col.create_index(keys, name=name)
        logger.info("MongoDB indexes ensured for logs")
    except Exception as e:
        logger.warning("Failed to ensure MongoDB indexes: %s", e)
