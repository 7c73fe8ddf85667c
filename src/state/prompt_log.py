import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from .models import PromptLogEntry

logger = logging.getLogger(__name__)


class PromptLog:
    """Append-only prompt telemetry. Never raises."""

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["logs"]
        else:
            self._col = None

    async def record(self, entry: PromptLogEntry) -> None:
        if self._col is None:
            logger.info(
                "prompt caller=%s chars=%d ip=%s preview=%r",
                entry.caller_id,
                entry.char_count,
                entry.source_ip,
                entry.preview,
            )
            return
        try:
            await self._col.insert_one(entry.model_dump())
        except Exception as e:
            logger.warning("Failed to record prompt log: %s", e)
