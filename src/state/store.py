import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

from .clock import utc_now
from .models import QuotaRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

# fn receives the current record (None if the caller has none yet) and returns
# (result, replacement). A replacement of None means "do not write".
UpdateFn = Callable[[Optional[QuotaRecord]], Tuple[T, Optional[QuotaRecord]]]


class QuotaStoreError(Exception):
    """Quota state could not be read or committed; usage is indeterminate."""


class WriteConflict(Exception):
    pass


def _to_record(caller_id: str, doc: Optional[Dict[str, Any]]) -> Optional[QuotaRecord]:
    if not doc:
        return None
    try:
        return QuotaRecord.from_document(doc)
    except ValidationError as e:
        raise QuotaStoreError(f"malformed quota record for {caller_id}: {e}") from e


class QuotaStore(ABC):
    """Persistence for per-caller quota records.

    ``atomic_update`` is the only mutation path. Implementations must make sure
    two concurrent updates for the same caller never both act on the same
    observed record.
    """

    @abstractmethod
    async def read(self, caller_id: str) -> Optional[QuotaRecord]:
        """Point read without locking."""

    @abstractmethod
    async def atomic_update(self, caller_id: str, fn: UpdateFn) -> T:
        """Run ``fn`` against the current record and commit its replacement in isolation."""


class MemoryQuotaStore(QuotaStore):
    """Process-local fallback when no MongoDB is configured."""

    def __init__(self) -> None:
        self._docs: Dict[str, Dict[str, Any]] = {}

    async def read(self, caller_id: str) -> Optional[QuotaRecord]:
        doc = self._docs.get(caller_id)
        return _to_record(caller_id, doc)

    async def atomic_update(self, caller_id: str, fn: UpdateFn) -> T:
        # No await between read and write, so this is atomic per event loop.
        doc = self._docs.get(caller_id)
        current = _to_record(caller_id, doc)
        result, replacement = fn(current)
        if replacement is not None:
            merged = dict(doc or {})
            merged.update(replacement.model_dump())
            merged["updated_at"] = utc_now()
            self._docs[caller_id] = merged
        return result

    def get_document(self, caller_id: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(caller_id)
        return dict(doc) if doc is not None else None

    def put_document(self, caller_id: str, doc: Dict[str, Any]) -> None:
        self._docs[caller_id] = dict(doc)


class MongoQuotaStore(QuotaStore):
    """Quota records in the ``users`` collection, one document per caller.

    Writes use optimistic concurrency on a ``version`` field: a write only lands
    if the document still carries the version that was read; otherwise the
    whole read-modify-write is retried. This works on standalone servers where
    multi-document transactions are unavailable.
    """

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
        max_attempts: int = 5,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db["users"]
        else:
            raise ValueError("MongoQuotaStore requires a db or collection")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._max_attempts = max_attempts

    async def read(self, caller_id: str) -> Optional[QuotaRecord]:
        try:
            doc = await self._col.find_one({"_id": caller_id})
        except PyMongoError as e:
            raise QuotaStoreError(f"quota read failed: {e}") from e
        return _to_record(caller_id, doc)

    async def atomic_update(self, caller_id: str, fn: UpdateFn) -> T:
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._try_update(caller_id, fn)
            except WriteConflict:
                logger.info("Quota write conflict for %s (attempt %d/%d)", caller_id, attempt, self._max_attempts)
            except PyMongoError as e:
                raise QuotaStoreError(f"quota update failed: {e}") from e
        raise QuotaStoreError(f"quota update for {caller_id} kept conflicting after {self._max_attempts} attempts")

    async def _try_update(self, caller_id: str, fn: UpdateFn) -> T:
        doc = await self._col.find_one({"_id": caller_id})
        current = _to_record(caller_id, doc)
        result, replacement = fn(current)
        if replacement is None:
            return result

        fields = replacement.model_dump()
        fields["updated_at"] = utc_now()

        if doc is None:
            try:
                await self._col.insert_one({"_id": caller_id, "version": 1, **fields})
            except DuplicateKeyError as e:
                raise WriteConflict(caller_id) from e
            return result

        version = doc.get("version")
        fields["version"] = int(version or 0) + 1
        # {"version": None} also matches documents written before versioning
        res = await self._col.update_one({"_id": caller_id, "version": version}, {"$set": fields})
        if res.matched_count != 1:
            raise WriteConflict(caller_id)
        return result
