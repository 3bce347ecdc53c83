from typing import Any

import structlog
from pymongo import ReturnDocument
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import DuplicateKeyError, OperationFailure

from autoinc.core.core import Service
from autoinc.core.modules.counter.models import CounterRecord, counter_key
from autoinc.errors import CounterMissingError, UninitializedError

logger = structlog.get_logger(__name__)

DEFAULT_COLLECTION = "identitycounters"

COUNTER_KEYS = [("field", 1), ("groupingField", 1), ("model", 1)]

# IndexAlreadyExists, IndexOptionsConflict, IndexKeySpecsConflict
INDEX_CONFLICT_CODES = frozenset({68, 85, 86})


class CounterStore(Service):
    """Race-safe storage of counter rows, one per (model, field, groupingField).

    Every mutation is a single-document atomic operation; the unique index on
    the key is the only thing serializing concurrent first access.
    """

    def __init__(self, database: AsyncDatabase[dict[str, Any]], collection_name: str = DEFAULT_COLLECTION) -> None:
        super().__init__(database)
        self._collection = database.get_collection(collection_name)
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def on_start(self) -> None:
        await self.ensure_schema()

    async def ensure_schema(self) -> None:
        """Create the unique key index, tolerating an existing unique index on the same keys.

        Raises:
            OperationFailure: If index creation fails for any other reason, including an
                existing index on the key that is not unique
        """
        try:
            await self._collection.create_index(COUNTER_KEYS, unique=True)
        except OperationFailure as exc:
            if exc.code not in INDEX_CONFLICT_CODES or not await self._has_unique_key_index():
                raise
            logger.debug("counter_index_exists", collection=self._collection.name, code=exc.code)
        self._ready = True

    async def _has_unique_key_index(self) -> bool:
        indexes = await self._collection.index_information()
        return any(
            info.get("unique", False) and [tuple(key) for key in info["key"]] == COUNTER_KEYS
            for info in indexes.values()
        )

    def _ensure_ready(self) -> None:
        if not self._ready:
            raise UninitializedError

    async def find_counter(self, model: str, field: str, grouping_value: str) -> CounterRecord | None:
        """Get the counter for a key, adopting a legacy ungrouped row if needed."""
        self._ensure_ready()
        doc = await self._collection.find_one(counter_key(model, field, grouping_value))
        if doc is None and grouping_value == "":
            doc = await self._backfill_legacy(model, field)
        return CounterRecord.from_mongo(doc)

    async def _backfill_legacy(self, model: str, field: str) -> dict[str, Any] | None:
        # Rows written before grouping existed have no groupingField at all
        doc = await self._collection.find_one_and_update(
            {"model": model, "field": field, "groupingField": {"$exists": False}},
            {"$set": {"groupingField": ""}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            logger.info("legacy_counter_backfilled", model=model, field=field, count=doc.get("count"))
        return doc

    async def create_counter_if_absent(self, model: str, field: str, grouping_value: str, initial_count: int) -> None:
        """Insert a counter row; losing the race to a concurrent insert is not an error."""
        self._ensure_ready()
        record = CounterRecord(model=model, field=field, grouping_field=grouping_value, count=initial_count)
        try:
            await self._collection.insert_one(record.to_mongo())
        except DuplicateKeyError:
            logger.debug("counter_create_race_lost", model=model, field=field, grouping_value=grouping_value)
            return
        logger.debug("counter_created", model=model, field=field, grouping_value=grouping_value, count=initial_count)

    async def increment_and_fetch(self, model: str, field: str, grouping_value: str, delta: int) -> CounterRecord:
        """Atomically add delta to the count and return the updated row."""
        self._ensure_ready()
        doc = await self._collection.find_one_and_update(
            counter_key(model, field, grouping_value),
            {"$inc": {"count": delta}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise CounterMissingError(f"No counter for model '{model}', field '{field}', group '{grouping_value}'")
        return CounterRecord.model_validate(doc)

    async def set_count_if_greater(self, model: str, field: str, grouping_value: str, candidate: int) -> None:
        """Raise the stored count to candidate, never lowering it."""
        self._ensure_ready()
        query = counter_key(model, field, grouping_value) | {"count": {"$lt": candidate}}
        await self._collection.update_one(query, {"$set": {"count": candidate}})

    async def reset_counter(self, model: str, field: str, grouping_value: str, reset_value: int) -> None:
        """Unconditionally set the stored count; missing counters are left missing."""
        self._ensure_ready()
        key = counter_key(model, field, grouping_value)
        result = await self._collection.update_one(key, {"$set": {"count": reset_value}})
        if result.matched_count == 0 and grouping_value == "":
            if await self._backfill_legacy(model, field) is not None:
                await self._collection.update_one(key, {"$set": {"count": reset_value}})
        logger.debug("counter_reset", model=model, field=field, grouping_value=grouping_value, count=reset_value)


async def initialize(
    database: AsyncDatabase[dict[str, Any]], collection_name: str = DEFAULT_COLLECTION
) -> CounterStore:
    """Create a counter store for a database and register its schema."""
    store = CounterStore(database, collection_name)
    await store.ensure_schema()
    return store
