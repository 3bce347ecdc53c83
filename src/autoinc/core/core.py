from __future__ import annotations

from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from pymongo import AsyncMongoClient
from pymongo.asynchronous.database import AsyncDatabase

from autoinc.config import Config
from autoinc.logging import setup_logging

if TYPE_CHECKING:
    from autoinc.core.modules.counter.service import CounterStore
    from autoinc.core.modules.document.model import DocumentModel
    from autoinc.core.modules.document.schema import Schema
    from autoinc.core.modules.increment.models import IncrementConfig
    from autoinc.core.modules.increment.service import AutoIncrement


class Service:
    """Base class for services with direct database access."""

    def __init__(self, database: AsyncDatabase[dict[str, Any]]) -> None:
        self.database = database

    async def on_start(self) -> None:
        """Initialize service on application startup."""

    async def on_stop(self) -> None:
        """Cleanup service on application shutdown."""


class Core:
    """Container owning one MongoDB connection and the counter store bound to it."""

    config: Config
    mongo_client: AsyncMongoClient[dict[str, Any]]
    database: AsyncDatabase[dict[str, Any]]
    counters: CounterStore

    def __init__(self, config: Config) -> None:
        """Initialize logging, the MongoDB client and a counter store from config."""
        from autoinc.core.modules.counter.service import CounterStore  # noqa: PLC0415

        self.config = config
        setup_logging(config.debug)
        self.mongo_client = AsyncMongoClient(config.database_url, uuidRepresentation="standard")
        self.database = self.mongo_client.get_database(urlparse(config.database_url).path[1:])
        self.counters = CounterStore(self.database, config.counter_collection)

    def model(self, name: str, schema: Schema, collection_name: str | None = None) -> DocumentModel:
        """Bind a schema to a collection of this database."""
        from autoinc.core.modules.document.model import DocumentModel  # noqa: PLC0415

        return DocumentModel(name, schema, self.database, collection_name)

    def attach(self, schema: Schema, options: str | Mapping[str, Any] | IncrementConfig) -> AutoIncrement:
        """Attach auto-increment to a schema using this core's counters and retry settings."""
        from autoinc.core.modules.increment.models import RetryPolicy  # noqa: PLC0415
        from autoinc.core.modules.increment.service import attach  # noqa: PLC0415

        return attach(schema, options, self.counters, retry=RetryPolicy.from_config(self.config))

    @asynccontextmanager
    async def lifespan(self) -> AsyncGenerator[None]:
        """Manage connection lifecycle - startup and shutdown."""
        await self.on_start()
        try:
            yield
        finally:
            await self.on_stop()

    async def on_start(self) -> None:
        """Register the counter schema."""
        await self.counters.on_start()

    async def on_stop(self) -> None:
        """Stop the counter store and close the MongoDB connection."""
        await self.counters.on_stop()
        await self.mongo_client.aclose()
