from __future__ import annotations

from collections.abc import Mapping
from copy import deepcopy
from functools import partial
from typing import Any
from uuid import uuid4

import structlog
from pymongo.asynchronous.database import AsyncDatabase

from autoinc.core.modules.document.schema import Schema
from autoinc.errors import ValidationError

logger = structlog.get_logger(__name__)


class Document:
    """A document bound to a model, validated through its schema before saving."""

    def __init__(self, model: DocumentModel, data: Mapping[str, Any] | None = None, *, is_new: bool = True) -> None:
        self.model = model
        self.is_new = is_new
        self._data: dict[str, Any] = {}
        for path, value in (data or {}).items():
            self.set(path, value)

    def get(self, path: str) -> Any:
        """Get a value by dotted path, None if any segment is missing."""
        value: Any = self._data
        for part in path.split("."):
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value

    def set(self, path: str, value: Any) -> None:
        """Set a value by dotted path, creating intermediate sub-documents."""
        *parents, last = path.split(".")
        target = self._data
        for part in parents:
            target = target.setdefault(part, {})
        target[last] = value

    def __getitem__(self, path: str) -> Any:
        return self.get(path)

    def __getattr__(self, name: str) -> Any:
        model = self.__dict__.get("model")
        if model is not None and name in model.schema.methods:
            return partial(model.schema.methods[name], self)
        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    def to_mongo(self) -> dict[str, Any]:
        return deepcopy(self._data)

    async def validate(self) -> None:
        """Run pre-validate hooks, then check declared field types.

        Raises:
            ValidationError: If a declared field holds a value of the wrong type
        """
        for hook in self.model.schema.pre_validate_hooks:
            await hook(self)

        for path, type_ in self.model.schema.fields.items():
            value = self.get(path)
            if value is None:
                continue
            if not isinstance(value, type_) or (type_ is int and isinstance(value, bool)):
                raise ValidationError(f"Field '{path}' must be of type {type_.__name__}, got {type(value).__name__}")

    async def save(self) -> None:
        """Validate and insert a new document, or replace an existing one."""
        await self.validate()
        if self.get("_id") is None:
            self.set("_id", uuid4())

        if self.is_new:
            await self.model.collection.insert_one(self.to_mongo())
            self.is_new = False
            logger.debug("document_inserted", model=self.model.name, id=self.get("_id"))
        else:
            await self.model.collection.replace_one({"_id": self.get("_id")}, self.to_mongo())


class DocumentModel:
    """Schema bound to a MongoDB collection."""

    def __init__(
        self,
        name: str,
        schema: Schema,
        database: AsyncDatabase[dict[str, Any]],
        collection_name: str | None = None,
    ) -> None:
        self.name = name
        self.schema = schema
        self.collection = database.get_collection(collection_name or f"{name.lower()}s")

    def __getattr__(self, name: str) -> Any:
        schema = self.__dict__.get("schema")
        if schema is not None and name in schema.statics:
            return schema.statics[name]
        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    def new(self, **data: Any) -> Document:
        return Document(self, data)

    async def create(self, **data: Any) -> Document:
        """Build, validate and insert a document."""
        document = self.new(**data)
        await document.save()
        return document

    async def find_one(self, query: Mapping[str, Any]) -> Document | None:
        doc = await self.collection.find_one(dict(query))
        if doc is None:
            return None
        return Document(self, doc, is_new=False)

    async def ensure_indexes(self) -> None:
        """Create the indexes declared on the schema."""
        for spec in self.schema.indexes:
            await self.collection.create_index(list(spec.keys), unique=spec.unique)
