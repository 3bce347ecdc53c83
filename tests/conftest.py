"""Shared pytest fixtures."""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from typing import Any

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure

from autoinc.core.modules.counter.service import CounterStore, initialize
from autoinc.core.modules.document.model import DocumentModel
from autoinc.core.modules.document.schema import Schema

MISSING = object()


@dataclass
class FakeUpdateResult:
    matched_count: int
    modified_count: int


@dataclass
class FakeInsertResult:
    inserted_id: Any


def _matches(doc: dict[str, Any], query: Mapping[str, Any]) -> bool:
    for key, condition in query.items():
        value = doc.get(key, MISSING)
        if isinstance(condition, dict) and condition and all(op.startswith("$") for op in condition):
            for op, operand in condition.items():
                if op == "$exists":
                    if (value is not MISSING) != operand:
                        return False
                elif op == "$lt":
                    if value is MISSING or value is None or not value < operand:
                        return False
                else:
                    raise NotImplementedError(op)
        elif value is MISSING or value != condition:
            return False
    return True


def _apply(doc: dict[str, Any], update: Mapping[str, Any]) -> None:
    for op, fields in update.items():
        for key, value in fields.items():
            if op == "$set":
                doc[key] = value
            elif op == "$inc":
                doc[key] = doc.get(key, 0) + value
            else:
                raise NotImplementedError(op)


class FakeCollection:
    """In-memory stand-in for an async PyMongo collection.

    Each call yields to the event loop once and then runs atomically, so
    concurrent coroutines interleave between calls the way they do against a
    real server. Unique indexes raise DuplicateKeyError.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.docs: list[dict[str, Any]] = []
        self.indexes: dict[str, tuple[list[tuple[str, int]], bool]] = {}
        self.calls: dict[str, int] = {}
        self._failures: dict[str, list[Exception]] = {}

    def fail(self, method: str, *errors: Exception) -> None:
        """Make the next calls of a method raise the given errors, in order."""
        self._failures.setdefault(method, []).extend(errors)

    def pending_failures(self, method: str) -> int:
        return len(self._failures.get(method, []))

    async def _enter(self, method: str) -> None:
        await asyncio.sleep(0)
        self.calls[method] = self.calls.get(method, 0) + 1
        failures = self._failures.get(method)
        if failures:
            raise failures.pop(0)

    def _unique_keys(self) -> list[list[str]]:
        keys = [["_id"]]
        keys.extend([k for k, _ in spec] for spec, unique in self.indexes.values() if unique)
        return keys

    def _check_unique(self, candidate: dict[str, Any], exclude: dict[str, Any] | None = None) -> None:
        for keys in self._unique_keys():
            ident = tuple(candidate.get(k) for k in keys)
            for doc in self.docs:
                if doc is not exclude and tuple(doc.get(k) for k in keys) == ident:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} keys: {keys}", 11000)

    def _find(self, query: Mapping[str, Any]) -> dict[str, Any] | None:
        return next((doc for doc in self.docs if _matches(doc, query)), None)

    async def create_index(self, keys: list[tuple[str, int]], unique: bool = False, **kwargs: Any) -> str:
        await self._enter("create_index")
        name = "_".join(f"{key}_{direction}" for key, direction in keys)
        existing = self.indexes.get(name)
        if existing is not None and existing[1] != unique:
            raise OperationFailure(f"Index already exists with different options: {name}", 85)
        if unique:
            for i, doc in enumerate(self.docs):
                self._check_unique_among(doc, self.docs[i + 1 :], [k for k, _ in keys])
        self.indexes[name] = (list(keys), unique)
        return name

    async def index_information(self) -> dict[str, dict[str, Any]]:
        await self._enter("index_information")
        info = {"_id_": {"key": [("_id", 1)]}}
        for name, (keys, unique) in self.indexes.items():
            info[name] = {"key": list(keys)} | ({"unique": True} if unique else {})
        return info

    def _check_unique_among(self, doc: dict[str, Any], others: list[dict[str, Any]], keys: list[str]) -> None:
        ident = tuple(doc.get(k) for k in keys)
        if any(tuple(other.get(k) for k in keys) == ident for other in others):
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} keys: {keys}", 11000)

    async def insert_one(self, document: Mapping[str, Any]) -> FakeInsertResult:
        await self._enter("insert_one")
        doc = deepcopy(dict(document))
        doc.setdefault("_id", ObjectId())
        self._check_unique(doc)
        self.docs.append(doc)
        return FakeInsertResult(doc["_id"])

    async def find_one(self, query: Mapping[str, Any] | None = None) -> dict[str, Any] | None:
        await self._enter("find_one")
        doc = self._find(query or {})
        return deepcopy(doc) if doc is not None else None

    async def find_one_and_update(
        self,
        query: Mapping[str, Any],
        update: Mapping[str, Any],
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> dict[str, Any] | None:
        await self._enter("find_one_and_update")
        if upsert:
            raise NotImplementedError("upsert")
        doc = self._find(query)
        if doc is None:
            return None
        before = deepcopy(doc)
        self._update_in_place(doc, update)
        return deepcopy(doc) if return_document == ReturnDocument.AFTER else before

    async def update_one(self, query: Mapping[str, Any], update: Mapping[str, Any]) -> FakeUpdateResult:
        await self._enter("update_one")
        doc = self._find(query)
        if doc is None:
            return FakeUpdateResult(0, 0)
        before = deepcopy(doc)
        self._update_in_place(doc, update)
        return FakeUpdateResult(1, int(before != doc))

    async def replace_one(self, query: Mapping[str, Any], replacement: Mapping[str, Any]) -> FakeUpdateResult:
        await self._enter("replace_one")
        doc = self._find(query)
        if doc is None:
            return FakeUpdateResult(0, 0)
        updated = deepcopy(dict(replacement))
        updated["_id"] = doc["_id"]
        self._check_unique(updated, exclude=doc)
        doc.clear()
        doc.update(updated)
        return FakeUpdateResult(1, 1)

    def _update_in_place(self, doc: dict[str, Any], update: Mapping[str, Any]) -> None:
        updated = deepcopy(doc)
        _apply(updated, update)
        self._check_unique(updated, exclude=doc)
        doc.clear()
        doc.update(updated)


class FakeDatabase:
    """In-memory stand-in for an async PyMongo database."""

    def __init__(self, name: str = "test") -> None:
        self.name = name
        self._collections: dict[str, FakeCollection] = {}

    def get_collection(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getitem__(self, name: str) -> FakeCollection:
        return self.get_collection(name)


@pytest.fixture
def database():
    """Empty in-memory database."""
    return FakeDatabase()


@pytest.fixture
def counter_collection(database):
    """Collection the counter store writes to."""
    return database.get_collection("identitycounters")


@pytest.fixture
async def counters(database) -> CounterStore:
    """Counter store with its schema registered."""
    return await initialize(database)


@pytest.fixture
def user_schema():
    """Schema for users with a name and a department."""
    return Schema({"name": str, "dept": str})


@pytest.fixture
def make_model(database) -> Callable[..., Awaitable[DocumentModel]]:
    """Factory binding a schema to a collection and creating its indexes."""

    async def factory(schema: Schema, name: str = "User") -> DocumentModel:
        model = DocumentModel(name, schema, database)
        await model.ensure_indexes()
        return model

    return factory
