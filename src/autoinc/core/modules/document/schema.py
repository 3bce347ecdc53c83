"""Schema definitions for documents validated before they are saved."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from autoinc.core.modules.document.model import Document

ValidateHook = Callable[["Document"], Awaitable[None]]


@dataclass(frozen=True)
class IndexSpec:
    """Index to create on the documents' collection."""

    keys: tuple[tuple[str, int], ...]
    unique: bool = False


class Schema:
    """Field types, indexes, hooks and helpers shared by documents of one model.

    Plugins extend a schema by adding fields, indexes, pre-validate hooks,
    document methods (called with the document first) and model statics.
    """

    def __init__(self, fields: Mapping[str, type] | None = None) -> None:
        self.fields: dict[str, type] = dict(fields or {})
        self.indexes: list[IndexSpec] = []
        self.methods: dict[str, Callable[..., Any]] = {}
        self.statics: dict[str, Callable[..., Any]] = {}
        self._pre_validate: list[ValidateHook] = []

    @property
    def pre_validate_hooks(self) -> list[ValidateHook]:
        return list(self._pre_validate)

    def path(self, name: str) -> type | None:
        """Get the declared type of a field, or None if it is not declared."""
        return self.fields.get(name)

    def add(self, name: str, type_: type) -> None:
        """Declare or override a field."""
        self.fields[name] = type_

    def index(self, keys: Sequence[tuple[str, int]], unique: bool = False) -> None:
        self.indexes.append(IndexSpec(tuple(keys), unique))

    def method(self, name: str, fn: Callable[..., Any]) -> None:
        self.methods[name] = fn

    def static(self, name: str, fn: Callable[..., Any]) -> None:
        self.statics[name] = fn

    def pre_validate(self, hook: ValidateHook) -> None:
        """Register a hook awaited before field validation, in registration order."""
        self._pre_validate.append(hook)

    def plugin(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Apply a plugin function to this schema and return its result."""
        return fn(self, *args, **kwargs)
