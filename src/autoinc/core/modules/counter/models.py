"""Persisted counters backing auto-incremented fields."""

from typing import Any

from pydantic import Field

from autoinc.core.db import MongoModel


class CounterRecord(MongoModel):
    """Last count handed out for one (model, field, groupingField) key.

    Indexed on (field, groupingField, model) - unique.
    """

    model: str  # Logical model name, not necessarily the collection name
    field: str  # Tracked field within that model
    grouping_field: str = Field("", alias="groupingField")  # Value of the grouping partition, "" if ungrouped
    count: int = 0  # Last value handed out; next value is count + incrementBy


def counter_key(model: str, field: str, grouping_value: str) -> dict[str, Any]:
    """Filter matching exactly one counter row."""
    return {"model": model, "field": field, "groupingField": grouping_value}
