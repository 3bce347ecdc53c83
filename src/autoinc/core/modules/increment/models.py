"""Configuration and state for auto-increment attachments."""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Self

import pydantic
from pydantic import BaseModel, ConfigDict

from autoinc.config import Config
from autoinc.errors import ConfigurationError

PRIMARY_KEY = "_id"


class AssignmentState(StrEnum):
    """Progress of count assignment for one document instance."""

    UNTOUCHED = "untouched"
    ASSIGNING = "assigning"
    ASSIGNED = "assigned"
    FAILED = "failed"


class IncrementConfig(BaseModel):
    """Options for one auto-incremented field, fixed at attach time."""

    model: str  # Model to track counts for
    field: str = PRIMARY_KEY  # Field receiving the count
    grouping_field: str = ""  # Document field whose value partitions the sequence
    start_at: int = 0  # First value handed out
    increment_by: int = 1  # Step between values
    unique: bool = True  # Create a unique index on the field (or field + grouping field)
    migrate: bool = False  # Run on every validation, for backfilling existing documents
    output_filter: Callable[[int], Any] | None = None  # Transforms the count before it is written

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def initial_count(self) -> int:
        """Count stored in a fresh counter so the first increment yields start_at."""
        return self.start_at - self.increment_by

    @property
    def grouped(self) -> bool:
        return bool(self.grouping_field)

    @classmethod
    def from_options(cls, options: str | Mapping[str, Any] | Self | None) -> Self:
        """Resolve a model name, an option mapping or a config into a validated config.

        Raises:
            ConfigurationError: If the model is missing or any option is invalid
        """
        if isinstance(options, cls):
            return options
        if isinstance(options, str):
            data: dict[str, Any] = {"model": options}
        elif isinstance(options, Mapping):
            data = dict(options)
        elif options is None:
            data = {}
        else:
            raise ConfigurationError(f"Unsupported options type: {type(options).__name__}")

        model = data.get("model")
        if not isinstance(model, str) or not model:
            raise ConfigurationError("model must be set")

        try:
            config = cls.model_validate(data)
        except pydantic.ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

        if config.field == PRIMARY_KEY and config.grouped:
            raise ConfigurationError("Cannot use a grouping field with _id, choose a different field name.")
        return config


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded fixed-delay retry for duplicate-key races."""

    max_attempts: int = 10
    delay: float = 0.005  # seconds

    @classmethod
    def from_config(cls, config: Config) -> Self:
        return cls(max_attempts=config.retry_attempts, delay=config.retry_delay)
