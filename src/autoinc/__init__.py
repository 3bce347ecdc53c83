from autoinc.config import Config
from autoinc.core.core import Core
from autoinc.core.modules.counter.models import CounterRecord
from autoinc.core.modules.counter.service import CounterStore, initialize
from autoinc.core.modules.document.model import Document, DocumentModel
from autoinc.core.modules.document.schema import Schema
from autoinc.core.modules.increment.models import AssignmentState, IncrementConfig, RetryPolicy
from autoinc.core.modules.increment.service import AutoIncrement, attach, next_count, reset_count
from autoinc.errors import (
    AutoIncrementError,
    ConfigurationError,
    ConstraintViolationError,
    CounterMissingError,
    UninitializedError,
    ValidationError,
)
from autoinc.logging import setup_logging

__all__ = [
    "AssignmentState",
    "AutoIncrement",
    "AutoIncrementError",
    "Config",
    "ConfigurationError",
    "ConstraintViolationError",
    "Core",
    "CounterMissingError",
    "CounterRecord",
    "CounterStore",
    "Document",
    "DocumentModel",
    "IncrementConfig",
    "RetryPolicy",
    "Schema",
    "UninitializedError",
    "ValidationError",
    "attach",
    "initialize",
    "next_count",
    "reset_count",
    "setup_logging",
]
