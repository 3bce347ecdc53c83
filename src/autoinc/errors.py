from abc import ABC


class AutoIncrementError(ABC, Exception):
    """Base class for errors raised by autoinc.

    Storage failures are not wrapped: PyMongo errors other than the
    duplicate-key race reach the caller as they are.
    """


class ConfigurationError(AutoIncrementError):
    """Raised when plugin options are invalid at attach time."""


class UninitializedError(AutoIncrementError):
    """Raised when the counter store is used before its schema is registered."""

    def __init__(self, message: str = "Counter store has not been initialized") -> None:
        super().__init__(message)


class ConstraintViolationError(AutoIncrementError):
    """Raised when duplicate-key retries are exhausted while assigning a count."""


class CounterMissingError(AutoIncrementError):
    """Raised when an increment targets a counter that does not exist."""


class ValidationError(AutoIncrementError):
    """Raised when a document fails schema validation."""
