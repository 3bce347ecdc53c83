import math
from collections.abc import Mapping
from numbers import Real
from typing import Any
from weakref import WeakKeyDictionary

import structlog
from pymongo.errors import DuplicateKeyError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_fixed

from autoinc.core.modules.counter.service import CounterStore
from autoinc.core.modules.document.model import Document
from autoinc.core.modules.document.schema import Schema
from autoinc.core.modules.increment.models import PRIMARY_KEY, AssignmentState, IncrementConfig, RetryPolicy
from autoinc.errors import ConstraintViolationError

logger = structlog.get_logger(__name__)


def group_key(value: Any) -> str:
    """Counter key for a grouping value; falsy values mean the ungrouped partition."""
    if not value:
        return ""
    return str(value)


class AutoIncrement:
    """Assigns sequential counts to new documents of one schema.

    Created by `attach`. The counter store is the only shared state; the
    config is immutable and assignment progress is tracked per document.
    """

    def __init__(self, config: IncrementConfig, counters: CounterStore, retry: RetryPolicy | None = None) -> None:
        self.config = config
        self.counters = counters
        self.retry = retry or RetryPolicy()
        self._states: WeakKeyDictionary[Document, AssignmentState] = WeakKeyDictionary()

    def state_of(self, document: Document) -> AssignmentState:
        return self._states.get(document, AssignmentState.UNTOUCHED)

    def grouping_value(self, document: Document) -> str:
        """Partition a document belongs to, "" when ungrouped.

        Falsy values (None, "", 0, False) all fall in the ungrouped partition.
        """
        if not self.config.grouped:
            return ""
        return group_key(document.get(self.config.grouping_field))

    async def next_count(self, grouping_value: Any = "") -> int:
        """Value the next assignment would yield, without consuming it."""
        counter = await self.counters.find_counter(self.config.model, self.config.field, group_key(grouping_value))
        if counter is None:
            return self.config.start_at
        return counter.count + self.config.increment_by

    async def reset_count(self, grouping_value: Any = "") -> int:
        """Rewind the counter so the next assignment yields start_at again."""
        await self.counters.reset_counter(
            self.config.model, self.config.field, group_key(grouping_value), self.config.initial_count
        )
        return self.config.start_at

    async def document_next_count(self, document: Document, grouping_value: Any = None) -> int:
        if grouping_value is None:
            grouping_value = self.grouping_value(document)
        return await self.next_count(grouping_value)

    async def document_reset_count(self, document: Document, grouping_value: Any = None) -> int:
        if grouping_value is None:
            grouping_value = self.grouping_value(document)
        return await self.reset_count(grouping_value)

    def should_assign(self, document: Document) -> bool:
        if self.config.migrate:
            return True
        return document.is_new and self.state_of(document) != AssignmentState.ASSIGNED

    async def on_validate(self, document: Document) -> None:
        """Pre-validate hook: assign a count to the document, retrying duplicate-key races.

        Raises:
            ConstraintViolationError: If every attempt hit a duplicate key
        """
        if not self.should_assign(document):
            return

        self._states[document] = AssignmentState.ASSIGNING
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_fixed(self.retry.delay),
            retry=retry_if_exception_type(DuplicateKeyError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._assign(document)
        except DuplicateKeyError as exc:
            self._states[document] = AssignmentState.FAILED
            logger.error("counter_assign_failed", model=self.config.model, field=self.config.field, error=str(exc))
            raise ConstraintViolationError(
                f"Could not assign '{self.config.field}' for model '{self.config.model}' "
                f"after {self.retry.max_attempts} attempts"
            ) from exc
        except Exception:
            self._states[document] = AssignmentState.FAILED
            raise

    async def _assign(self, document: Document) -> None:
        config = self.config
        group = self.grouping_value(document)

        if await self.counters.find_counter(config.model, config.field, group) is None:
            await self.counters.create_counter_if_absent(config.model, config.field, group, config.initial_count)

        manual = document.get(config.field)
        if isinstance(manual, Real) and not isinstance(manual, bool):
            # Manual values are kept as given and only move the counter forward
            await self.counters.set_count_if_greater(config.model, config.field, group, math.ceil(manual))
            self._states.pop(document, None)
            return

        counter = await self.counters.increment_and_fetch(config.model, config.field, group, config.increment_by)
        value: Any = counter.count
        if config.output_filter is not None:
            value = config.output_filter(counter.count)
        document.set(config.field, value)
        self._states[document] = AssignmentState.ASSIGNED
        logger.debug("counter_assigned", model=config.model, field=config.field, group=group, count=counter.count)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        logger.warning(
            "counter_assign_retry",
            model=self.config.model,
            field=self.config.field,
            attempt=retry_state.attempt_number,
        )


def attach(
    schema: Schema,
    options: str | Mapping[str, Any] | IncrementConfig,
    counters: CounterStore,
    retry: RetryPolicy | None = None,
) -> AutoIncrement:
    """Attach auto-increment to a schema.

    Args:
        schema: Schema whose new documents receive counts
        options: Model name, mapping of IncrementConfig options, or an IncrementConfig
        counters: Counter store of the connection the documents are saved through
        retry: Retry policy for duplicate-key races (default RetryPolicy())

    Returns:
        The attachment, also reachable through the schema's next_count/reset_count helpers

    Raises:
        ConfigurationError: If the options are invalid; nothing is registered in that case
    """
    config = IncrementConfig.from_options(options)
    plugin = AutoIncrement(config, counters, retry)

    if schema.path(config.field) is None or config.field == PRIMARY_KEY:
        schema.add(config.field, int)

    if config.grouped:
        schema.index([(config.field, 1), (config.grouping_field, 1)], unique=config.unique)
    elif config.field != PRIMARY_KEY:
        schema.index([(config.field, 1)], unique=config.unique)

    schema.method("next_count", plugin.document_next_count)
    schema.static("next_count", plugin.next_count)
    schema.method("reset_count", plugin.document_reset_count)
    schema.static("reset_count", plugin.reset_count)

    schema.pre_validate(plugin.on_validate)
    return plugin


async def next_count(
    counters: CounterStore, options: str | Mapping[str, Any] | IncrementConfig, grouping_value: Any = ""
) -> int:
    """Value the next assignment for a model would yield, without a schema or document.

    Raises:
        ConfigurationError: If the options are invalid
    """
    return await AutoIncrement(IncrementConfig.from_options(options), counters).next_count(grouping_value)


async def reset_count(
    counters: CounterStore, options: str | Mapping[str, Any] | IncrementConfig, grouping_value: Any = ""
) -> int:
    """Rewind a model's counter so the next assignment yields start_at again.

    Raises:
        ConfigurationError: If the options are invalid
    """
    return await AutoIncrement(IncrementConfig.from_options(options), counters).reset_count(grouping_value)
