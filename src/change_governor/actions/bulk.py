"""
Bulk push and rollback over many actions.

Each member operation runs independently under a bounded semaphore and
the join waits for all of them; one member's failure never cancels its
siblings. Errors are then classified by ErrorKind: kinds meaning the
desired end state already holds (already applied, already reverted,
nothing to publish, not eligible in the current state) count as
successes. Only the rest are reported as failures.

The persistence cache is invalidated exactly once per bulk call,
whatever the mix of outcomes.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable

from pydantic import BaseModel, Field, computed_field

from change_governor.actions.exceptions import ErrorKind, GovernorError
from change_governor.actions.lifecycle import ActionLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_BULK_CONCURRENCY = 5

Invalidator = Callable[[], Awaitable[None] | None]


class BulkFailure(BaseModel):
    """One member operation that genuinely failed."""

    action_id: int
    error: str
    kind: ErrorKind


class BulkResult(BaseModel):
    """
    Aggregate outcome of a bulk operation.

    Attributes:
        succeeded: IDs that reached the desired end state (including
            idempotent no-ops)
        failed: Failures outside the idempotent allow-list
    """

    succeeded: list[int] = Field(default_factory=list)
    failed: list[BulkFailure] = Field(default_factory=list)

    @computed_field
    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @computed_field
    @property
    def failed_count(self) -> int:
        return len(self.failed)


def classify_outcome(outcome: object) -> BulkFailure | None:
    """
    Classify one member outcome.

    Returns:
        None if the member counts as a success, a BulkFailure otherwise
        (action_id is filled in by the caller)
    """
    if not isinstance(outcome, BaseException):
        return None
    if isinstance(outcome, GovernorError):
        if outcome.is_idempotent:
            return None
        return BulkFailure(action_id=0, error=str(outcome), kind=outcome.kind)
    return BulkFailure(
        action_id=0,
        error=f"{type(outcome).__name__}: {outcome}",
        kind=ErrorKind.PERMANENT,
    )


class BulkOrchestrator:
    """
    Fan-out wrapper over lifecycle push and rollback.

    Example:
        bulk = BulkOrchestrator(lifecycle, invalidate=cache.clear)
        result = await bulk.bulk_rollback([1, 2, 3, 4, 5])
        print(result.succeeded_count, result.failed_count)
    """

    def __init__(
        self,
        lifecycle: ActionLifecycleManager,
        invalidate: Invalidator | None = None,
        concurrency: int = DEFAULT_BULK_CONCURRENCY,
    ) -> None:
        self._lifecycle = lifecycle
        self._invalidate = invalidate
        self._concurrency = max(1, concurrency)

    async def bulk_push(self, action_ids: Iterable[int]) -> BulkResult:
        """Publish every action; see push_to_platform for per-action rules."""
        return await self._fan_out("push", action_ids, self._lifecycle.push_to_platform)

    async def bulk_rollback(self, action_ids: Iterable[int]) -> BulkResult:
        """Roll back every action; see rollback for per-action rules."""
        return await self._fan_out("rollback", action_ids, self._lifecycle.rollback)

    async def _fan_out(
        self,
        operation: str,
        action_ids: Iterable[int],
        call: Callable[[int], Awaitable[object]],
    ) -> BulkResult:
        ids = list(dict.fromkeys(action_ids))
        semaphore = asyncio.Semaphore(self._concurrency)

        async def run_one(action_id: int) -> object:
            async with semaphore:
                return await call(action_id)

        try:
            outcomes = await asyncio.gather(
                *(run_one(action_id) for action_id in ids),
                return_exceptions=True,
            )
        finally:
            await self._run_invalidate()

        result = BulkResult()
        for action_id, outcome in zip(ids, outcomes):
            failure = classify_outcome(outcome)
            if failure is None:
                if isinstance(outcome, GovernorError):
                    logger.debug("Bulk %s of %s was a no-op: %s", operation, action_id, outcome)
                result.succeeded.append(action_id)
            else:
                result.failed.append(failure.model_copy(update={"action_id": action_id}))

        if result.failed:
            logger.warning(
                "Bulk %s: %d succeeded, %d failed",
                operation, result.succeeded_count, result.failed_count,
            )
        return result

    async def _run_invalidate(self) -> None:
        if self._invalidate is None:
            return
        outcome = self._invalidate()
        if inspect.isawaitable(outcome):
            await outcome
