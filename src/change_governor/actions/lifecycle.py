"""
Action lifecycle manager.

This module provides ActionLifecycleManager, which owns the Action state
machine:

    pending -> running -> completed | failed
    pending -> dry_run                (simulated, never reaches the platform)
    pending -> completed              (staged: auto-publish off, unpublished)
    pending -> cancelled              (discarded before execution)
    completed | dry_run -> rolled_back

Every external call is bounded by the execution timeout; transient
platform errors are retried with backoff inside that budget. For every
action the order is fixed: snapshot committed, then platform call, then
terminal status. A timed-out or failed call moves the action to failed
and leaves the snapshot in place for manual reconciliation.

Per project patterns:
- Every status change is a guarded compare-and-set in ActionDB
- Log all lifecycle events via ActionAuditor
- Operations on one action are serialized by a per-action lock
"""

import asyncio
import logging
import time
import weakref
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

from change_governor.actions.audit import ActionAuditor
from change_governor.actions.exceptions import (
    ErrorKind,
    NoContentError,
    NotEligibleError,
    PlatformError,
    RollbackFailedError,
    StateChangedError,
)
from change_governor.actions.retry import RetryConfig
from change_governor.actions.types import (
    Action,
    ActionStatus,
    AutomationSettings,
    Candidate,
    ExecutedBy,
    Snapshot,
    utcnow,
)
from change_governor.db.actions import ActionDB
from change_governor.db.snapshots import SnapshotStore
from change_governor.platform.protocols import PlatformClient, PlatformResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_EXECUTION_TIMEOUT = 30.0


class ActionLifecycleManager:
    """
    Creates, executes, publishes, rolls back and discards actions.

    Example:
        manager = ActionLifecycleManager(db_path, platform, auditor)
        action = await manager.create_action(candidate, settings)
        action = await manager.execute(action.id, settings)
        action = await manager.rollback(action.id)
    """

    def __init__(
        self,
        db_path: Path,
        platform: PlatformClient,
        auditor: ActionAuditor,
        retry_config: RetryConfig | None = None,
        execution_timeout: float = DEFAULT_EXECUTION_TIMEOUT,
    ) -> None:
        """
        Initialize the lifecycle manager.

        Args:
            db_path: Path to SQLite database
            platform: Client that applies and reverts changes
            auditor: ActionAuditor for lifecycle logging
            retry_config: Backoff for transient platform errors
            execution_timeout: Seconds allowed per external operation,
                retries included
        """
        self.db_path = db_path
        self._platform = platform
        self._auditor = auditor
        self._retry_config = retry_config or RetryConfig()
        self._timeout = execution_timeout
        # Entries vanish once no coroutine holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._in_flight: set[asyncio.Task] = set()

    def _lock(self, action_id: int) -> asyncio.Lock:
        return self._locks.setdefault(action_id, asyncio.Lock())

    async def drain(self) -> None:
        """Wait for executions whose callers were cancelled to finish."""
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    # =========================================================================
    # Platform calls
    # =========================================================================

    async def _with_retry(self, call: Callable[[], Awaitable[T]]) -> T:
        attempts = 0
        while True:
            try:
                return await call()
            except PlatformError as e:
                attempts += 1
                if e.kind != ErrorKind.TRANSIENT or not self._retry_config.should_retry(attempts):
                    raise
                delay = self._retry_config.delay_for(attempts - 1)
                logger.info("Transient platform error (%s), retrying in %.2fs", e, delay)
                await asyncio.sleep(delay)

    async def _bounded(self, call: Callable[[], Awaitable[T]], operation: str) -> T:
        """
        Run a platform call with retries under the execution timeout.

        Raises:
            PlatformError: With kind TIMEOUT if the budget ran out, or the
                client's classification otherwise
        """
        try:
            return await asyncio.wait_for(self._with_retry(call), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise PlatformError(
                ErrorKind.TIMEOUT,
                f"{operation} timed out after {self._timeout}s",
            ) from e
        except PlatformError:
            raise
        except Exception as e:
            raise PlatformError(ErrorKind.PERMANENT, f"{type(e).__name__}: {e}") from e

    async def _apply(self, action: Action) -> PlatformResult:
        try:
            return await self._bounded(
                lambda: self._platform.apply(action.entity_id, action.payload),
                f"apply for action {action.id}",
            )
        except PlatformError as e:
            if e.kind != ErrorKind.ALREADY_APPLIED:
                raise
            logger.info("Action %s already applied on platform", action.id)
            return PlatformResult(entity_id=action.entity_id, state={"already_applied": True})

    async def _capture(self, action: Action, reason: str) -> Snapshot:
        """Fetch the entity's current state and commit it as a snapshot."""
        state = await self._bounded(
            lambda: self._platform.fetch_state(action.entity_id, action.payload),
            f"fetch_state for action {action.id}",
        )
        async with SnapshotStore(self.db_path) as store:
            return await store.capture(Snapshot(
                entity_id=action.entity_id,
                action_id=action.id,
                captured_state=state,
                reason=reason,
            ))

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_action(
        self,
        candidate: Candidate,
        settings: AutomationSettings,
        executed_by: ExecutedBy = ExecutedBy.AGENT,
        decision_reason: str | None = None,
    ) -> Action:
        """
        Create a pending action from an admitted candidate.

        Args:
            candidate: The admitted candidate
            settings: Merchant settings; dry_run is fixed from them here
            executed_by: Who triggered the action
            decision_reason: Overrides the candidate's reason

        Returns:
            The created Action
        """
        action = Action(
            merchant_id=candidate.merchant_id,
            action_type=candidate.action_type,
            entity_type=candidate.entity_type,
            entity_id=candidate.entity_id,
            decision_reason=decision_reason or candidate.decision_reason,
            rule_id=candidate.rule_id,
            payload=candidate.payload,
            estimated_impact=candidate.estimated_impact,
            executed_by=executed_by,
            dry_run=settings.dry_run_mode,
            credit_cost=candidate.estimated_cost,
        )
        async with ActionDB(self.db_path) as db:
            created = await db.create_action(action)

        await self._auditor.log_action_created(created)
        return created

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute(self, action_id: int, settings: AutomationSettings) -> Action:
        """
        Execute a pending action.

        Dry-run actions are simulated. With auto-publish off the action is
        completed unpublished (staged) without calling the platform.
        Otherwise the snapshot is committed and the payload applied.

        Execution failures are recorded on the action and returned, not
        raised.

        Args:
            action_id: The action to execute
            settings: Merchant settings (auto-publish flag)

        Returns:
            The action in its terminal state

        Raises:
            ActionNotFoundError: If the action does not exist
            NotEligibleError: If the action is not pending
        """
        async with self._lock(action_id):
            async with ActionDB(self.db_path) as db:
                action = await db.require_action(action_id)

            if action.status != ActionStatus.PENDING:
                raise NotEligibleError(action_id, action.status.value, "execute")

            if action.dry_run:
                return await self._simulate(action)
            if not settings.auto_publish_enabled:
                return await self._stage(action)
            return await self._run(action)

    async def _simulate(self, action: Action) -> Action:
        async with ActionDB(self.db_path) as db:
            simulated = await db.transition(
                action.id,
                ActionStatus.PENDING,
                ActionStatus.DRY_RUN,
                result={
                    "simulated": True,
                    "changes": action.payload.changes(),
                    "estimated_impact": action.estimated_impact.model_dump(mode="json"),
                },
                completed_at=utcnow(),
            )
        logger.info("Dry run recorded for action %s", action.id)
        await self._auditor.log_execution_finished(simulated)
        return simulated

    async def _stage(self, action: Action) -> Action:
        async with ActionDB(self.db_path) as db:
            staged = await db.transition(
                action.id,
                ActionStatus.PENDING,
                ActionStatus.COMPLETED,
                result={"staged": True, "changes": action.payload.changes()},
                published_to_shopify=False,
                completed_at=utcnow(),
            )
        await self._auditor.log_execution_finished(staged)
        return staged

    async def _run(self, action: Action) -> Action:
        """
        pending -> running -> completed | failed.

        The work runs in its own task under asyncio.shield: cancelling the
        caller does not cancel a running action, which still reaches a
        terminal state (see drain()).
        """
        task = asyncio.ensure_future(self._drive(action))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(task)

    async def _drive(self, action: Action) -> Action:
        async with ActionDB(self.db_path) as db:
            running = await db.transition(action.id, ActionStatus.PENDING, ActionStatus.RUNNING)

        start = time.monotonic()
        snapshot: Snapshot | None = None
        try:
            await self._auditor.log_execution_started(running)
            snapshot = await self._capture(running, "before_execution")
            outcome = await self._apply(running)
        except PlatformError as e:
            return await self._finish_failed(running, e, snapshot, start)
        except Exception as e:
            await self._finish_failed(
                running,
                PlatformError(ErrorKind.PERMANENT, f"{type(e).__name__}: {e}"),
                snapshot,
                start,
            )
            raise

        try:
            async with ActionDB(self.db_path) as db:
                completed = await db.transition(
                    action.id,
                    ActionStatus.RUNNING,
                    ActionStatus.COMPLETED,
                    result={"state": outcome.state, "snapshot_id": snapshot.id},
                    actual_impact=outcome.impact,
                    published_to_shopify=True,
                    completed_at=utcnow(),
                )
        except Exception as e:
            # Applied on the platform but not recorded; the snapshot id in
            # the failed result is what reconciliation works from.
            await self._finish_failed(
                running,
                PlatformError(
                    ErrorKind.PERMANENT,
                    f"Applied but completion not recorded: {type(e).__name__}: {e}",
                ),
                snapshot,
                start,
            )
            raise
        await self._auditor.log_execution_finished(
            completed, duration_ms=int((time.monotonic() - start) * 1000)
        )
        return completed

    async def _finish_failed(
        self,
        action: Action,
        error: PlatformError,
        snapshot: Snapshot | None,
        start: float,
    ) -> Action:
        failed = await self._fail(action, error, snapshot)
        await self._auditor.log_execution_finished(
            failed, duration_ms=int((time.monotonic() - start) * 1000)
        )
        return failed

    async def _fail(
        self,
        action: Action,
        error: PlatformError,
        snapshot: Snapshot | None,
    ) -> Action:
        logger.warning("Action %s failed (%s): %s", action.id, error.kind.value, error)
        result: dict[str, Any] = {"error": str(error), "error_kind": error.kind.value}
        if snapshot is not None:
            result["snapshot_id"] = snapshot.id
        async with ActionDB(self.db_path) as db:
            return await db.transition(
                action.id,
                ActionStatus.RUNNING,
                ActionStatus.FAILED,
                result=result,
                completed_at=utcnow(),
            )

    # =========================================================================
    # Publishing
    # =========================================================================

    async def push_to_platform(self, action_id: int) -> Action:
        """
        Publish an action's payload to the platform.

        Valid from pending (runs the action) or completed-but-unpublished
        (publishes staged content). A no-op if already published.

        Args:
            action_id: The action to publish

        Returns:
            The published action

        Raises:
            ActionNotFoundError: If the action does not exist
            NotEligibleError: If the action is in any other state, or is a
                dry run
            NoContentError: If the payload has nothing to publish
            PlatformError: If the platform call failed
        """
        async with self._lock(action_id):
            async with ActionDB(self.db_path) as db:
                action = await db.require_action(action_id)

            if action.published_to_shopify:
                return action

            if action.dry_run:
                raise NotEligibleError(action_id, ActionStatus.DRY_RUN.value, "push")
            if action.status not in (ActionStatus.PENDING, ActionStatus.COMPLETED):
                raise NotEligibleError(action_id, action.status.value, "push")
            if not action.payload.has_content():
                raise NoContentError(action_id)

            if action.status == ActionStatus.PENDING:
                ran = await self._run(action)
                if ran.status == ActionStatus.FAILED:
                    raise PlatformError(
                        ErrorKind(ran.result["error_kind"]),
                        ran.result["error"],
                    )
                await self._auditor.log_published(ran)
                return ran

            return await self._publish_staged(action)

    async def _publish_staged(self, action: Action) -> Action:
        snapshot = await self._capture(action, "before_publish")
        outcome = await self._apply(action)

        result = dict(action.result or {})
        result.update({"staged": False, "state": outcome.state, "snapshot_id": snapshot.id})
        async with ActionDB(self.db_path) as db:
            try:
                published = await db.transition(
                    action.id,
                    ActionStatus.COMPLETED,
                    ActionStatus.COMPLETED,
                    expected_published=False,
                    result=result,
                    actual_impact=outcome.impact,
                    published_to_shopify=True,
                )
            except StateChangedError:
                # Another process published or rolled it back first.
                current = await db.require_action(action.id)
                if current.published_to_shopify:
                    logger.info("Action %s was published concurrently", action.id)
                    return current
                raise
        await self._auditor.log_published(published)
        return published

    # =========================================================================
    # Rollback
    # =========================================================================

    async def rollback(self, action_id: int, actor: str = "user") -> Action:
        """
        Restore the entity to its pre-change snapshot.

        Only on confirmed success is the action marked rolled_back and
        unpublished. A failed revert leaves the action completed, records
        the failure on it and raises an alert. Rolling back an already
        rolled-back action returns it unchanged.

        Args:
            action_id: The action to roll back
            actor: Who requested the rollback

        Returns:
            The rolled-back action

        Raises:
            ActionNotFoundError: If the action does not exist
            NotEligibleError: If the action is not completed or dry_run
            RollbackFailedError: If the revert call failed
        """
        async with self._lock(action_id):
            async with ActionDB(self.db_path) as db:
                action = await db.require_action(action_id)

            if action.status == ActionStatus.ROLLED_BACK:
                return action
            if action.status not in (ActionStatus.COMPLETED, ActionStatus.DRY_RUN):
                raise NotEligibleError(action_id, action.status.value, "roll back")

            if action.published_to_shopify:
                await self._revert(action)

            async with ActionDB(self.db_path) as db:
                rolled_back = await db.transition(
                    action_id,
                    action.status,
                    ActionStatus.ROLLED_BACK,
                    published_to_shopify=False,
                    rolled_back_at=utcnow(),
                )
            logger.info("Rolled back action %s", action_id)
            await self._auditor.log_rolled_back(rolled_back, actor=actor)
            return rolled_back

    async def _revert(self, action: Action) -> None:
        async with SnapshotStore(self.db_path) as store:
            snapshot = await store.latest_for_action(action.id)

        if snapshot is None:
            await self._rollback_failed(action, "No snapshot captured for action")
            raise RollbackFailedError(action.id, "No snapshot captured for action")

        try:
            await self._bounded(
                lambda: self._platform.revert(action.entity_id, snapshot),
                f"revert for action {action.id}",
            )
        except PlatformError as e:
            if e.kind == ErrorKind.ALREADY_REVERTED:
                logger.info("Action %s already reverted on platform", action.id)
                return
            await self._rollback_failed(action, str(e), e.kind)
            kind = ErrorKind.TIMEOUT if e.kind == ErrorKind.TIMEOUT else ErrorKind.PERMANENT
            raise RollbackFailedError(action.id, str(e), kind=kind) from e

    async def _rollback_failed(
        self,
        action: Action,
        reason: str,
        kind: ErrorKind = ErrorKind.PERMANENT,
    ) -> None:
        result = dict(action.result or {})
        result["rollback_error"] = reason
        result["rollback_error_kind"] = kind.value
        async with ActionDB(self.db_path) as db:
            await db.record_result(action.id, result)
        await self._auditor.log_rollback_failed(action, reason)

    # =========================================================================
    # Discard
    # =========================================================================

    async def discard(self, action_id: int, reason: str) -> Action:
        """
        Cancel a pending action without calling the platform.

        Raises:
            ActionNotFoundError: If the action does not exist
            NotEligibleError: If the action is no longer pending
        """
        async with self._lock(action_id):
            async with ActionDB(self.db_path) as db:
                action = await db.require_action(action_id)
                if action.status != ActionStatus.PENDING:
                    raise NotEligibleError(action_id, action.status.value, "discard")
                cancelled = await db.transition(
                    action_id,
                    ActionStatus.PENDING,
                    ActionStatus.CANCELLED,
                    result={"discarded": True, "reason": reason},
                    completed_at=utcnow(),
                )
            await self._auditor.log_discarded(cancelled, reason)
            return cancelled

    async def discard_disabled(
        self,
        merchant_id: str,
        settings: AutomationSettings,
    ) -> list[Action]:
        """
        Cancel every pending action whose type is no longer enabled.

        Actions that started running meanwhile are left to finish.

        Returns:
            The cancelled actions
        """
        async with ActionDB(self.db_path) as db:
            pending = await db.list_pending(merchant_id)

        cancelled = []
        for action in pending:
            if action.action_type in settings.enabled_action_types:
                continue
            try:
                cancelled.append(await self.discard(
                    action.id,
                    f"Action type '{action.action_type.value}' disabled",
                ))
            except (NotEligibleError, StateChangedError) as e:
                logger.debug("Not discarding action %s: %s", action.id, e)
        return cancelled
