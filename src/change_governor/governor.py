"""
ChangeGovernor: the surface the dashboard, CLI and evaluation loop use.

Wires the policy store, rule evaluator, admission controller, approval
gate, lifecycle manager and bulk orchestrator together over one SQLite
database, and exposes:
- evaluate(merchant) / submit(candidate): the admission pipeline
- list_actions, rollback, push_to_shopify, bulk_rollback, bulk_push
- approve, reject, list_approvals
- get_settings, update_settings, rule listing/creation/soft-disable

Action listings are cached per filter set and dropped after every
mutating call.
"""

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from change_governor.actions.admission import (
    AdmissionController,
    AdmissionState,
    Decision,
    Verdict,
)
from change_governor.actions.approval import ApprovalGate
from change_governor.actions.audit import ActionAuditor
from change_governor.actions.bulk import DEFAULT_BULK_CONCURRENCY, BulkOrchestrator, BulkResult
from change_governor.actions.exceptions import ApprovalNotFoundError
from change_governor.actions.lifecycle import DEFAULT_EXECUTION_TIMEOUT, ActionLifecycleManager
from change_governor.actions.retry import RetryConfig
from change_governor.actions.rules import Rule, RuleEvaluator
from change_governor.actions.types import (
    Action,
    ActionStatus,
    ActionType,
    ApprovalStatus,
    AutomationSettings,
    Candidate,
    PendingApproval,
    SettingsPatch,
)
from change_governor.db.actions import ActionDB
from change_governor.db.approvals import ApprovalDB
from change_governor.db.policy import PolicyStore
from change_governor.platform.protocols import PlatformClient, ProposalGenerator, SignalSource

logger = logging.getLogger(__name__)


class Submission(BaseModel):
    """
    What happened to one candidate.

    Attributes:
        verdict: Admission verdict
        action: Action created and executed if admitted
        approval: Pending approval if routed to a human
    """

    verdict: Verdict
    action: Action | None = None
    approval: PendingApproval | None = None


class ChangeGovernor:
    """
    Facade over the change-governance components.

    Example:
        governor = ChangeGovernor(db_path, platform, generator, signals)
        submissions = await governor.evaluate("shop-1")
        result = await governor.bulk_rollback([a.action.id for a in submissions if a.action])
    """

    def __init__(
        self,
        db_path: Path,
        platform: PlatformClient,
        generator: ProposalGenerator | None = None,
        signals: SignalSource | None = None,
        retry_config: RetryConfig | None = None,
        execution_timeout: float = DEFAULT_EXECUTION_TIMEOUT,
        bulk_concurrency: int = DEFAULT_BULK_CONCURRENCY,
    ) -> None:
        """
        Initialize the governor.

        Args:
            db_path: Path to SQLite database
            platform: Commerce platform client
            generator: Proposal generator (required for evaluate())
            signals: Signal source (required for evaluate())
            retry_config: Backoff for transient platform errors
            execution_timeout: Seconds allowed per external operation
            bulk_concurrency: Member operations run at once by bulk calls
        """
        self.db_path = db_path
        self.auditor = ActionAuditor(db_path)
        self.lifecycle = ActionLifecycleManager(
            db_path,
            platform,
            self.auditor,
            retry_config=retry_config,
            execution_timeout=execution_timeout,
        )
        self.admission = AdmissionController()
        self.gate = ApprovalGate(db_path, self.lifecycle, self.auditor, self.admission)
        self.bulk = BulkOrchestrator(
            self.lifecycle,
            invalidate=self.invalidate_cache,
            concurrency=bulk_concurrency,
        )
        self._evaluator = RuleEvaluator(generator) if generator is not None else None
        self._signals = signals
        self._cache: dict[tuple[Any, ...], list[Action]] = {}

    def invalidate_cache(self) -> None:
        self._cache.clear()

    # =========================================================================
    # Admission pipeline
    # =========================================================================

    async def submit(
        self,
        candidate: Candidate,
        settings: AutomationSettings | None = None,
        cooldown_seconds: int = 0,
        catalog_size: int = 0,
    ) -> Submission:
        """
        Run one candidate through admission.

        Admitted candidates become actions and are executed at once;
        candidates needing sign-off go to the approval gate; other
        deferrals and rejections create nothing.

        Args:
            candidate: The proposed action
            settings: Merchant settings (loaded if not given)
            cooldown_seconds: Cooldown of the candidate's rule
            catalog_size: Merchant catalog size (0 = unknown)
        """
        if settings is None:
            settings = await self.get_settings(candidate.merchant_id)

        async with ActionDB(self.db_path) as db:
            state = await AdmissionState.load(
                db, candidate, cooldown_seconds=cooldown_seconds, catalog_size=catalog_size
            )
        verdict = self.admission.admit(candidate, settings, state)

        if verdict.decision == Decision.ADMIT:
            action = await self.lifecycle.create_action(candidate, settings)
            action = await self.lifecycle.execute(action.id, settings)
            self.invalidate_cache()
            return Submission(verdict=verdict, action=action)

        if verdict.requires_approval:
            approval = await self.gate.propose(candidate)
            return Submission(verdict=verdict, approval=approval)

        await self.auditor.log_admission(
            candidate.merchant_id,
            "admission_rejected" if verdict.rejected else "admission_deferred",
            verdict.reason,
            candidate.entity_id,
            candidate.rule_id,
        )
        return Submission(verdict=verdict)

    async def evaluate(self, merchant_id: str) -> list[Submission]:
        """
        One evaluation tick for a merchant.

        Observes signals, matches rules, and submits the candidates in
        priority order. When several rules match the same entity for the
        same action type, only the highest-priority candidate is
        submitted.

        Returns:
            One Submission per submitted candidate
        """
        if self._evaluator is None or self._signals is None:
            raise RuntimeError("evaluate() needs a proposal generator and a signal source")

        settings = await self.get_settings(merchant_id)
        observation = await self._signals.observe(merchant_id)
        rules = await self.list_rules(merchant_id)
        cooldowns = {rule.id: rule.cooldown_seconds for rule in rules}

        candidates = await self._evaluator.evaluate(merchant_id, observation.signals, rules)

        submissions = []
        seen: set[tuple[ActionType, str]] = set()
        for candidate in candidates:
            key = (candidate.action_type, candidate.entity_id)
            if key in seen:
                continue
            seen.add(key)
            submissions.append(await self.submit(
                candidate,
                settings,
                cooldown_seconds=cooldowns.get(candidate.rule_id, 0),
                catalog_size=observation.catalog_size,
            ))

        admitted = sum(1 for s in submissions if s.action is not None)
        logger.info(
            "Evaluated %s: %d candidates, %d admitted",
            merchant_id, len(submissions), admitted,
        )
        return submissions

    # =========================================================================
    # Actions
    # =========================================================================

    async def list_actions(
        self,
        merchant_id: str | None = None,
        status: ActionStatus | None = None,
        action_type: ActionType | None = None,
        entity_id: str | None = None,
        published: bool | None = None,
        limit: int = 100,
    ) -> list[Action]:
        """List actions, newest first, served from cache when possible."""
        key = (merchant_id, status, action_type, entity_id, published, limit)
        if key not in self._cache:
            async with ActionDB(self.db_path) as db:
                self._cache[key] = await db.list_actions(
                    merchant_id=merchant_id,
                    status=status,
                    action_type=action_type,
                    entity_id=entity_id,
                    published=published,
                    limit=limit,
                )
        return list(self._cache[key])

    async def get_action(self, action_id: int) -> Action:
        async with ActionDB(self.db_path) as db:
            return await db.require_action(action_id)

    async def rollback(self, action_id: int) -> Action:
        try:
            return await self.lifecycle.rollback(action_id)
        finally:
            self.invalidate_cache()

    async def push_to_shopify(self, action_id: int) -> Action:
        try:
            return await self.lifecycle.push_to_platform(action_id)
        finally:
            self.invalidate_cache()

    async def discard(self, action_id: int, reason: str = "Discarded by user") -> Action:
        try:
            return await self.lifecycle.discard(action_id, reason)
        finally:
            self.invalidate_cache()

    async def bulk_rollback(self, action_ids: list[int]) -> BulkResult:
        return await self.bulk.bulk_rollback(action_ids)

    async def bulk_push(self, action_ids: list[int]) -> BulkResult:
        return await self.bulk.bulk_push(action_ids)

    # =========================================================================
    # Approvals
    # =========================================================================

    async def list_approvals(
        self,
        merchant_id: str | None = None,
        status: ApprovalStatus | None = ApprovalStatus.PENDING,
        limit: int = 100,
    ) -> list[PendingApproval]:
        async with ApprovalDB(self.db_path) as db:
            return await db.list_approvals(merchant_id, status, limit)

    async def approve(self, approval_id: int, reviewed_by: str = "user") -> PendingApproval:
        """
        Approve a pending proposal and run its action.

        The catalog size comes from the signal source when one is wired.

        Raises:
            ApprovalNotFoundError: If the approval does not exist
            ApprovalDeferredError: If a budget or cooldown would be broken
        """
        async with ApprovalDB(self.db_path) as db:
            approval = await db.get_approval(approval_id)
        if approval is None:
            raise ApprovalNotFoundError(approval_id)

        settings = await self.get_settings(approval.merchant_id)
        catalog_size = 0
        if self._signals is not None and approval.status == ApprovalStatus.PENDING:
            observation = await self._signals.observe(approval.merchant_id)
            catalog_size = observation.catalog_size
        try:
            return await self.gate.approve(
                approval_id, settings, reviewed_by=reviewed_by, catalog_size=catalog_size
            )
        finally:
            self.invalidate_cache()

    async def reject(self, approval_id: int, reviewed_by: str = "user") -> PendingApproval:
        return await self.gate.reject(approval_id, reviewed_by=reviewed_by)

    # =========================================================================
    # Settings and rules
    # =========================================================================

    async def get_settings(self, merchant_id: str) -> AutomationSettings:
        async with PolicyStore(self.db_path) as store:
            return await store.get_settings(merchant_id)

    async def update_settings(
        self,
        merchant_id: str,
        patch: SettingsPatch | dict[str, Any],
    ) -> AutomationSettings:
        """
        Validate and apply a settings patch.

        Pending actions whose type is no longer enabled are discarded.

        Raises:
            pydantic.ValidationError: If the patch is invalid
        """
        if not isinstance(patch, SettingsPatch):
            patch = SettingsPatch.model_validate(patch)

        async with PolicyStore(self.db_path) as store:
            updated = await store.update_settings(merchant_id, patch)

        await self.auditor.log_settings_updated(
            merchant_id, patch.model_dump(mode="json", exclude_none=True)
        )
        discarded = await self.lifecycle.discard_disabled(merchant_id, updated)
        if discarded:
            logger.info(
                "Discarded %d pending actions of disabled types for %s",
                len(discarded), merchant_id,
            )
        self.invalidate_cache()
        return updated

    async def list_rules(
        self,
        merchant_id: str | None = None,
        include_disabled: bool = False,
    ) -> list[Rule]:
        async with PolicyStore(self.db_path) as store:
            return await store.list_rules(merchant_id, include_disabled)

    async def create_rule(self, rule: Rule) -> Rule:
        async with PolicyStore(self.db_path) as store:
            return await store.create_rule(rule)

    async def set_rule_enabled(self, rule_id: int, enabled: bool) -> Rule:
        async with PolicyStore(self.db_path) as store:
            return await store.set_rule_enabled(rule_id, enabled)

    async def seed_default_rules(self) -> int:
        async with PolicyStore(self.db_path) as store:
            return await store.seed_default_rules()
