"""
Approval gate for actions that need human sign-off.

Candidates land here when global autopilot is off or their risk is above
the autopilot mode's tolerance. propose() normalizes the recipient of
outreach actions into a dedup key and relies on the schema's partial
unique indexes, so two overlapping evaluation ticks cannot both queue a
message to the same customer. approve() re-checks the budgets and
cooldown before it runs anything. approve() and reject() only act on
pending rows; repeating either on a resolved approval returns it
unchanged.
"""

import logging
from pathlib import Path

from change_governor.actions.admission import (
    AdmissionController,
    AdmissionState,
    Verdict,
    classify_risk,
)
from change_governor.actions.audit import ActionAuditor
from change_governor.actions.exceptions import ApprovalDeferredError
from change_governor.actions.lifecycle import ActionLifecycleManager
from change_governor.actions.recipients import extract_recipient
from change_governor.actions.types import (
    ApprovalPriority,
    ApprovalStatus,
    AutomationSettings,
    Candidate,
    EntityType,
    ExecutedBy,
    PendingApproval,
    RiskLevel,
)
from change_governor.db.actions import ActionDB
from change_governor.db.approvals import ApprovalDB
from change_governor.db.policy import PolicyStore

logger = logging.getLogger(__name__)

MANUAL_APPROVAL_PREFIX = "Manual approval: "

_PRIORITY_BY_RISK = {
    RiskLevel.LOW: ApprovalPriority.LOW,
    RiskLevel.MEDIUM: ApprovalPriority.MEDIUM,
    RiskLevel.HIGH: ApprovalPriority.HIGH,
}


class ApprovalGate:
    """
    Human review queue in front of the lifecycle manager.

    Example:
        gate = ApprovalGate(db_path, lifecycle, auditor)
        approval = await gate.propose(candidate)
        approval = await gate.approve(approval.id, settings, reviewed_by="ops@shop")
    """

    def __init__(
        self,
        db_path: Path,
        lifecycle: ActionLifecycleManager,
        auditor: ActionAuditor,
        controller: AdmissionController | None = None,
    ) -> None:
        self.db_path = db_path
        self._lifecycle = lifecycle
        self._auditor = auditor
        self._controller = controller or AdmissionController()

    async def propose(self, candidate: Candidate) -> PendingApproval:
        """
        Queue a candidate for review.

        If an equivalent proposal is already pending, that row is returned
        and nothing is inserted.

        Args:
            candidate: The candidate needing sign-off

        Returns:
            The new or existing pending approval
        """
        email, phone, channel = extract_recipient(candidate.action_type, candidate.payload)
        approval = PendingApproval(
            merchant_id=candidate.merchant_id,
            action_type=candidate.action_type,
            entity_id=candidate.entity_id,
            entity_type=candidate.entity_type,
            recommended_action=candidate.payload,
            ai_reasoning=candidate.decision_reason,
            priority=_PRIORITY_BY_RISK[classify_risk(candidate.estimated_impact)],
            estimated_impact=candidate.estimated_impact,
            recipient_email=email,
            recipient_phone=phone,
            channel=channel,
            rule_id=candidate.rule_id,
            estimated_cost=candidate.estimated_cost,
        )

        async with ApprovalDB(self.db_path) as db:
            stored, created = await db.create_or_get(approval)

        if not created:
            logger.debug(
                "Proposal for %s on %s already pending as approval %s",
                candidate.action_type.value, candidate.entity_id, stored.id,
            )
        await self._auditor.log_approval_proposed(stored, deduplicated=not created)
        return stored

    async def approve(
        self,
        approval_id: int,
        settings: AutomationSettings,
        reviewed_by: str = "user",
        catalog_size: int = 0,
    ) -> PendingApproval:
        """
        Approve a pending proposal and run the action it describes.

        The reviewer overrides autopilot and risk routing, not the budgets:
        rule cooldown, daily and catalog caps, credits and recipient
        frequency caps are checked again first. Dry-run and auto-publish
        settings still apply. Execution failures are recorded on the
        action, not raised.

        Args:
            approval_id: The approval to approve
            settings: The merchant's current settings
            reviewed_by: Reviewer identity
            catalog_size: Merchant catalog size (0 = unknown, cap skipped)

        Returns:
            The approval, linked to its action via executed_action_id

        Raises:
            ApprovalNotFoundError: If the approval does not exist
            ApprovalDeferredError: If a budget or cooldown would be broken;
                the approval stays pending
        """
        async with ApprovalDB(self.db_path) as db:
            approval = await db.require_approval(approval_id)
        if approval.status != ApprovalStatus.PENDING:
            return approval

        candidate = Candidate(
            merchant_id=approval.merchant_id,
            action_type=approval.action_type,
            entity_type=approval.entity_type or EntityType.PRODUCT,
            entity_id=approval.entity_id or "",
            payload=approval.recommended_action,
            estimated_impact=approval.estimated_impact,
            decision_reason=approval.ai_reasoning,
            rule_id=approval.rule_id,
            estimated_cost=approval.estimated_cost,
        )
        verdict = await self._check_budgets(candidate, settings, catalog_size)
        if not verdict.admitted:
            await self._auditor.log_admission(
                candidate.merchant_id,
                "admission_deferred",
                verdict.reason,
                candidate.entity_id,
                rule_id=candidate.rule_id,
            )
            raise ApprovalDeferredError(approval_id, verdict.reason, verdict.retry_after)

        async with ApprovalDB(self.db_path) as db:
            if not await db.resolve(approval_id, ApprovalStatus.APPROVED, reviewed_by):
                return await db.require_approval(approval_id)

        action = await self._lifecycle.create_action(
            candidate,
            settings,
            executed_by=ExecutedBy.USER,
            decision_reason=f"{MANUAL_APPROVAL_PREFIX}{approval.ai_reasoning}",
        )

        async with ApprovalDB(self.db_path) as db:
            linked = await db.link_action(approval_id, action.id)
        await self._auditor.log_approval_resolved(linked)
        logger.info("Approval %s approved, running action %s", approval_id, action.id)

        await self._lifecycle.execute(action.id, settings)
        return linked

    async def _check_budgets(
        self,
        candidate: Candidate,
        settings: AutomationSettings,
        catalog_size: int,
    ) -> Verdict:
        cooldown_seconds = 0
        if candidate.rule_id is not None:
            async with PolicyStore(self.db_path) as policy:
                rule = await policy.get_rule(candidate.rule_id)
            if rule is not None:
                cooldown_seconds = rule.cooldown_seconds

        async with ActionDB(self.db_path) as db:
            state = await AdmissionState.load(
                db, candidate, cooldown_seconds=cooldown_seconds, catalog_size=catalog_size
            )
        return self._controller.check_budgets(candidate, settings, state)

    async def reject(self, approval_id: int, reviewed_by: str = "user") -> PendingApproval:
        """
        Reject a pending proposal. No action is created.

        Raises:
            ApprovalNotFoundError: If the approval does not exist
        """
        async with ApprovalDB(self.db_path) as db:
            approval = await db.require_approval(approval_id)
            if approval.status != ApprovalStatus.PENDING:
                return approval
            resolved = await db.resolve(approval_id, ApprovalStatus.REJECTED, reviewed_by)
            approval = await db.require_approval(approval_id)

        if resolved:
            await self._auditor.log_approval_resolved(approval)
        return approval

    async def list_pending(self, merchant_id: str | None = None) -> list[PendingApproval]:
        async with ApprovalDB(self.db_path) as db:
            return await db.list_approvals(merchant_id, ApprovalStatus.PENDING)
