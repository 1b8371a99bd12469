"""
Admission control for candidate actions.

The AdmissionController decides whether a candidate may run now. Checks
run in a fixed order and short-circuit on the first that fails:

1. Global autopilot off      -> defer into the approval gate
2. Action type not enabled   -> reject
3. Rule cooldown not elapsed -> defer until the cooldown ends
4. Daily action cap reached  -> defer until the next UTC day
5. Catalog change cap hit    -> defer until the next UTC day
6. Credit budget exceeded    -> defer until the next UTC day
7. Recipient frequency cap   -> defer (outreach: 3/day, 5/week per
                                recipient and channel)
8. Risk above mode tolerance -> defer into the approval gate

Checks 3-7 are the budgets. check_budgets() runs only those, for
actions a human approved after the candidate was first judged.

The controller is pure: budgets come in as an AdmissionState snapshot
loaded from aggregate queries just before the decision, and settings are
passed per call. Evaluating the same candidate twice against the same
state yields the same verdict. Because the aggregates are read before the
action row is written, simultaneous admissions can overshoot a budget
slightly; the budgets are soft safety nets.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field

from change_governor.actions.recipients import recipient_key
from change_governor.actions.types import (
    AutomationSettings,
    AutopilotMode,
    Candidate,
    EstimatedImpact,
    RiskLevel,
    utcnow,
)
from change_governor.db.actions import ActionDB

logger = logging.getLogger(__name__)

# Absolute revenue-delta thresholds (merchant currency).
LOW_RISK_LIMIT = 100.0
MEDIUM_RISK_LIMIT = 500.0

# Outreach messages per recipient and channel, rolling windows.
RECIPIENT_DAILY_CAP = 3
RECIPIENT_WEEKLY_CAP = 5

# Risk levels each mode sends to a human instead of admitting.
APPROVAL_REQUIRED = {
    AutopilotMode.SAFE: frozenset({RiskLevel.MEDIUM, RiskLevel.HIGH}),
    AutopilotMode.BALANCED: frozenset({RiskLevel.HIGH}),
    AutopilotMode.AGGRESSIVE: frozenset(),
}


def classify_risk(impact: EstimatedImpact) -> RiskLevel:
    """
    Risk from the absolute estimated revenue delta.

    Confidence is carried on the estimate but not weighted.
    """
    delta = abs(impact.revenue_delta)
    if delta < LOW_RISK_LIMIT:
        return RiskLevel.LOW
    if delta < MEDIUM_RISK_LIMIT:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


def start_of_utc_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def next_utc_midnight(now: datetime) -> datetime:
    return start_of_utc_day(now) + timedelta(days=1)


class Decision(str, Enum):
    """Outcome of an admission check."""

    ADMIT = "admit"
    """Create the action now."""

    DEFER = "defer"
    """Not now; retry later or route to a human."""

    REJECT = "reject"
    """Never under current settings; no action is created."""


class Verdict(BaseModel):
    """
    Result of admitting one candidate.

    Attributes:
        decision: admit, defer or reject
        reason: Human-readable explanation
        requires_approval: Deferred into the approval gate rather than
            retried on a later tick
        retry_after: Earliest time a deferred candidate could be admitted
        risk: Risk classification of the candidate
    """

    decision: Decision
    reason: str = ""
    requires_approval: bool = False
    retry_after: datetime | None = None
    risk: RiskLevel | None = None

    @property
    def admitted(self) -> bool:
        return self.decision == Decision.ADMIT

    @property
    def rejected(self) -> bool:
        return self.decision == Decision.REJECT


class AdmissionState(BaseModel):
    """
    Budget and cooldown state a candidate is judged against.

    Attributes:
        now: Decision time (UTC)
        daily_count: Actions the merchant created today
        entities_touched: Distinct entities changed today
        catalog_size: Entities in the merchant's catalog (0 = unknown)
        credits_consumed: Credits consumed today
        last_fired_at: When the candidate's rule last fired for its entity
        cooldown_seconds: The rule's cooldown (0 for manual candidates)
        recipient_day_count: Messages to the candidate's recipient on its
            channel in the last 24 hours
        recipient_week_count: The same over the last 7 days
    """

    now: datetime = Field(default_factory=utcnow)
    daily_count: int = 0
    entities_touched: int = 0
    catalog_size: int = 0
    credits_consumed: int = 0
    last_fired_at: datetime | None = None
    cooldown_seconds: int = 0
    recipient_day_count: int = 0
    recipient_week_count: int = 0

    @classmethod
    async def load(
        cls,
        db: ActionDB,
        candidate: Candidate,
        cooldown_seconds: int = 0,
        catalog_size: int = 0,
        now: datetime | None = None,
    ) -> "AdmissionState":
        """
        Read the aggregates for a candidate from the actions table.

        Args:
            db: Open ActionDB
            candidate: Candidate being admitted
            cooldown_seconds: Cooldown of the candidate's rule
            catalog_size: Merchant catalog size from the signal source
            now: Decision time (defaults to the current UTC time)
        """
        now = now or utcnow()
        day_start = start_of_utc_day(now)
        last_fired = None
        if candidate.rule_id is not None:
            last_fired = await db.last_fired_at(candidate.rule_id, candidate.entity_id)

        day_count = week_count = 0
        recipient, channel = recipient_key(candidate.action_type, candidate.payload)
        if recipient is not None:
            day_count = await db.count_messages_since(
                candidate.merchant_id, recipient, channel, now - timedelta(days=1)
            )
            week_count = await db.count_messages_since(
                candidate.merchant_id, recipient, channel, now - timedelta(days=7)
            )

        return cls(
            now=now,
            daily_count=await db.count_actions_since(candidate.merchant_id, day_start),
            entities_touched=await db.count_entities_touched_since(
                candidate.merchant_id, day_start
            ),
            catalog_size=catalog_size,
            credits_consumed=await db.credits_consumed_since(candidate.merchant_id, day_start),
            last_fired_at=last_fired,
            cooldown_seconds=cooldown_seconds,
            recipient_day_count=day_count,
            recipient_week_count=week_count,
        )


class AdmissionController:
    """
    Gatekeeper deciding admit, defer or reject for candidates.

    Example:
        controller = AdmissionController()
        state = await AdmissionState.load(db, candidate, rule.cooldown_seconds)
        verdict = controller.admit(candidate, settings, state)
        if verdict.admitted:
            ...
    """

    def admit(
        self,
        candidate: Candidate,
        settings: AutomationSettings,
        state: AdmissionState,
    ) -> Verdict:
        """
        Judge a candidate against settings and current budgets.

        Has no side effects.

        Args:
            candidate: The proposed action
            settings: The merchant's automation settings
            state: Budgets and cooldown as of the decision time

        Returns:
            Verdict for the candidate
        """
        verdict = self._check(candidate, settings, state)
        if verdict.rejected:
            logger.info(
                "Rejected %s on %s: %s",
                candidate.action_type.value, candidate.entity_id, verdict.reason,
            )
        elif not verdict.admitted:
            logger.debug(
                "Deferred %s on %s: %s",
                candidate.action_type.value, candidate.entity_id, verdict.reason,
            )
        return verdict

    def _check(
        self,
        candidate: Candidate,
        settings: AutomationSettings,
        state: AdmissionState,
    ) -> Verdict:
        risk = classify_risk(candidate.estimated_impact)

        if not settings.global_autopilot_enabled:
            return Verdict(
                decision=Decision.DEFER,
                reason="Global autopilot is disabled; human approval required",
                requires_approval=True,
                risk=risk,
            )

        if candidate.action_type not in settings.enabled_action_types:
            return Verdict(
                decision=Decision.REJECT,
                reason=f"Action type '{candidate.action_type.value}' is not enabled",
                risk=risk,
            )

        budget = self._check_budgets(candidate, settings, state, risk)
        if budget is not None:
            return budget

        if risk in APPROVAL_REQUIRED[settings.autopilot_mode]:
            return Verdict(
                decision=Decision.DEFER,
                reason=(
                    f"{risk.value.capitalize()} risk requires approval in "
                    f"{settings.autopilot_mode.value} mode"
                ),
                requires_approval=True,
                risk=risk,
            )

        return Verdict(decision=Decision.ADMIT, reason="Admitted", risk=risk)

    def check_budgets(
        self,
        candidate: Candidate,
        settings: AutomationSettings,
        state: AdmissionState,
    ) -> Verdict:
        """
        Run only the budget and cooldown checks.

        Used when a human approves a proposal: the autopilot and risk
        routing already sent it for review, but the caps still bind.

        Returns:
            ADMIT, or the first failing budget as a DEFER
        """
        risk = classify_risk(candidate.estimated_impact)
        verdict = self._check_budgets(candidate, settings, state, risk)
        if verdict is None:
            return Verdict(decision=Decision.ADMIT, reason="Within budgets", risk=risk)
        logger.info(
            "Deferred %s on %s: %s",
            candidate.action_type.value, candidate.entity_id, verdict.reason,
        )
        return verdict

    def _check_budgets(
        self,
        candidate: Candidate,
        settings: AutomationSettings,
        state: AdmissionState,
        risk: RiskLevel,
    ) -> Verdict | None:
        if candidate.rule_id is not None and state.last_fired_at is not None:
            cooldown_ends = state.last_fired_at + timedelta(seconds=state.cooldown_seconds)
            if state.now < cooldown_ends:
                return Verdict(
                    decision=Decision.DEFER,
                    reason=(
                        f"Rule {candidate.rule_id} is cooling down for "
                        f"{candidate.entity_id}"
                    ),
                    retry_after=cooldown_ends,
                    risk=risk,
                )

        tomorrow = next_utc_midnight(state.now)

        if state.daily_count >= settings.max_daily_actions:
            return Verdict(
                decision=Decision.DEFER,
                reason=(
                    f"Daily action limit reached "
                    f"({state.daily_count}/{settings.max_daily_actions})"
                ),
                retry_after=tomorrow,
                risk=risk,
            )

        if state.catalog_size > 0:
            touched_percent = state.entities_touched / state.catalog_size * 100
            if touched_percent >= settings.max_catalog_change_percent:
                return Verdict(
                    decision=Decision.DEFER,
                    reason=(
                        f"Catalog change limit reached ({touched_percent:.1f}% of "
                        f"{settings.max_catalog_change_percent}%)"
                    ),
                    retry_after=tomorrow,
                    risk=risk,
                )

        if state.credits_consumed + candidate.estimated_cost > settings.autonomous_credit_limit:
            return Verdict(
                decision=Decision.DEFER,
                reason=(
                    f"Credit budget exceeded ({state.credits_consumed} + "
                    f"{candidate.estimated_cost} > {settings.autonomous_credit_limit})"
                ),
                retry_after=tomorrow,
                risk=risk,
            )

        if state.recipient_week_count >= RECIPIENT_WEEKLY_CAP:
            return Verdict(
                decision=Decision.DEFER,
                reason=(
                    f"Weekly message limit reached for recipient "
                    f"({state.recipient_week_count}/{RECIPIENT_WEEKLY_CAP})"
                ),
                risk=risk,
            )

        if state.recipient_day_count >= RECIPIENT_DAILY_CAP:
            return Verdict(
                decision=Decision.DEFER,
                reason=(
                    f"Daily message limit reached for recipient "
                    f"({state.recipient_day_count}/{RECIPIENT_DAILY_CAP})"
                ),
                risk=risk,
            )

        return None
