"""
Trigger rules and the rule evaluator.

A Rule pairs a condition over entity signals with the action type to
propose when it holds. The RuleEvaluator walks enabled rules in priority
order (higher first), matches them against a merchant's current signals
and asks the proposal generator for a payload for every match, producing
ranked Candidates for admission.

Cooldown is not checked here; it is keyed per (rule, entity) and enforced
by the AdmissionController so the evaluator stays free of state.
"""

import logging
from enum import Enum

from pydantic import BaseModel, Field, ValidationError

from change_governor.actions.conditions import (
    Condition,
    EntitySignal,
    Threshold,
    evaluate_condition,
)
from change_governor.actions.types import ActionType, Candidate, EntityType, utcnow
from change_governor.platform.protocols import ProposalGenerator

logger = logging.getLogger(__name__)


class RuleScope(str, Enum):
    """Whether a rule applies to every merchant or one."""

    GLOBAL = "global"
    MERCHANT = "merchant"


class Rule(BaseModel):
    """
    A trigger rule.

    Rules referenced by an action are never deleted, only disabled, so
    the audit trail keeps resolving.

    Attributes:
        id: Database ID (None before insert)
        merchant_id: Owning merchant (None for global rules)
        scope: global or merchant
        name: Human-readable name (unique among global rules)
        condition: Trigger condition over entity signals
        action_type: Action proposed when the condition holds
        entity_type: Kind of entity the rule evaluates
        priority: Higher runs first
        cooldown_seconds: Minimum gap between firings per entity
        enabled: Soft-disable flag
    """

    id: int | None = None
    merchant_id: str | None = None
    scope: RuleScope = RuleScope.MERCHANT
    name: str
    description: str = ""
    condition: Condition
    action_type: ActionType
    entity_type: EntityType = EntityType.PRODUCT
    priority: int = 50
    cooldown_seconds: int = Field(default=86400, ge=0)
    enabled: bool = True

    def applies_to(self, merchant_id: str) -> bool:
        """True if this rule should be evaluated for the merchant."""
        if not self.enabled:
            return False
        return self.scope == RuleScope.GLOBAL or self.merchant_id == merchant_id


class ProposalContext(BaseModel):
    """Input handed to the proposal generator for one triggered rule."""

    merchant_id: str
    rule: Rule
    signal: EntitySignal


# System presets seeded as global rules.
DEFAULT_RULES: list[Rule] = [
    Rule(
        scope=RuleScope.GLOBAL,
        name="Auto-Optimize Low SEO Products",
        description="Automatically optimize products with SEO score below 70",
        condition=Threshold(field="seo_score", op="lt", value=70),
        action_type=ActionType.OPTIMIZE_SEO,
        priority=100,
        cooldown_seconds=86400 * 7,
    ),
    Rule(
        scope=RuleScope.GLOBAL,
        name="Auto-Optimize New Products",
        description="Automatically optimize SEO for newly added products",
        condition=Threshold(field="seo_score", op="lt", value=1),
        action_type=ActionType.OPTIMIZE_SEO,
        priority=90,
        cooldown_seconds=86400,
    ),
]


class RuleEvaluator:
    """
    Matches rules against signals and collects generated candidates.

    Example:
        evaluator = RuleEvaluator(generator)
        candidates = await evaluator.evaluate("shop-1", signals, rules)
        # candidates[0] comes from the highest-priority matching rule
    """

    def __init__(self, generator: ProposalGenerator) -> None:
        self._generator = generator

    @staticmethod
    def rank(rules: list[Rule], merchant_id: str) -> list[Rule]:
        """Rules applicable to the merchant, highest priority first."""
        applicable = [rule for rule in rules if rule.applies_to(merchant_id)]
        return sorted(applicable, key=lambda rule: (-rule.priority, rule.id or 0))

    async def evaluate(
        self,
        merchant_id: str,
        signals: list[EntitySignal],
        rules: list[Rule],
    ) -> list[Candidate]:
        """
        Produce candidates for every (rule, entity) match.

        A generator failure or malformed proposal skips that one match; it
        never aborts the evaluation pass.

        Args:
            merchant_id: Merchant being evaluated
            signals: Current per-entity signals
            rules: All rules visible to the merchant

        Returns:
            Candidates ranked by rule priority (higher first)
        """
        now = utcnow()
        candidates: list[Candidate] = []

        for rule in self.rank(rules, merchant_id):
            for signal in signals:
                if signal.entity_type != rule.entity_type:
                    continue
                if not evaluate_condition(rule.condition, signal, now):
                    continue

                context = ProposalContext(merchant_id=merchant_id, rule=rule, signal=signal)
                try:
                    proposal = await self._generator.generate(context)
                except Exception as e:
                    logger.warning(
                        "Proposal generation failed for rule %s on %s: %s",
                        rule.id, signal.entity_id, e,
                    )
                    continue

                if proposal is None:
                    continue

                try:
                    candidates.append(Candidate(
                        merchant_id=merchant_id,
                        action_type=rule.action_type,
                        entity_type=signal.entity_type,
                        entity_id=signal.entity_id,
                        payload=proposal.payload,
                        estimated_impact=proposal.estimated_impact,
                        decision_reason=proposal.decision_reason or rule.description,
                        rule_id=rule.id,
                        rule_priority=rule.priority,
                        estimated_cost=proposal.estimated_cost,
                    ))
                except ValidationError as e:
                    logger.warning(
                        "Discarding malformed proposal for rule %s on %s: %s",
                        rule.id, signal.entity_id, e,
                    )

        return candidates
