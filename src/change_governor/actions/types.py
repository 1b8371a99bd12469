"""
Action types for the change-governance engine.

This module defines the core data structures for action management:
- ActionStatus: Enum for action lifecycle states
- ActionType: Closed set of optimization actions the agent may take
- ActionPayload: Closed union of payload variants keyed by action type
- Candidate: Proposed action not yet admitted
- Action: Unit of work and audit record
- PendingApproval: Proposal awaiting human review
- Snapshot: Durable pre-change capture of an entity
- AutomationSettings: Per-merchant policy read on every admission decision

Per project patterns:
- Use str enum for JSON serialization compatibility
- Pydantic BaseModel for validation and serialization
- Field() with descriptions for documentation
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, computed_field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current time; budget days are UTC days."""
    return datetime.now(timezone.utc)


class ActionStatus(str, Enum):
    """
    Valid action lifecycle states.

    Actions flow through these states:
        pending -> running -> completed/failed
        completed -> rolled_back
        pending -> dry_run (never reaches the platform)
        pending -> cancelled (discarded before execution)
    """

    PENDING = "pending"
    """Admitted, not yet executed."""

    RUNNING = "running"
    """Snapshot committed, external call in flight."""

    COMPLETED = "completed"
    """Finished successfully."""

    FAILED = "failed"
    """External call returned an error or timed out."""

    ROLLED_BACK = "rolled_back"
    """Snapshot re-applied on the platform."""

    DRY_RUN = "dry_run"
    """Simulated execution recorded for preview."""

    CANCELLED = "cancelled"
    """Discarded while pending."""


TERMINAL_STATUSES = frozenset(
    {
        ActionStatus.COMPLETED,
        ActionStatus.FAILED,
        ActionStatus.ROLLED_BACK,
        ActionStatus.DRY_RUN,
        ActionStatus.CANCELLED,
    }
)


class ActionType(str, Enum):
    """Optimization actions the agent can propose."""

    OPTIMIZE_SEO = "optimize_seo"
    ADJUST_PRICE = "adjust_price"
    SEND_CAMPAIGN = "send_campaign"
    SEND_CART_RECOVERY = "send_cart_recovery"


# Action types addressed to a customer rather than a catalog entity.
RECIPIENT_ACTION_TYPES = frozenset({ActionType.SEND_CAMPAIGN, ActionType.SEND_CART_RECOVERY})


class EntityType(str, Enum):
    """Kind of entity an action touches."""

    PRODUCT = "product"
    CAMPAIGN = "campaign"
    CART = "cart"
    CUSTOMER = "customer"


class ExecutedBy(str, Enum):
    """Who triggered an action."""

    AGENT = "agent"
    USER = "user"
    SCHEDULER = "scheduler"


class AutopilotMode(str, Enum):
    """Risk tolerance used to pick an approval threshold."""

    SAFE = "safe"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class RiskLevel(str, Enum):
    """Risk derived from the absolute estimated revenue delta."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ApprovalStatus(str, Enum):
    """Pending approval lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalPriority(str, Enum):
    """Display priority for pending approvals."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


# =============================================================================
# Payload variants
# =============================================================================


class _PayloadBase(BaseModel):
    """Shared behaviour for payload variants."""

    def changes(self) -> dict[str, Any]:
        """Return the content fields this payload would publish."""
        return self.model_dump(mode="json", exclude_none=True, exclude={"kind"})

    def has_content(self) -> bool:
        """True if there is anything to publish."""
        return bool(self.changes())


class SeoPayload(_PayloadBase):
    """Proposed SEO content for a product."""

    kind: Literal["optimize_seo"] = "optimize_seo"
    seo_title: str | None = Field(default=None, description="Optimized SEO title")
    meta_description: str | None = Field(default=None, description="Meta description")
    description: str | None = Field(default=None, description="Product body copy")


class PricePayload(_PayloadBase):
    """Proposed price change for a product."""

    kind: Literal["adjust_price"] = "adjust_price"
    new_price: float = Field(..., gt=0, description="Price to publish")
    previous_price: float | None = Field(default=None, description="Price at proposal time")
    currency: str | None = Field(default=None, description="ISO currency code")


class CampaignPayload(_PayloadBase):
    """Outbound marketing message to one recipient."""

    kind: Literal["send_campaign"] = "send_campaign"
    recipient_email: str | None = None
    recipient_phone: str | None = None
    channel: str | None = Field(default=None, description="'email' or 'sms'")
    subject: str | None = None
    body: str | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(
            mode="json",
            exclude_none=True,
            include={"subject", "body"},
        )


class CartRecoveryPayload(_PayloadBase):
    """Abandoned-cart recovery message to one recipient."""

    kind: Literal["send_cart_recovery"] = "send_cart_recovery"
    cart_id: str | None = None
    recipient_email: str | None = None
    recipient_phone: str | None = None
    channel: str | None = Field(default=None, description="'email' or 'sms'")
    message: str | None = None
    discount_code: str | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(
            mode="json",
            exclude_none=True,
            include={"message", "discount_code"},
        )


ActionPayload = Annotated[
    Union[SeoPayload, PricePayload, CampaignPayload, CartRecoveryPayload],
    Field(discriminator="kind"),
]

PAYLOAD_ADAPTER: TypeAdapter[ActionPayload] = TypeAdapter(ActionPayload)


def parse_payload(data: dict[str, Any]) -> ActionPayload:
    """Validate a raw payload dict into its variant."""
    return PAYLOAD_ADAPTER.validate_python(data)


def _check_payload_kind(action_type: ActionType, payload: _PayloadBase) -> None:
    if payload.kind != action_type.value:
        raise ValueError(
            f"payload kind '{payload.kind}' does not match action type "
            f"'{action_type.value}'"
        )


# =============================================================================
# Records
# =============================================================================


class EstimatedImpact(BaseModel):
    """Impact estimate returned by the proposal generator."""

    revenue_delta: float = Field(default=0.0, description="Expected revenue change")
    confidence: float | None = Field(
        default=None, ge=0.0, le=1.0, description="Generator confidence in the estimate"
    )
    details: dict[str, Any] = Field(default_factory=dict)


class Candidate(BaseModel):
    """
    Proposed action not yet admitted.

    Produced by the RuleEvaluator (or built by hand for user-requested
    actions) and passed through admission.
    """

    merchant_id: str
    action_type: ActionType
    entity_type: EntityType
    entity_id: str
    payload: ActionPayload
    estimated_impact: EstimatedImpact = Field(default_factory=EstimatedImpact)
    decision_reason: str = ""
    rule_id: int | None = None
    rule_priority: int = 0
    estimated_cost: int = Field(default=1, ge=0, description="Credits this action consumes")

    @model_validator(mode="after")
    def _payload_matches_type(self) -> "Candidate":
        _check_payload_kind(self.action_type, self.payload)
        return self


class Action(BaseModel):
    """
    One concrete, auditable attempt to change an entity.

    Attributes:
        id: Database ID (None before insert)
        merchant_id: Owning merchant
        action_type: What kind of change this is
        entity_type: Kind of entity touched
        entity_id: Entity touched
        status: Current lifecycle state
        decision_reason: Why the action was taken
        rule_id: Rule that triggered this (None for manual actions)
        payload: Typed change to apply
        result: Execution output or error detail
        estimated_impact: Predicted impact before execution
        actual_impact: Measured impact after execution
        executed_by: Who triggered it
        dry_run: True if created while dry-run mode was active
        published_to_shopify: True while the platform carries the change
        credit_cost: Credits consumed
        created_at: When admitted
        completed_at: When a terminal execution state was reached
        rolled_back_at: When rolled back
    """

    id: int | None = Field(default=None, description="Database ID (None before insert)")
    merchant_id: str
    action_type: ActionType
    entity_type: EntityType
    entity_id: str
    status: ActionStatus = ActionStatus.PENDING
    decision_reason: str = ""
    rule_id: int | None = None
    payload: ActionPayload
    result: dict[str, Any] | None = None
    estimated_impact: EstimatedImpact = Field(default_factory=EstimatedImpact)
    actual_impact: dict[str, Any] | None = None
    executed_by: ExecutedBy = ExecutedBy.AGENT
    dry_run: bool = False
    published_to_shopify: bool = False
    credit_cost: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    rolled_back_at: datetime | None = None

    @model_validator(mode="after")
    def _payload_matches_type(self) -> "Action":
        _check_payload_kind(self.action_type, self.payload)
        return self

    @computed_field
    @property
    def is_terminal(self) -> bool:
        """Return True if no further execution transition is possible."""
        return self.status in TERMINAL_STATUSES

    class Config:
        """Pydantic configuration."""

        use_enum_values = False  # Keep enum instances for type safety


class PendingApproval(BaseModel):
    """
    A proposal awaiting human review.

    Recipient fields are extracted from the payload for recipient-addressed
    action types so the persistence layer can enforce one pending outreach
    per (merchant, action type, recipient, channel).
    """

    id: int | None = None
    merchant_id: str
    action_type: ActionType
    entity_id: str | None = None
    entity_type: EntityType | None = None
    recommended_action: ActionPayload
    ai_reasoning: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    priority: ApprovalPriority = ApprovalPriority.MEDIUM
    estimated_impact: EstimatedImpact = Field(default_factory=EstimatedImpact)
    recipient_email: str | None = None
    recipient_phone: str | None = None
    channel: str | None = None
    rule_id: int | None = None
    estimated_cost: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    executed_action_id: int | None = None


class Snapshot(BaseModel):
    """Durable pre-change capture of an entity, keyed to the action that made it."""

    id: int | None = None
    entity_id: str
    action_id: int
    captured_state: dict[str, Any]
    reason: str = "before_execution"
    created_at: datetime = Field(default_factory=utcnow)


class AutomationSettings(BaseModel):
    """
    Per-merchant automation policy.

    Passed explicitly into admission and lifecycle calls rather than
    looked up from ambient state.
    """

    merchant_id: str
    global_autopilot_enabled: bool = Field(
        default=True, description="Master switch; False routes everything to approval"
    )
    autopilot_mode: AutopilotMode = AutopilotMode.SAFE
    dry_run_mode: bool = False
    auto_publish_enabled: bool = False
    max_daily_actions: int = Field(default=10, ge=0)
    max_catalog_change_percent: float = Field(default=5.0, ge=0.0, le=100.0)
    autonomous_credit_limit: int = Field(default=100, ge=0)
    enabled_action_types: set[ActionType] = Field(
        default_factory=lambda: {ActionType.OPTIMIZE_SEO}
    )
    updated_at: datetime | None = None


class SettingsPatch(BaseModel):
    """Validated partial update for AutomationSettings."""

    model_config = {"extra": "forbid"}

    global_autopilot_enabled: bool | None = None
    autopilot_mode: AutopilotMode | None = None
    dry_run_mode: bool | None = None
    auto_publish_enabled: bool | None = None
    max_daily_actions: int | None = Field(default=None, ge=0)
    max_catalog_change_percent: float | None = Field(default=None, ge=0.0, le=100.0)
    autonomous_credit_limit: int | None = Field(default=None, ge=0)
    enabled_action_types: set[ActionType] | None = None

    def apply_to(self, settings: AutomationSettings) -> AutomationSettings:
        """Return a copy of settings with the provided fields replaced."""
        return settings.model_copy(update=self.model_dump(exclude_none=True))
