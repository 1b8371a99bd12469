"""
Collaborator protocols for the change-governance engine.

The core never generates content or talks HTTP itself. It depends on
three collaborators, each defined here as a Protocol:
- ProposalGenerator: turns a triggered rule + entity signals into a payload
- PlatformClient: applies and reverts changes on the commerce platform
- SignalSource: observes a merchant's catalog/customer signals per tick

Platform clients report failures by raising PlatformError with an
ErrorKind so the lifecycle can decide retry-vs-fail without parsing
messages.
"""

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from change_governor.actions.conditions import EntitySignal
from change_governor.actions.types import ActionPayload, EstimatedImpact, Snapshot

if TYPE_CHECKING:
    from change_governor.actions.rules import ProposalContext


class PlatformResult(BaseModel):
    """
    Successful outcome of an apply or revert call.

    Attributes:
        entity_id: Entity that was changed
        state: Entity state on the platform after the call
        impact: Measured impact, if the platform reports one
    """

    entity_id: str
    state: dict[str, Any] = Field(default_factory=dict)
    impact: dict[str, Any] | None = None


class Proposal(BaseModel):
    """What the proposal generator returns for one triggered rule."""

    payload: ActionPayload
    estimated_impact: EstimatedImpact = Field(default_factory=EstimatedImpact)
    decision_reason: str = ""
    estimated_cost: int = Field(default=1, ge=0)


class CatalogObservation(BaseModel):
    """
    One tick's worth of signals for a merchant.

    Attributes:
        merchant_id: Merchant observed
        catalog_size: Total entities in the catalog (0 if unknown)
        signals: Per-entity signals to evaluate rules against
    """

    merchant_id: str
    catalog_size: int = 0
    signals: list[EntitySignal] = Field(default_factory=list)


@runtime_checkable
class ProposalGenerator(Protocol):
    """
    Produces a proposed payload for a triggered rule.

    Treated as a black box: the core does not inspect how the payload
    was produced. Returning None declines to propose anything.
    """

    async def generate(self, context: "ProposalContext") -> Proposal | None:
        ...


@runtime_checkable
class PlatformClient(Protocol):
    """
    External commerce platform operations.

    Each method is called at most once per lifecycle transition attempt.
    Failures are raised as PlatformError with an ErrorKind.
    """

    async def fetch_state(self, entity_id: str, payload: ActionPayload) -> dict[str, Any]:
        """Return the entity's current state, captured as the rollback snapshot."""
        ...

    async def apply(self, entity_id: str, payload: ActionPayload) -> PlatformResult:
        """Publish the payload to the entity."""
        ...

    async def revert(self, entity_id: str, snapshot: Snapshot) -> PlatformResult:
        """Restore the entity to the captured snapshot state."""
        ...


@runtime_checkable
class SignalSource(Protocol):
    """Observes catalog/customer signals for a merchant."""

    async def observe(self, merchant_id: str) -> CatalogObservation:
        ...
