"""
Change Governor

Admission control, approval, execution lifecycle and rollback for an AI
agent that changes a merchant's store on an external commerce platform.
This package provides:

- Policy: per-merchant AutomationSettings and trigger Rules
- Admission: budgets, cooldowns and risk gating for candidate actions
- Lifecycle: snapshot-before-change execution, publish, rollback
- Approvals: human review queue with recipient deduplication
- Bulk: partial-failure-tolerant push and rollback
- CLI infrastructure: Typer-based command structure
"""

__version__ = "0.1.0"

# Re-export public types for convenient imports
from change_governor.actions.types import (
    Action,
    ActionStatus,
    ActionType,
    AutomationSettings,
    Candidate,
    PendingApproval,
    Snapshot,
)
from change_governor.config import GovernorSettings
from change_governor.governor import ChangeGovernor, Submission
from change_governor.loop import EvaluationLoop

__all__ = [
    "__version__",
    # Facade
    "ChangeGovernor",
    "Submission",
    "EvaluationLoop",
    "GovernorSettings",
    # Data Types
    "Action",
    "ActionStatus",
    "ActionType",
    "AutomationSettings",
    "Candidate",
    "PendingApproval",
    "Snapshot",
]
