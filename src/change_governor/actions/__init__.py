"""
Actions module for the change-governance engine.

This module provides the decision and execution machinery:
- Condition language and trigger rules (conditions, rules)
- AdmissionController: budgets, cooldowns and risk gating
- ActionLifecycleManager: snapshot, execute, publish, roll back, discard
- ApprovalGate: human review with recipient deduplication
- BulkOrchestrator: bounded fan-out with idempotent error classification
- ActionAuditor / SecretRedactor: durable, redacted audit trail
- RetryConfig: backoff for transient platform errors
"""

from change_governor.actions.exceptions import (
    ActionNotFoundError,
    ApprovalDeferredError,
    ApprovalNotFoundError,
    ErrorKind,
    GovernorError,
    NoContentError,
    NotEligibleError,
    PlatformError,
    RollbackFailedError,
    StateChangedError,
)
from change_governor.actions.types import (
    Action,
    ActionStatus,
    ActionType,
    AutomationSettings,
    Candidate,
    PendingApproval,
    SettingsPatch,
    Snapshot,
)
from change_governor.actions.conditions import (
    And,
    EntitySignal,
    Not,
    Or,
    Threshold,
    TimeElapsed,
    evaluate_condition,
)
from change_governor.actions.retry import RetryConfig
from change_governor.actions.secrets import SecretRedactor
from change_governor.actions.audit import ActionAuditor, AuditEvent
from change_governor.actions.rules import DEFAULT_RULES, Rule, RuleEvaluator, RuleScope
from change_governor.actions.admission import (
    AdmissionController,
    AdmissionState,
    Decision,
    Verdict,
    classify_risk,
)
from change_governor.actions.lifecycle import ActionLifecycleManager
from change_governor.actions.approval import ApprovalGate
from change_governor.actions.bulk import BulkOrchestrator, BulkResult

__all__ = [
    "Action",
    "ActionAuditor",
    "ActionLifecycleManager",
    "ActionNotFoundError",
    "ActionStatus",
    "ActionType",
    "AdmissionController",
    "AdmissionState",
    "And",
    "ApprovalDeferredError",
    "ApprovalGate",
    "ApprovalNotFoundError",
    "AuditEvent",
    "AutomationSettings",
    "BulkOrchestrator",
    "BulkResult",
    "Candidate",
    "DEFAULT_RULES",
    "Decision",
    "EntitySignal",
    "ErrorKind",
    "GovernorError",
    "NoContentError",
    "Not",
    "NotEligibleError",
    "Or",
    "PendingApproval",
    "PlatformError",
    "RetryConfig",
    "RollbackFailedError",
    "Rule",
    "RuleEvaluator",
    "RuleScope",
    "SecretRedactor",
    "SettingsPatch",
    "Snapshot",
    "StateChangedError",
    "Threshold",
    "TimeElapsed",
    "Verdict",
    "classify_risk",
    "evaluate_condition",
]
