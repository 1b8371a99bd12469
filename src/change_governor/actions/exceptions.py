"""
Structured error taxonomy for the action lifecycle.

Every error raised by the governor carries an ErrorKind so callers can
classify failures structurally instead of matching message strings:
- PlatformError: returned by the external commerce platform client
- ActionNotFoundError / ApprovalNotFoundError: unknown ids
- NotEligibleError: operation attempted from a state that does not allow it
- StateChangedError: compare-and-set on status lost a race
- NoContentError: push of an action with nothing to publish
- RollbackFailedError: revert call failed, storefront may still carry the change
- ApprovalDeferredError: an approval would break a budget or cooldown

Admission deferrals, rejections, duplicate proposals and idempotent no-ops
are returned as values and never raised.

Per project patterns:
- Inherit from a common base exception
- Store context data in attributes for error handling
- Include descriptive message with relevant details
"""

from datetime import datetime
from enum import Enum


class ErrorKind(str, Enum):
    """Classification used to decide retry-vs-fail and bulk idempotency."""

    ALREADY_APPLIED = "already_applied"
    """Platform already carries the requested change."""

    ALREADY_REVERTED = "already_reverted"
    """Platform already carries the pre-change state."""

    NOT_FOUND = "not_found"
    """Entity or record does not exist."""

    TRANSIENT = "transient"
    """Temporary failure, safe to retry."""

    PERMANENT = "permanent"
    """Failure that will not succeed on retry."""

    TIMEOUT = "timeout"
    """External call exceeded its time budget."""

    NO_CONTENT = "no_content"
    """Nothing to publish for this action."""

    NOT_ELIGIBLE = "not_eligible"
    """Action is not in a state that allows the operation."""


# Kinds that mean the desired end state was already reached by a prior or
# concurrent attempt.
IDEMPOTENT_KINDS = frozenset(
    {
        ErrorKind.ALREADY_APPLIED,
        ErrorKind.ALREADY_REVERTED,
        ErrorKind.NO_CONTENT,
        ErrorKind.NOT_ELIGIBLE,
    }
)


class GovernorError(Exception):
    """
    Base class for all change-governor errors.

    Attributes:
        kind: Structured classification of the failure
    """

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        if kind is not None:
            self.kind = kind
        super().__init__(message)

    @property
    def is_idempotent(self) -> bool:
        """True if the failure indicates the desired end state already holds."""
        return self.kind in IDEMPOTENT_KINDS


class PlatformError(GovernorError):
    """
    Raised by a platform client when apply/revert/fetch fails.

    Attributes:
        kind: How the failure should be treated (transient, permanent, ...)
        status_code: HTTP status code if the failure came from an HTTP response
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, kind=kind)


class ActionNotFoundError(GovernorError):
    """Raised when an action id does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, action_id: int) -> None:
        self.action_id = action_id
        super().__init__(f"Action {action_id} not found")


class ApprovalNotFoundError(GovernorError):
    """Raised when a pending approval id does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, approval_id: int) -> None:
        self.approval_id = approval_id
        super().__init__(f"Approval {approval_id} not found")


class NotEligibleError(GovernorError):
    """
    Raised when an operation is attempted from a state that does not allow it.

    Attributes:
        action_id: The action that was targeted
        status: The status the action was found in
        operation: The operation that was attempted
    """

    kind = ErrorKind.NOT_ELIGIBLE

    def __init__(self, action_id: int, status: str, operation: str) -> None:
        self.action_id = action_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} action {action_id}: "
            f"not eligible in current state '{status}'"
        )


class StateChangedError(GovernorError):
    """
    Raised when a guarded status transition finds an unexpected current status.

    This indicates a concurrent operation moved the action first. The
    transition is rejected rather than overwriting the other writer.

    Attributes:
        action_id: The action whose transition was rejected
        expected: The status the caller expected to transition from
    """

    kind = ErrorKind.NOT_ELIGIBLE

    def __init__(self, action_id: int, expected: str) -> None:
        self.action_id = action_id
        self.expected = expected
        super().__init__(
            f"State changed for action {action_id}: expected '{expected}'. "
            f"Another operation moved it first."
        )


class NoContentError(GovernorError):
    """Raised when pushing an action whose payload has nothing to publish."""

    kind = ErrorKind.NO_CONTENT

    def __init__(self, action_id: int) -> None:
        self.action_id = action_id
        super().__init__(f"No content to push for action {action_id}")


class RollbackFailedError(GovernorError):
    """
    Raised when the revert call for a rollback fails.

    The action stays 'completed' and the platform may still carry the
    unwanted change.

    Attributes:
        action_id: The action whose rollback failed
        reason: Error detail from the platform or snapshot lookup
    """

    def __init__(
        self,
        action_id: int,
        reason: str,
        kind: ErrorKind = ErrorKind.PERMANENT,
    ) -> None:
        self.action_id = action_id
        self.reason = reason
        super().__init__(f"Rollback of action {action_id} failed: {reason}", kind=kind)


class ApprovalDeferredError(GovernorError):
    """
    Raised when approving a proposal would break a budget or cooldown.

    The approval stays pending and can be approved again once the budget
    frees up.

    Attributes:
        approval_id: The approval that was not executed
        reason: The failing check
        retry_after: Earliest time approving could succeed, if known
    """

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        approval_id: int,
        reason: str,
        retry_after: datetime | None = None,
    ) -> None:
        self.approval_id = approval_id
        self.reason = reason
        self.retry_after = retry_after
        super().__init__(f"Approval {approval_id} deferred: {reason}")
