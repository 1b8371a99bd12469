"""
Audit logging for action lifecycle events.

Every lifecycle event writes one row to action_audit_log:
- Action creation, admission deferrals and rejections
- Approval proposals (including deduplicated ones), approvals, rejections
- Execution start, completion, failure, dry runs, publishes
- Rollbacks, rollback failures, discards, settings updates

A failed rollback is the one event raised as a user-visible alert: it is
logged at ERROR and flagged with alert=1 so get_alerts() can surface it,
since the platform may still be carrying the unwanted change.

Per project patterns:
- Pydantic BaseModel for event data structures
- Async methods for database operations
- Secrets and recipient PII redacted before the JSON event_data is written
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel, Field

from change_governor.actions.secrets import SecretRedactor
from change_governor.actions.types import Action, PendingApproval, utcnow
from change_governor.db.base import BUSY_TIMEOUT_SECONDS, from_iso, to_iso
from change_governor.db.schema import AUDIT_SCHEMA_SQL

logger = logging.getLogger(__name__)


class AuditEvent(BaseModel):
    """
    Audit event for lifecycle tracking.

    Attributes:
        id: Database ID (None before insert)
        merchant_id: Merchant the event belongs to
        action_id: Associated action (None for approval/settings events)
        approval_id: Associated pending approval, if any
        event_type: Type of event (action_created, completed, rollback_failed, ...)
        event_data: Event-specific details, redacted before storage
        actor: Who triggered the event (agent, user, scheduler, system)
        alert: True for events that need a human's attention
        timestamp: When the event occurred
    """

    id: int | None = Field(default=None, description="Database ID (None before insert)")
    merchant_id: str | None = None
    action_id: int | None = None
    approval_id: int | None = None
    event_type: str = Field(..., description="Lifecycle event name")
    event_data: dict[str, Any] | None = None
    actor: str = Field(default="system", description="agent, user, scheduler or system")
    alert: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class ActionAuditor:
    """
    Durable audit logger for lifecycle events.

    Example:
        auditor = ActionAuditor(Path("governor.db"))
        await auditor.log_action_created(action)
        await auditor.log_execution_finished(action)
        alerts = await auditor.get_alerts("shop-1")
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._redactor = SecretRedactor()

    async def _connect(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path, timeout=BUSY_TIMEOUT_SECONDS)
        await conn.executescript(AUDIT_SCHEMA_SQL)
        return conn

    async def log_event(self, event: AuditEvent) -> None:
        """
        Write an audit event to the database.

        Args:
            event: The audit event to log
        """
        redacted = self._redactor.redact_dict(event.event_data) if event.event_data else None

        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO action_audit_log (
                    merchant_id, action_id, approval_id, event_type,
                    event_data, actor, alert, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.merchant_id,
                    event.action_id,
                    event.approval_id,
                    event.event_type,
                    json.dumps(redacted, default=str) if redacted else None,
                    event.actor,
                    1 if event.alert else 0,
                    to_iso(event.timestamp),
                ),
            )
            await conn.commit()
        finally:
            await conn.close()

    # =========================================================================
    # Action events
    # =========================================================================

    async def log_action_created(self, action: Action) -> None:
        await self.log_event(AuditEvent(
            merchant_id=action.merchant_id,
            action_id=action.id,
            event_type="action_created",
            event_data={
                "action_type": action.action_type.value,
                "entity_id": action.entity_id,
                "rule_id": action.rule_id,
                "dry_run": action.dry_run,
                "decision_reason": action.decision_reason,
                "payload": action.payload.model_dump(mode="json"),
            },
            actor=action.executed_by.value,
            timestamp=action.created_at,
        ))

    async def log_admission(
        self,
        merchant_id: str,
        event_type: str,
        reason: str,
        entity_id: str,
        rule_id: int | None = None,
    ) -> None:
        """
        Log an admission_deferred or admission_rejected verdict.

        Args:
            merchant_id: Merchant the candidate belongs to
            event_type: 'admission_deferred' or 'admission_rejected'
            reason: Verdict reason
            entity_id: Entity the candidate targeted
            rule_id: Rule that produced the candidate
        """
        await self.log_event(AuditEvent(
            merchant_id=merchant_id,
            event_type=event_type,
            event_data={"reason": reason, "entity_id": entity_id, "rule_id": rule_id},
            actor="system",
        ))

    async def log_execution_started(self, action: Action) -> None:
        await self.log_event(AuditEvent(
            merchant_id=action.merchant_id,
            action_id=action.id,
            event_type="executing",
            actor=action.executed_by.value,
        ))

    async def log_execution_finished(
        self,
        action: Action,
        duration_ms: int | None = None,
    ) -> None:
        """
        Log the terminal execution state (completed, failed or dry_run).

        Args:
            action: The action after its terminal transition
            duration_ms: Execution duration in milliseconds
        """
        event_data: dict[str, Any] = {"published": action.published_to_shopify}
        if duration_ms is not None:
            event_data["duration_ms"] = duration_ms
        if action.result:
            event_data["result"] = action.result

        await self.log_event(AuditEvent(
            merchant_id=action.merchant_id,
            action_id=action.id,
            event_type=action.status.value,
            event_data=event_data,
            actor="system",
        ))

    async def log_published(self, action: Action) -> None:
        await self.log_event(AuditEvent(
            merchant_id=action.merchant_id,
            action_id=action.id,
            event_type="published",
            event_data={"entity_id": action.entity_id},
            actor="user",
        ))

    async def log_rolled_back(self, action: Action, actor: str = "user") -> None:
        await self.log_event(AuditEvent(
            merchant_id=action.merchant_id,
            action_id=action.id,
            event_type="rolled_back",
            event_data={"entity_id": action.entity_id},
            actor=actor,
        ))

    async def log_rollback_failed(self, action: Action, reason: str) -> None:
        """
        Log a failed rollback and raise it as a user-visible alert.

        Args:
            action: The action that is still completed
            reason: Error detail from the revert attempt
        """
        logger.error(
            "ALERT: rollback of action %s on %s failed; platform may still "
            "carry the change: %s",
            action.id, action.entity_id, reason,
        )
        await self.log_event(AuditEvent(
            merchant_id=action.merchant_id,
            action_id=action.id,
            event_type="rollback_failed",
            event_data={"entity_id": action.entity_id, "reason": reason},
            actor="system",
            alert=True,
        ))

    async def log_discarded(self, action: Action, reason: str) -> None:
        await self.log_event(AuditEvent(
            merchant_id=action.merchant_id,
            action_id=action.id,
            event_type="discarded",
            event_data={"reason": reason},
            actor="system",
        ))

    # =========================================================================
    # Approval and settings events
    # =========================================================================

    async def log_approval_proposed(
        self,
        approval: PendingApproval,
        deduplicated: bool = False,
    ) -> None:
        """
        Log a proposal entering the approval queue.

        Args:
            approval: The pending approval (the existing row if deduplicated)
            deduplicated: True if an identical pending proposal already existed
        """
        await self.log_event(AuditEvent(
            merchant_id=approval.merchant_id,
            approval_id=approval.id,
            event_type="approval_deduplicated" if deduplicated else "approval_proposed",
            event_data={
                "action_type": approval.action_type.value,
                "entity_id": approval.entity_id,
                "recipient_email": approval.recipient_email,
                "recipient_phone": approval.recipient_phone,
                "channel": approval.channel,
            },
            actor="agent",
        ))

    async def log_approval_resolved(self, approval: PendingApproval) -> None:
        """Log an approved or rejected approval."""
        await self.log_event(AuditEvent(
            merchant_id=approval.merchant_id,
            approval_id=approval.id,
            action_id=approval.executed_action_id,
            event_type=approval.status.value,
            event_data={"reviewed_by": approval.reviewed_by},
            actor="user",
        ))

    async def log_settings_updated(self, merchant_id: str, changes: dict[str, Any]) -> None:
        await self.log_event(AuditEvent(
            merchant_id=merchant_id,
            event_type="settings_updated",
            event_data=changes,
            actor="user",
        ))

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_events(
        self,
        merchant_id: str | None = None,
        action_id: int | None = None,
        approval_id: int | None = None,
        event_type: str | None = None,
        alerts_only: bool = False,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Query audit events with optional filters.

        Returns:
            List of matching audit events, ordered by timestamp DESC
        """
        conditions = []
        params: list[Any] = []

        if merchant_id is not None:
            conditions.append("merchant_id = ?")
            params.append(merchant_id)
        if action_id is not None:
            conditions.append("action_id = ?")
            params.append(action_id)
        if approval_id is not None:
            conditions.append("approval_id = ?")
            params.append(approval_id)
        if event_type is not None:
            conditions.append("event_type = ?")
            params.append(event_type)
        if alerts_only:
            conditions.append("alert = 1")

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        query = f"""
            SELECT * FROM action_audit_log
            {where_clause}
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
        """
        params.append(limit)

        conn = await self._connect()
        try:
            conn.row_factory = aiosqlite.Row
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        finally:
            await conn.close()

        return [
            AuditEvent(
                id=row["id"],
                merchant_id=row["merchant_id"],
                action_id=row["action_id"],
                approval_id=row["approval_id"],
                event_type=row["event_type"],
                event_data=json.loads(row["event_data"]) if row["event_data"] else None,
                actor=row["actor"],
                alert=bool(row["alert"]),
                timestamp=from_iso(row["timestamp"]),
            )
            for row in rows
        ]

    async def get_alerts(self, merchant_id: str | None = None, limit: int = 50) -> list[AuditEvent]:
        """User-visible alerts (failed rollbacks), newest first."""
        return await self.get_events(merchant_id=merchant_id, alerts_only=True, limit=limit)
