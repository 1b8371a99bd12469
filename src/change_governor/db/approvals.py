"""
Pending approval persistence.

Inserts are guarded by the partial unique indexes in the schema: at most
one pending row per (merchant, action type, recipient, channel) for
outreach types, and per (merchant, action type, entity) for catalog
changes. A losing concurrent insert surfaces as a constraint violation,
which create_or_get() resolves to the existing pending row.
"""

import logging
import sqlite3
from typing import Any

import aiosqlite

from change_governor.actions.exceptions import ApprovalNotFoundError
from change_governor.actions.types import (
    RECIPIENT_ACTION_TYPES,
    ActionType,
    ApprovalPriority,
    ApprovalStatus,
    EntityType,
    EstimatedImpact,
    PendingApproval,
    parse_payload,
    utcnow,
)
from change_governor.db.base import SQLiteStore, from_iso, load_json, to_iso

logger = logging.getLogger(__name__)


class ApprovalDB(SQLiteStore):
    """
    Async context manager for pending approval operations.

    Example:
        async with ApprovalDB(db_path) as db:
            approval, created = await db.create_or_get(approval)
            pending = await db.list_approvals("shop-1", ApprovalStatus.PENDING)
    """

    async def __aenter__(self) -> "ApprovalDB":
        return await super().__aenter__()

    def _row_to_approval(self, row: aiosqlite.Row) -> PendingApproval:
        return PendingApproval(
            id=row["id"],
            merchant_id=row["merchant_id"],
            action_type=ActionType(row["action_type"]),
            entity_id=row["entity_id"],
            entity_type=EntityType(row["entity_type"]) if row["entity_type"] else None,
            recommended_action=parse_payload(load_json(row["recommended_action"])),
            ai_reasoning=row["ai_reasoning"],
            status=ApprovalStatus(row["status"]),
            priority=ApprovalPriority(row["priority"]),
            estimated_impact=EstimatedImpact.model_validate(
                load_json(row["estimated_impact"]) or {}
            ),
            recipient_email=row["recipient_email"],
            recipient_phone=row["recipient_phone"],
            channel=row["channel"],
            rule_id=row["rule_id"],
            estimated_cost=row["estimated_cost"],
            created_at=from_iso(row["created_at"]),
            reviewed_at=from_iso(row["reviewed_at"]),
            reviewed_by=row["reviewed_by"],
            executed_action_id=row["executed_action_id"],
        )

    async def create_or_get(self, approval: PendingApproval) -> tuple[PendingApproval, bool]:
        """
        Insert a pending approval unless an equivalent one is pending.

        Args:
            approval: The approval to insert (status must be pending)

        Returns:
            (approval, created): the inserted row and True, or the existing
            pending duplicate and False
        """
        try:
            cursor = await self._conn.execute(
                """
                INSERT INTO pending_approvals (
                    merchant_id, action_type, entity_id, entity_type,
                    recommended_action, ai_reasoning, status, priority,
                    estimated_impact, recipient_email, recipient_phone, channel,
                    rule_id, estimated_cost, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    approval.merchant_id,
                    approval.action_type.value,
                    approval.entity_id,
                    approval.entity_type.value if approval.entity_type else None,
                    approval.recommended_action.model_dump_json(),
                    approval.ai_reasoning,
                    ApprovalStatus.PENDING.value,
                    approval.priority.value,
                    approval.estimated_impact.model_dump_json(),
                    approval.recipient_email,
                    approval.recipient_phone,
                    approval.channel,
                    approval.rule_id,
                    approval.estimated_cost,
                    to_iso(approval.created_at),
                ),
            )
            await self._conn.commit()
        except sqlite3.IntegrityError:
            await self._conn.rollback()
            existing = await self.find_pending_duplicate(approval)
            if existing is None:
                # Constraint hit but the winner was resolved before we looked.
                raise
            return existing, False

        return await self.get_approval(cursor.lastrowid), True

    async def find_pending_duplicate(self, approval: PendingApproval) -> PendingApproval | None:
        """
        Find the pending row sharing an approval's dedup key.

        Returns:
            The existing pending approval, or None
        """
        conditions = ["merchant_id = ?", "action_type = ?", "status = 'pending'"]
        params: list[Any] = [approval.merchant_id, approval.action_type.value]

        if approval.action_type in RECIPIENT_ACTION_TYPES:
            if approval.recipient_email is not None:
                conditions += ["recipient_email = ?", "channel = ?"]
                params += [approval.recipient_email, approval.channel]
            elif approval.recipient_phone is not None:
                conditions += [
                    "recipient_email IS NULL",
                    "recipient_phone = ?",
                    "channel = ?",
                ]
                params += [approval.recipient_phone, approval.channel]
            else:
                return None
        elif approval.entity_id is not None:
            conditions.append("entity_id = ?")
            params.append(approval.entity_id)
        else:
            return None

        async with self._conn.execute(
            f"SELECT * FROM pending_approvals WHERE {' AND '.join(conditions)} LIMIT 1",
            params,
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_approval(row) if row else None

    async def get_approval(self, approval_id: int) -> PendingApproval | None:
        async with self._conn.execute(
            "SELECT * FROM pending_approvals WHERE id = ?",
            (approval_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_approval(row) if row else None

    async def require_approval(self, approval_id: int) -> PendingApproval:
        """Fetch an approval or raise ApprovalNotFoundError."""
        approval = await self.get_approval(approval_id)
        if approval is None:
            raise ApprovalNotFoundError(approval_id)
        return approval

    async def list_approvals(
        self,
        merchant_id: str | None = None,
        status: ApprovalStatus | None = ApprovalStatus.PENDING,
        limit: int = 100,
    ) -> list[PendingApproval]:
        """
        List approvals, newest first.

        Args:
            merchant_id: Filter by merchant
            status: Filter by status (None = all)
            limit: Maximum rows
        """
        conditions = []
        params: list[Any] = []
        if merchant_id is not None:
            conditions.append("merchant_id = ?")
            params.append(merchant_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)
        params.append(limit)

        async with self._conn.execute(
            f"""
            SELECT * FROM pending_approvals
            {where_clause}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            params,
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_approval(row) for row in rows]

    async def resolve(
        self,
        approval_id: int,
        status: ApprovalStatus,
        reviewed_by: str | None = None,
    ) -> bool:
        """
        Move a pending approval to approved or rejected.

        Returns:
            True if this call resolved it, False if it was already resolved
        """
        cursor = await self._conn.execute(
            """
            UPDATE pending_approvals
            SET status = ?, reviewed_at = ?, reviewed_by = ?
            WHERE id = ? AND status = 'pending'
            """,
            (status.value, to_iso(utcnow()), reviewed_by, approval_id),
        )
        await self._conn.commit()
        return cursor.rowcount == 1

    async def link_action(self, approval_id: int, action_id: int) -> PendingApproval:
        """Record the action an approved proposal spawned."""
        await self._conn.execute(
            "UPDATE pending_approvals SET executed_action_id = ? WHERE id = ?",
            (action_id, approval_id),
        )
        await self._conn.commit()
        return await self.require_approval(approval_id)
