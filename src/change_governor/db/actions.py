"""
SQLite-based action persistence.

This module provides async database operations for the action lifecycle:
- Create and fetch actions
- Guarded status transitions (compare-and-set on current status)
- Aggregate queries backing admission budgets (daily count, catalog
  entities touched, credits consumed, rule cooldown, messages per
  recipient)

Per project patterns:
- Use async context manager for connection lifecycle
- Every status change goes through transition(); a transition from an
  unexpected current status is rejected, never overwritten
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any

import aiosqlite

from change_governor.actions.exceptions import ActionNotFoundError, StateChangedError
from change_governor.actions.recipients import recipient_key
from change_governor.actions.types import (
    Action,
    ActionStatus,
    ActionType,
    EntityType,
    EstimatedImpact,
    ExecutedBy,
    parse_payload,
)
from change_governor.db.base import (
    SQLiteStore,
    dump_json,
    from_iso,
    load_json,
    to_iso,
)

# Columns transition() may set alongside status.
_TRANSITION_COLUMNS = {
    "result",
    "actual_impact",
    "published_to_shopify",
    "completed_at",
    "rolled_back_at",
}

_JSON_COLUMNS = {"result", "actual_impact"}
_TIME_COLUMNS = {"completed_at", "rolled_back_at"}


class ActionDB(SQLiteStore):
    """
    Async context manager for action database operations.

    Example:
        async with ActionDB(Path("governor.db")) as db:
            action = await db.create_action(action)
            action = await db.transition(
                action.id, ActionStatus.PENDING, ActionStatus.RUNNING
            )
    """

    async def __aenter__(self) -> "ActionDB":
        return await super().__aenter__()

    def _row_to_action(self, row: aiosqlite.Row) -> Action:
        """
        Convert a database row to an Action.

        Args:
            row: Database row with action fields

        Returns:
            Action instance
        """
        return Action(
            id=row["id"],
            merchant_id=row["merchant_id"],
            action_type=ActionType(row["action_type"]),
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            status=ActionStatus(row["status"]),
            decision_reason=row["decision_reason"] or "",
            rule_id=row["rule_id"],
            payload=parse_payload(load_json(row["payload"])),
            result=load_json(row["result"]),
            estimated_impact=EstimatedImpact.model_validate(
                load_json(row["estimated_impact"]) or {}
            ),
            actual_impact=load_json(row["actual_impact"]),
            executed_by=ExecutedBy(row["executed_by"]),
            dry_run=bool(row["dry_run"]),
            published_to_shopify=bool(row["published_to_shopify"]),
            credit_cost=row["credit_cost"],
            created_at=from_iso(row["created_at"]),
            completed_at=from_iso(row["completed_at"]),
            rolled_back_at=from_iso(row["rolled_back_at"]),
        )

    # =========================================================================
    # Action operations
    # =========================================================================

    async def create_action(self, action: Action) -> Action:
        """
        Insert a new action.

        Args:
            action: The action to create (id is ignored)

        Returns:
            The created Action with ID populated
        """
        recipient, channel = recipient_key(action.action_type, action.payload)
        cursor = await self._conn.execute(
            """
            INSERT INTO actions (
                merchant_id, action_type, entity_type, entity_id, status,
                decision_reason, rule_id, payload, result, estimated_impact,
                actual_impact, executed_by, dry_run, published_to_shopify,
                credit_cost, recipient, channel, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                action.merchant_id,
                action.action_type.value,
                action.entity_type.value,
                action.entity_id,
                action.status.value,
                action.decision_reason,
                action.rule_id,
                action.payload.model_dump_json(),
                dump_json(action.result),
                action.estimated_impact.model_dump_json(),
                dump_json(action.actual_impact),
                action.executed_by.value,
                1 if action.dry_run else 0,
                1 if action.published_to_shopify else 0,
                action.credit_cost,
                recipient,
                channel,
                to_iso(action.created_at),
            ),
        )
        await self._conn.commit()
        return await self.get_action(cursor.lastrowid)

    async def get_action(self, action_id: int) -> Action | None:
        """
        Fetch an action by ID.

        Args:
            action_id: The action ID

        Returns:
            The Action if found, None otherwise
        """
        async with self._conn.execute(
            "SELECT * FROM actions WHERE id = ?",
            (action_id,),
        ) as cursor:
            row = await cursor.fetchone()

        if row:
            return self._row_to_action(row)
        return None

    async def require_action(self, action_id: int) -> Action:
        """Fetch an action or raise ActionNotFoundError."""
        action = await self.get_action(action_id)
        if action is None:
            raise ActionNotFoundError(action_id)
        return action

    async def list_actions(
        self,
        merchant_id: str | None = None,
        status: ActionStatus | None = None,
        action_type: ActionType | None = None,
        entity_id: str | None = None,
        published: bool | None = None,
        limit: int = 100,
    ) -> list[Action]:
        """
        List actions, newest first, with optional filters.

        Returns:
            List of matching actions ordered by created_at DESC
        """
        conditions = []
        params: list[Any] = []

        if merchant_id is not None:
            conditions.append("merchant_id = ?")
            params.append(merchant_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if action_type is not None:
            conditions.append("action_type = ?")
            params.append(action_type.value)
        if entity_id is not None:
            conditions.append("entity_id = ?")
            params.append(entity_id)
        if published is not None:
            conditions.append("published_to_shopify = ?")
            params.append(1 if published else 0)

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        query = f"""
            SELECT * FROM actions
            {where_clause}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
        """
        params.append(limit)

        async with self._conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()

        return [self._row_to_action(row) for row in rows]

    async def transition(
        self,
        action_id: int,
        expected: ActionStatus | Iterable[ActionStatus],
        new_status: ActionStatus,
        expected_published: bool | None = None,
        **fields: Any,
    ) -> Action:
        """
        Move an action to a new status if its current status is expected.

        The UPDATE is conditioned on the current status, so two writers
        racing on the same action cannot both succeed.

        Args:
            action_id: The action to transition
            expected: Status (or statuses) the action must currently be in
            new_status: Status to move to
            expected_published: If set, the action must also currently have
                this published flag
            **fields: Extra columns to set (result, actual_impact,
                published_to_shopify, completed_at, rolled_back_at)

        Returns:
            The updated Action

        Raises:
            ActionNotFoundError: If the action does not exist
            StateChangedError: If the current status was not expected
        """
        unknown = set(fields) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Cannot set columns in transition: {sorted(unknown)}")

        if isinstance(expected, ActionStatus):
            expected_set = [expected]
        else:
            expected_set = list(expected)

        assignments = ["status = ?"]
        params: list[Any] = [new_status.value]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            if column in _JSON_COLUMNS:
                params.append(dump_json(value))
            elif column in _TIME_COLUMNS:
                params.append(to_iso(value))
            elif column == "published_to_shopify":
                params.append(1 if value else 0)
            else:
                params.append(value)

        placeholders = ", ".join("?" for _ in expected_set)
        params.append(action_id)
        params.extend(status.value for status in expected_set)
        published_clause = ""
        if expected_published is not None:
            published_clause = " AND published_to_shopify = ?"
            params.append(1 if expected_published else 0)

        cursor = await self._conn.execute(
            f"""
            UPDATE actions SET {", ".join(assignments)}
            WHERE id = ? AND status IN ({placeholders}){published_clause}
            """,
            params,
        )
        await self._conn.commit()

        if cursor.rowcount != 1:
            current = await self.get_action(action_id)
            if current is None:
                raise ActionNotFoundError(action_id)
            raise StateChangedError(
                action_id, "|".join(status.value for status in expected_set)
            )

        return await self.get_action(action_id)

    async def record_result(self, action_id: int, result: dict[str, Any]) -> None:
        """
        Overwrite an action's result without changing its status.

        Used to surface a failed rollback on a still-completed action.
        """
        await self._conn.execute(
            "UPDATE actions SET result = ? WHERE id = ?",
            (dump_json(result), action_id),
        )
        await self._conn.commit()

    async def list_pending(self, merchant_id: str) -> list[Action]:
        """List a merchant's actions still waiting to execute."""
        return await self.list_actions(
            merchant_id=merchant_id, status=ActionStatus.PENDING, limit=10_000
        )

    # =========================================================================
    # Budget aggregates
    # =========================================================================

    async def count_actions_since(self, merchant_id: str, since: datetime) -> int:
        """
        Count a merchant's actions created at or after ``since``.

        Cancelled actions never ran and are not counted.
        """
        async with self._conn.execute(
            """
            SELECT COUNT(*) AS count FROM actions
            WHERE merchant_id = ? AND created_at >= ? AND status != 'cancelled'
            """,
            (merchant_id, to_iso(since)),
        ) as cursor:
            row = await cursor.fetchone()
        return row["count"]

    async def count_entities_touched_since(
        self,
        merchant_id: str,
        since: datetime,
    ) -> int:
        """
        Count distinct entities changed (or about to be) since ``since``.

        Dry runs, failures and discarded actions left the catalog untouched.
        """
        async with self._conn.execute(
            """
            SELECT COUNT(DISTINCT entity_id) AS count FROM actions
            WHERE merchant_id = ? AND created_at >= ?
              AND status NOT IN ('dry_run', 'failed', 'cancelled')
            """,
            (merchant_id, to_iso(since)),
        ) as cursor:
            row = await cursor.fetchone()
        return row["count"]

    async def credits_consumed_since(self, merchant_id: str, since: datetime) -> int:
        """Sum credit_cost of non-simulated, non-discarded actions since ``since``."""
        async with self._conn.execute(
            """
            SELECT COALESCE(SUM(credit_cost), 0) AS total FROM actions
            WHERE merchant_id = ? AND created_at >= ?
              AND dry_run = 0 AND status != 'cancelled'
            """,
            (merchant_id, to_iso(since)),
        ) as cursor:
            row = await cursor.fetchone()
        return row["total"]

    async def last_fired_at(self, rule_id: int, entity_id: str) -> datetime | None:
        """When ``rule_id`` last created an action for ``entity_id``."""
        async with self._conn.execute(
            """
            SELECT MAX(created_at) AS last FROM actions
            WHERE rule_id = ? AND entity_id = ?
            """,
            (rule_id, entity_id),
        ) as cursor:
            row = await cursor.fetchone()
        return from_iso(row["last"]) if row else None

    async def count_messages_since(
        self,
        merchant_id: str,
        recipient: str,
        channel: str,
        since: datetime,
    ) -> int:
        """
        Count outreach messages to ``recipient`` on ``channel`` since ``since``.

        Dry runs, failures and discarded actions sent nothing. A rolled-back
        message was still delivered and counts.
        """
        async with self._conn.execute(
            """
            SELECT COUNT(*) AS count FROM actions
            WHERE merchant_id = ? AND recipient = ? AND channel = ?
              AND created_at >= ? AND dry_run = 0
              AND status NOT IN ('dry_run', 'failed', 'cancelled')
            """,
            (merchant_id, recipient, channel, to_iso(since)),
        ) as cursor:
            row = await cursor.fetchone()
        return row["count"]
