"""
Policy store: per-merchant automation settings and trigger rules.

Settings are a singleton per merchant, created with defaults on first
read and mutated only through validated patches. Rules are soft-disabled
rather than deleted once an action references them; the schema trigger
rejects such deletes.
"""

import json
import logging
import sqlite3
from typing import Any

import aiosqlite

from change_governor.actions.conditions import parse_condition
from change_governor.actions.rules import DEFAULT_RULES, Rule, RuleScope
from change_governor.actions.types import (
    ActionType,
    AutomationSettings,
    AutopilotMode,
    EntityType,
    SettingsPatch,
    utcnow,
)
from change_governor.db.base import SQLiteStore, from_iso, to_iso

logger = logging.getLogger(__name__)


class PolicyStore(SQLiteStore):
    """
    Async context manager for settings and rule persistence.

    Example:
        async with PolicyStore(db_path) as store:
            settings = await store.get_settings("shop-1")
            settings = await store.update_settings("shop-1", {"max_daily_actions": 5})
    """

    async def __aenter__(self) -> "PolicyStore":
        return await super().__aenter__()

    # =========================================================================
    # Automation settings
    # =========================================================================

    def _row_to_settings(self, row: aiosqlite.Row) -> AutomationSettings:
        return AutomationSettings(
            merchant_id=row["merchant_id"],
            global_autopilot_enabled=bool(row["global_autopilot_enabled"]),
            autopilot_mode=AutopilotMode(row["autopilot_mode"]),
            dry_run_mode=bool(row["dry_run_mode"]),
            auto_publish_enabled=bool(row["auto_publish_enabled"]),
            max_daily_actions=row["max_daily_actions"],
            max_catalog_change_percent=row["max_catalog_change_percent"],
            autonomous_credit_limit=row["autonomous_credit_limit"],
            enabled_action_types={
                ActionType(value) for value in json.loads(row["enabled_action_types"])
            },
            updated_at=from_iso(row["updated_at"]),
        )

    async def get_settings(self, merchant_id: str) -> AutomationSettings:
        """
        Fetch a merchant's settings, creating the default row if missing.

        Args:
            merchant_id: The merchant

        Returns:
            The merchant's AutomationSettings
        """
        await self._conn.execute(
            "INSERT OR IGNORE INTO automation_settings (merchant_id) VALUES (?)",
            (merchant_id,),
        )
        await self._conn.commit()

        async with self._conn.execute(
            "SELECT * FROM automation_settings WHERE merchant_id = ?",
            (merchant_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_settings(row)

    async def update_settings(
        self,
        merchant_id: str,
        patch: SettingsPatch | dict[str, Any],
    ) -> AutomationSettings:
        """
        Apply a validated partial update.

        Args:
            merchant_id: The merchant
            patch: Fields to change; unknown keys or out-of-range values
                are rejected

        Returns:
            The updated settings

        Raises:
            pydantic.ValidationError: If the patch is invalid
        """
        if not isinstance(patch, SettingsPatch):
            patch = SettingsPatch.model_validate(patch)

        current = await self.get_settings(merchant_id)
        updated = patch.apply_to(current)
        updated.updated_at = utcnow()

        await self._conn.execute(
            """
            UPDATE automation_settings SET
                global_autopilot_enabled = ?,
                autopilot_mode = ?,
                dry_run_mode = ?,
                auto_publish_enabled = ?,
                max_daily_actions = ?,
                max_catalog_change_percent = ?,
                autonomous_credit_limit = ?,
                enabled_action_types = ?,
                updated_at = ?
            WHERE merchant_id = ?
            """,
            (
                1 if updated.global_autopilot_enabled else 0,
                updated.autopilot_mode.value,
                1 if updated.dry_run_mode else 0,
                1 if updated.auto_publish_enabled else 0,
                updated.max_daily_actions,
                updated.max_catalog_change_percent,
                updated.autonomous_credit_limit,
                json.dumps(sorted(t.value for t in updated.enabled_action_types)),
                to_iso(updated.updated_at),
                merchant_id,
            ),
        )
        await self._conn.commit()
        return await self.get_settings(merchant_id)

    # =========================================================================
    # Rules
    # =========================================================================

    def _row_to_rule(self, row: aiosqlite.Row) -> Rule:
        return Rule(
            id=row["id"],
            merchant_id=row["merchant_id"],
            scope=RuleScope(row["scope"]),
            name=row["name"],
            description=row["description"] or "",
            condition=parse_condition(json.loads(row["condition"])),
            action_type=ActionType(row["action_type"]),
            entity_type=EntityType(row["entity_type"]),
            priority=row["priority"],
            cooldown_seconds=row["cooldown_seconds"],
            enabled=bool(row["enabled"]),
        )

    async def create_rule(self, rule: Rule) -> Rule:
        """
        Insert a rule.

        Returns:
            The created Rule with ID populated
        """
        if rule.scope == RuleScope.MERCHANT and rule.merchant_id is None:
            raise ValueError("Merchant-scoped rules need a merchant_id")

        cursor = await self._conn.execute(
            """
            INSERT INTO rules (
                merchant_id, scope, name, description, condition,
                action_type, entity_type, priority, cooldown_seconds, enabled
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                None if rule.scope == RuleScope.GLOBAL else rule.merchant_id,
                rule.scope.value,
                rule.name,
                rule.description,
                rule.condition.model_dump_json(),
                rule.action_type.value,
                rule.entity_type.value,
                rule.priority,
                rule.cooldown_seconds,
                1 if rule.enabled else 0,
            ),
        )
        await self._conn.commit()
        return await self.get_rule(cursor.lastrowid)

    async def get_rule(self, rule_id: int) -> Rule | None:
        async with self._conn.execute(
            "SELECT * FROM rules WHERE id = ?",
            (rule_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_rule(row) if row else None

    async def list_rules(
        self,
        merchant_id: str | None = None,
        include_disabled: bool = False,
    ) -> list[Rule]:
        """
        List global rules plus the merchant's own rules.

        Args:
            merchant_id: Merchant whose rules to include (None = global only)
            include_disabled: Include soft-disabled rules

        Returns:
            Rules ordered by priority DESC
        """
        query = "SELECT * FROM rules WHERE (merchant_id IS NULL OR merchant_id = ?)"
        if not include_disabled:
            query += " AND enabled = 1"
        query += " ORDER BY priority DESC, id ASC"

        async with self._conn.execute(query, (merchant_id,)) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_rule(row) for row in rows]

    async def set_rule_enabled(self, rule_id: int, enabled: bool) -> Rule:
        """
        Enable or soft-disable a rule.

        Raises:
            ValueError: If the rule does not exist
        """
        cursor = await self._conn.execute(
            "UPDATE rules SET enabled = ? WHERE id = ?",
            (1 if enabled else 0, rule_id),
        )
        await self._conn.commit()
        if cursor.rowcount != 1:
            raise ValueError(f"Rule {rule_id} not found")
        return await self.get_rule(rule_id)

    async def delete_rule(self, rule_id: int) -> None:
        """
        Physically delete a rule that no action references.

        Raises:
            ValueError: If an action references the rule (disable it instead)
        """
        try:
            await self._conn.execute("DELETE FROM rules WHERE id = ?", (rule_id,))
            await self._conn.commit()
        except sqlite3.IntegrityError as e:
            await self._conn.rollback()
            raise ValueError(
                f"Rule {rule_id} is referenced by an action; disable it instead"
            ) from e

    async def seed_default_rules(self) -> int:
        """
        Create the global preset rules that do not exist yet.

        Returns:
            Number of rules created
        """
        created = 0
        for rule in DEFAULT_RULES:
            cursor = await self._conn.execute(
                """
                INSERT OR IGNORE INTO rules (
                    merchant_id, scope, name, description, condition,
                    action_type, entity_type, priority, cooldown_seconds, enabled
                ) VALUES (NULL, 'global', ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.name,
                    rule.description,
                    rule.condition.model_dump_json(),
                    rule.action_type.value,
                    rule.entity_type.value,
                    rule.priority,
                    rule.cooldown_seconds,
                    1 if rule.enabled else 0,
                ),
            )
            if cursor.rowcount == 1:
                created += 1
                logger.info("Created default rule: %s", rule.name)
        await self._conn.commit()
        return created
