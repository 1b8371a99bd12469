"""Tests for the SQLite stores: actions, snapshots and policy."""

import sqlite3

import pytest
from conftest import make_candidate
from pydantic import ValidationError

from change_governor.actions.conditions import Threshold
from change_governor.actions.exceptions import ActionNotFoundError, StateChangedError
from change_governor.actions.rules import DEFAULT_RULES, Rule
from change_governor.actions.types import (
    Action,
    ActionStatus,
    ActionType,
    AutopilotMode,
    SettingsPatch,
    Snapshot,
)
from change_governor.db.actions import ActionDB
from change_governor.db.policy import PolicyStore
from change_governor.db.snapshots import SnapshotStore


def make_action(**overrides) -> Action:
    candidate = make_candidate()
    values = {
        "merchant_id": candidate.merchant_id,
        "action_type": candidate.action_type,
        "entity_type": candidate.entity_type,
        "entity_id": candidate.entity_id,
        "payload": candidate.payload,
        "estimated_impact": candidate.estimated_impact,
        "decision_reason": candidate.decision_reason,
    }
    values.update(overrides)
    return Action(**values)


class TestActionDB:
    """Tests for action persistence and guarded transitions."""

    @pytest.mark.asyncio
    async def test_create_and_get_round_trip(self, db_path):
        """Typed payload and impact survive storage."""
        async with ActionDB(db_path) as db:
            created = await db.create_action(make_action())
            fetched = await db.get_action(created.id)

        assert fetched.id is not None
        assert fetched.status == ActionStatus.PENDING
        assert fetched.payload.seo_title == "New title"
        assert fetched.estimated_impact.revenue_delta == 10.0
        assert fetched.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_missing_action(self, db_path):
        """get returns None; require raises."""
        async with ActionDB(db_path) as db:
            assert await db.get_action(999) is None
            with pytest.raises(ActionNotFoundError):
                await db.require_action(999)

    @pytest.mark.asyncio
    async def test_transition_from_expected_status(self, db_path):
        """A transition from the expected status applies with its extra fields."""
        async with ActionDB(db_path) as db:
            action = await db.create_action(make_action())
            running = await db.transition(action.id, ActionStatus.PENDING, ActionStatus.RUNNING)
            done = await db.transition(
                running.id,
                ActionStatus.RUNNING,
                ActionStatus.COMPLETED,
                result={"ok": True},
                published_to_shopify=True,
            )

        assert done.status == ActionStatus.COMPLETED
        assert done.result == {"ok": True}
        assert done.published_to_shopify

    @pytest.mark.asyncio
    async def test_transition_from_wrong_status_rejected(self, db_path):
        """Only one of two racing writers wins."""
        async with ActionDB(db_path) as db:
            action = await db.create_action(make_action())
            await db.transition(action.id, ActionStatus.PENDING, ActionStatus.RUNNING)

            with pytest.raises(StateChangedError):
                await db.transition(action.id, ActionStatus.PENDING, ActionStatus.RUNNING)

            with pytest.raises(ActionNotFoundError):
                await db.transition(999, ActionStatus.PENDING, ActionStatus.RUNNING)

            assert (await db.get_action(action.id)).status == ActionStatus.RUNNING

    @pytest.mark.asyncio
    async def test_transition_rejects_unknown_columns(self, db_path):
        """Only lifecycle columns may change alongside status."""
        async with ActionDB(db_path) as db:
            action = await db.create_action(make_action())
            with pytest.raises(ValueError):
                await db.transition(
                    action.id, ActionStatus.PENDING, ActionStatus.RUNNING, payload="{}"
                )

    @pytest.mark.asyncio
    async def test_list_filters(self, db_path):
        """Filters combine; newest first."""
        async with ActionDB(db_path) as db:
            first = await db.create_action(make_action(entity_id="prod-1"))
            second = await db.create_action(make_action(entity_id="prod-2"))
            await db.create_action(make_action(merchant_id="shop-2"))
            await db.transition(second.id, ActionStatus.PENDING, ActionStatus.CANCELLED)

            shop = await db.list_actions(merchant_id="shop-1")
            pending = await db.list_pending("shop-1")
            by_entity = await db.list_actions(entity_id="prod-2")
            by_type = await db.list_actions(action_type=ActionType.SEND_CAMPAIGN)

        assert [a.id for a in shop] == [second.id, first.id]
        assert [a.id for a in pending] == [first.id]
        assert [a.id for a in by_entity] == [second.id]
        assert by_type == []

    @pytest.mark.asyncio
    async def test_record_result_keeps_status(self, db_path):
        """record_result overwrites result only."""
        async with ActionDB(db_path) as db:
            action = await db.create_action(make_action(status=ActionStatus.COMPLETED))
            await db.record_result(action.id, {"rollback_error": "boom"})
            updated = await db.get_action(action.id)

        assert updated.status == ActionStatus.COMPLETED
        assert updated.result == {"rollback_error": "boom"}


class TestSnapshotStore:
    """Tests for append-only snapshots."""

    @pytest.mark.asyncio
    async def test_capture_and_latest(self, db_path):
        """The newest snapshot for an action wins."""
        async with ActionDB(db_path) as db:
            action = await db.create_action(make_action())

        async with SnapshotStore(db_path) as store:
            await store.capture(Snapshot(
                entity_id="prod-1", action_id=action.id, captured_state={"v": 1},
            ))
            second = await store.capture(Snapshot(
                entity_id="prod-1", action_id=action.id, captured_state={"v": 2},
                reason="before_publish",
            ))
            latest = await store.latest_for_action(action.id)
            history = await store.list_for_entity("prod-1")
            assert await store.latest_for_action(999) is None

        assert latest.id == second.id
        assert latest.captured_state == {"v": 2}
        assert latest.reason == "before_publish"
        assert len(history) == 2

    @pytest.mark.asyncio
    async def test_snapshots_cannot_be_changed(self, db_path):
        """Updates and deletes are refused by the database."""
        async with ActionDB(db_path) as db:
            action = await db.create_action(make_action())

        async with SnapshotStore(db_path) as store:
            snap = await store.capture(Snapshot(
                entity_id="prod-1", action_id=action.id, captured_state={"v": 1},
            ))
            with pytest.raises(sqlite3.IntegrityError):
                await store._conn.execute(
                    "UPDATE snapshots SET captured_state = '{}' WHERE id = ?", (snap.id,)
                )
            with pytest.raises(sqlite3.IntegrityError):
                await store._conn.execute("DELETE FROM snapshots WHERE id = ?", (snap.id,))


class TestPolicySettings:
    """Tests for per-merchant automation settings."""

    @pytest.mark.asyncio
    async def test_defaults_created_on_first_read(self, db_path):
        """A merchant without a row gets the conservative defaults."""
        async with PolicyStore(db_path) as store:
            settings = await store.get_settings("shop-1")

        assert settings.global_autopilot_enabled
        assert settings.autopilot_mode == AutopilotMode.SAFE
        assert not settings.dry_run_mode
        assert not settings.auto_publish_enabled
        assert settings.max_daily_actions == 10
        assert settings.max_catalog_change_percent == 5.0
        assert settings.autonomous_credit_limit == 100
        assert settings.enabled_action_types == {ActionType.OPTIMIZE_SEO}

    @pytest.mark.asyncio
    async def test_partial_update(self, db_path):
        """Only the patched fields change."""
        async with PolicyStore(db_path) as store:
            updated = await store.update_settings("shop-1", {
                "autopilot_mode": "balanced",
                "enabled_action_types": ["optimize_seo", "send_campaign"],
            })
            reread = await store.get_settings("shop-1")

        assert updated.autopilot_mode == AutopilotMode.BALANCED
        assert reread.enabled_action_types == {ActionType.OPTIMIZE_SEO, ActionType.SEND_CAMPAIGN}
        assert reread.max_daily_actions == 10
        assert reread.updated_at is not None

    @pytest.mark.asyncio
    async def test_invalid_patch_rejected(self, db_path):
        """Out-of-range values and unknown keys fail validation and store nothing."""
        async with PolicyStore(db_path) as store:
            with pytest.raises(ValidationError):
                await store.update_settings("shop-1", {"max_catalog_change_percent": 150})
            with pytest.raises(ValidationError):
                await store.update_settings("shop-1", {"turbo": True})
            with pytest.raises(ValidationError):
                await store.update_settings("shop-1", SettingsPatch(max_daily_actions=-1))
            settings = await store.get_settings("shop-1")

        assert settings.max_catalog_change_percent == 5.0


class TestPolicyRules:
    """Tests for rule storage."""

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, db_path):
        """Seeding twice creates the presets once."""
        async with PolicyStore(db_path) as store:
            assert await store.seed_default_rules() == len(DEFAULT_RULES)
            assert await store.seed_default_rules() == 0
            rules = await store.list_rules("shop-1")

        assert [r.name for r in rules] == [r.name for r in DEFAULT_RULES]
        assert rules[0].priority > rules[1].priority
        assert isinstance(rules[0].condition, Threshold)

    @pytest.mark.asyncio
    async def test_merchant_rules_visible_only_to_merchant(self, db_path):
        """Merchant rules are listed for their merchant alongside globals."""
        async with PolicyStore(db_path) as store:
            await store.seed_default_rules()
            own = await store.create_rule(Rule(
                merchant_id="shop-1",
                name="Reprice slow movers",
                condition=Threshold(field="sell_through", op="lt", value=0.1),
                action_type=ActionType.ADJUST_PRICE,
                priority=120,
            ))
            mine = await store.list_rules("shop-1")
            theirs = await store.list_rules("shop-2")

        assert mine[0].id == own.id
        assert own.id not in [r.id for r in theirs]

    @pytest.mark.asyncio
    async def test_merchant_rule_requires_merchant(self, db_path):
        """A merchant-scoped rule without a merchant is refused."""
        async with PolicyStore(db_path) as store:
            with pytest.raises(ValueError):
                await store.create_rule(Rule(
                    name="Orphan",
                    condition=Threshold(field="x", op="gt", value=1),
                    action_type=ActionType.OPTIMIZE_SEO,
                ))

    @pytest.mark.asyncio
    async def test_soft_disable(self, db_path):
        """Disabled rules drop out of listings but stay stored."""
        async with PolicyStore(db_path) as store:
            await store.seed_default_rules()
            first = (await store.list_rules("shop-1"))[0]
            disabled = await store.set_rule_enabled(first.id, False)
            active = await store.list_rules("shop-1")
            everything = await store.list_rules("shop-1", include_disabled=True)
            with pytest.raises(ValueError):
                await store.set_rule_enabled(999, True)

        assert not disabled.enabled
        assert first.id not in [r.id for r in active]
        assert first.id in [r.id for r in everything]

    @pytest.mark.asyncio
    async def test_referenced_rule_cannot_be_deleted(self, db_path):
        """Deleting a rule an action points at fails; an unused rule can go."""
        async with PolicyStore(db_path) as store:
            await store.seed_default_rules()
            used, unused = await store.list_rules("shop-1")

        async with ActionDB(db_path) as db:
            await db.create_action(make_action(rule_id=used.id))

        async with PolicyStore(db_path) as store:
            with pytest.raises(ValueError):
                await store.delete_rule(used.id)
            await store.delete_rule(unused.id)
            remaining = await store.list_rules("shop-1", include_disabled=True)

        assert [r.id for r in remaining] == [used.id]
