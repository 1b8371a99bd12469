"""Tests for risk classification and the admission controller."""

from datetime import datetime, timedelta, timezone

import pytest
from conftest import make_campaign_candidate, make_candidate, make_settings

from change_governor.actions.admission import (
    AdmissionController,
    AdmissionState,
    Decision,
    classify_risk,
    next_utc_midnight,
)
from change_governor.actions.types import (
    Action,
    ActionStatus,
    ActionType,
    AutopilotMode,
    EstimatedImpact,
    RiskLevel,
)
from change_governor.db.actions import ActionDB

NOW = datetime(2026, 3, 1, 15, 30, tzinfo=timezone.utc)


def state(**kwargs) -> AdmissionState:
    return AdmissionState(now=NOW, **kwargs)


class TestClassifyRisk:
    """Tests for revenue-delta risk bands."""

    @pytest.mark.parametrize(
        "delta,expected",
        [
            (0, RiskLevel.LOW),
            (99.99, RiskLevel.LOW),
            (100, RiskLevel.MEDIUM),
            (499, RiskLevel.MEDIUM),
            (500, RiskLevel.HIGH),
            (-750, RiskLevel.HIGH),
            (-20, RiskLevel.LOW),
        ],
    )
    def test_bands(self, delta, expected):
        """Bands use the absolute delta; losses count as much as gains."""
        assert classify_risk(EstimatedImpact(revenue_delta=delta)) == expected


class TestAdmissionChecks:
    """Tests for each admission check in isolation."""

    def setup_method(self):
        self.controller = AdmissionController()

    def test_admits_low_risk_within_budgets(self):
        """A low-risk candidate with room in every budget is admitted."""
        verdict = self.controller.admit(make_candidate(), make_settings(), state())
        assert verdict.admitted
        assert verdict.risk == RiskLevel.LOW
        assert not verdict.requires_approval

    def test_autopilot_off_routes_to_approval(self):
        """With the master switch off, everything needs a human."""
        settings = make_settings(global_autopilot_enabled=False)
        verdict = self.controller.admit(make_candidate(), settings, state())
        assert verdict.decision == Decision.DEFER
        assert verdict.requires_approval

    def test_disabled_type_rejected(self):
        """Candidates of a type the merchant has not enabled are rejected."""
        settings = make_settings(enabled_action_types={ActionType.SEND_CAMPAIGN})
        verdict = self.controller.admit(make_candidate(), settings, state())
        assert verdict.rejected
        assert "optimize_seo" in verdict.reason

    def test_cooldown_defers_until_it_ends(self):
        """A rule that fired recently for the entity waits out its cooldown."""
        last = NOW - timedelta(hours=2)
        verdict = self.controller.admit(
            make_candidate(rule_id=3),
            make_settings(),
            state(last_fired_at=last, cooldown_seconds=86400),
        )
        assert verdict.decision == Decision.DEFER
        assert not verdict.requires_approval
        assert verdict.retry_after == last + timedelta(days=1)

    def test_cooldown_elapsed_admits(self):
        """Once the cooldown has passed the rule may fire again."""
        verdict = self.controller.admit(
            make_candidate(rule_id=3),
            make_settings(),
            state(last_fired_at=NOW - timedelta(days=2), cooldown_seconds=86400),
        )
        assert verdict.admitted

    def test_cooldown_ignored_for_manual_candidates(self):
        """Candidates without a rule have no cooldown."""
        verdict = self.controller.admit(
            make_candidate(rule_id=None),
            make_settings(),
            state(last_fired_at=NOW, cooldown_seconds=86400),
        )
        assert verdict.admitted

    def test_daily_cap(self):
        """At the daily limit, candidates wait for the next UTC day."""
        settings = make_settings(max_daily_actions=2)
        verdict = self.controller.admit(make_candidate(), settings, state(daily_count=2))
        assert verdict.decision == Decision.DEFER
        assert verdict.retry_after == next_utc_midnight(NOW)
        assert verdict.retry_after == datetime(2026, 3, 2, tzinfo=timezone.utc)

        verdict = self.controller.admit(make_candidate(), settings, state(daily_count=1))
        assert verdict.admitted

    def test_catalog_cap(self):
        """Touching the configured share of the catalog defers further changes."""
        settings = make_settings(max_catalog_change_percent=5.0)
        blocked = self.controller.admit(
            make_candidate(), settings, state(entities_touched=5, catalog_size=100)
        )
        assert blocked.decision == Decision.DEFER

        allowed = self.controller.admit(
            make_candidate(), settings, state(entities_touched=4, catalog_size=100)
        )
        assert allowed.admitted

    def test_catalog_cap_skipped_when_size_unknown(self):
        """A catalog size of zero disables the percentage check."""
        verdict = self.controller.admit(
            make_candidate(), make_settings(), state(entities_touched=50, catalog_size=0)
        )
        assert verdict.admitted

    def test_credit_budget(self):
        """The candidate's cost must fit in what is left of the budget."""
        settings = make_settings(autonomous_credit_limit=10)
        blocked = self.controller.admit(
            make_candidate(estimated_cost=3), settings, state(credits_consumed=8)
        )
        assert blocked.decision == Decision.DEFER
        assert "Credit" in blocked.reason

        exact = self.controller.admit(
            make_candidate(estimated_cost=2), settings, state(credits_consumed=8)
        )
        assert exact.admitted

    @pytest.mark.parametrize(
        "day,week,admitted",
        [(2, 4, True), (3, 3, False), (1, 5, False)],
    )
    def test_recipient_frequency_caps(self, day, week, admitted):
        """Outreach is capped at 3 per day and 5 per week per recipient."""
        verdict = self.controller.admit(
            make_campaign_candidate(),
            make_settings(),
            state(recipient_day_count=day, recipient_week_count=week),
        )
        assert verdict.admitted is admitted
        if not admitted:
            assert "message limit" in verdict.reason

    def test_check_budgets_ignores_routing(self):
        """Budget-only checks skip autopilot and risk routing, not the caps."""
        settings = make_settings(global_autopilot_enabled=False, max_daily_actions=2)
        risky = make_candidate(revenue_delta=900)

        assert self.controller.check_budgets(risky, settings, state(daily_count=1)).admitted
        capped = self.controller.check_budgets(risky, settings, state(daily_count=2))
        assert capped.decision == Decision.DEFER
        assert not capped.requires_approval

    @pytest.mark.parametrize(
        "mode,delta,needs_approval",
        [
            (AutopilotMode.SAFE, 50, False),
            (AutopilotMode.SAFE, 200, True),
            (AutopilotMode.SAFE, 900, True),
            (AutopilotMode.BALANCED, 200, False),
            (AutopilotMode.BALANCED, 900, True),
            (AutopilotMode.AGGRESSIVE, 900, False),
        ],
    )
    def test_mode_risk_tolerance(self, mode, delta, needs_approval):
        """Each mode sends a different set of risk levels to approval."""
        verdict = self.controller.admit(
            make_candidate(revenue_delta=delta),
            make_settings(autopilot_mode=mode),
            state(),
        )
        assert verdict.requires_approval is needs_approval
        assert verdict.admitted is not needs_approval


class TestCheckOrder:
    """Tests that checks short-circuit in a fixed order."""

    def setup_method(self):
        self.controller = AdmissionController()

    def test_autopilot_before_type(self):
        """Autopilot off wins over a disabled type."""
        settings = make_settings(
            global_autopilot_enabled=False,
            enabled_action_types={ActionType.SEND_CAMPAIGN},
        )
        verdict = self.controller.admit(make_candidate(), settings, state())
        assert verdict.requires_approval
        assert not verdict.rejected

    def test_type_before_budgets(self):
        """A disabled type is rejected even when budgets are exhausted."""
        settings = make_settings(
            enabled_action_types={ActionType.SEND_CAMPAIGN}, max_daily_actions=0
        )
        verdict = self.controller.admit(make_candidate(), settings, state())
        assert verdict.rejected

    def test_budgets_before_risk(self):
        """A high-risk candidate over budget is deferred, not sent to approval."""
        settings = make_settings(max_daily_actions=1)
        verdict = self.controller.admit(
            make_candidate(revenue_delta=5000), settings, state(daily_count=1)
        )
        assert verdict.decision == Decision.DEFER
        assert not verdict.requires_approval
        assert verdict.risk == RiskLevel.HIGH

    def test_same_inputs_same_verdict(self):
        """Admission is a pure function of its inputs."""
        candidate = make_candidate(revenue_delta=250)
        settings = make_settings()
        first = self.controller.admit(candidate, settings, state(daily_count=3))
        second = self.controller.admit(candidate, settings, state(daily_count=3))
        assert first == second


class TestAdmissionStateLoad:
    """Tests for loading budget aggregates from the database."""

    @pytest.mark.asyncio
    async def test_aggregates_from_todays_actions(self, db_path):
        """Counts cover today only and skip rows that left the catalog untouched."""
        yesterday = NOW - timedelta(days=1)
        base = {
            "merchant_id": "shop-1",
            "action_type": ActionType.OPTIMIZE_SEO,
            "entity_type": "product",
            "payload": make_candidate().payload,
        }
        rows = [
            Action(entity_id="prod-1", status=ActionStatus.COMPLETED, rule_id=4,
                   created_at=NOW - timedelta(hours=1), credit_cost=2, **base),
            Action(entity_id="prod-1", status=ActionStatus.ROLLED_BACK,
                   created_at=NOW - timedelta(hours=2), **base),
            Action(entity_id="prod-2", status=ActionStatus.DRY_RUN, dry_run=True,
                   created_at=NOW - timedelta(hours=3), credit_cost=5, **base),
            Action(entity_id="prod-3", status=ActionStatus.CANCELLED,
                   created_at=NOW - timedelta(hours=4), credit_cost=7, **base),
            Action(entity_id="prod-4", status=ActionStatus.COMPLETED,
                   created_at=yesterday, credit_cost=9, **base),
        ]
        async with ActionDB(db_path) as db:
            for row in rows:
                await db.create_action(row)

            loaded = await AdmissionState.load(
                db, make_candidate(rule_id=4), cooldown_seconds=600,
                catalog_size=40, now=NOW,
            )

        assert loaded.daily_count == 3
        assert loaded.entities_touched == 1
        assert loaded.credits_consumed == 3
        assert loaded.catalog_size == 40
        assert loaded.cooldown_seconds == 600
        assert loaded.last_fired_at == NOW - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_manual_candidate_has_no_last_fired(self, db_path):
        """Without a rule there is nothing to cool down."""
        async with ActionDB(db_path) as db:
            loaded = await AdmissionState.load(db, make_candidate(), now=NOW)
        assert loaded.last_fired_at is None
        assert loaded.daily_count == 0

    @pytest.mark.asyncio
    async def test_recipient_counts_use_rolling_windows(self, db_path):
        """Messages are counted per normalized recipient over 24 hours and 7 days."""
        base = {
            "merchant_id": "shop-1",
            "action_type": ActionType.SEND_CAMPAIGN,
            "entity_type": "customer",
            "entity_id": "cust-1",
            "status": ActionStatus.COMPLETED,
        }
        email_payload = make_campaign_candidate(email="Jane@Example.com").payload
        rows = [
            Action(payload=email_payload, created_at=NOW - timedelta(hours=2), **base),
            Action(payload=email_payload, created_at=NOW - timedelta(days=3), **base),
            Action(payload=email_payload, created_at=NOW - timedelta(days=9), **base),
            Action(
                payload=make_campaign_candidate(email="bob@example.com").payload,
                created_at=NOW - timedelta(hours=1),
                **base,
            ),
        ]
        async with ActionDB(db_path) as db:
            for row in rows:
                await db.create_action(row)
            loaded = await AdmissionState.load(db, make_campaign_candidate(), now=NOW)

        assert loaded.recipient_day_count == 1
        assert loaded.recipient_week_count == 2
