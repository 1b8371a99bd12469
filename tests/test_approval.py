"""Tests for the approval gate and recipient deduplication."""

import asyncio

import pytest
from conftest import make_campaign_candidate, make_candidate, make_settings

from change_governor.actions.approval import MANUAL_APPROVAL_PREFIX, ApprovalGate
from change_governor.actions.exceptions import (
    ApprovalDeferredError,
    ApprovalNotFoundError,
    ErrorKind,
    PlatformError,
)
from change_governor.actions.recipients import extract_recipient, normalize_phone, recipient_key
from change_governor.actions.types import (
    ActionStatus,
    ActionType,
    ApprovalPriority,
    ApprovalStatus,
    CampaignPayload,
    ExecutedBy,
)
from change_governor.db.actions import ActionDB
from change_governor.db.approvals import ApprovalDB
from change_governor.db.policy import PolicyStore


@pytest.fixture
def gate(db_path, lifecycle, auditor) -> ApprovalGate:
    return ApprovalGate(db_path, lifecycle, auditor)


class TestRecipientExtraction:
    """Tests for dedup key normalization."""

    def test_email_normalized_and_channel_defaulted(self):
        """Emails are trimmed and lowercased; channel defaults to email."""
        payload = CampaignPayload(recipient_email="  Jane@Example.COM ")
        assert extract_recipient(ActionType.SEND_CAMPAIGN, payload) == (
            "jane@example.com", None, "email",
        )

    def test_phone_only_defaults_to_sms(self):
        """A phone-only recipient goes out by SMS."""
        payload = CampaignPayload(recipient_phone="+1 (555) 010-2000")
        assert extract_recipient(ActionType.SEND_CAMPAIGN, payload) == (
            None, "+15550102000", "sms",
        )
        assert normalize_phone("") is None

    def test_catalog_types_have_no_recipient(self):
        """Non-outreach actions dedup by entity instead."""
        candidate = make_candidate()
        assert extract_recipient(candidate.action_type, candidate.payload) == (None, None, None)


class TestPropose:
    """Tests for queueing proposals."""

    @pytest.mark.asyncio
    async def test_propose_queues_with_priority_from_risk(self, gate):
        """A high-risk candidate becomes a high-priority approval."""
        approval = await gate.propose(make_candidate(revenue_delta=800))

        assert approval.id is not None
        assert approval.status == ApprovalStatus.PENDING
        assert approval.priority == ApprovalPriority.HIGH
        assert approval.ai_reasoning == "SEO score below 70"

    @pytest.mark.asyncio
    async def test_same_recipient_deduplicated(self, gate, auditor):
        """Two outreach proposals to the same address yield one row."""
        first = await gate.propose(make_campaign_candidate(email="jane@example.com"))
        second = await gate.propose(
            make_campaign_candidate(email="JANE@example.com ", entity_id="cust-9")
        )

        assert first.id == second.id
        assert len(await gate.list_pending("shop-1")) == 1
        deduped = await auditor.get_events(event_type="approval_deduplicated")
        assert [e.approval_id for e in deduped] == [first.id]

    @pytest.mark.asyncio
    async def test_concurrent_proposals_deduplicated(self, gate):
        """Simultaneous proposals to one recipient still leave one pending row."""
        results = await asyncio.gather(*(
            gate.propose(make_campaign_candidate(email="jane@example.com"))
            for _ in range(5)
        ))

        assert len({approval.id for approval in results}) == 1
        assert len(await gate.list_pending("shop-1")) == 1

    @pytest.mark.asyncio
    async def test_sms_deduplicated_by_phone(self, gate):
        """Phone-only outreach dedups on the normalized number."""
        first = await gate.propose(make_campaign_candidate(email=None, phone="+1 555 010 2000"))
        second = await gate.propose(make_campaign_candidate(email=None, phone="+15550102000"))

        assert first.id == second.id
        assert first.channel == "sms"

    @pytest.mark.asyncio
    async def test_different_channel_not_deduplicated(self, gate):
        """The same address on another channel is a separate proposal."""
        email = await gate.propose(make_campaign_candidate(channel="email"))
        sms = await gate.propose(make_campaign_candidate(channel="sms", phone="+15550102000"))

        assert email.id != sms.id

    @pytest.mark.asyncio
    async def test_catalog_change_deduplicated_by_entity(self, gate):
        """Two pending proposals for one product collapse into one."""
        first = await gate.propose(make_candidate(entity_id="prod-1"))
        second = await gate.propose(make_candidate(entity_id="prod-1"))
        other = await gate.propose(make_candidate(entity_id="prod-2"))

        assert first.id == second.id
        assert other.id != first.id

    @pytest.mark.asyncio
    async def test_resolved_proposal_does_not_block_new_one(self, gate):
        """Dedup only covers pending rows."""
        first = await gate.propose(make_campaign_candidate())
        await gate.reject(first.id)
        second = await gate.propose(make_campaign_candidate())

        assert second.id != first.id


class TestResolve:
    """Tests for approve and reject."""

    @pytest.mark.asyncio
    async def test_approve_creates_and_runs_user_action(self, gate, db_path, platform):
        """Approving spawns a user action with the manual-approval reason."""
        approval = await gate.propose(make_candidate(revenue_delta=800))
        approved = await gate.approve(approval.id, make_settings(), reviewed_by="ops")

        assert approved.status == ApprovalStatus.APPROVED
        assert approved.reviewed_by == "ops"
        assert approved.reviewed_at is not None
        assert approved.executed_action_id is not None

        async with ActionDB(db_path) as db:
            action = await db.get_action(approved.executed_action_id)
        assert action.executed_by == ExecutedBy.USER
        assert action.decision_reason.startswith(MANUAL_APPROVAL_PREFIX)
        assert action.status == ActionStatus.COMPLETED
        assert platform.apply_calls == ["prod-1"]

    @pytest.mark.asyncio
    async def test_approve_twice_creates_one_action(self, gate, db_path):
        """A second approve is a no-op."""
        approval = await gate.propose(make_candidate())
        first = await gate.approve(approval.id, make_settings())
        second = await gate.approve(approval.id, make_settings())

        assert second.executed_action_id == first.executed_action_id
        async with ActionDB(db_path) as db:
            assert len(await db.list_actions(merchant_id="shop-1")) == 1

    @pytest.mark.asyncio
    async def test_reject_creates_no_action(self, gate, db_path):
        """Rejecting closes the proposal without touching the platform."""
        approval = await gate.propose(make_candidate())
        rejected = await gate.reject(approval.id, reviewed_by="ops")
        again = await gate.reject(approval.id)

        assert rejected.status == ApprovalStatus.REJECTED
        assert again.status == ApprovalStatus.REJECTED
        assert rejected.executed_action_id is None
        async with ActionDB(db_path) as db:
            assert await db.list_actions(merchant_id="shop-1") == []

    @pytest.mark.asyncio
    async def test_approve_after_reject_does_nothing(self, gate, db_path):
        """A rejected proposal cannot be approved later."""
        approval = await gate.propose(make_candidate())
        await gate.reject(approval.id)
        result = await gate.approve(approval.id, make_settings())

        assert result.status == ApprovalStatus.REJECTED
        assert result.executed_action_id is None

    @pytest.mark.asyncio
    async def test_unknown_approval(self, gate):
        """Missing approvals raise."""
        with pytest.raises(ApprovalNotFoundError):
            await gate.approve(999, make_settings())
        with pytest.raises(ApprovalNotFoundError):
            await gate.reject(999)

    @pytest.mark.asyncio
    async def test_list_approvals_by_status(self, gate, db_path):
        """Resolved approvals leave the pending queue."""
        keep = await gate.propose(make_candidate(entity_id="prod-1"))
        drop = await gate.propose(make_candidate(entity_id="prod-2"))
        await gate.reject(drop.id)

        pending = await gate.list_pending("shop-1")
        async with ApprovalDB(db_path) as db:
            rejected = await db.list_approvals("shop-1", ApprovalStatus.REJECTED)

        assert [a.id for a in pending] == [keep.id]
        assert [a.id for a in rejected] == [drop.id]


class TestApprovalBudgets:
    """Tests for budget and cooldown checks on approve."""

    @pytest.mark.asyncio
    async def test_daily_cap_blocks_approval(self, gate, db_path, platform):
        """An approval past the daily cap stays pending and creates nothing."""
        settings = make_settings(max_daily_actions=1)
        first = await gate.propose(make_candidate(entity_id="prod-1"))
        second = await gate.propose(make_candidate(entity_id="prod-2"))

        await gate.approve(first.id, settings)
        with pytest.raises(ApprovalDeferredError) as exc_info:
            await gate.approve(second.id, settings)

        assert "Daily action limit" in exc_info.value.reason
        assert exc_info.value.retry_after is not None
        async with ApprovalDB(db_path) as db:
            assert (await db.get_approval(second.id)).status == ApprovalStatus.PENDING
        async with ActionDB(db_path) as db:
            assert len(await db.list_actions(merchant_id="shop-1")) == 1
        assert platform.apply_calls == ["prod-1"]

    @pytest.mark.asyncio
    async def test_rule_cooldown_blocks_approval(self, gate, lifecycle, db_path, auditor):
        """A rule that just fired for an entity cannot fire again via approval."""
        async with PolicyStore(db_path) as store:
            await store.seed_default_rules()
            rule = (await store.list_rules("shop-1"))[0]
        settings = make_settings()
        fired = await lifecycle.create_action(make_candidate(rule_id=rule.id), settings)
        await lifecycle.execute(fired.id, settings)

        approval = await gate.propose(make_candidate(rule_id=rule.id))
        with pytest.raises(ApprovalDeferredError) as exc_info:
            await gate.approve(approval.id, settings)

        assert "cooling down" in exc_info.value.reason
        async with ActionDB(db_path) as db:
            assert len(await db.list_actions(merchant_id="shop-1")) == 1
        deferred = await auditor.get_events(event_type="admission_deferred")
        assert len(deferred) == 1

    @pytest.mark.asyncio
    async def test_deferred_approval_succeeds_once_budget_frees(self, gate, db_path):
        """The approval can be approved again after the cap is raised."""
        approval = await gate.propose(make_candidate())
        with pytest.raises(ApprovalDeferredError):
            await gate.approve(approval.id, make_settings(max_daily_actions=0))

        approved = await gate.approve(approval.id, make_settings())
        assert approved.status == ApprovalStatus.APPROVED
        assert approved.executed_action_id is not None


class TestRecipientFrequencyCaps:
    """Tests for per-recipient message caps on outreach actions."""

    async def send(self, lifecycle, settings, **kwargs):
        action = await lifecycle.create_action(make_campaign_candidate(**kwargs), settings)
        return await lifecycle.execute(action.id, settings)

    def test_recipient_key_follows_channel(self):
        """Email channels count by address, SMS by phone."""
        payload = CampaignPayload(
            recipient_email="Jane@Example.com", recipient_phone="+1 555 010 2000", channel="sms"
        )
        assert recipient_key(ActionType.SEND_CAMPAIGN, payload) == ("+15550102000", "sms")
        payload = CampaignPayload(recipient_email="Jane@Example.com")
        assert recipient_key(ActionType.SEND_CAMPAIGN, payload) == ("jane@example.com", "email")

    @pytest.mark.asyncio
    async def test_daily_cap_per_recipient(self, gate, lifecycle, db_path):
        """A fourth message to one address in a day is deferred."""
        settings = make_settings()
        for _ in range(3):
            await self.send(lifecycle, settings)

        approval = await gate.propose(make_campaign_candidate(email="JANE@example.com"))
        with pytest.raises(ApprovalDeferredError) as exc_info:
            await gate.approve(approval.id, settings)
        assert "Daily message limit" in exc_info.value.reason

        other = await gate.propose(make_campaign_candidate(email="bob@example.com"))
        approved = await gate.approve(other.id, settings)
        assert approved.executed_action_id is not None

    @pytest.mark.asyncio
    async def test_channels_capped_separately(self, gate, lifecycle):
        """Emails to a customer do not use up their SMS allowance."""
        settings = make_settings()
        for _ in range(3):
            await self.send(lifecycle, settings)

        approval = await gate.propose(make_campaign_candidate(
            email="jane@example.com", phone="+15550102000", channel="sms",
        ))
        approved = await gate.approve(approval.id, settings)
        assert approved.executed_action_id is not None

    @pytest.mark.asyncio
    async def test_dry_runs_and_failures_not_counted(self, gate, lifecycle, platform):
        """Only messages that actually went out count toward the cap."""
        dry = make_settings(dry_run_mode=True)
        for _ in range(2):
            await self.send(lifecycle, dry)
        live = make_settings()
        for _ in range(2):
            platform.apply_errors.append(PlatformError(ErrorKind.PERMANENT, "bounced"))
            await self.send(lifecycle, live)
        await self.send(lifecycle, live)

        approval = await gate.propose(make_campaign_candidate())
        approved = await gate.approve(approval.id, live)
        assert approved.executed_action_id is not None
