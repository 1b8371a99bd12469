"""Shared fixtures: temporary database, in-memory platform, settings and candidates."""

import asyncio
from pathlib import Path
from typing import Any

import pytest

from change_governor.actions.audit import ActionAuditor
from change_governor.actions.exceptions import PlatformError
from change_governor.actions.lifecycle import ActionLifecycleManager
from change_governor.actions.retry import RetryConfig
from change_governor.actions.types import (
    ActionType,
    AutomationSettings,
    Candidate,
    CampaignPayload,
    EntityType,
    EstimatedImpact,
    SeoPayload,
    Snapshot,
)
from change_governor.platform.protocols import PlatformResult

# Retries without waiting.
FAST_RETRY = RetryConfig(max_attempts=3, min_wait_seconds=0.0, max_wait_seconds=0.0)


class FakePlatform:
    """
    In-memory commerce platform.

    Entities are plain dicts; apply() merges the payload's changes and
    revert() restores the snapshot's captured state. Errors queued in
    apply_errors / revert_errors are raised one per call.
    """

    def __init__(self, entities: dict[str, dict[str, Any]] | None = None) -> None:
        self.entities: dict[str, dict[str, Any]] = {
            key: dict(value) for key, value in (entities or {}).items()
        }
        self.fetch_calls: list[str] = []
        self.apply_calls: list[str] = []
        self.revert_calls: list[str] = []
        self.apply_errors: list[PlatformError] = []
        self.revert_errors: list[PlatformError] = []
        self.apply_delay = 0.0

    async def fetch_state(self, entity_id: str, payload: Any) -> dict[str, Any]:
        self.fetch_calls.append(entity_id)
        return dict(self.entities.get(entity_id, {}))

    async def apply(self, entity_id: str, payload: Any) -> PlatformResult:
        self.apply_calls.append(entity_id)
        if self.apply_delay:
            await asyncio.sleep(self.apply_delay)
        if self.apply_errors:
            raise self.apply_errors.pop(0)
        self.entities.setdefault(entity_id, {}).update(payload.changes())
        return PlatformResult(entity_id=entity_id, state=dict(self.entities[entity_id]))

    async def revert(self, entity_id: str, snapshot: Snapshot) -> PlatformResult:
        self.revert_calls.append(entity_id)
        if self.revert_errors:
            raise self.revert_errors.pop(0)
        self.entities[entity_id] = dict(snapshot.captured_state)
        return PlatformResult(entity_id=entity_id, state=dict(self.entities[entity_id]))


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "governor.db"


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform({
        "prod-1": {"seo_title": "Old title", "meta_description": "Old meta"},
        "prod-2": {"seo_title": "Second", "meta_description": "Second meta"},
    })


@pytest.fixture
def auditor(db_path: Path) -> ActionAuditor:
    return ActionAuditor(db_path)


@pytest.fixture
def lifecycle(db_path: Path, platform: FakePlatform, auditor: ActionAuditor) -> ActionLifecycleManager:
    return ActionLifecycleManager(
        db_path, platform, auditor, retry_config=FAST_RETRY, execution_timeout=2.0
    )


def make_settings(**overrides: Any) -> AutomationSettings:
    values: dict[str, Any] = {
        "merchant_id": "shop-1",
        "auto_publish_enabled": True,
        "enabled_action_types": {
            ActionType.OPTIMIZE_SEO,
            ActionType.SEND_CAMPAIGN,
            ActionType.SEND_CART_RECOVERY,
        },
    }
    values.update(overrides)
    return AutomationSettings(**values)


def make_candidate(
    entity_id: str = "prod-1",
    revenue_delta: float = 10.0,
    rule_id: int | None = None,
    **overrides: Any,
) -> Candidate:
    values: dict[str, Any] = {
        "merchant_id": "shop-1",
        "action_type": ActionType.OPTIMIZE_SEO,
        "entity_type": EntityType.PRODUCT,
        "entity_id": entity_id,
        "payload": SeoPayload(seo_title="New title", meta_description="New meta"),
        "estimated_impact": EstimatedImpact(revenue_delta=revenue_delta, confidence=0.8),
        "decision_reason": "SEO score below 70",
        "rule_id": rule_id,
    }
    values.update(overrides)
    return Candidate(**values)


def make_campaign_candidate(
    email: str | None = "jane@example.com",
    phone: str | None = None,
    channel: str | None = None,
    entity_id: str = "cust-1",
) -> Candidate:
    return Candidate(
        merchant_id="shop-1",
        action_type=ActionType.SEND_CAMPAIGN,
        entity_type=EntityType.CUSTOMER,
        entity_id=entity_id,
        payload=CampaignPayload(
            recipient_email=email,
            recipient_phone=phone,
            channel=channel,
            subject="We miss you",
            body="Come back for 10% off",
        ),
        estimated_impact=EstimatedImpact(revenue_delta=50.0),
        decision_reason="Lapsed customer",
    )
