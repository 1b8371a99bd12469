"""Tests for the evaluation loop daemon."""

import asyncio

import pytest

from change_governor.loop import EvaluationLoop


class FlakyGovernor:
    """Stand-in governor whose evaluate() fails for one merchant."""

    def __init__(self, failing: str):
        self.failing = failing
        self.calls: list[str] = []

    async def evaluate(self, merchant_id):
        self.calls.append(merchant_id)
        if merchant_id == self.failing:
            raise RuntimeError("signal source unavailable")
        return []


class TestEvaluationLoop:
    """Tests for tick scheduling and isolation."""

    @pytest.mark.asyncio
    async def test_failing_tick_does_not_raise(self):
        """A failing merchant tick is logged and counted."""
        governor = FlakyGovernor(failing="shop-bad")
        loop = EvaluationLoop(governor, ["shop-bad", "shop-ok"])

        await loop.tick("shop-bad")
        await loop.tick("shop-ok")

        assert loop.failures == {"shop-bad": 1, "shop-ok": 0}
        assert loop.ticks == {"shop-bad": 1, "shop-ok": 1}

    @pytest.mark.asyncio
    async def test_other_merchants_keep_ticking(self):
        """One merchant failing every tick does not stop the others."""
        governor = FlakyGovernor(failing="shop-bad")
        loop = EvaluationLoop(governor, ["shop-bad", "shop-ok"], interval_seconds=0.01)

        task = asyncio.create_task(loop.run(install_signal_handlers=False))
        await asyncio.sleep(0.1)
        loop.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert loop.ticks["shop-ok"] >= 2
        assert loop.failures["shop-ok"] == 0
        assert loop.failures["shop-bad"] == loop.ticks["shop-bad"]

    @pytest.mark.asyncio
    async def test_duplicate_merchants_collapsed(self):
        loop = EvaluationLoop(FlakyGovernor(failing=""), ["shop-1", "shop-1"])
        assert loop.merchant_ids == ["shop-1"]

    @pytest.mark.asyncio
    async def test_stop_before_run_exits_immediately(self):
        """A loop stopped before it starts runs no ticks."""
        governor = FlakyGovernor(failing="")
        loop = EvaluationLoop(governor, ["shop-1"])
        loop.stop()

        await asyncio.wait_for(loop.run(install_signal_handlers=False), timeout=1.0)

        assert governor.calls == []
