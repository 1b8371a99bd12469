"""
EvaluationLoop daemon for periodic rule evaluation.

This module implements the evaluation daemon that:
- Runs one independent tick schedule per merchant
- Calls ChangeGovernor.evaluate() on every tick
- Isolates a failing merchant tick from the other merchants
- Logs a heartbeat per tick
- Handles graceful shutdown on SIGINT/SIGTERM

Ticks may overlap with dashboard operations on the same actions; every
action transition is a guarded compare-and-set, so no global lock is
taken here.
"""

import asyncio
import functools
import logging
import signal

from change_governor.governor import ChangeGovernor

logger = logging.getLogger(__name__)


class EvaluationLoop:
    """
    Long-running daemon that evaluates rules for a set of merchants.

    Uses asyncio.Event for shutdown coordination.

    Example:
        loop = EvaluationLoop(governor, ["shop-1", "shop-2"], interval_seconds=300)
        await loop.run()  # Runs until SIGINT/SIGTERM
    """

    def __init__(
        self,
        governor: ChangeGovernor,
        merchant_ids: list[str],
        interval_seconds: float = 300.0,
    ) -> None:
        """
        Initialize evaluation loop.

        Args:
            governor: Facade whose evaluate() runs each tick
            merchant_ids: Merchants to evaluate
            interval_seconds: Seconds between ticks per merchant
        """
        self.governor = governor
        self.merchant_ids = list(dict.fromkeys(merchant_ids))
        self.interval = interval_seconds
        self._shutdown = asyncio.Event()

        # Stats for heartbeat
        self.ticks: dict[str, int] = {merchant_id: 0 for merchant_id in self.merchant_ids}
        self.failures: dict[str, int] = {merchant_id: 0 for merchant_id in self.merchant_ids}

    async def run(self, install_signal_handlers: bool = True) -> None:
        """
        Run until shutdown is requested.

        Args:
            install_signal_handlers: Register SIGINT/SIGTERM handlers
        """
        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, functools.partial(self._handle_signal, sig))

        logger.info(
            "Evaluation loop starting for %d merchants (interval: %ss)",
            len(self.merchant_ids), self.interval,
        )
        await asyncio.gather(
            *(self._merchant_loop(merchant_id) for merchant_id in self.merchant_ids)
        )
        logger.info("Evaluation loop stopped")

    def stop(self) -> None:
        self._shutdown.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        self._shutdown.set()

    async def _merchant_loop(self, merchant_id: str) -> None:
        while not self._shutdown.is_set():
            await self.tick(merchant_id)

            # Wait for interval or shutdown signal
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    async def tick(self, merchant_id: str) -> None:
        """Run one evaluation for a merchant; failures are logged, not raised."""
        self.ticks[merchant_id] = self.ticks.get(merchant_id, 0) + 1
        try:
            submissions = await self.governor.evaluate(merchant_id)
        except Exception:
            self.failures[merchant_id] = self.failures.get(merchant_id, 0) + 1
            logger.exception("Evaluation tick failed for %s", merchant_id)
            return

        admitted = sum(1 for s in submissions if s.action is not None)
        queued = sum(1 for s in submissions if s.approval is not None)
        logger.info(
            "Tick %d for %s: %d admitted, %d queued for approval, %d held back",
            self.ticks[merchant_id], merchant_id, admitted, queued,
            len(submissions) - admitted - queued,
        )
