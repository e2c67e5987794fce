"""
Engram Reconciliation Daemon
----------------------------
Background pass that brings the vector index back in line with the
conversation store:

1. RETRY   — replay index removals that failed after a fact was deleted
2. INDEX   — insert rows whose stored vector never reached the index
3. EMBED   — embed rows stored while the embedding backend was down

The work itself lives in ``MemoryManager.reconcile``; this module owns
the schedule.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from engram.core.config import ReconcileConfig

logger = logging.getLogger("Engram.Reconcile")


class ReconciliationDaemon:
    """Runs ``reconcile_fn`` every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        config: ReconcileConfig,
        reconcile_fn: Callable[[], Awaitable[Dict[str, int]]],
    ):
        self.config = config
        self._reconcile_fn = reconcile_fn
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._last_cycle: Optional[float] = None
        self._last_result: Dict[str, Any] = {}
        self._cycle_count = 0

    async def start(self) -> None:
        """Start the reconciliation daemon."""
        if not self.config.enabled:
            logger.info("Reconciliation daemon disabled")
            return

        if self._running:
            logger.warning("Reconciliation daemon already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="engram-reconcile")
        logger.info("Reconciliation daemon started (interval=%.0fs)", self.config.interval_seconds)

    async def stop(self) -> None:
        """Stop the reconciliation daemon."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Reconciliation daemon stopped")

    async def run_cycle(self) -> Dict[str, Any]:
        """Execute a single reconciliation cycle and return its counters."""
        t0 = time.time()
        self._cycle_count += 1
        results: Dict[str, Any] = {"cycle": self._cycle_count}

        try:
            results.update(await self._reconcile_fn())
        except Exception as e:
            logger.error("Reconciliation cycle failed: %s", e, exc_info=True)
            results["error"] = str(e)

        results["elapsed_seconds"] = round(time.time() - t0, 2)
        self._last_cycle = time.time()
        self._last_result = results

        if any(results.get(key) for key in ("removed", "indexed", "embedded", "failed")):
            logger.info(
                "Reconciliation cycle #%d: %d removed, %d indexed, %d embedded, %d failed",
                self._cycle_count,
                results.get("removed", 0),
                results.get("indexed", 0),
                results.get("embedded", 0),
                results.get("failed", 0),
            )
        return results

    async def _run_loop(self) -> None:
        """Main daemon loop."""
        while self._running:
            await self.run_cycle()
            try:
                await asyncio.sleep(self.config.interval_seconds)
            except asyncio.CancelledError:
                break

    @property
    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "running": self._running,
            "cycle_count": self._cycle_count,
            "last_cycle": self._last_cycle,
            "last_result": self._last_result,
            "interval_seconds": self.config.interval_seconds,
        }
