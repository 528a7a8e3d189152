"""
TelemetryRecorder — paired routing-log + arm updates, off the request path.
===========================================================================
The router calls submit(outcome) once per attempt and returns to the feature
immediately; a consumer task drains the queue and applies each outcome:

  1. append the RoutingLogEntry (durable, awaited)
  2. ArmRegistry.record_outcome()  (synchronous, no await between 1 and 2)
  3. persist the arm's latest snapshot

Step 2 only runs after step 1 succeeded, so a reader of aggregate state never
sees an arm update without its log row. A failed log write leaves the arm
untouched and is logged; a failed arm save is logged and repaired by the next
save of the same arm. record() never raises: the AI call already succeeded or
failed on its own terms.

flush() blocks until every submitted outcome is durable. The aggregator calls
it before computing a summary.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .models import CallOutcome, RoutingLogEntry
from .registry import ArmRegistry
from .store import GovernanceStore

logger = logging.getLogger("ai_governance.telemetry")


class TelemetryRecorder:

    def __init__(self, registry: ArmRegistry, store: GovernanceStore) -> None:
        self._registry = registry
        self._store = store
        self._queue: asyncio.Queue[CallOutcome] = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._save_lock = asyncio.Lock()
        self.recorded = 0
        self.failed = 0

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="telemetry-recorder")

    async def stop(self) -> None:
        """Drain pending outcomes, then stop the consumer."""
        await self.flush()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ── Producer side ────────────────────────────────────────────────────────

    def submit(self, outcome: CallOutcome) -> None:
        """Fire-and-forget enqueue. Never blocks the caller."""
        self._queue.put_nowait(outcome)

    async def flush(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            await self._queue.join()
            return
        # No consumer running: apply inline.
        while not self._queue.empty():
            outcome = self._queue.get_nowait()
            try:
                await self.record(outcome)
            finally:
                self._queue.task_done()

    # ── Consumer side ────────────────────────────────────────────────────────

    async def _consume(self) -> None:
        while True:
            outcome = await self._queue.get()
            try:
                await self.record(outcome)
            finally:
                self._queue.task_done()

    async def record(self, outcome: CallOutcome) -> bool:
        """Apply one outcome. Returns False (and logs) on failure."""
        entry = RoutingLogEntry.from_outcome(outcome)
        try:
            await self._store.append_routing_log(entry)
        except Exception as e:
            self.failed += 1
            logger.error("Telemetry: routing log write failed for %s (arm not updated): %s",
                         outcome.arm_id, e)
            return False

        try:
            self._registry.record_outcome(
                outcome.arm_id,
                success=outcome.success,
                latency_ms=outcome.duration_ms if outcome.success else None,
                cost_per_1k=outcome.cost_per_1k,
                quality_score=outcome.quality if outcome.success else None,
                call_cost=outcome.cost if outcome.success else None,
            )
        except LookupError as e:
            self.failed += 1
            logger.error("Telemetry: %s; log row %s has no arm", e, entry.entry_id)
            return False

        try:
            async with self._save_lock:
                await self._store.save_arm(self._registry.snapshot(outcome.arm_id))
        except Exception as e:
            logger.warning("Telemetry: arm save failed for %s: %s", outcome.arm_id, e)

        self.recorded += 1
        return True
