"""
ArmRegistry — arena of routing arms with per-arm atomic updates.
================================================================
Holds one Arm per (tenant, scope, provider, model): its Beta posterior
(alpha, beta) and its EWMA performance statistics.

Update rule for one observed outcome (record_outcome):
  alpha += 1 on success, beta += 1 on failure
  ewma_m = decay * ewma_m + (1 - decay) * observed_m   for each tracked metric
  the first observation seeds ewma_m directly (no pull towards a prior)
  sample_count += 1, last_call_at = now

Concurrency: each arm has its own threading.Lock, so concurrent outcomes on
the same arm never lose an update (sample_count == outcomes recorded) while
outcomes on different arms never contend. Arm creation takes a registry-wide
lock. Readers get snapshot copies and never observe a half-applied update.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Callable, Optional

from .audit import AuditLog
from .errors import UnknownArmError
from .models import Arm, Provider, make_arm_id, utcnow
from .store import GovernanceStore

logger = logging.getLogger("ai_governance.registry")

DEFAULT_DECAY: float = 0.9


def ewma(previous: Optional[float], observed: float, decay: float) -> float:
    if previous is None:
        return observed
    return decay * previous + (1 - decay) * observed


class ArmRegistry:

    def __init__(
        self,
        decay: float = DEFAULT_DECAY,
        store: Optional[GovernanceStore] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable = utcnow,
    ) -> None:
        if not 0 < decay < 1:
            raise ValueError(f"decay must be in (0, 1), got {decay}")
        self.decay = decay
        self._store = store
        self._audit = audit
        self._clock = clock
        self._arms: dict[str, Arm] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._create_lock = threading.Lock()
        self._next_seq = 0

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def load(self) -> int:
        """Restore persisted arms. Returns the number loaded."""
        if self._store is None:
            return 0
        arms = await self._store.load_arms()
        with self._create_lock:
            for arm in arms:
                self._arms[arm.arm_id] = arm
                self._locks[arm.arm_id] = threading.Lock()
                self._next_seq = max(self._next_seq, arm.created_seq + 1)
        return len(arms)

    # ── Lookup ───────────────────────────────────────────────────────────────

    def get_arm(self, tenant_id: str, scope: str, provider: Provider | str, model: str) -> Arm:
        """Return a snapshot of the arm, creating it with the prior if absent."""
        arm_id = make_arm_id(tenant_id, scope, provider, model)
        arm = self._arms.get(arm_id)
        if arm is None:
            with self._create_lock:
                arm = self._arms.get(arm_id)
                if arm is None:
                    arm = Arm(
                        arm_id=arm_id,
                        tenant_id=tenant_id,
                        scope=scope,
                        provider=Provider(provider),
                        model=model,
                        created_seq=self._next_seq,
                        created_at=self._clock(),
                    )
                    self._next_seq += 1
                    self._locks[arm_id] = threading.Lock()
                    self._arms[arm_id] = arm
                    logger.debug("Created arm %s", arm_id)
        return self.snapshot(arm_id)

    def get(self, arm_id: str) -> Arm:
        """Snapshot of an existing arm; unknown ids are a programming error."""
        return self.snapshot(arm_id)

    def exists(self, arm_id: str) -> bool:
        return arm_id in self._arms

    def snapshot(self, arm_id: str) -> Arm:
        arm = self._arms.get(arm_id)
        if arm is None:
            raise UnknownArmError(arm_id)
        with self._locks[arm_id]:
            return dataclasses.replace(arm)

    def list_arms(self, tenant_id: str, scope: Optional[str] = None) -> list[Arm]:
        """Snapshots in creation order."""
        with self._create_lock:
            arms = list(self._arms.values())
        ids = [
            a.arm_id for a in sorted(arms, key=lambda a: a.created_seq)
            if a.tenant_id == tenant_id and (scope is None or a.scope == scope)
        ]
        return [self.snapshot(arm_id) for arm_id in ids]

    def tenants(self) -> list[str]:
        with self._create_lock:
            arms = list(self._arms.values())
        return sorted({a.tenant_id for a in arms})

    # ── Updates ──────────────────────────────────────────────────────────────

    def record_outcome(
        self,
        arm_id: str,
        success: bool,
        latency_ms: Optional[float],
        cost_per_1k: Optional[float],
        quality_score: Optional[float],
        call_cost: Optional[float] = None,
    ) -> Arm:
        """
        Apply one observed outcome atomically and return the updated snapshot.

        Metrics passed as None were not observed on this call (a failed call
        has no per-token cost) and leave their EWMA untouched.
        """
        arm = self._arms.get(arm_id)
        if arm is None:
            raise UnknownArmError(arm_id)
        d = self.decay
        with self._locks[arm_id]:
            if success:
                arm.alpha += 1
            else:
                arm.beta += 1
            arm.success_rate = ewma(arm.success_rate, 1.0 if success else 0.0, d)
            if latency_ms is not None:
                arm.latency_ms = ewma(arm.latency_ms, latency_ms, d)
            if quality_score is not None:
                arm.quality = ewma(arm.quality, quality_score, d)
            if cost_per_1k is not None:
                arm.cost_per_1k = ewma(arm.cost_per_1k, cost_per_1k, d)
            if call_cost is not None:
                arm.cost_ewma = ewma(arm.cost_ewma, call_cost, d)
            arm.sample_count += 1
            arm.last_call_at = self._clock()
            return dataclasses.replace(arm)

    async def reset_posterior(self, arm_id: str, actor: str) -> Arm:
        """Return the arm to its prior, clear EWMA fields, audit the change."""
        arm = self._arms.get(arm_id)
        if arm is None:
            raise UnknownArmError(arm_id)
        with self._locks[arm_id]:
            previous = {
                "alpha": arm.alpha,
                "beta": arm.beta,
                "sample_count": arm.sample_count,
                "latency_ms": arm.latency_ms,
                "cost_ewma": arm.cost_ewma,
            }
            arm.clear_statistics()
            after = dataclasses.replace(arm)

        if self._store is not None:
            await self._store.save_arm(after)
        if self._audit is not None:
            await self._audit.record(
                tenant_id=after.tenant_id,
                actor=actor,
                action="reset_posterior",
                target_entity=f"arm:{arm_id}",
                previous_value=previous,
                new_value={"alpha": 1.0, "beta": 1.0, "sample_count": 0},
            )
        logger.info("Posterior reset for arm %s by %s", arm_id, actor)
        return after
