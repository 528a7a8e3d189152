"""
PenaltyManager — temporary multiplicative score discounts on arms.

A penalty never touches an arm's posterior or EWMA state; the Router
multiplies the arm's composite score by active_penalty(). Expiry is evaluated
lazily at read time, so an expired penalty stops counting the instant it
expires whether or not sweep_expired() has run.
"""
from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from .audit import AuditLog
from .errors import InvalidParameterError, NotFoundError
from .models import Penalty, new_id, utcnow
from .registry import ArmRegistry
from .store import GovernanceStore

logger = logging.getLogger("ai_governance.penalties")

DEFAULT_PENALTY_FACTOR = 0.7
MAX_PENALTY_TTL = timedelta(days=365)


class PenaltyManager:

    def __init__(
        self,
        registry: ArmRegistry,
        store: Optional[GovernanceStore] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable = utcnow,
    ) -> None:
        self._registry = registry
        self._store = store
        self._audit = audit
        self._clock = clock
        self._penalties: dict[str, Penalty] = {}
        self._lock = asyncio.Lock()

    async def load(self) -> int:
        if self._store is None:
            return 0
        penalties = await self._store.load_penalties()
        for p in penalties:
            self._penalties[p.penalty_id] = p
        return len(penalties)

    # ── Mutations ────────────────────────────────────────────────────────────

    async def apply_penalty(
        self,
        arm_id: str,
        factor: float,
        reason: str,
        ttl: Optional[timedelta | float] = None,
        actor: str = "system",
        feature: Optional[str] = None,
    ) -> Penalty:
        """
        Attach a penalty to an arm. factor must satisfy 0 < factor <= 1;
        penalties never boost a score. ttl (timedelta or seconds) bounds the
        penalty in time; without one it lasts until cleared.
        """
        try:
            factor = float(factor)
        except (TypeError, ValueError):
            raise InvalidParameterError(f"factor must be a number, got {factor!r}")
        if not 0 < factor <= 1:
            raise InvalidParameterError(f"factor must be in (0, 1], got {factor}")
        if ttl is not None:
            ttl = _parse_ttl(ttl)

        arm = self._registry.get(arm_id)
        now = self._clock()
        penalty = Penalty(
            penalty_id=new_id(),
            arm_id=arm_id,
            tenant_id=arm.tenant_id,
            factor=factor,
            reason=reason or "",
            applied_at=now,
            expires_at=now + ttl if ttl is not None else None,
            feature=feature,
            applied_by=actor,
        )

        async with self._lock:
            if self._store is not None:
                await self._store.insert_penalty(penalty)
            self._penalties[penalty.penalty_id] = penalty

        if self._audit is not None:
            await self._audit.record(
                tenant_id=arm.tenant_id,
                actor=actor,
                action="apply_penalty",
                target_entity=f"arm:{arm_id}",
                new_value=penalty.to_dict(),
            )
        logger.info("Penalty %.2f applied to %s (%s)", factor, arm_id, reason)
        return penalty

    async def clear_penalty(self, penalty_id: str, actor: str = "system") -> Penalty:
        async with self._lock:
            penalty = self._penalties.get(penalty_id)
            if penalty is None:
                raise NotFoundError(f"penalty {penalty_id!r} not found")
            if self._store is not None:
                await self._store.delete_penalties([penalty_id])
            del self._penalties[penalty_id]

        if self._audit is not None:
            await self._audit.record(
                tenant_id=penalty.tenant_id,
                actor=actor,
                action="clear_penalty",
                target_entity=f"penalty:{penalty_id}",
                previous_value=penalty.to_dict(),
            )
        logger.info("Penalty %s cleared from %s", penalty_id, penalty.arm_id)
        return penalty

    async def sweep_expired(self) -> int:
        """Purge expired penalties from memory and storage. Not audited."""
        now = self._clock()
        async with self._lock:
            expired = [pid for pid, p in self._penalties.items() if not p.is_active(now)]
            if self._store is not None:
                await self._store.delete_penalties(expired)
            for pid in expired:
                del self._penalties[pid]
        if expired:
            logger.debug("Swept %d expired penalties", len(expired))
        return len(expired)

    # ── Reads ────────────────────────────────────────────────────────────────

    def get(self, penalty_id: str) -> Penalty:
        penalty = self._penalties.get(penalty_id)
        if penalty is None:
            raise NotFoundError(f"penalty {penalty_id!r} not found")
        return penalty

    def active_penalty(
        self,
        arm_id: str,
        feature: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> float:
        """Product of all live penalty factors on the arm (1.0 when none)."""
        now = now or self._clock()
        factor = 1.0
        for p in list(self._penalties.values()):
            if p.arm_id == arm_id and p.is_active(now) and p.applies_to(feature):
                factor *= p.factor
        return factor

    def list_penalties(self, tenant_id: str, include_expired: bool = False) -> list[Penalty]:
        now = self._clock()
        return sorted(
            (
                p for p in self._penalties.values()
                if p.tenant_id == tenant_id and (include_expired or p.is_active(now))
            ),
            key=lambda p: p.applied_at,
            reverse=True,
        )


def _parse_ttl(ttl) -> timedelta:
    """Seconds or timedelta, bounded to (0, MAX_PENALTY_TTL]."""
    if not isinstance(ttl, timedelta):
        if isinstance(ttl, bool):
            raise InvalidParameterError("ttl must be a number of seconds")
        try:
            seconds = float(ttl)
        except (TypeError, ValueError):
            raise InvalidParameterError(f"ttl must be a number of seconds, got {ttl!r}")
        if not math.isfinite(seconds) or seconds <= 0:
            raise InvalidParameterError(f"ttl must be a positive finite number, got {ttl!r}")
        if seconds > MAX_PENALTY_TTL.total_seconds():
            raise InvalidParameterError(
                f"ttl must be at most {MAX_PENALTY_TTL.days} days, got {seconds:.0f}s")
        return timedelta(seconds=seconds)
    if ttl <= timedelta(0) or ttl > MAX_PENALTY_TTL:
        raise InvalidParameterError(f"ttl must be in (0, {MAX_PENALTY_TTL.days} days], got {ttl}")
    return ttl
