"""
Budget Guard — monthly spend admission, burn rate and risk level.
=================================================================
Tracks cumulative spend per tenant against its BudgetConfig and gates new
calls:

    pct = 100 * spend_to_date / monthly_budget

    pct <  soft_limit_percentage         → ALLOW
    soft_limit_percentage <= pct < 100   → ALLOW_DEGRADED  (router forces cost_saver
                                                           for this call only)
    pct >= 100                           → DENY, CostLimitExceededError('hard', pct)

spend_to_date is the sum of logged call costs for the tenant in the current
UTC calendar month, read from the append-only routing log. Telemetry is
written after the call returns, so near the boundary a few concurrent calls
admitted just under the limit can push spend slightly past monthly_budget
before the next admission observes DENY. Admission is one SUM read with no
lock shared across calls.

Burn rate is a rolling 7-day window over per-day spend (days with no calls
are not counted), and the projection is burn_rate * 30:

    burn_rate = mean(daily spend over the last 7 UTC days that saw calls)
    projected = 30 * burn_rate

Risk level (dashboards) is derived from pct and the burn rate, never stored:
    CRITICAL — pct >= 100, or the budget runs out within a day at current burn
    HIGH     — pct >= soft limit, or projected month spend >= budget
    MEDIUM   — projected month spend >= soft-limit share of the budget
    LOW      — otherwise
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from .audit import AuditLog
from .errors import CostLimitExceededError, InvalidParameterError
from .models import (
    Admission,
    AdmissionDecision,
    BudgetConfig,
    BudgetStatus,
    RiskLevel,
    RoutingMode,
    utcnow,
)
from .store import GovernanceStore

logger = logging.getLogger("ai_governance.budget")

BURN_WINDOW_DAYS = 7
PROJECTION_DAYS = 30


def month_start(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def burn_window_start(now: datetime) -> datetime:
    """Midnight UTC at the start of the rolling burn-rate window (today included)."""
    now = now.astimezone(timezone.utc)
    today = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    return today - timedelta(days=BURN_WINDOW_DAYS - 1)


def burn_rate(daily_costs: Sequence[float]) -> float:
    window = list(daily_costs)[-BURN_WINDOW_DAYS:]
    return sum(window) / len(window) if window else 0.0


def parse_routing_mode(value) -> RoutingMode:
    try:
        return RoutingMode(value)
    except ValueError:
        valid = [m.value for m in RoutingMode]
        raise InvalidParameterError(f"routing_mode must be one of {valid}, got {value!r}")


class BudgetGuard:
    """
    Owns BudgetConfig records. Spend is derived from the routing log and is
    never written here.
    """

    def __init__(
        self,
        store: GovernanceStore,
        audit: Optional[AuditLog] = None,
        clock: Callable = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._clock = clock
        self._configs: dict[str, BudgetConfig] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._soft_warned: set[tuple[str, str]] = set()

    async def load(self) -> int:
        configs = await self._store.load_budget_configs()
        for cfg in configs:
            self._configs[cfg.tenant_id] = cfg
        return len(configs)

    # ── Read ─────────────────────────────────────────────────────────────────

    def get_config(self, tenant_id: str) -> Optional[BudgetConfig]:
        return self._configs.get(tenant_id)

    def tenants(self) -> list[str]:
        return sorted(self._configs)

    async def spend_to_date(self, tenant_id: str, now: Optional[datetime] = None) -> float:
        now = now or self._clock()
        return await self._store.spend_since(tenant_id, month_start(now))

    # ── Admission ────────────────────────────────────────────────────────────

    async def admit(self, tenant_id: str, estimated_cost: float = 0.0) -> Admission:
        """
        Gate a new call. Raises CostLimitExceededError on DENY.

        estimated_cost is advisory: the gate is computed from spend already
        recorded, so a single call is never refused for its own estimate.
        """
        config = self._configs.get(tenant_id)
        if config is None:
            return Admission(AdmissionDecision.ALLOW, 0.0, 0.0, None)

        now = self._clock()
        spend = await self._store.spend_since(tenant_id, month_start(now))
        pct = 100.0 * spend / config.monthly_budget

        if pct >= 100.0:
            logger.warning(
                "Budget: hard limit reached for tenant %s… (spent=%.4f, budget=%.2f)",
                tenant_id[:8], spend, config.monthly_budget,
            )
            raise CostLimitExceededError("hard", pct)

        if pct >= config.soft_limit_percentage:
            alert_key = (tenant_id, now.strftime("%Y-%m"))
            if alert_key not in self._soft_warned:
                self._soft_warned.add(alert_key)
                logger.warning(
                    "Budget: soft limit %.0f%% crossed for tenant %s… (%.1f%%, est next=%.4f)",
                    config.soft_limit_percentage, tenant_id[:8], pct, estimated_cost,
                )
            return Admission(AdmissionDecision.ALLOW_DEGRADED, pct, spend, config)

        return Admission(AdmissionDecision.ALLOW, pct, spend, config)

    # ── Status / risk ────────────────────────────────────────────────────────

    async def budget_status(self, tenant_id: str) -> BudgetStatus:
        now = self._clock()
        spend = await self._store.spend_since(tenant_id, month_start(now))
        daily = await self._store.daily_spend(tenant_id, burn_window_start(now))
        return self.compute_status(tenant_id, spend, daily)

    def compute_status(self, tenant_id: str, spend: float,
                       daily_costs: Sequence[float] = ()) -> BudgetStatus:
        """
        Derive burn rate, projection and risk from month-to-date spend and the
        per-day spend of the rolling window (oldest first).
        """
        rate = burn_rate(daily_costs)
        projected = rate * PROJECTION_DAYS

        config = self._configs.get(tenant_id)
        if config is None:
            return BudgetStatus(
                tenant_id=tenant_id,
                spend_to_date=spend,
                percent=0.0,
                burn_rate=rate,
                projected_monthly_cost=projected,
                days_to_exhaustion=None,
                risk_level=RiskLevel.LOW,
            )

        budget = config.monthly_budget
        pct = 100.0 * spend / budget
        remaining = max(budget - spend, 0.0)
        days_to_exhaustion = remaining / rate if rate > 0 else None

        if pct >= 100.0 or (days_to_exhaustion is not None and days_to_exhaustion < 1.0):
            risk = RiskLevel.CRITICAL
        elif pct >= config.soft_limit_percentage or projected >= budget:
            risk = RiskLevel.HIGH
        elif projected >= budget * config.soft_limit_percentage / 100.0:
            risk = RiskLevel.MEDIUM
        else:
            risk = RiskLevel.LOW

        return BudgetStatus(
            tenant_id=tenant_id,
            spend_to_date=spend,
            percent=pct,
            burn_rate=rate,
            projected_monthly_cost=projected,
            days_to_exhaustion=days_to_exhaustion,
            risk_level=risk,
        )

    # ── Mutations (audited) ──────────────────────────────────────────────────

    async def update_budget(
        self,
        tenant_id: str,
        monthly_budget: float,
        soft_limit_percentage: float,
        routing_mode: RoutingMode | str,
        actor: str,
    ) -> BudgetConfig:
        try:
            monthly_budget = float(monthly_budget)
            soft_limit_percentage = float(soft_limit_percentage)
        except (TypeError, ValueError):
            raise InvalidParameterError("monthly_budget and soft_limit_percentage must be numbers")
        if monthly_budget <= 0:
            raise InvalidParameterError(f"monthly_budget must be > 0, got {monthly_budget}")
        if not 0 <= soft_limit_percentage <= 100:
            raise InvalidParameterError(
                f"soft_limit_percentage must be in [0, 100], got {soft_limit_percentage}"
            )
        mode = parse_routing_mode(routing_mode)

        async with self._locks[tenant_id]:
            previous = self._configs.get(tenant_id)
            config = BudgetConfig(
                tenant_id=tenant_id,
                monthly_budget=monthly_budget,
                soft_limit_percentage=soft_limit_percentage,
                routing_mode=mode,
                updated_at=self._clock(),
            )
            await self._store.save_budget_config(config)
            self._configs[tenant_id] = config

        if self._audit is not None:
            await self._audit.record(
                tenant_id=tenant_id,
                actor=actor,
                action="update_budget",
                target_entity=f"tenant:{tenant_id}",
                previous_value=_budget_fields(previous),
                new_value=_budget_fields(config),
            )
        return config

    async def switch_strategy(self, tenant_id: str, mode: RoutingMode | str, actor: str) -> BudgetConfig:
        """Replace only routing_mode. The tenant must already have a budget config."""
        mode = parse_routing_mode(mode)
        async with self._locks[tenant_id]:
            previous = self._configs.get(tenant_id)
            if previous is None:
                raise InvalidParameterError(
                    "tenant has no budget config; call update_budget first"
                )
            config = BudgetConfig(
                tenant_id=tenant_id,
                monthly_budget=previous.monthly_budget,
                soft_limit_percentage=previous.soft_limit_percentage,
                routing_mode=mode,
                updated_at=self._clock(),
            )
            await self._store.save_budget_config(config)
            self._configs[tenant_id] = config

        if self._audit is not None:
            await self._audit.record(
                tenant_id=tenant_id,
                actor=actor,
                action="switch_strategy",
                target_entity=f"tenant:{tenant_id}",
                previous_value={"routing_mode": previous.routing_mode.value},
                new_value={"routing_mode": mode.value},
            )
        return config


def _budget_fields(config: Optional[BudgetConfig]) -> Optional[dict]:
    if config is None:
        return None
    return {
        "monthly_budget":        config.monthly_budget,
        "soft_limit_percentage": config.soft_limit_percentage,
        "routing_mode":          config.routing_mode.value,
    }
