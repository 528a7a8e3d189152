"""
Governance Aggregator — summary projection and daily roll-ups
=============================================================
Builds the dashboard view from authoritative state. Nothing here is a source
of truth: every row can be rebuilt from the routing log, the arms and the
budget configs.

Per arm (GovernanceSummaryRow):
  calls_last_24h           attempts logged on the arm in the last 24h
  usage_percentage         share of the tenant's attempts in the last 24h
  spend/burn/projection    tenant-level, from BudgetGuard.compute_status()
  performance_drift_score  0..1, higher is worse:
                             latency_drift = (mean_lat_24h - mean_lat_prev_24h) / mean_lat_prev_24h
                             error_trend   = error_rate_24h - error_rate_prev_24h
                             score = clamp(0.6 * |latency_drift| / 0.5 + 0.4 * |error_trend| / 0.2)
  sla_trend_level          the arm's own SLA risk:
                             HIGH   if latency_drift > 0.30 or error_trend > 0.10
                             MEDIUM if latency_drift > 0.15 or error_trend > 0.05
  budget_risk_level        the tenant's BudgetStatus risk
  sla_risk_level           max(sla_trend_level, budget_risk_level)

The router reads the stored rows back as routing forecasts (see scoring.py).

Rows carry no generation timestamp, so two refreshes over unchanged inputs
produce identical output.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Optional, Sequence

from .budget import BudgetGuard, burn_window_start, month_start
from .errors import InvalidParameterError
from .models import Arm, GovernanceSummaryRow, RiskLevel, RoutingLogEntry, utcnow
from .registry import ArmRegistry
from .store import GovernanceStore
from .telemetry import TelemetryRecorder
from .tracing import traced_refresh

logger = logging.getLogger("ai_governance.aggregator")

LATENCY_DRIFT_HIGH = 0.30
LATENCY_DRIFT_MEDIUM = 0.15
ERROR_TREND_THRESHOLD = 0.10

_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


def _clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def _error_rate(entries: Sequence[RoutingLogEntry]) -> Optional[float]:
    if not entries:
        return None
    return sum(1 for e in entries if not e.success) / len(entries)


def latency_drift(current: Sequence[RoutingLogEntry], previous: Sequence[RoutingLogEntry]) -> float:
    cur = _mean([e.duration_ms for e in current if e.success])
    prev = _mean([e.duration_ms for e in previous if e.success])
    if cur is None or prev is None or prev <= 0:
        return 0.0
    return (cur - prev) / prev


def error_trend(current: Sequence[RoutingLogEntry], previous: Sequence[RoutingLogEntry]) -> float:
    cur = _error_rate(current)
    prev = _error_rate(previous)
    if cur is None or prev is None:
        return 0.0
    return cur - prev


def drift_score(lat_drift: float, err_trend: float) -> float:
    return _clamp01(0.6 * _clamp01(abs(lat_drift) / 0.5) + 0.4 * _clamp01(abs(err_trend) / 0.2))


def sla_risk(lat_drift: float, err_trend: float) -> RiskLevel:
    if lat_drift > LATENCY_DRIFT_HIGH or err_trend > ERROR_TREND_THRESHOLD:
        return RiskLevel.HIGH
    if lat_drift > LATENCY_DRIFT_MEDIUM or err_trend > ERROR_TREND_THRESHOLD / 2:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def worst_risk(*levels: RiskLevel) -> RiskLevel:
    return max(levels, key=_RISK_ORDER.index)


class GovernanceAggregator:

    def __init__(
        self,
        store: GovernanceStore,
        registry: ArmRegistry,
        budget: BudgetGuard,
        recorder: Optional[TelemetryRecorder] = None,
        clock: Callable = utcnow,
    ) -> None:
        self._store = store
        self._registry = registry
        self._budget = budget
        self._recorder = recorder
        self._clock = clock

    # ── Summary projection ───────────────────────────────────────────────────

    async def refresh_summary(self, tenant_id: str) -> list[GovernanceSummaryRow]:
        """Recompute and atomically replace the tenant's summary rows."""
        if self._recorder is not None:
            await self._recorder.flush()
        with traced_refresh(tenant_id) as span:
            rows = await self.compute_summary(tenant_id)
            await self._store.replace_summary(tenant_id, rows)
            span.set_attribute("governance.summary_rows", len(rows))
        logger.debug("Summary refreshed for tenant %s… (%d rows)", tenant_id[:8], len(rows))
        return rows

    async def compute_summary(self, tenant_id: str) -> list[GovernanceSummaryRow]:
        now = self._clock()
        day_ago = now - timedelta(hours=24)
        two_days_ago = now - timedelta(hours=48)

        arms = self._registry.list_arms(tenant_id)
        logs = await self._store.routing_logs_since(tenant_id, two_days_ago)
        spend = await self._store.spend_since(tenant_id, month_start(now))
        daily = await self._store.daily_spend(tenant_id, burn_window_start(now))
        status = self._budget.compute_status(tenant_id, spend, daily)

        current: dict[str, list[RoutingLogEntry]] = {}
        previous: dict[str, list[RoutingLogEntry]] = {}
        for entry in logs:
            bucket = current if entry.timestamp >= day_ago else previous
            bucket.setdefault(entry.arm_id, []).append(entry)
        total_24h = sum(len(v) for v in current.values())

        return [
            self._row(arm, current.get(arm.arm_id, []), previous.get(arm.arm_id, []),
                      total_24h, status)
            for arm in arms
        ]

    @staticmethod
    def _row(arm: Arm, current: list[RoutingLogEntry], previous: list[RoutingLogEntry],
             total_24h: int, status) -> GovernanceSummaryRow:
        lat = latency_drift(current, previous)
        err = error_trend(current, previous)
        trend = sla_risk(lat, err)
        calls = len(current)
        return GovernanceSummaryRow(
            tenant_id=arm.tenant_id,
            arm_id=arm.arm_id,
            provider=arm.provider.value,
            model=arm.model,
            scope=arm.scope,
            alpha=arm.alpha,
            beta=arm.beta,
            sample_count=arm.sample_count,
            latency_ms=arm.latency_ms,
            quality=arm.quality,
            success_rate=arm.success_rate,
            cost_ewma=arm.cost_ewma,
            calls_last_24h=calls,
            usage_percentage=round(100.0 * calls / total_24h, 4) if total_24h else 0.0,
            spend_to_date=round(status.spend_to_date, 8),
            projected_monthly_cost=round(status.projected_monthly_cost, 8),
            burn_rate=round(status.burn_rate, 8),
            days_to_exhaustion=(
                round(status.days_to_exhaustion, 4)
                if status.days_to_exhaustion is not None else None
            ),
            budget_usage_percentage=round(status.percent, 4),
            sla_risk_level=worst_risk(trend, status.risk_level),
            performance_drift_score=round(drift_score(lat, err), 6),
            budget_risk_level=status.risk_level,
            sla_trend_level=trend,
        )

    async def get_summary(self, tenant_id: str) -> list[GovernanceSummaryRow]:
        """Stored projection; computed and stored on first use."""
        rows = await self._store.load_summary(tenant_id)
        if rows is None:
            rows = await self.refresh_summary(tenant_id)
        return rows

    async def refresh_all(self) -> dict[str, int]:
        """Scheduled-job entry point: refresh every known tenant."""
        tenants = sorted(
            set(await self._store.known_tenants())
            | set(self._registry.tenants())
            | set(self._budget.tenants())
        )
        refreshed = {}
        for tenant_id in tenants:
            rows = await self.refresh_summary(tenant_id)
            refreshed[tenant_id] = len(rows)
        logger.info("Refreshed governance summary for %d tenants", len(refreshed))
        return refreshed

    # ── Daily roll-ups ───────────────────────────────────────────────────────

    def _since(self, days: int):
        if days < 1:
            raise InvalidParameterError(f"days must be >= 1, got {days}")
        now = self._clock()
        start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return start_of_today - timedelta(days=days - 1)

    async def get_cost_breakdown(self, tenant_id: str, days: int = 30) -> list[dict[str, Any]]:
        if self._recorder is not None:
            await self._recorder.flush()
        return await self._store.cost_breakdown(tenant_id, self._since(days))

    async def get_performance_trend(self, tenant_id: str, days: int = 30) -> list[dict[str, Any]]:
        if self._recorder is not None:
            await self._recorder.flush()
        return await self._store.performance_trend(tenant_id, self._since(days))
