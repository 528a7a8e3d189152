"""
Tests for BudgetGuard — admission thresholds, monotonic gate, risk, audit.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from ai_governance.audit import AuditLog
from ai_governance.budget import BudgetGuard, burn_rate, burn_window_start, month_start
from ai_governance.errors import CostLimitExceededError, InvalidParameterError
from ai_governance.models import (
    AdmissionDecision,
    BudgetConfig,
    CallOutcome,
    Provider,
    RiskLevel,
    RoutingLogEntry,
    RoutingMode,
)
from ai_governance.store import GovernanceStore

from fakes import FixedClock


def _setup(tmp_path, clock=None):
    clock = clock or FixedClock()
    store = GovernanceStore(tmp_path / "gov.db")
    audit = AuditLog(store, clock=clock)
    return store, audit, BudgetGuard(store, audit, clock=clock), clock


async def _spend(store, clock, tenant: str, cost: float, when=None):
    outcome = CallOutcome(
        tenant_id=tenant, feature="f", scope="default",
        arm_id=f"{tenant}:default:openai:gpt-4o", provider=Provider.OPENAI,
        model="gpt-4o", request_id="r", attempt=1, success=True,
        duration_ms=100.0, prompt_tokens=10, completion_tokens=10, cost=cost,
        timestamp=when or clock(),
    )
    await store.append_routing_log(RoutingLogEntry.from_outcome(outcome))


# ─────────────────────────────────────────────────────────────────────────────
# admit
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_tenant_without_config_is_allowed(tmp_path):
    _, _, guard, _ = _setup(tmp_path)
    admission = await guard.admit("t1")
    assert admission.decision == AdmissionDecision.ALLOW
    assert admission.percent == 0


@pytest.mark.asyncio
async def test_admission_thresholds(tmp_path):
    store, _, guard, clock = _setup(tmp_path)
    await guard.update_budget("t1", 100, 80, "balanced", actor="fin-1")

    await _spend(store, clock, "t1", 50.0)
    assert (await guard.admit("t1")).decision == AdmissionDecision.ALLOW

    await _spend(store, clock, "t1", 31.0)
    admission = await guard.admit("t1")
    assert admission.decision == AdmissionDecision.ALLOW_DEGRADED
    assert admission.percent == pytest.approx(81.0)

    await _spend(store, clock, "t1", 19.0)
    with pytest.raises(CostLimitExceededError) as exc:
        await guard.admit("t1")
    assert exc.value.limit_type == "hard"
    assert exc.value.percent == pytest.approx(100.0)
    assert exc.value.status == 429
    assert exc.value.retryable is False


@pytest.mark.asyncio
async def test_budget_gate_is_monotonic_until_raised(tmp_path):
    store, _, guard, clock = _setup(tmp_path)
    await guard.update_budget("t1", 10, 80, "balanced", actor="fin-1")
    await _spend(store, clock, "t1", 12.0)

    for _ in range(5):
        with pytest.raises(CostLimitExceededError):
            await guard.admit("t1")
        clock.advance(hours=1)

    await guard.update_budget("t1", 100, 80, "balanced", actor="fin-1")
    assert (await guard.admit("t1")).decision == AdmissionDecision.ALLOW


@pytest.mark.asyncio
async def test_spend_resets_with_calendar_month(tmp_path):
    clock = FixedClock(datetime(2026, 3, 31, 23, 0, tzinfo=timezone.utc))
    store, _, guard, _ = _setup(tmp_path, clock)
    await guard.update_budget("t1", 10, 80, "balanced", actor="fin-1")
    await _spend(store, clock, "t1", 10.0)
    with pytest.raises(CostLimitExceededError):
        await guard.admit("t1")

    clock.advance(hours=2)
    assert month_start(clock()) == datetime(2026, 4, 1, tzinfo=timezone.utc)
    assert (await guard.admit("t1")).decision == AdmissionDecision.ALLOW


@pytest.mark.asyncio
async def test_other_tenant_spend_does_not_count(tmp_path):
    store, _, guard, clock = _setup(tmp_path)
    await guard.update_budget("t1", 10, 80, "balanced", actor="fin-1")
    await _spend(store, clock, "t2", 50.0)
    assert (await guard.admit("t1")).decision == AdmissionDecision.ALLOW


# ─────────────────────────────────────────────────────────────────────────────
# update_budget / switch_strategy
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
@pytest.mark.parametrize("budget,soft,mode", [
    (0, 80, "balanced"),
    (-5, 80, "balanced"),
    (100, 120, "balanced"),
    (100, 80, "turbo"),
])
async def test_update_budget_validation(tmp_path, budget, soft, mode):
    _, audit, guard, _ = _setup(tmp_path)
    with pytest.raises(InvalidParameterError):
        await guard.update_budget("t1", budget, soft, mode, actor="fin-1")
    assert await audit.recent("t1") == []


@pytest.mark.asyncio
async def test_update_budget_persists_and_audits(tmp_path):
    store, audit, guard, clock = _setup(tmp_path)
    await guard.update_budget("t1", 100, 80, "balanced", actor="fin-1")
    await guard.update_budget("t1", 250, 75, RoutingMode.PERFORMANCE, actor="fin-1")

    entries = await audit.recent("t1")
    assert len(entries) == 2
    assert entries[0].previous_value["monthly_budget"] == 100
    assert entries[0].new_value["monthly_budget"] == 250
    assert entries[1].previous_value is None

    reloaded = BudgetGuard(store, clock=clock)
    await reloaded.load()
    assert reloaded.get_config("t1").routing_mode == RoutingMode.PERFORMANCE


@pytest.mark.asyncio
async def test_switch_strategy_changes_only_mode(tmp_path):
    _, audit, guard, _ = _setup(tmp_path)
    await guard.update_budget("t1", 100, 80, "balanced", actor="fin-1")
    config = await guard.switch_strategy("t1", "cost_saver", actor="admin-1")
    assert config.routing_mode == RoutingMode.COST_SAVER
    assert config.monthly_budget == 100
    latest = (await audit.recent("t1"))[0]
    assert latest.action == "switch_strategy"
    assert latest.new_value == {"routing_mode": "cost_saver"}


@pytest.mark.asyncio
async def test_switch_strategy_requires_config(tmp_path):
    _, _, guard, _ = _setup(tmp_path)
    with pytest.raises(InvalidParameterError):
        await guard.switch_strategy("t1", "performance", actor="admin-1")


# ─────────────────────────────────────────────────────────────────────────────
# budget_status / risk
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_budget_status_burn_and_projection(tmp_path):
    # rolling window on 2026-03-15 starts 2026-03-09; the 10.00 on 03-05 is
    # month-to-date spend but outside the burn window
    store, _, guard, clock = _setup(tmp_path)
    await guard.update_budget("t1", 100, 80, "balanced", actor="fin-1")
    await _spend(store, clock, "t1", 10.0, datetime(2026, 3, 5, 9, tzinfo=timezone.utc))
    for day in (13, 14, 15):
        await _spend(store, clock, "t1", 1.0, datetime(2026, 3, day, 8, tzinfo=timezone.utc))

    status = await guard.budget_status("t1")
    assert status.spend_to_date == pytest.approx(13.0)
    assert status.burn_rate == pytest.approx(1.0)
    assert status.projected_monthly_cost == pytest.approx(30.0)
    assert status.days_to_exhaustion == pytest.approx(87.0)
    assert status.risk_level == RiskLevel.LOW


def test_burn_window_bounds():
    now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
    assert burn_window_start(now) == datetime(2026, 3, 9, tzinfo=timezone.utc)
    assert burn_rate([]) == 0.0
    # only the latest seven days count
    assert burn_rate([100.0] + [2.0] * 7) == pytest.approx(2.0)


def test_risk_levels(tmp_path):
    _, _, guard, _ = _setup(tmp_path)
    guard._configs["t1"] = BudgetConfig("t1", 100.0, 80.0)
    assert guard.compute_status("t1", 100.0, [1.0]).risk_level == RiskLevel.CRITICAL
    # 30 left at 40/day → under a day to exhaustion
    assert guard.compute_status("t1", 70.0, [40.0]).risk_level == RiskLevel.CRITICAL
    assert guard.compute_status("t1", 85.0, [1.0]).risk_level == RiskLevel.HIGH
    # 4/day → projected 120 ≥ budget
    assert guard.compute_status("t1", 10.0, [4.0]).risk_level == RiskLevel.HIGH
    # 3/day → projected 90 ≥ 80% of budget
    assert guard.compute_status("t1", 10.0, [3.0]).risk_level == RiskLevel.MEDIUM
    assert guard.compute_status("t1", 10.0, [1.0]).risk_level == RiskLevel.LOW
    assert guard.compute_status("t1", 10.0).risk_level == RiskLevel.LOW
