"""
Tests for PenaltyManager — factor bounds, expiry, audit, score restoration.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from ai_governance.audit import AuditLog
from ai_governance.errors import InvalidParameterError, NotFoundError
from ai_governance.models import MODE_WEIGHTS, Provider, RoutingMode
from ai_governance.penalties import PenaltyManager
from ai_governance.registry import ArmRegistry
from ai_governance.scoring import score_arms
from ai_governance.store import GovernanceStore

from fakes import FixedClock


def _setup(tmp_path, clock=None):
    clock = clock or FixedClock()
    store = GovernanceStore(tmp_path / "gov.db")
    audit = AuditLog(store, clock=clock)
    reg = ArmRegistry(store=store, audit=audit, clock=clock)
    mgr = PenaltyManager(reg, store, audit, clock=clock)
    arm = reg.get_arm("t1", "default", Provider.GOOGLE, "gemini-2.5-flash")
    return store, audit, reg, mgr, arm


@pytest.mark.asyncio
async def test_no_penalty_is_one(tmp_path):
    _, _, _, mgr, arm = _setup(tmp_path)
    assert mgr.active_penalty(arm.arm_id) == 1.0


@pytest.mark.asyncio
@pytest.mark.parametrize("factor", [0, -0.5, 1.5])
async def test_factor_out_of_range_rejected(tmp_path, factor):
    _, audit, _, mgr, arm = _setup(tmp_path)
    with pytest.raises(InvalidParameterError):
        await mgr.apply_penalty(arm.arm_id, factor, "bad")
    assert await audit.recent("t1") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("ttl", [
    0, -1, 1e20, float("inf"), float("nan"), "soon", True,
    timedelta(0), timedelta(days=400),
])
async def test_ttl_out_of_range_rejected(tmp_path, ttl):
    _, audit, _, mgr, arm = _setup(tmp_path)
    with pytest.raises(InvalidParameterError):
        await mgr.apply_penalty(arm.arm_id, 0.5, "bad ttl", ttl=ttl)
    assert mgr.list_penalties("t1") == []
    assert await audit.recent("t1") == []


@pytest.mark.asyncio
async def test_ttl_accepts_numeric_strings(tmp_path):
    clock = FixedClock()
    _, _, _, mgr, arm = _setup(tmp_path, clock)
    penalty = await mgr.apply_penalty(arm.arm_id, 0.5, "string ttl", ttl="90")
    assert penalty.expires_at == clock() + timedelta(seconds=90)


@pytest.mark.asyncio
async def test_penalties_multiply(tmp_path):
    _, _, _, mgr, arm = _setup(tmp_path)
    await mgr.apply_penalty(arm.arm_id, 0.5, "latency spike")
    await mgr.apply_penalty(arm.arm_id, 0.8, "quality dip")
    assert mgr.active_penalty(arm.arm_id) == pytest.approx(0.4)


@pytest.mark.asyncio
async def test_penalty_expires_lazily(tmp_path):
    clock = FixedClock()
    _, _, _, mgr, arm = _setup(tmp_path, clock)
    await mgr.apply_penalty(arm.arm_id, 0.5, "temporary", ttl=timedelta(minutes=5))
    assert mgr.active_penalty(arm.arm_id) == 0.5
    clock.advance(minutes=5)
    assert mgr.active_penalty(arm.arm_id) == 1.0
    assert mgr.list_penalties("t1") == []
    assert len(mgr.list_penalties("t1", include_expired=True)) == 1


@pytest.mark.asyncio
async def test_feature_scoped_penalty(tmp_path):
    _, _, _, mgr, arm = _setup(tmp_path)
    await mgr.apply_penalty(arm.arm_id, 0.5, "bad at summaries", feature="summaries")
    assert mgr.active_penalty(arm.arm_id, "summaries") == 0.5
    assert mgr.active_penalty(arm.arm_id, "question_generation") == 1.0


@pytest.mark.asyncio
async def test_apply_then_clear_restores_score_exactly(tmp_path):
    _, _, reg, mgr, arm = _setup(tmp_path)
    reg.record_outcome(arm.arm_id, True, 300.0, 0.4, None, call_cost=0.002)
    arms = [reg.get(arm.arm_id)]
    weights = MODE_WEIGHTS[RoutingMode.BALANCED]
    samples = {arm.arm_id: 0.7}

    def score():
        factors = {arm.arm_id: mgr.active_penalty(arm.arm_id)}
        return score_arms(arms, weights, factors, samples=samples)[0].final_score

    before = score()
    penalty = await mgr.apply_penalty(arm.arm_id, 0.5, "manual")
    assert score() == pytest.approx(before * 0.5)
    await mgr.clear_penalty(penalty.penalty_id, actor="risk-1")
    assert score() == before


@pytest.mark.asyncio
async def test_apply_and_clear_are_audited(tmp_path):
    _, audit, _, mgr, arm = _setup(tmp_path)
    penalty = await mgr.apply_penalty(arm.arm_id, 0.7, "check", actor="risk-1")
    await mgr.clear_penalty(penalty.penalty_id, actor="risk-1")
    actions = [e.action for e in await audit.recent("t1")]
    assert actions == ["clear_penalty", "apply_penalty"]


@pytest.mark.asyncio
async def test_clear_unknown_penalty(tmp_path):
    _, _, _, mgr, _ = _setup(tmp_path)
    with pytest.raises(NotFoundError):
        await mgr.clear_penalty("missing")


@pytest.mark.asyncio
async def test_sweep_and_reload(tmp_path):
    clock = FixedClock()
    store, _, reg, mgr, arm = _setup(tmp_path, clock)
    await mgr.apply_penalty(arm.arm_id, 0.5, "short", ttl=60)
    keep = await mgr.apply_penalty(arm.arm_id, 0.9, "open-ended")
    clock.advance(seconds=61)

    assert await mgr.sweep_expired() == 1

    fresh = PenaltyManager(reg, store, clock=clock)
    assert await fresh.load() == 1
    assert fresh.get(keep.penalty_id).factor == 0.9
