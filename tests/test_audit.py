"""
Tests for AuditLog — append, tenant filter, JSONL export.
"""
from __future__ import annotations

import json

import pytest

from ai_governance.audit import AuditLog
from ai_governance.store import GovernanceStore

from fakes import FixedClock


@pytest.mark.asyncio
async def test_record_and_recent(tmp_path):
    clock = FixedClock()
    log = AuditLog(GovernanceStore(tmp_path / "gov.db"), clock=clock)
    entry = await log.record(tenant_id="t1", actor="fin-1", action="update_budget",
                             target_entity="tenant:t1",
                             previous_value={"monthly_budget": 100.0},
                             new_value={"monthly_budget": 250.0})
    assert entry.timestamp == clock()

    [stored] = await log.recent("t1")
    assert stored == entry
    assert await log.recent("t2") == []


@pytest.mark.asyncio
async def test_export_jsonl_appends_oldest_first(tmp_path):
    clock = FixedClock()
    log = AuditLog(GovernanceStore(tmp_path / "gov.db"), clock=clock)
    for action in ("apply_penalty", "clear_penalty"):
        await log.record(tenant_id="t1", actor="risk-1", action=action, target_entity="arm:a")
        clock.advance(seconds=1)

    out = tmp_path / "audit.jsonl"
    assert await log.export_jsonl(out, "t1") == 2
    assert await log.export_jsonl(out, "t1") == 2

    lines = [json.loads(line) for line in out.read_text().splitlines()]
    assert [line["action"] for line in lines] == ["apply_penalty", "clear_penalty"] * 2
    assert lines[0]["timestamp"] == "2026-03-15T12:00:00+00:00"
