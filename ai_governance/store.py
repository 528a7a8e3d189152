"""
GovernanceStore — SQLite persistence for the routing and governance engine.
===========================================================================
Owns all reads and writes to the governance database. No other module touches
the DB directly.

Design:
  - routing_log and audit_log are append-only (INSERT only, never UPDATE/DELETE)
  - arms, budget_config and penalties hold current state, rewritten on change
  - governance_summary is a derived projection, replaced per tenant in one
    transaction so concurrent refreshes never leave duplicate rows
  - timestamps are stored as fixed-width UTC ISO-8601 strings so that string
    comparison is time order and substr(ts, 1, 10) is the UTC date

Schema:
  arms                — one row per (tenant, scope, provider, model) arm
  routing_log         — one row per completed call attempt
  audit_log           — one row per administrative mutation
  budget_config       — one row per tenant
  penalties           — active (or not yet swept) penalties
  governance_summary  — cached GovernanceSummaryRow projection
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from .models import (
    Arm,
    AuditLogEntry,
    BudgetConfig,
    GovernanceSummaryRow,
    Penalty,
    Provider,
    RiskLevel,
    RoutingLogEntry,
    RoutingMode,
)

logger = logging.getLogger("ai_governance.store")


_SCHEMA = """
CREATE TABLE IF NOT EXISTS arms (
    arm_id        TEXT    PRIMARY KEY,
    tenant_id     TEXT    NOT NULL,
    scope         TEXT    NOT NULL,
    provider      TEXT    NOT NULL,
    model         TEXT    NOT NULL,
    created_seq   INTEGER NOT NULL,
    created_at    TEXT    NOT NULL,
    alpha         REAL    NOT NULL,
    beta          REAL    NOT NULL,
    latency_ms    REAL,
    quality       REAL,
    success_rate  REAL,
    cost_per_1k   REAL,
    cost_ewma     REAL,
    sample_count  INTEGER NOT NULL,
    last_call_at  TEXT
);

CREATE TABLE IF NOT EXISTS routing_log (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id          TEXT    NOT NULL UNIQUE,
    ts                TEXT    NOT NULL,
    tenant_id         TEXT    NOT NULL,
    user_id           TEXT,
    feature           TEXT    NOT NULL,
    scope             TEXT    NOT NULL,
    arm_id            TEXT    NOT NULL,
    provider          TEXT    NOT NULL,
    model             TEXT    NOT NULL,
    request_id        TEXT    NOT NULL,
    attempt           INTEGER NOT NULL,
    success           INTEGER NOT NULL,
    timed_out         INTEGER NOT NULL,
    used_fallback     INTEGER NOT NULL,
    duration_ms       REAL    NOT NULL,
    prompt_tokens     INTEGER NOT NULL,
    completion_tokens INTEGER NOT NULL,
    total_tokens      INTEGER NOT NULL,
    cost              REAL    NOT NULL,
    quality           REAL,
    error_class       TEXT,
    settings          TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_routing_log_tenant_ts
    ON routing_log(tenant_id, ts);

CREATE TABLE IF NOT EXISTS audit_log (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id       TEXT    NOT NULL UNIQUE,
    ts             TEXT    NOT NULL,
    tenant_id      TEXT    NOT NULL,
    actor          TEXT    NOT NULL,
    action         TEXT    NOT NULL,
    target_entity  TEXT    NOT NULL,
    previous_value TEXT,
    new_value      TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_log_tenant
    ON audit_log(tenant_id, id);

CREATE TABLE IF NOT EXISTS budget_config (
    tenant_id             TEXT PRIMARY KEY,
    monthly_budget        REAL NOT NULL,
    soft_limit_percentage REAL NOT NULL,
    routing_mode          TEXT NOT NULL,
    updated_at            TEXT
);

CREATE TABLE IF NOT EXISTS penalties (
    penalty_id  TEXT PRIMARY KEY,
    arm_id      TEXT NOT NULL,
    tenant_id   TEXT NOT NULL,
    factor      REAL NOT NULL,
    reason      TEXT NOT NULL,
    feature     TEXT,
    applied_by  TEXT NOT NULL,
    applied_at  TEXT NOT NULL,
    expires_at  TEXT
);

CREATE TABLE IF NOT EXISTS governance_summary (
    tenant_id TEXT    NOT NULL,
    position  INTEGER NOT NULL,
    arm_id    TEXT    NOT NULL,
    payload   TEXT    NOT NULL,
    PRIMARY KEY (tenant_id, arm_id)
);
"""


def to_ts(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601 timestamp."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class GovernanceStore:
    """
    Persistent governance store backed by SQLite.

    Parameters
    ----------
    db_path:
        Path to the SQLite file. Pass a tmp_path in tests to avoid touching
        the real store.
    """

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialised = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ── Internal ──────────────────────────────────────────────────────────────

    async def _ensure_schema(self) -> None:
        """Create tables and indexes on first use."""
        if self._initialised:
            return
        async with aiosqlite.connect(self._db_path) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
        self._initialised = True

    async def _fetchall(self, query: str, params: tuple = ()) -> list[tuple]:
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute(query, params) as cur:
                return list(await cur.fetchall())

    async def _execute(self, query: str, params: tuple = ()) -> None:
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(query, params)
            await db.commit()

    # ── Arms ──────────────────────────────────────────────────────────────────

    async def save_arm(self, arm: Arm) -> None:
        await self._execute(
            """
            INSERT OR REPLACE INTO arms
                (arm_id, tenant_id, scope, provider, model, created_seq, created_at,
                 alpha, beta, latency_ms, quality, success_rate, cost_per_1k,
                 cost_ewma, sample_count, last_call_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                arm.arm_id, arm.tenant_id, arm.scope, arm.provider.value, arm.model,
                arm.created_seq, to_ts(arm.created_at),
                arm.alpha, arm.beta, arm.latency_ms, arm.quality, arm.success_rate,
                arm.cost_per_1k, arm.cost_ewma, arm.sample_count,
                to_ts(arm.last_call_at) if arm.last_call_at else None,
            ),
        )

    async def load_arms(self) -> list[Arm]:
        rows = await self._fetchall(
            """
            SELECT arm_id, tenant_id, scope, provider, model, created_seq, created_at,
                   alpha, beta, latency_ms, quality, success_rate, cost_per_1k,
                   cost_ewma, sample_count, last_call_at
            FROM arms ORDER BY created_seq
            """
        )
        return [
            Arm(
                arm_id=r[0], tenant_id=r[1], scope=r[2], provider=Provider(r[3]),
                model=r[4], created_seq=r[5], created_at=from_ts(r[6]),
                alpha=r[7], beta=r[8], latency_ms=r[9], quality=r[10],
                success_rate=r[11], cost_per_1k=r[12], cost_ewma=r[13],
                sample_count=r[14], last_call_at=from_ts(r[15]),
            )
            for r in rows
        ]

    # ── Routing log (append-only) ─────────────────────────────────────────────

    async def append_routing_log(self, entry: RoutingLogEntry) -> None:
        await self._execute(
            """
            INSERT INTO routing_log
                (entry_id, ts, tenant_id, user_id, feature, scope, arm_id, provider,
                 model, request_id, attempt, success, timed_out, used_fallback,
                 duration_ms, prompt_tokens, completion_tokens, total_tokens, cost,
                 quality, error_class, settings)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id, to_ts(entry.timestamp), entry.tenant_id, entry.user_id,
                entry.feature, entry.scope, entry.arm_id, entry.provider, entry.model,
                entry.request_id, entry.attempt, int(entry.success), int(entry.timed_out),
                int(entry.used_fallback), entry.duration_ms, entry.prompt_tokens,
                entry.completion_tokens, entry.total_tokens, entry.cost, entry.quality,
                entry.error_class, json.dumps(entry.settings, sort_keys=True),
            ),
        )

    _LOG_COLUMNS = (
        "entry_id, ts, tenant_id, feature, scope, arm_id, provider, model, request_id, "
        "attempt, success, timed_out, used_fallback, duration_ms, prompt_tokens, "
        "completion_tokens, total_tokens, cost, quality, error_class, user_id, settings"
    )

    @staticmethod
    def _log_from_row(r: tuple) -> RoutingLogEntry:
        return RoutingLogEntry(
            entry_id=r[0], timestamp=from_ts(r[1]), tenant_id=r[2], feature=r[3],
            scope=r[4], arm_id=r[5], provider=r[6], model=r[7], request_id=r[8],
            attempt=r[9], success=bool(r[10]), timed_out=bool(r[11]),
            used_fallback=bool(r[12]), duration_ms=r[13], prompt_tokens=r[14],
            completion_tokens=r[15], total_tokens=r[16], cost=r[17], quality=r[18],
            error_class=r[19], user_id=r[20], settings=json.loads(r[21]),
        )

    async def recent_routing_logs(self, tenant_id: str, limit: int = 100) -> list[RoutingLogEntry]:
        """Newest first."""
        rows = await self._fetchall(
            f"SELECT {self._LOG_COLUMNS} FROM routing_log "
            "WHERE tenant_id = ? ORDER BY ts DESC, id DESC LIMIT ?",
            (tenant_id, limit),
        )
        return [self._log_from_row(r) for r in rows]

    async def routing_logs_since(self, tenant_id: str, since: datetime) -> list[RoutingLogEntry]:
        """Oldest first."""
        rows = await self._fetchall(
            f"SELECT {self._LOG_COLUMNS} FROM routing_log "
            "WHERE tenant_id = ? AND ts >= ? ORDER BY ts, id",
            (tenant_id, to_ts(since)),
        )
        return [self._log_from_row(r) for r in rows]

    async def spend_since(self, tenant_id: str, since: datetime) -> float:
        rows = await self._fetchall(
            "SELECT COALESCE(SUM(cost), 0) FROM routing_log WHERE tenant_id = ? AND ts >= ?",
            (tenant_id, to_ts(since)),
        )
        return float(rows[0][0])

    async def daily_spend(self, tenant_id: str, since: datetime) -> list[float]:
        """Per-UTC-day spend totals, oldest first; days with no calls are absent."""
        rows = await self._fetchall(
            "SELECT substr(ts, 1, 10) AS day, SUM(cost) FROM routing_log "
            "WHERE tenant_id = ? AND ts >= ? GROUP BY day ORDER BY day",
            (tenant_id, to_ts(since)),
        )
        return [float(total) for _, total in rows]

    async def cost_breakdown(self, tenant_id: str, since: datetime) -> list[dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT substr(ts, 1, 10) AS day, feature, provider,
                   COUNT(*), SUM(total_tokens), SUM(cost)
            FROM routing_log
            WHERE tenant_id = ? AND ts >= ?
            GROUP BY day, feature, provider
            ORDER BY day, feature, provider
            """,
            (tenant_id, to_ts(since)),
        )
        return [
            {
                "date":         day,
                "feature":      feature,
                "provider":     provider,
                "call_count":   int(calls),
                "total_tokens": int(tokens or 0),
                "total_cost":   round(float(cost or 0.0), 8),
            }
            for day, feature, provider, calls, tokens, cost in rows
        ]

    async def performance_trend(self, tenant_id: str, since: datetime) -> list[dict[str, Any]]:
        rows = await self._fetchall(
            """
            SELECT substr(ts, 1, 10) AS day, feature, provider,
                   COUNT(*), SUM(success), SUM(timed_out), AVG(duration_ms)
            FROM routing_log
            WHERE tenant_id = ? AND ts >= ?
            GROUP BY day, feature, provider
            ORDER BY day, feature, provider
            """,
            (tenant_id, to_ts(since)),
        )
        trend = []
        for day, feature, provider, calls, successes, timeouts, avg_latency in rows:
            calls = int(calls)
            successes = int(successes or 0)
            trend.append({
                "date":           day,
                "feature":        feature,
                "provider":       provider,
                "call_count":     calls,
                "success_count":  successes,
                "error_count":    calls - successes,
                "timeout_count":  int(timeouts or 0),
                "avg_latency_ms": round(float(avg_latency or 0.0), 3),
                "success_rate":   round(successes / calls, 6) if calls else 0.0,
                "error_rate":     round((calls - successes) / calls, 6) if calls else 0.0,
            })
        return trend

    # ── Audit log (append-only) ───────────────────────────────────────────────

    async def append_audit(self, entry: AuditLogEntry) -> None:
        await self._execute(
            """
            INSERT INTO audit_log
                (entry_id, ts, tenant_id, actor, action, target_entity,
                 previous_value, new_value)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id, to_ts(entry.timestamp), entry.tenant_id, entry.actor,
                entry.action, entry.target_entity,
                json.dumps(entry.previous_value, sort_keys=True) if entry.previous_value is not None else None,
                json.dumps(entry.new_value, sort_keys=True) if entry.new_value is not None else None,
            ),
        )

    async def recent_audit(self, tenant_id: Optional[str], limit: int = 50) -> list[AuditLogEntry]:
        """Newest first. tenant_id=None returns entries for every tenant."""
        query = (
            "SELECT entry_id, ts, tenant_id, actor, action, target_entity, "
            "previous_value, new_value FROM audit_log"
        )
        params: tuple = ()
        if tenant_id is not None:
            query += " WHERE tenant_id = ?"
            params = (tenant_id,)
        query += " ORDER BY id DESC LIMIT ?"
        rows = await self._fetchall(query, params + (limit,))
        return [
            AuditLogEntry(
                entry_id=r[0], timestamp=from_ts(r[1]), tenant_id=r[2], actor=r[3],
                action=r[4], target_entity=r[5],
                previous_value=json.loads(r[6]) if r[6] is not None else None,
                new_value=json.loads(r[7]) if r[7] is not None else None,
            )
            for r in rows
        ]

    # ── Budget config ─────────────────────────────────────────────────────────

    async def save_budget_config(self, config: BudgetConfig) -> None:
        await self._execute(
            """
            INSERT OR REPLACE INTO budget_config
                (tenant_id, monthly_budget, soft_limit_percentage, routing_mode, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                config.tenant_id, config.monthly_budget, config.soft_limit_percentage,
                config.routing_mode.value,
                to_ts(config.updated_at) if config.updated_at else None,
            ),
        )

    async def load_budget_configs(self) -> list[BudgetConfig]:
        rows = await self._fetchall(
            "SELECT tenant_id, monthly_budget, soft_limit_percentage, routing_mode, "
            "updated_at FROM budget_config ORDER BY tenant_id"
        )
        return [
            BudgetConfig(
                tenant_id=r[0], monthly_budget=r[1], soft_limit_percentage=r[2],
                routing_mode=RoutingMode(r[3]), updated_at=from_ts(r[4]),
            )
            for r in rows
        ]

    # ── Penalties ─────────────────────────────────────────────────────────────

    async def insert_penalty(self, penalty: Penalty) -> None:
        await self._execute(
            """
            INSERT INTO penalties
                (penalty_id, arm_id, tenant_id, factor, reason, feature,
                 applied_by, applied_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                penalty.penalty_id, penalty.arm_id, penalty.tenant_id, penalty.factor,
                penalty.reason, penalty.feature, penalty.applied_by,
                to_ts(penalty.applied_at),
                to_ts(penalty.expires_at) if penalty.expires_at else None,
            ),
        )

    async def delete_penalties(self, penalty_ids: list[str]) -> None:
        if not penalty_ids:
            return
        placeholders = ",".join("?" * len(penalty_ids))
        await self._execute(
            f"DELETE FROM penalties WHERE penalty_id IN ({placeholders})",
            tuple(penalty_ids),
        )

    async def load_penalties(self) -> list[Penalty]:
        rows = await self._fetchall(
            "SELECT penalty_id, arm_id, tenant_id, factor, reason, feature, applied_by, "
            "applied_at, expires_at FROM penalties ORDER BY applied_at"
        )
        return [
            Penalty(
                penalty_id=r[0], arm_id=r[1], tenant_id=r[2], factor=r[3], reason=r[4],
                feature=r[5], applied_by=r[6], applied_at=from_ts(r[7]),
                expires_at=from_ts(r[8]),
            )
            for r in rows
        ]

    # ── Governance summary projection ─────────────────────────────────────────

    async def replace_summary(self, tenant_id: str, rows: list[GovernanceSummaryRow]) -> None:
        """Swap the tenant's projection in a single transaction (last writer wins)."""
        await self._ensure_schema()
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("DELETE FROM governance_summary WHERE tenant_id = ?", (tenant_id,))
            await db.executemany(
                "INSERT INTO governance_summary (tenant_id, position, arm_id, payload) "
                "VALUES (?, ?, ?, ?)",
                [
                    (tenant_id, i, row.arm_id, json.dumps(row.to_dict(), sort_keys=True))
                    for i, row in enumerate(rows)
                ],
            )
            await db.commit()

    async def load_summary(self, tenant_id: str) -> Optional[list[GovernanceSummaryRow]]:
        """Stored projection, or None when the tenant was never refreshed."""
        rows = await self._fetchall(
            "SELECT payload FROM governance_summary WHERE tenant_id = ? ORDER BY position",
            (tenant_id,),
        )
        if not rows:
            return None
        result = []
        for (payload,) in rows:
            data = json.loads(payload)
            for key in ("sla_risk_level", "budget_risk_level", "sla_trend_level"):
                if key in data:
                    data[key] = RiskLevel(data[key])
            result.append(GovernanceSummaryRow(**data))
        return result

    # ── Tenants ───────────────────────────────────────────────────────────────

    async def known_tenants(self) -> list[str]:
        rows = await self._fetchall(
            "SELECT tenant_id FROM budget_config UNION SELECT tenant_id FROM arms "
            "ORDER BY tenant_id"
        )
        return [r[0] for r in rows]
