"""
AI Governance — Core Models & Types
===================================
All data structures, enums, pricing tables and routing-mode weights used by
the routing and governance engine.

Ownership:
  Arm                   — ArmRegistry (registry.py)
  Penalty               — PenaltyManager (penalties.py)
  BudgetConfig          — BudgetGuard (budget.py)
  RoutingLogEntry       — written by TelemetryRecorder, append-only
  GovernanceSummaryRow  — GovernanceAggregator, derived projection
  AuditLogEntry         — AuditLog, append-only
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Provider(str, Enum):
    OPENAI = "openai"
    GOOGLE = "google"
    ANTHROPIC = "anthropic"


class RoutingMode(str, Enum):
    PERFORMANCE = "performance"
    BALANCED = "balanced"
    COST_SAVER = "cost_saver"


class AdmissionDecision(str, Enum):
    ALLOW = "allow"
    ALLOW_DEGRADED = "allow_degraded"
    DENY = "deny"


class RiskLevel(str, Enum):
    """Budget / SLA risk level surfaced to dashboards."""
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"


class Role(str, Enum):
    SUPER_ADMIN  = "super_admin"
    TENANT_ADMIN = "tenant_admin"
    ENGINEERING  = "engineering"
    FINANCE      = "finance"
    RISK         = "risk"


# ─────────────────────────────────────────────
# Pricing table (per 1M tokens, USD)
# ─────────────────────────────────────────────

COST_TABLE: dict[tuple[Provider, str], dict[str, float]] = {
    (Provider.OPENAI, "gpt-4o"):                {"input": 2.50, "output": 10.0},
    (Provider.OPENAI, "gpt-4o-mini"):           {"input": 0.15, "output": 0.60},
    (Provider.GOOGLE, "gemini-2.5-pro"):        {"input": 1.25, "output": 10.0},
    (Provider.GOOGLE, "gemini-2.5-flash"):      {"input": 0.30, "output": 2.50},
    (Provider.GOOGLE, "gemini-2.5-flash-lite"): {"input": 0.10, "output": 0.40},
    (Provider.ANTHROPIC, "claude-sonnet-4-5"):  {"input": 3.0,  "output": 15.0},
    (Provider.ANTHROPIC, "claude-haiku-4-5"):   {"input": 1.0,  "output": 5.0},
}

# Candidate (provider, model) pairs for scopes without an explicit catalog entry.
DEFAULT_CATALOG: list[tuple[Provider, str]] = [
    (Provider.GOOGLE, "gemini-2.5-flash"),
    (Provider.OPENAI, "gpt-4o-mini"),
    (Provider.GOOGLE, "gemini-2.5-pro"),
    (Provider.OPENAI, "gpt-4o"),
]


def estimate_cost(
    provider: Provider,
    model: str,
    input_tokens: int,
    output_tokens: int,
    table: Optional[dict[tuple[Provider, str], dict[str, float]]] = None,
) -> float:
    """USD cost of a call; unknown (provider, model) pairs cost 0.0."""
    prices = (table or COST_TABLE).get((Provider(provider), model))
    if prices is None:
        return 0.0
    return (input_tokens * prices["input"] + output_tokens * prices["output"]) / 1_000_000


def blended_price_per_1k(
    provider: Provider,
    model: str,
    table: Optional[dict[tuple[Provider, str], dict[str, float]]] = None,
) -> Optional[float]:
    """Average of input/output list price per 1k tokens, used for pricing tiers."""
    prices = (table or COST_TABLE).get((Provider(provider), model))
    if prices is None:
        return None
    return (prices["input"] + prices["output"]) / 2 / 1000


# ─────────────────────────────────────────────
# Routing-mode weights (w_quality, w_latency, w_cost)
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class ModeWeights:
    quality: float
    latency: float
    cost: float

    def as_dict(self) -> dict[str, float]:
        return {"w_quality": self.quality, "w_latency": self.latency, "w_cost": self.cost}


MODE_WEIGHTS: dict[RoutingMode, ModeWeights] = {
    RoutingMode.PERFORMANCE: ModeWeights(quality=0.60, latency=0.30, cost=0.10),
    RoutingMode.BALANCED:    ModeWeights(quality=1 / 3, latency=1 / 3, cost=1 / 3),
    RoutingMode.COST_SAVER:  ModeWeights(quality=0.30, latency=0.10, cost=0.60),
}


def weights_for_mode(mode: RoutingMode) -> ModeWeights:
    return MODE_WEIGHTS[RoutingMode(mode)]


# ─────────────────────────────────────────────
# Arm
# ─────────────────────────────────────────────

def make_arm_id(tenant_id: str, scope: str, provider: Provider | str, model: str) -> str:
    return f"{tenant_id}:{scope}:{Provider(provider).value}:{model}"


@dataclass
class Arm:
    """
    One selectable (provider, model, scope) routing candidate for a tenant.

    alpha/beta are the Beta posterior over the arm's success probability
    (prior 1, 1). EWMA fields are None until the first observation.
    """
    arm_id: str
    tenant_id: str
    scope: str
    provider: Provider
    model: str
    created_seq: int
    created_at: datetime = field(default_factory=utcnow)

    alpha: float = 1.0
    beta: float = 1.0

    latency_ms: Optional[float] = None
    quality: Optional[float] = None
    success_rate: Optional[float] = None
    cost_per_1k: Optional[float] = None
    cost_ewma: Optional[float] = None

    sample_count: int = 0
    last_call_at: Optional[datetime] = None

    def clear_statistics(self) -> None:
        self.alpha = 1.0
        self.beta = 1.0
        self.latency_ms = None
        self.quality = None
        self.success_rate = None
        self.cost_per_1k = None
        self.cost_ewma = None
        self.sample_count = 0
        self.last_call_at = None

    def posterior_mean(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["provider"] = self.provider.value
        d["created_at"] = self.created_at.isoformat()
        d["last_call_at"] = self.last_call_at.isoformat() if self.last_call_at else None
        return d


# ─────────────────────────────────────────────
# Penalty / BudgetConfig
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class Penalty:
    penalty_id: str
    arm_id: str
    tenant_id: str
    factor: float
    reason: str
    applied_at: datetime
    expires_at: Optional[datetime] = None
    feature: Optional[str] = None
    applied_by: str = ""

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now

    def applies_to(self, feature: Optional[str]) -> bool:
        return self.feature is None or feature is None or self.feature == feature

    def to_dict(self) -> dict[str, Any]:
        return {
            "penalty_id": self.penalty_id,
            "arm_id":     self.arm_id,
            "tenant_id":  self.tenant_id,
            "factor":     self.factor,
            "reason":     self.reason,
            "feature":    self.feature,
            "applied_by": self.applied_by,
            "applied_at": self.applied_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class BudgetConfig:
    tenant_id: str
    monthly_budget: float
    soft_limit_percentage: float = 80.0
    routing_mode: RoutingMode = RoutingMode.BALANCED
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id":             self.tenant_id,
            "monthly_budget":        self.monthly_budget,
            "soft_limit_percentage": self.soft_limit_percentage,
            "routing_mode":          self.routing_mode.value,
            "updated_at":            self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class Admission:
    """Result of BudgetGuard.admit()."""
    decision: AdmissionDecision
    percent: float
    spend_to_date: float
    config: Optional[BudgetConfig] = None


@dataclass(frozen=True)
class BudgetStatus:
    tenant_id: str
    spend_to_date: float
    percent: float
    burn_rate: float
    projected_monthly_cost: float
    days_to_exhaustion: Optional[float]
    risk_level: RiskLevel


# ─────────────────────────────────────────────
# Calls, outcomes and routing results
# ─────────────────────────────────────────────

@dataclass
class CompletionRequest:
    """What a feature asks the router to complete. Never logged."""
    prompt: str
    system: str = ""
    max_tokens: int = 1500
    temperature: float = 0.3
    response_schema: Optional[dict] = None
    request_id: str = field(default_factory=new_id)


@dataclass
class ProviderResponse:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    quality_score: Optional[float] = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class CallOutcome:
    """One attempt's outcome, queued for the TelemetryRecorder."""
    tenant_id: str
    feature: str
    scope: str
    arm_id: str
    provider: Provider
    model: str
    request_id: str
    attempt: int
    success: bool
    duration_ms: float
    timed_out: bool = False
    error_class: Optional[str] = None
    used_fallback: bool = False
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    quality: Optional[float] = None
    user_id: Optional[str] = None
    settings: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def cost_per_1k(self) -> Optional[float]:
        if not self.success or self.total_tokens <= 0:
            return None
        return self.cost / self.total_tokens * 1000


@dataclass(frozen=True)
class ScoreBreakdown:
    arm_id: str
    provider: str
    model: str
    sample: float
    latency_score: float
    cost_score: float
    raw_score: float
    penalty_factor: float
    final_score: float
    sla_factor: float = 1.0
    recency_factor: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RoutingResult:
    text: str
    arm_id: str
    provider: Provider
    model: str
    attempts: int
    used_fallback: bool
    effective_mode: RoutingMode
    admission: AdmissionDecision
    latency_ms: float
    cost: float
    total_tokens: int
    request_id: str
    score_breakdown: list[ScoreBreakdown] = field(default_factory=list)


# ─────────────────────────────────────────────
# Logs and projections
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class RoutingLogEntry:
    """Immutable record of one completed call attempt."""
    entry_id: str
    timestamp: datetime
    tenant_id: str
    feature: str
    scope: str
    arm_id: str
    provider: str
    model: str
    request_id: str
    attempt: int
    success: bool
    timed_out: bool
    used_fallback: bool
    duration_ms: float
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    quality: Optional[float] = None
    error_class: Optional[str] = None
    user_id: Optional[str] = None
    settings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_outcome(cls, outcome: CallOutcome) -> "RoutingLogEntry":
        return cls(
            entry_id=new_id(),
            timestamp=outcome.timestamp,
            tenant_id=outcome.tenant_id,
            feature=outcome.feature,
            scope=outcome.scope,
            arm_id=outcome.arm_id,
            provider=Provider(outcome.provider).value,
            model=outcome.model,
            request_id=outcome.request_id,
            attempt=outcome.attempt,
            success=outcome.success,
            timed_out=outcome.timed_out,
            used_fallback=outcome.used_fallback,
            duration_ms=outcome.duration_ms,
            prompt_tokens=outcome.prompt_tokens,
            completion_tokens=outcome.completion_tokens,
            total_tokens=outcome.total_tokens,
            cost=outcome.cost,
            quality=outcome.quality,
            error_class=outcome.error_class,
            user_id=outcome.user_id,
            settings=dict(outcome.settings),
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


@dataclass(frozen=True)
class AuditLogEntry:
    entry_id: str
    timestamp: datetime
    tenant_id: str
    actor: str
    action: str
    target_entity: str
    previous_value: Optional[dict[str, Any]] = None
    new_value: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


@dataclass(frozen=True)
class GovernanceSummaryRow:
    tenant_id: str
    arm_id: str
    provider: str
    model: str
    scope: str
    alpha: float
    beta: float
    sample_count: int
    latency_ms: Optional[float]
    quality: Optional[float]
    success_rate: Optional[float]
    cost_ewma: Optional[float]
    calls_last_24h: int
    usage_percentage: float
    spend_to_date: float
    projected_monthly_cost: float
    burn_rate: float
    days_to_exhaustion: Optional[float]
    budget_usage_percentage: float
    sla_risk_level: RiskLevel
    performance_drift_score: float
    budget_risk_level: RiskLevel = RiskLevel.LOW
    sla_trend_level: RiskLevel = RiskLevel.LOW

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        for key in ("sla_risk_level", "budget_risk_level", "sla_trend_level"):
            d[key] = getattr(self, key).value
        return d
