"""
Scoring — Thompson sampling composite score and deterministic ranking.
=====================================================================
For each candidate arm on every route() call:

    s              = Beta(alpha, beta) draw              (fresh per arm per call)
    latency_score  = (1/latency_ewma) / max_i(1/latency_ewma_i)   ∈ (0, 1]
    cost_norm      = cost_ewma / max_i(cost_ewma_i)               ∈ [0, 1]
    raw            = w_q * s + w_l * latency_score + w_c * (1 - cost_norm)
    final          = raw * active_penalty * sla_factor * recency_factor

The cost term is written as a reward, w_c * (1 - cost_norm), instead of the
subtracted w_c * cost_norm. Before the multiplicative factors the two forms
differ by the constant w_c; once a factor below 1 applies they no longer rank
identically. The reward form keeps raw >= 0, so a factor < 1 can never raise
an arm's score.

Arms with no latency or cost observation yet get the neutral value 0.5 for
that term, so a new arm is neither favoured nor buried before it is tried.

Recency: recency_factor = exp(-days_since_last_call / horizon_days) (30 days
by default). Stale statistics lose weight; an arm never called keeps 1.0.

Forecast (from the stored governance summary, neutral when there is none):
    tenant budget risk HIGH/CRITICAL → w_cost * 1.25, MEDIUM → w_cost * 1.125,
                                        weights renormalised to sum 1
    arm SLA trend HIGH → sla_factor 0.8, MEDIUM → 0.9
    arm drift score > 0.5 → the Beta draw uses a flattened posterior
        Beta(1 + 0.95 * (alpha - 1), 1 + 0.95 * (beta - 1))

Ranking: descending final score; ties break by lowest cost_ewma (unknown
cost sorts last), then by arm creation order.

Diversity guard: when any candidate took more than 95% of the tenant's calls
in the last 24h, with probability 0.15 a random arm among the top 3 is moved
to the front of the attempt order.
"""
from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

from .models import Arm, GovernanceSummaryRow, ModeWeights, RiskLevel, ScoreBreakdown

logger = logging.getLogger("ai_governance.scoring")

NEUTRAL_SCORE: float = 0.5

COST_WEIGHT_BOOST = 1.25
SLA_PENALTY_FACTOR = 0.8
EXPLORATION_DECAY = 0.95
DRIFT_EXPLORATION_THRESHOLD = 0.5

DEFAULT_RECENCY_DAYS = 30.0
DIVERSITY_USAGE_THRESHOLD = 95.0
DIVERSITY_EPSILON = 0.15
DIVERSITY_TOP_K = 3


# ─────────────────────────────────────────────────────────────────────────────
# Forecast adjustments
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Forecast:
    """Routing adjustments derived from the tenant's stored summary rows."""
    cost_multiplier: float = 1.0
    sla_factors: dict[str, float] = field(default_factory=dict)
    exploration: dict[str, float] = field(default_factory=dict)
    usage: dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_summary(cls, rows: Sequence[GovernanceSummaryRow]) -> "Forecast":
        if not rows:
            return cls()
        budget_risk = max((r.budget_risk_level for r in rows), key=_risk_rank)
        if budget_risk in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            multiplier = COST_WEIGHT_BOOST
        elif budget_risk == RiskLevel.MEDIUM:
            multiplier = 1.0 + (COST_WEIGHT_BOOST - 1.0) / 2
        else:
            multiplier = 1.0

        sla_factors = {}
        exploration = {}
        for r in rows:
            if r.sla_trend_level == RiskLevel.HIGH:
                sla_factors[r.arm_id] = SLA_PENALTY_FACTOR
            elif r.sla_trend_level == RiskLevel.MEDIUM:
                sla_factors[r.arm_id] = 1.0 - (1.0 - SLA_PENALTY_FACTOR) / 2
            if r.performance_drift_score > DRIFT_EXPLORATION_THRESHOLD:
                exploration[r.arm_id] = EXPLORATION_DECAY
        return cls(
            cost_multiplier=multiplier,
            sla_factors=sla_factors,
            exploration=exploration,
            usage={r.arm_id: r.usage_percentage for r in rows},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cost_multiplier": self.cost_multiplier,
            "sla_factors": dict(self.sla_factors),
            "exploration": sorted(self.exploration),
        }


def _risk_rank(level: RiskLevel) -> int:
    return [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL].index(level)


def adjust_cost_weight(weights: ModeWeights, multiplier: float) -> ModeWeights:
    """Scale w_cost and renormalise so the three weights still sum to 1."""
    if multiplier == 1.0:
        return weights
    cost = weights.cost * multiplier
    total = weights.quality + weights.latency + cost
    return ModeWeights(quality=weights.quality / total,
                       latency=weights.latency / total,
                       cost=cost / total)


# ─────────────────────────────────────────────────────────────────────────────
# Per-arm terms
# ─────────────────────────────────────────────────────────────────────────────

def sample_posterior(arm: Arm, rng: random.Random, flatten: float = 1.0) -> float:
    if flatten == 1.0:
        return rng.betavariate(arm.alpha, arm.beta)
    return rng.betavariate(1.0 + flatten * (arm.alpha - 1.0), 1.0 + flatten * (arm.beta - 1.0))


def recency_factor(last_call_at: Optional[datetime], now: Optional[datetime],
                   horizon_days: float = DEFAULT_RECENCY_DAYS) -> float:
    if last_call_at is None or now is None or horizon_days <= 0:
        return 1.0
    days = max((now - last_call_at).total_seconds(), 0.0) / 86400.0
    return math.exp(-days / horizon_days)


def latency_scores(arms: Sequence[Arm]) -> dict[str, float]:
    inverse = {
        a.arm_id: 1.0 / a.latency_ms
        for a in arms if a.latency_ms is not None and a.latency_ms > 0
    }
    best = max(inverse.values(), default=0.0)
    return {
        a.arm_id: (inverse[a.arm_id] / best) if a.arm_id in inverse else NEUTRAL_SCORE
        for a in arms
    }


def cost_scores(arms: Sequence[Arm]) -> dict[str, float]:
    """1 - normalised cost_ewma: the cheapest observed arm scores highest."""
    observed = {a.arm_id: a.cost_ewma for a in arms if a.cost_ewma is not None}
    worst = max(observed.values(), default=0.0)
    scores = {}
    for a in arms:
        if a.arm_id not in observed:
            scores[a.arm_id] = NEUTRAL_SCORE
        elif worst <= 0:
            scores[a.arm_id] = 1.0
        else:
            scores[a.arm_id] = 1.0 - observed[a.arm_id] / worst
    return scores


def composite_score(sample: float, latency_score: float, cost_score: float,
                    weights: ModeWeights) -> float:
    return (
        weights.quality * sample
        + weights.latency * latency_score
        + weights.cost * cost_score
    )


def score_arms(
    arms: Sequence[Arm],
    weights: ModeWeights,
    penalties: dict[str, float],
    rng: Optional[random.Random] = None,
    samples: Optional[dict[str, float]] = None,
    forecast: Optional[Forecast] = None,
    now: Optional[datetime] = None,
    recency_days: float = DEFAULT_RECENCY_DAYS,
) -> list[ScoreBreakdown]:
    """
    Score every arm. `samples` pins posterior draws (tests, replay);
    otherwise each arm gets a fresh draw from `rng`. Recency decay only
    applies when `now` is given.
    """
    rng = rng or random.Random()
    forecast = forecast or Forecast()
    lat = latency_scores(arms)
    cost = cost_scores(arms)
    out = []
    for arm in arms:
        if samples and arm.arm_id in samples:
            s = samples[arm.arm_id]
        else:
            s = sample_posterior(arm, rng, forecast.exploration.get(arm.arm_id, 1.0))
        raw = composite_score(s, lat[arm.arm_id], cost[arm.arm_id], weights)
        factor = penalties.get(arm.arm_id, 1.0)
        sla = forecast.sla_factors.get(arm.arm_id, 1.0)
        recency = recency_factor(arm.last_call_at, now, recency_days)
        out.append(ScoreBreakdown(
            arm_id=arm.arm_id,
            provider=arm.provider.value,
            model=arm.model,
            sample=s,
            latency_score=lat[arm.arm_id],
            cost_score=cost[arm.arm_id],
            raw_score=raw,
            penalty_factor=factor,
            final_score=raw * factor * sla * recency,
            sla_factor=sla,
            recency_factor=recency,
        ))
    return out


def rank(scores: Sequence[ScoreBreakdown], arms: Sequence[Arm]) -> list[ScoreBreakdown]:
    by_id = {a.arm_id: a for a in arms}

    def key(sb: ScoreBreakdown):
        arm = by_id[sb.arm_id]
        unknown_cost = arm.cost_ewma is None
        return (-sb.final_score, unknown_cost, arm.cost_ewma or 0.0, arm.created_seq)

    return sorted(scores, key=key)


def diversify(
    ranked: Sequence[ScoreBreakdown],
    usage: dict[str, float],
    rng: random.Random,
    threshold: float = DIVERSITY_USAGE_THRESHOLD,
    epsilon: float = DIVERSITY_EPSILON,
) -> tuple[list[ScoreBreakdown], bool]:
    """
    Attempt order after the diversity guard, and whether the guard engaged
    (some candidate holds more than `threshold` percent of recent usage).
    """
    order = list(ranked)
    triggered = any(usage.get(sb.arm_id, 0.0) > threshold for sb in order)
    if not triggered or len(order) < 2:
        return order, triggered
    if rng.random() < epsilon:
        pick = rng.randrange(min(DIVERSITY_TOP_K, len(order)))
        if pick:
            order.insert(0, order.pop(pick))
            logger.debug("Diversity guard promoted %s", order[0].arm_id)
    return order, triggered
