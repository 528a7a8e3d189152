"""
Router — admission, Thompson-sampling ranking, bounded fallback.
================================================================
route() for one feature call:

  0. Request     a malformed response_schema raises InvalidParameterError.
  1. Admission   BudgetGuard.admit(), then RateLimiter.check_and_increment().
                 A DENY raises CostLimitExceededError before any arm is touched
                 and without spending rate-limit quota.
  2. Candidates  catalog (provider, model) pairs for the scope, each resolved to
                 the tenant's arm; providers with no configured client are skipped.
                 ALLOW_DEGRADED keeps only the cheapest pricing tier.
  3. Scoring     fresh Beta draw per arm, composite score with the effective mode's
                 weights, times the arm's active penalty, SLA forecast factor and
                 recency decay (see scoring.py). The forecast is read from the
                 tenant's stored governance summary; without one it is neutral.
  4. Attempts    in rank order (after the diversity guard), up to max_attempts,
                 each under its own timeout. A timed-out attempt is cancelled and
                 not awaited, so the fallback starts immediately.
  5. Telemetry   one CallOutcome per attempt, submitted fire-and-forget, carrying
                 the settings snapshot (mode, weights, admission, penalties, scores)
                 and, on success, the quality scorer's observation.

Effective mode: routing_mode_override > ALLOW_DEGRADED (forces cost_saver for
this call only) > tenant BudgetConfig.routing_mode > balanced. It is read fresh
on every call; there is no process-wide mode.

Exhaustion mapping:
  every attempt timed out          → AIProviderTimeoutError
  every attempt failed validation  → AIResponseInvalidError
  anything else                    → ServiceUnavailableError
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Callable, Optional

from .budget import BudgetGuard, parse_routing_mode
from .config import EngineConfig
from .errors import (
    AIProviderTimeoutError,
    AIResponseInvalidError,
    ProviderTimeoutError,
    ServiceUnavailableError,
)
from .models import (
    AdmissionDecision,
    Arm,
    CallOutcome,
    CompletionRequest,
    Provider,
    RoutingMode,
    RoutingResult,
    blended_price_per_1k,
    estimate_cost,
    utcnow,
    weights_for_mode,
)
from .penalties import PenaltyManager
from .providers import ProviderClient
from .rate_limiter import RateLimiter
from .registry import ArmRegistry
from .scoring import Forecast, adjust_cost_weight, diversify, rank, score_arms
from .store import GovernanceStore
from .telemetry import TelemetryRecorder
from .tracing import traced_attempt, traced_route
from .validators import (
    QualityScorer,
    ResponseValidator,
    ValidationResult,
    check_response_schema,
    heuristic_quality,
    validate_json_schema,
)

logger = logging.getLogger("ai_governance.router")

# Attempt failure kinds
_TIMEOUT = "timeout"
_INVALID = "invalid"
_ERROR = "error"


class Router:

    def __init__(
        self,
        registry: ArmRegistry,
        penalties: PenaltyManager,
        budget: BudgetGuard,
        recorder: TelemetryRecorder,
        clients: dict[Provider, ProviderClient],
        config: Optional[EngineConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        rng: Optional[random.Random] = None,
        validator: ResponseValidator = validate_json_schema,
        clock: Callable = utcnow,
        store: Optional[GovernanceStore] = None,
        quality_scorer: QualityScorer = heuristic_quality,
    ) -> None:
        self._registry = registry
        self._penalties = penalties
        self._budget = budget
        self._recorder = recorder
        self._clients = clients
        self._config = config or EngineConfig()
        self._rate_limiter = rate_limiter
        self._rng = rng or random.Random()
        self._validator = validator
        self._clock = clock
        self._store = store
        self._quality_scorer = quality_scorer

    # ── Candidates ───────────────────────────────────────────────────────────

    def candidates(self, tenant_id: str, scope: str, degraded: bool = False) -> list[Arm]:
        pairs = [
            (p, m) for p, m in self._config.candidates_for(scope) if p in self._clients
        ]
        if degraded and pairs:
            pairs = self._cheapest_tier(pairs)
        return [self._registry.get_arm(tenant_id, scope, p, m) for p, m in pairs]

    def _cheapest_tier(self, pairs: list[tuple[Provider, str]]) -> list[tuple[Provider, str]]:
        priced = {
            pair: blended_price_per_1k(pair[0], pair[1], self._config.pricing)
            for pair in pairs
        }
        known = [price for price in priced.values() if price is not None]
        if not known:
            return pairs
        cheapest = min(known)
        return [pair for pair, price in priced.items() if price == cheapest]

    def effective_mode(self, tenant_id: str, decision: AdmissionDecision,
                       override: Optional[RoutingMode | str] = None) -> RoutingMode:
        if override is not None:
            return parse_routing_mode(override)
        if decision == AdmissionDecision.ALLOW_DEGRADED:
            return RoutingMode.COST_SAVER
        config = self._budget.get_config(tenant_id)
        return config.routing_mode if config else RoutingMode.BALANCED

    # ── Route ────────────────────────────────────────────────────────────────

    async def route(
        self,
        tenant_id: str,
        feature: str,
        scope: str,
        request: CompletionRequest,
        routing_mode_override: Optional[RoutingMode | str] = None,
        user_id: Optional[str] = None,
    ) -> RoutingResult:
        with traced_route(tenant_id, feature, scope) as span:
            check_response_schema(request.response_schema)

            est = self._estimate(scope, request)
            admission = await self._budget.admit(tenant_id, est)
            if self._rate_limiter is not None:
                self._rate_limiter.check_and_increment(tenant_id, user_id)

            degraded = admission.decision == AdmissionDecision.ALLOW_DEGRADED
            mode = self.effective_mode(tenant_id, admission.decision, routing_mode_override)
            span.set_attribute("governance.mode", mode.value)
            span.set_attribute("governance.admission", admission.decision.value)

            arms = self.candidates(tenant_id, scope, degraded=degraded)
            if not arms:
                logger.warning("No available arms for scope %r (tenant %s…)", scope, tenant_id[:8])
                raise ServiceUnavailableError(f"no provider available for scope {scope!r}")

            forecast = await self._forecast(tenant_id)
            weights = adjust_cost_weight(weights_for_mode(mode), forecast.cost_multiplier)
            penalties = {a.arm_id: self._penalties.active_penalty(a.arm_id, feature) for a in arms}
            scores = score_arms(
                arms, weights, penalties, self._rng,
                forecast=forecast,
                now=self._clock(),
                recency_days=self._config.recency_decay_days,
            )
            ranked = rank(scores, arms)
            order, diversity = diversify(
                ranked, forecast.usage, self._rng,
                threshold=self._config.diversity_threshold,
                epsilon=self._config.diversity_epsilon,
            )
            by_id = {a.arm_id: a for a in arms}

            settings = {
                "mode": mode.value,
                "weights": weights.as_dict(),
                "admission": admission.decision.value,
                "budget_percent": round(admission.percent, 4),
                "penalties": {k: v for k, v in penalties.items() if v != 1.0},
                "forecast": forecast.to_dict(),
                "diversity_triggered": diversity,
                "scores": [sb.to_dict() for sb in ranked],
            }

            failures: list[str] = []
            for attempt, sb in enumerate(order[: self._config.max_attempts], start=1):
                arm = by_id[sb.arm_id]
                used_fallback = attempt > 1
                result = await self._attempt(
                    arm, request, attempt, used_fallback,
                    tenant_id, feature, user_id, settings,
                )
                if isinstance(result, str):
                    failures.append(result)
                    continue

                text, outcome = result
                span.set_attribute("governance.arm", arm.arm_id)
                span.set_attribute("governance.attempts", attempt)
                return RoutingResult(
                    text=text,
                    arm_id=arm.arm_id,
                    provider=arm.provider,
                    model=arm.model,
                    attempts=attempt,
                    used_fallback=used_fallback,
                    effective_mode=mode,
                    admission=admission.decision,
                    latency_ms=outcome.duration_ms,
                    cost=outcome.cost,
                    total_tokens=outcome.total_tokens,
                    request_id=request.request_id,
                    score_breakdown=list(ranked),
                )

            span.set_attribute("governance.attempts", len(failures))
            raise self._exhausted(failures, scope)

    async def _forecast(self, tenant_id: str) -> Forecast:
        """Forecast from the stored summary; neutral when absent or unreadable."""
        if self._store is None or not self._config.forecast_routing:
            return Forecast()
        try:
            rows = await self._store.load_summary(tenant_id)
        except Exception as e:
            logger.warning("Forecast unavailable for tenant %s…, routing without it: %s",
                           tenant_id[:8], e)
            return Forecast()
        return Forecast.from_summary(rows or [])

    def _estimate(self, scope: str, request: CompletionRequest) -> float:
        """Rough upper-bound cost (4 chars/token prompt, full max_tokens output)."""
        pairs = self._config.candidates_for(scope)
        if not pairs:
            return 0.0
        prompt_tokens = (len(request.prompt) + len(request.system)) // 4
        return max(
            estimate_cost(p, m, prompt_tokens, request.max_tokens, self._config.pricing)
            for p, m in pairs
        )

    @staticmethod
    def _exhausted(failures: list[str], scope: str) -> Exception:
        logger.warning("All %d attempts failed for scope %r: %s", len(failures), scope, failures)
        if failures and all(f == _TIMEOUT for f in failures):
            return AIProviderTimeoutError(f"all {len(failures)} attempts timed out")
        if failures and all(f == _INVALID for f in failures):
            return AIResponseInvalidError(f"all {len(failures)} responses failed validation")
        return ServiceUnavailableError(f"all {len(failures)} attempts failed")

    # ── Single attempt ───────────────────────────────────────────────────────

    async def _attempt(
        self,
        arm: Arm,
        request: CompletionRequest,
        attempt: int,
        used_fallback: bool,
        tenant_id: str,
        feature: str,
        user_id: Optional[str],
        settings: dict,
    ):
        """Returns (text, outcome) on success, or the failure kind."""
        client = self._clients[arm.provider]
        timeout = self._config.attempt_timeout_seconds

        with traced_attempt(arm.provider.value, arm.model, attempt) as span:
            t0 = time.monotonic()
            task = asyncio.ensure_future(client.invoke(arm.model, request))
            done, _ = await asyncio.wait({task}, timeout=timeout)
            duration_ms = (time.monotonic() - t0) * 1000

            response = None
            error_class = None
            kind = None
            quality = None
            if not done:
                # Cancel without awaiting; the fallback must not wait on it.
                task.cancel()
                task.add_done_callback(_consume_result)
                kind, error_class = _TIMEOUT, "TimeoutError"
            else:
                exc = task.exception()
                if isinstance(exc, ProviderTimeoutError):
                    kind, error_class = _TIMEOUT, type(exc).__name__
                elif exc is not None:
                    kind, error_class = _ERROR, type(exc).__name__
                else:
                    response = task.result()
                    try:
                        check = self._validator(response.text, request.response_schema)
                        if check.passed:
                            quality = self._quality_scorer(response, request, check)
                    except Exception as e:
                        check = ValidationResult(False, f"{type(e).__name__}: {e}", "error")
                    if not check.passed:
                        kind, error_class = _INVALID, "AIResponseInvalidError"
                        logger.warning("Invalid response from %s (%s)", arm.arm_id, check.details)

            if kind is not None and kind != _INVALID:
                logger.warning("Attempt %d on %s failed: %s", attempt, arm.arm_id, error_class)

            prompt_tokens = response.prompt_tokens if response else 0
            completion_tokens = response.completion_tokens if response else 0
            cost = estimate_cost(arm.provider, arm.model, prompt_tokens, completion_tokens,
                                 self._config.pricing)
            outcome = CallOutcome(
                tenant_id=tenant_id,
                feature=feature,
                scope=arm.scope,
                arm_id=arm.arm_id,
                provider=arm.provider,
                model=arm.model,
                request_id=request.request_id,
                attempt=attempt,
                success=kind is None,
                duration_ms=duration_ms,
                timed_out=kind == _TIMEOUT,
                error_class=error_class,
                used_fallback=used_fallback,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                cost=cost,
                quality=quality,
                user_id=user_id,
                settings=settings,
                timestamp=self._clock(),
            )
            self._recorder.submit(outcome)

            span.set_attribute("llm.success", outcome.success)
            span.set_attribute("llm.cost_usd", cost)
            if kind is not None:
                return kind
            return response.text, outcome


def _consume_result(task: asyncio.Future) -> None:
    # Retrieve the abandoned task's exception so asyncio does not log it.
    if not task.cancelled():
        task.exception()
