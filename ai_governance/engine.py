"""
GovernanceEngine — assembles every component around one store.
==============================================================
    engine = GovernanceEngine(load_config())
    await engine.start()          # restore arms/penalties/budgets, start recorder
    result = await engine.route("t-acme", "question_generation", "default",
                                CompletionRequest(prompt="..."))
    reply = await engine.governance.dispatch(caller, {"action": "get_summary"})
    await engine.close()          # drain telemetry, close provider clients

Components share one GovernanceStore, one AuditLog and one clock, so tests
can inject a tmp_path database, fake provider clients, a seeded Random and a
fixed clock through the constructor.
"""
from __future__ import annotations

import logging
import random
from typing import Callable, Optional

from .aggregator import GovernanceAggregator
from .audit import AuditLog
from .auth import ApiKeyAuthenticator
from .budget import BudgetGuard
from .config import EngineConfig
from .governance import GovernanceService
from .models import CompletionRequest, Provider, RoutingMode, RoutingResult, utcnow
from .penalties import PenaltyManager
from .providers import ProviderClient, build_clients
from .rate_limiter import RateLimiter
from .registry import ArmRegistry
from .router import Router
from .store import GovernanceStore
from .telemetry import TelemetryRecorder
from .tracing import configure_tracing, shutdown_tracing
from .validators import QualityScorer, ResponseValidator, heuristic_quality, validate_json_schema

logger = logging.getLogger("ai_governance.engine")


class GovernanceEngine:

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clients: Optional[dict[Provider, ProviderClient]] = None,
        rng: Optional[random.Random] = None,
        clock: Callable = utcnow,
        validator: ResponseValidator = validate_json_schema,
        authenticator: Optional[ApiKeyAuthenticator] = None,
        quality_scorer: QualityScorer = heuristic_quality,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = GovernanceStore(self.config.db_path)
        self.audit = AuditLog(self.store, clock=clock)
        self.registry = ArmRegistry(self.config.ewma_decay, self.store, self.audit, clock=clock)
        self.penalties = PenaltyManager(self.registry, self.store, self.audit, clock=clock)
        self.budget = BudgetGuard(self.store, self.audit, clock=clock)
        self.rate_limiter = RateLimiter(
            per_user=self.config.rate_limit_per_user,
            per_tenant=self.config.rate_limit_per_tenant,
            window_minutes=self.config.rate_limit_window_minutes,
            clock=clock,
        )
        self.recorder = TelemetryRecorder(self.registry, self.store)
        self.clients = clients if clients is not None else build_clients(self.config.providers)
        self.router = Router(
            self.registry, self.penalties, self.budget, self.recorder, self.clients,
            config=self.config, rate_limiter=self.rate_limiter, rng=rng,
            validator=validator, clock=clock, store=self.store,
            quality_scorer=quality_scorer,
        )
        self.aggregator = GovernanceAggregator(
            self.store, self.registry, self.budget, self.recorder, clock=clock)
        if authenticator is None and self.config.api_keys_file is not None:
            authenticator = ApiKeyAuthenticator.from_file(self.config.api_keys_file)
        self.governance = GovernanceService(
            self.store, self.registry, self.penalties, self.budget,
            self.aggregator, self.audit, authenticator,
        )
        self._started = False
        self._tracer_provider = None

    async def start(self) -> None:
        if self._started:
            return
        self._tracer_provider = configure_tracing(self.config.tracing)
        arms = await self.registry.load()
        penalties = await self.penalties.load()
        budgets = await self.budget.load()
        self.recorder.start()
        self._started = True
        logger.info(
            "Engine started (db=%s, arms=%d, penalties=%d, budgets=%d, providers=%s)",
            self.config.db_path, arms, penalties, budgets,
            sorted(p.value for p in self.clients),
        )

    async def close(self) -> None:
        await self.recorder.stop()
        for client in self.clients.values():
            await client.close()
        if self._tracer_provider is not None:
            shutdown_tracing()
            self._tracer_provider = None
        self._started = False

    async def __aenter__(self) -> "GovernanceEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def route(
        self,
        tenant_id: str,
        feature: str,
        scope: str,
        request: CompletionRequest,
        routing_mode_override: Optional[RoutingMode | str] = None,
        user_id: Optional[str] = None,
    ) -> RoutingResult:
        return await self.router.route(
            tenant_id, feature, scope, request,
            routing_mode_override=routing_mode_override, user_id=user_id,
        )

    async def sweep(self) -> int:
        """Scheduled hygiene: purge expired penalties."""
        return await self.penalties.sweep_expired()
