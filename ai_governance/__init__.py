"""
AI Governance
=============
Provider routing and governance for multi-tenant AI features: Thompson
sampling over (provider, model) arms, EWMA performance telemetry, per-tenant
monthly budgets with degraded-mode admission, score penalties, and an audited,
role-checked administrative action surface.

Basic usage:
    from ai_governance import GovernanceEngine, CompletionRequest, load_config

    async with GovernanceEngine(load_config()) as engine:
        result = await engine.route("t-acme", "question_generation", "default",
                                    CompletionRequest(prompt="..."))
        print(result.provider, result.model, result.text)
"""

from .models import (
    AdmissionDecision, Arm, BudgetConfig, CompletionRequest, GovernanceSummaryRow,
    Penalty, Provider, RiskLevel, Role, RoutingLogEntry, RoutingMode, RoutingResult,
)
from .errors import (
    AIProviderTimeoutError, AIResponseInvalidError, CostLimitExceededError,
    GovernanceError, RateLimitExceededError, ServiceUnavailableError, UnknownArmError,
)
from .config import EngineConfig, load_config
from .registry import ArmRegistry
from .penalties import PenaltyManager
from .budget import BudgetGuard
from .router import Router
from .telemetry import TelemetryRecorder
from .aggregator import GovernanceAggregator
from .governance import GovernanceService
from .auth import ApiKeyAuthenticator, Caller
from .engine import GovernanceEngine

__all__ = [
    # ── Engine ──────────────────────────────────────────────────────────────
    "GovernanceEngine", "EngineConfig", "load_config",
    # ── Components ──────────────────────────────────────────────────────────
    "ArmRegistry", "PenaltyManager", "BudgetGuard", "Router",
    "TelemetryRecorder", "GovernanceAggregator", "GovernanceService",
    "ApiKeyAuthenticator", "Caller",
    # ── Models ──────────────────────────────────────────────────────────────
    "AdmissionDecision", "Arm", "BudgetConfig", "CompletionRequest",
    "GovernanceSummaryRow", "Penalty", "Provider", "RiskLevel", "Role",
    "RoutingLogEntry", "RoutingMode", "RoutingResult",
    # ── Errors ──────────────────────────────────────────────────────────────
    "GovernanceError", "CostLimitExceededError", "RateLimitExceededError",
    "AIProviderTimeoutError", "ServiceUnavailableError", "AIResponseInvalidError",
    "UnknownArmError",
]
