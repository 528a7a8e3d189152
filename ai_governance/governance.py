"""
GovernanceService — the administrative action-dispatch surface.
===============================================================
One entry point, dispatch(caller, {"action": ..., "params": {...}}), returning
{"data": ...} on success or {"error": {"type", "message", "status"}}.

Access is role-based per action (ACTION_ACCESS). Every action acts on the
caller's own tenant; an arm or penalty belonging to another tenant is
rejected with 403 before anything is read or written.

Status mapping:
  400  unknown action, malformed body, invalid params
  401  no caller (handle() with a missing or unknown API key)
  403  role not allowed for the action, or cross-tenant target
  404  unknown arm or penalty
  500  anything unexpected (logged, message not leaked)

Mutating actions write exactly one audit entry each; the component that
performs the mutation writes it (see audit.py).
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Any, Optional

from .aggregator import GovernanceAggregator
from .audit import AuditLog
from .auth import ApiKeyAuthenticator, Caller
from .budget import BudgetGuard
from .errors import (
    AccessDeniedError,
    AuthenticationError,
    GovernanceError,
    InvalidParameterError,
    NotFoundError,
)
from .models import Role, RoutingMode
from .penalties import DEFAULT_PENALTY_FACTOR, PenaltyManager
from .registry import ArmRegistry
from .store import GovernanceStore
from .tracing import traced_action

logger = logging.getLogger("ai_governance.governance")

_ALL_ROLES = (Role.SUPER_ADMIN, Role.TENANT_ADMIN, Role.ENGINEERING, Role.FINANCE, Role.RISK)

ACTION_ACCESS: dict[str, tuple[Role, ...]] = {
    "get_summary":           _ALL_ROLES,
    "get_routing_logs":      (Role.SUPER_ADMIN, Role.ENGINEERING),
    "get_cost_breakdown":    (Role.SUPER_ADMIN, Role.FINANCE),
    "get_performance_trend": (Role.SUPER_ADMIN, Role.RISK),
    "get_penalties":         (Role.SUPER_ADMIN, Role.RISK),
    "get_budget_config":     (Role.SUPER_ADMIN, Role.FINANCE),
    "switch_strategy":       (Role.SUPER_ADMIN,),
    "reset_posterior":       (Role.SUPER_ADMIN,),
    "apply_penalty":         (Role.SUPER_ADMIN, Role.RISK),
    "clear_penalty":         (Role.SUPER_ADMIN, Role.RISK),
    "update_budget":         (Role.SUPER_ADMIN, Role.FINANCE),
    "refresh_summary":       (Role.SUPER_ADMIN,),
    "get_audit_log":         (Role.SUPER_ADMIN, Role.TENANT_ADMIN),
}

MUTATING_ACTIONS = frozenset({
    "switch_strategy", "reset_posterior", "apply_penalty", "clear_penalty", "update_budget",
})


# ── Parameter helpers ────────────────────────────────────────────────────────

def _int_param(params: dict, name: str, default: int, lo: int, hi: int) -> int:
    value = params.get(name, default)
    if isinstance(value, bool):
        raise InvalidParameterError(f"{name} must be an integer")
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise InvalidParameterError(f"{name} must be an integer, got {value!r}")
    if not lo <= value <= hi:
        raise InvalidParameterError(f"{name} must be in [{lo}, {hi}], got {value}")
    return value


def _str_param(params: dict, name: str, required: bool = True) -> Optional[str]:
    value = params.get(name)
    if value is None or value == "":
        if required:
            raise InvalidParameterError(f"missing required parameter {name!r}")
        return None
    if not isinstance(value, str):
        raise InvalidParameterError(f"{name} must be a string")
    return value


def _parse_body(body: Any) -> tuple[str, dict]:
    if isinstance(body, (str, bytes)):
        try:
            body = json.loads(body)
        except json.JSONDecodeError as e:
            raise InvalidParameterError(f"malformed JSON body: {e}")
    if not isinstance(body, dict):
        raise InvalidParameterError("body must be an object")
    action = body.get("action")
    params = body.get("params") or {}
    if not isinstance(action, str) or action not in ACTION_ACCESS:
        raise InvalidParameterError(f"Invalid action {action!r}")
    if not isinstance(params, dict):
        raise InvalidParameterError("params must be an object")
    return action, params


class GovernanceService:

    def __init__(
        self,
        store: GovernanceStore,
        registry: ArmRegistry,
        penalties: PenaltyManager,
        budget: BudgetGuard,
        aggregator: GovernanceAggregator,
        audit: AuditLog,
        authenticator: Optional[ApiKeyAuthenticator] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._penalties = penalties
        self._budget = budget
        self._aggregator = aggregator
        self._audit = audit
        self._authenticator = authenticator
        self._handlers = {
            "get_summary":           self._get_summary,
            "get_routing_logs":      self._get_routing_logs,
            "get_cost_breakdown":    self._get_cost_breakdown,
            "get_performance_trend": self._get_performance_trend,
            "get_penalties":         self._get_penalties,
            "get_budget_config":     self._get_budget_config,
            "switch_strategy":       self._switch_strategy,
            "reset_posterior":       self._reset_posterior,
            "apply_penalty":         self._apply_penalty,
            "clear_penalty":         self._clear_penalty,
            "update_budget":         self._update_budget,
            "refresh_summary":       self._refresh_summary,
            "get_audit_log":         self._get_audit_log,
        }

    # ── Entry points ─────────────────────────────────────────────────────────

    async def handle(self, authorization: Optional[str], body: Any) -> dict:
        """Authenticate a bearer API key, then dispatch."""
        if self._authenticator is None:
            return {"error": AuthenticationError("no authenticator configured").to_dict()}
        try:
            caller = self._authenticator.authenticate(authorization)
        except AuthenticationError as e:
            return {"error": e.to_dict()}
        return await self.dispatch(caller, body)

    async def dispatch(self, caller: Optional[Caller], body: Any) -> dict:
        try:
            if caller is None:
                raise AuthenticationError("unauthorized")
            action, params = _parse_body(body)
            if not caller.has_any(ACTION_ACCESS[action]):
                raise AccessDeniedError("Forbidden")
            with traced_action(action, caller.tenant_id):
                data = await self._handlers[action](caller, params)
            if action in MUTATING_ACTIONS:
                logger.info("Governance action %s by %s (tenant %s…)",
                            action, caller.user_id, caller.tenant_id[:8])
            return {"data": data}
        except GovernanceError as e:
            if e.status >= 500:
                logger.error("Governance action failed: %s", e)
            return {"error": e.to_dict()}
        except Exception:
            logger.exception("Unexpected error in governance dispatch")
            return {"error": {"type": "InternalError", "message": "internal error", "status": 500}}

    # ── Target resolution ────────────────────────────────────────────────────

    def _own_arm(self, caller: Caller, arm_id: str):
        if not self._registry.exists(arm_id):
            raise NotFoundError(f"arm {arm_id!r} not found")
        arm = self._registry.get(arm_id)
        if arm.tenant_id != caller.tenant_id:
            raise AccessDeniedError("arm belongs to another tenant")
        return arm

    def _own_penalty(self, caller: Caller, penalty_id: str):
        penalty = self._penalties.get(penalty_id)
        if penalty.tenant_id != caller.tenant_id:
            raise AccessDeniedError("penalty belongs to another tenant")
        return penalty

    # ── Read actions ─────────────────────────────────────────────────────────

    async def _get_summary(self, caller: Caller, params: dict):
        rows = await self._aggregator.get_summary(caller.tenant_id)
        return [row.to_dict() for row in rows]

    async def _get_routing_logs(self, caller: Caller, params: dict):
        limit = _int_param(params, "limit", 100, 1, 1000)
        entries = await self._store.recent_routing_logs(caller.tenant_id, limit)
        return [e.to_dict() for e in entries]

    async def _get_cost_breakdown(self, caller: Caller, params: dict):
        days = _int_param(params, "days", 30, 1, 366)
        return await self._aggregator.get_cost_breakdown(caller.tenant_id, days)

    async def _get_performance_trend(self, caller: Caller, params: dict):
        days = _int_param(params, "days", 30, 1, 366)
        return await self._aggregator.get_performance_trend(caller.tenant_id, days)

    async def _get_penalties(self, caller: Caller, params: dict):
        include_expired = bool(params.get("include_expired", False))
        return [p.to_dict() for p in self._penalties.list_penalties(caller.tenant_id, include_expired)]

    async def _get_budget_config(self, caller: Caller, params: dict):
        config = self._budget.get_config(caller.tenant_id)
        status = await self._budget.budget_status(caller.tenant_id)
        status_dict = asdict(status)
        status_dict["risk_level"] = status.risk_level.value
        return {
            "config": config.to_dict() if config else None,
            "status": status_dict,
        }

    async def _get_audit_log(self, caller: Caller, params: dict):
        limit = _int_param(params, "limit", 50, 1, 1000)
        entries = await self._audit.recent(caller.tenant_id, limit)
        return [e.to_dict() for e in entries]

    # ── Mutating actions ─────────────────────────────────────────────────────

    async def _switch_strategy(self, caller: Caller, params: dict):
        mode = _str_param(params, "mode")
        config = await self._budget.switch_strategy(caller.tenant_id, mode, actor=caller.user_id)
        return config.to_dict()

    async def _update_budget(self, caller: Caller, params: dict):
        current = self._budget.get_config(caller.tenant_id)
        if "monthly_budget" not in params:
            raise InvalidParameterError("missing required parameter 'monthly_budget'")
        soft = params.get(
            "soft_limit_percentage", current.soft_limit_percentage if current else 80.0)
        mode = params.get(
            "routing_mode", current.routing_mode.value if current else RoutingMode.BALANCED.value)
        config = await self._budget.update_budget(
            caller.tenant_id, params["monthly_budget"], soft, mode, actor=caller.user_id,
        )
        return config.to_dict()

    async def _apply_penalty(self, caller: Caller, params: dict):
        arm_id = _str_param(params, "arm_id")
        self._own_arm(caller, arm_id)
        penalty = await self._penalties.apply_penalty(
            arm_id,
            params.get("factor", DEFAULT_PENALTY_FACTOR),
            _str_param(params, "reason", required=False) or "manual",
            ttl=params.get("ttl_seconds"),
            actor=caller.user_id,
            feature=_str_param(params, "feature", required=False),
        )
        return penalty.to_dict()

    async def _clear_penalty(self, caller: Caller, params: dict):
        penalty_id = _str_param(params, "penalty_id")
        self._own_penalty(caller, penalty_id)
        penalty = await self._penalties.clear_penalty(penalty_id, actor=caller.user_id)
        return {"cleared": penalty.penalty_id, "arm_id": penalty.arm_id}

    async def _reset_posterior(self, caller: Caller, params: dict):
        arm_id = _str_param(params, "arm_id")
        self._own_arm(caller, arm_id)
        arm = await self._registry.reset_posterior(arm_id, actor=caller.user_id)
        return arm.to_dict()

    async def _refresh_summary(self, caller: Caller, params: dict):
        rows = await self._aggregator.refresh_summary(caller.tenant_id)
        return [row.to_dict() for row in rows]
