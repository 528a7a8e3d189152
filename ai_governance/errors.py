"""
Error taxonomy for the routing and governance engine.

Every error surfaced to a calling feature or an administrative client is a
GovernanceError subclass, so callers branch on type instead of inspecting
provider-specific codes. `status` mirrors the HTTP status the action-dispatch
surface reports.

UnknownArmError is not a GovernanceError: touching an arm id the
registry never issued is a programming error, not a user-retriable condition.
"""
from __future__ import annotations

from typing import Optional

TEMPORARILY_UNAVAILABLE = "temporarily unavailable, try later"


class GovernanceError(Exception):
    """Base class for all domain errors."""
    status: int = 500
    retryable: bool = False
    user_message: str = "internal error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.user_message)

    def to_dict(self) -> dict:
        return {
            "type":    type(self).__name__,
            "message": str(self),
            "status":  self.status,
        }


# ── Admission errors (never retried) ─────────────────────────────────────────

class CostLimitExceededError(GovernanceError):
    status = 429
    user_message = TEMPORARILY_UNAVAILABLE

    def __init__(self, limit_type: str, percent: float) -> None:
        self.limit_type = limit_type
        self.percent = percent
        super().__init__(f"AI cost limit exceeded ({limit_type}: {percent:.1f}%)")


class RateLimitExceededError(GovernanceError):
    status = 429
    user_message = TEMPORARILY_UNAVAILABLE

    def __init__(self, scope: str, window_key: str) -> None:
        self.scope = scope
        self.window_key = window_key
        super().__init__(f"Rate limit exceeded ({scope}) for window {window_key}")


# ── Call failures (surfaced after fallback exhaustion) ───────────────────────

class AIProviderTimeoutError(GovernanceError):
    status = 504
    retryable = True
    user_message = TEMPORARILY_UNAVAILABLE


class ServiceUnavailableError(GovernanceError):
    status = 503
    retryable = True
    user_message = TEMPORARILY_UNAVAILABLE


class AIResponseInvalidError(GovernanceError):
    """The arm responded but the output failed schema validation.

    Callers regenerate once at the feature level; the router does not
    retry this as a different failure class.
    """
    status = 502
    retryable = True
    user_message = "the AI response was invalid"

    def __init__(self, message: str = "", details: Optional[str] = None) -> None:
        self.details = details
        super().__init__(message)


# ── Administrative surface ───────────────────────────────────────────────────

class InvalidParameterError(GovernanceError, ValueError):
    status = 400
    user_message = "invalid parameters"


class NotFoundError(GovernanceError, LookupError):
    status = 404
    user_message = "not found"


class AccessDeniedError(GovernanceError):
    status = 403
    user_message = "forbidden"


class AuthenticationError(GovernanceError):
    status = 401
    user_message = "unauthorized"


# ── Provider-level (wrapped SDK failures, internal to the router) ────────────

class ProviderError(Exception):
    """Transport-level failure from a provider client."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ProviderTimeoutError(ProviderError):
    """The provider SDK reported its own timeout."""


# ── Programming errors ───────────────────────────────────────────────────────

class UnknownArmError(LookupError):
    def __init__(self, arm_id: str) -> None:
        self.arm_id = arm_id
        super().__init__(f"unknown arm {arm_id!r}")
