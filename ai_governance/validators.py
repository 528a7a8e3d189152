"""
Response validators
===================
A routed call succeeds only when the provider answered AND the answer passed
the caller's response filter. The router takes any callable
(text, schema) → ValidationResult; validate_json_schema is the default.

A failed validation counts as a failed outcome for the arm (beta += 1) and,
when every attempt fails this way, surfaces as AIResponseInvalidError.

The schema itself is checked once per route() by check_response_schema(),
before admission: a malformed schema is the caller's fault (400), not the
provider's.

Quality
-------
Every successful attempt feeds a quality observation in [0, 1] into the arm's
quality EWMA. The router takes any callable (response, request, check) → float;
heuristic_quality is the default:

    provider-reported quality_score    → used as is (clamped)
    otherwise start from 0.8 (1.0 when a schema validated the answer)
    output hit max_tokens              → -0.3 (likely truncated)
    fewer than MIN_USEFUL_CHARS chars  → -0.2
"""
from __future__ import annotations

import json
import logging
from typing import Callable, Optional

import jsonschema

from .errors import InvalidParameterError
from .models import CompletionRequest, ProviderResponse

logger = logging.getLogger("ai_governance.validators")

MIN_USEFUL_CHARS = 20


class ValidationResult:
    __slots__ = ("passed", "details", "validator_name")

    def __init__(self, passed: bool, details: str = "", validator_name: str = ""):
        self.passed = passed
        self.details = details
        self.validator_name = validator_name

    def __bool__(self) -> bool:
        return self.passed

    def __repr__(self) -> str:
        return f"ValidationResult(passed={self.passed}, validator={self.validator_name!r})"


ResponseValidator = Callable[[str, Optional[dict]], ValidationResult]
QualityScorer = Callable[[ProviderResponse, CompletionRequest, ValidationResult], float]


def check_response_schema(schema: Optional[dict]) -> None:
    """Raise InvalidParameterError when `schema` is not a valid JSON Schema."""
    if schema is None:
        return
    if not isinstance(schema, dict):
        raise InvalidParameterError("response_schema must be an object")
    try:
        jsonschema.validators.validator_for(schema).check_schema(schema)
    except jsonschema.SchemaError as e:
        raise InvalidParameterError(f"invalid response_schema: {e.message}")


def _strip_fences(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        lines = stripped.splitlines()[1:]
        if lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        stripped = "\n".join(lines).strip()
    return stripped


def validate_json_schema(output: str, schema: Optional[dict] = None) -> ValidationResult:
    """
    Validate output as JSON against `schema`. With no schema every non-empty
    response passes; free-text features do not need JSON.
    """
    if schema is None:
        if not output or not output.strip():
            return ValidationResult(False, "Empty response", "non_empty")
        return ValidationResult(True, "No schema", "non_empty")
    try:
        parsed = json.loads(_strip_fences(output))
        jsonschema.validate(instance=parsed, schema=schema)
        return ValidationResult(True, "Valid JSON", "json_schema")
    except json.JSONDecodeError as e:
        return ValidationResult(False, f"Invalid JSON: {e}", "json_schema")
    except jsonschema.ValidationError as e:
        return ValidationResult(False, f"Schema validation failed: {e.message}", "json_schema")


def heuristic_quality(response: ProviderResponse, request: CompletionRequest,
                      check: ValidationResult) -> float:
    if response.quality_score is not None:
        return max(0.0, min(1.0, float(response.quality_score)))
    score = 1.0 if check.validator_name == "json_schema" else 0.8
    if request.max_tokens and response.completion_tokens >= request.max_tokens:
        score -= 0.3
    if len(response.text.strip()) < MIN_USEFUL_CHARS:
        score -= 0.2
    return max(0.0, score)
