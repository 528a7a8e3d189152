"""
Tests for response validators.
"""
from __future__ import annotations

import pytest

from ai_governance.errors import InvalidParameterError
from ai_governance.models import CompletionRequest, ProviderResponse
from ai_governance.validators import (
    ValidationResult,
    check_response_schema,
    heuristic_quality,
    validate_json_schema,
)

SCHEMA = {
    "type": "object",
    "properties": {"questions": {"type": "array", "items": {"type": "string"}}},
    "required": ["questions"],
}


def test_free_text_passes_without_schema():
    assert validate_json_schema("plain answer")
    assert not validate_json_schema("   ")


def test_schema_match():
    result = validate_json_schema('{"questions": ["a", "b"]}', SCHEMA)
    assert result.passed
    assert result.validator_name == "json_schema"


def test_fenced_json_is_accepted():
    assert validate_json_schema('```json\n{"questions": []}\n```', SCHEMA)


def test_invalid_json_fails():
    result = validate_json_schema("questions: a, b", SCHEMA)
    assert not result
    assert result.details.startswith("Invalid JSON")


def test_schema_violation_fails():
    result = validate_json_schema('{"questions": [1]}', SCHEMA)
    assert not result
    assert "Schema validation failed" in result.details


# ─────────────────────────────────────────────────────────────────────────────
# Schema checks and quality
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("schema", [{"type": 12}, {"required": "answer"}, ["not", "a", "dict"]])
def test_malformed_schema_is_invalid_parameter(schema):
    with pytest.raises(InvalidParameterError):
        check_response_schema(schema)


def test_well_formed_schema_passes_check():
    check_response_schema(SCHEMA)
    check_response_schema(None)


def test_quality_prefers_provider_score():
    response = ProviderResponse(text="x", quality_score=1.7)
    assert heuristic_quality(response, CompletionRequest(prompt="q"), ValidationResult(True)) == 1.0


def test_quality_rewards_validated_json():
    request = CompletionRequest(prompt="q", max_tokens=500)
    text = '{"questions": ["what is the capital of France?"]}'
    response = ProviderResponse(text=text, completion_tokens=40)
    schema_check = validate_json_schema(text, SCHEMA)
    free_check = validate_json_schema(text)
    assert heuristic_quality(response, request, schema_check) == 1.0
    assert heuristic_quality(response, request, free_check) == pytest.approx(0.8)


def test_quality_marks_truncated_and_short_output():
    request = CompletionRequest(prompt="q", max_tokens=50)
    truncated = ProviderResponse(text="a long enough answer that got cut", completion_tokens=50)
    short = ProviderResponse(text="ok", completion_tokens=1)
    check = ValidationResult(True, validator_name="non_empty")
    assert heuristic_quality(truncated, request, check) == pytest.approx(0.5)
    assert heuristic_quality(short, request, check) == pytest.approx(0.6)
