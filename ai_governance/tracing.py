"""
Tracing — OpenTelemetry spans for routing and governance
========================================================
Span tree of one routed call:

    governance.route             tenant (8-char prefix), feature, scope,
      │                          effective mode, admission, chosen arm, attempts
      └─ governance.attempt      provider, model, attempt number, success, cost

Administrative work:

    governance.action            action name, caller tenant prefix
    governance.summary_refresh   tenant prefix, summary row count

Tenant ids are truncated to 8 characters, the same prefix the log lines use.

Export: with `otlp_endpoint` set spans go to an OTLP/gRPC collector through a
batch processor (install the `tracing` extra for the exporter); without one
they are printed by the console exporter. Disabled tracing uses the
OpenTelemetry API's no-op tracer.

    configure_tracing(TracingConfig(enabled=True, environment="staging",
                                    otlp_endpoint="http://localhost:4317"))
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

logger = logging.getLogger("ai_governance.tracing")

TRACER_NAME = "ai_governance"
SERVICE_NAMESPACE = "ai-governance"
TENANT_PREFIX = 8

# Set by configure_tracing(); tests swap in their own provider.
_tracer = None
_provider: Optional[TracerProvider] = None


@dataclass
class TracingConfig:
    enabled: bool = False
    service_name: str = "ai-governance-engine"
    otlp_endpoint: Optional[str] = None
    sample_rate: float = 1.0
    environment: Optional[str] = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.sample_rate <= 1.0:
            raise ValueError(f"tracing.sample_rate must be in [0, 1], got {self.sample_rate}")

    def resource(self) -> Resource:
        attributes = {
            "service.name": self.service_name,
            "service.namespace": SERVICE_NAMESPACE,
        }
        if self.environment:
            attributes["deployment.environment"] = self.environment
        return Resource.create(attributes)


def configure_tracing(cfg: TracingConfig) -> Optional[TracerProvider]:
    """
    Install the global TracerProvider described by `cfg` and return it, or
    return None when tracing is disabled.
    """
    global _tracer, _provider

    if not cfg.enabled:
        _tracer = trace.get_tracer(TRACER_NAME)
        return None

    provider = TracerProvider(
        resource=cfg.resource(),
        sampler=ParentBased(TraceIdRatioBased(cfg.sample_rate)),
    )
    provider.add_span_processor(_span_processor(cfg))
    trace.set_tracer_provider(provider)
    _provider = provider
    _tracer = provider.get_tracer(TRACER_NAME)
    return provider


def _span_processor(cfg: TracingConfig) -> SpanProcessor:
    if not cfg.otlp_endpoint:
        logger.info("Tracing %s to console (sample rate %.2f)", cfg.service_name, cfg.sample_rate)
        return SimpleSpanProcessor(ConsoleSpanExporter())
    try:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError as e:
        raise RuntimeError(
            "tracing.otlp_endpoint needs the OTLP exporter: pip install 'ai-governance[tracing]'"
        ) from e
    logger.info("Tracing %s to %s (sample rate %.2f)",
                cfg.service_name, cfg.otlp_endpoint, cfg.sample_rate)
    return BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True))


def shutdown_tracing() -> None:
    """Flush and release the provider installed by configure_tracing()."""
    global _tracer, _provider
    if _provider is not None:
        _provider.shutdown()
    _provider = None
    _tracer = None


def get_tracer():
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(TRACER_NAME)
    return _tracer


@contextmanager
def _span(name: str, attributes: dict[str, Any]) -> Iterator:
    with get_tracer().start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def _tenant(tenant_id: Optional[str]) -> Optional[str]:
    return tenant_id[:TENANT_PREFIX] if tenant_id else None


# ── Instrumentation points ────────────────────────────────────────────────────

def traced_route(tenant_id: str, feature: str, scope: str):
    return _span("governance.route", {
        "governance.tenant": _tenant(tenant_id),
        "governance.feature": feature,
        "governance.scope": scope,
    })


def traced_attempt(provider: str, model: str, attempt: int):
    return _span("governance.attempt", {
        "llm.provider": provider,
        "llm.model": model,
        "llm.attempt": attempt,
    })


def traced_action(action: str, tenant_id: Optional[str] = None):
    return _span("governance.action", {
        "governance.action": action,
        "governance.tenant": _tenant(tenant_id),
    })


def traced_refresh(tenant_id: str):
    return _span("governance.summary_refresh", {"governance.tenant": _tenant(tenant_id)})
