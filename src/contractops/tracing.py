from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

@dataclass(frozen=True)
class TracingConfig:
    service_name: str
    otlp_endpoint: Optional[str] = None

_configured = False

def configure_tracing(cfg: TracingConfig) -> None:
    """Install a tracer provider once per process.

    Spans are only exported when an OTLP endpoint is configured; otherwise the
    provider still records them so instrumented code behaves the same.
    """
    global _configured
    if _configured:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": cfg.service_name}))
    if cfg.otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otlp_endpoint)))
    trace.set_tracer_provider(provider)
    _configured = True

def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)
