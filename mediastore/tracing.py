from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from mediastore.config import settings

_provider: TracerProvider | None = None


def _get_provider(service_name: str) -> TracerProvider:
    global _provider
    if _provider is None:
        resource = Resource.create({SERVICE_NAME: service_name})
        _provider = TracerProvider(resource=resource)
        exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        _provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(_provider)
    return _provider


def setup_tracing(app=None, service_name: str | None = None) -> None:
    """Export spans over OTLP when enabled; instrument ``app`` if one is given.

    The upload CLI calls this without an app so client-side upload spans are
    exported under their own service name.
    """
    if not settings.tracing_enabled:
        return
    provider = _get_provider(service_name or settings.tracing_service_name)
    if app is not None and not getattr(app.state, "tracing_instrumented", False):
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
        app.state.tracing_instrumented = True


tracer = trace.get_tracer("mediastore")
