from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from invitemarket.core.config import settings
from invitemarket.core.db import engine


# spans are no-ops until setup_telemetry installs a provider
tracer = trace.get_tracer("invitemarket")


def setup_telemetry(app) -> None:
    if not settings.telemetry_enabled:
        return

    resource = Resource.create({
        "service.name": settings.service_name,
        "deployment.environment": settings.env,
        "market.chain_id": settings.chain_id,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{settings.otlp_endpoint}/v1/traces")))
    trace.set_tracer_provider(provider)

    FastAPIInstrumentor.instrument_app(app, excluded_urls="v1/health")
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
    # facilitator, webhook and name-lookup calls
    HTTPXClientInstrumentor().instrument()
