from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.flask import FlaskInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.instrumentation.requests import RequestsInstrumentor
from opentelemetry.propagate import set_global_textmap
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from models import db


def init_tracing(app):
    """Export spans for requests, SQL and outbound gateway calls.

    Disabled unless ``OTEL_ENABLED``; the propagator is always installed so
    ``traceparent`` headers round-trip.
    """
    set_global_textmap(TraceContextTextMapPropagator())
    if not app.config.get("OTEL_ENABLED"):
        return False

    service_name = app.config.get("OTEL_SERVICE_NAME", "retromarket-checkout")
    endpoint = app.config.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)

    FlaskInstrumentor().instrument_app(app)
    # Outbound calls to the payment gateway go through requests
    RequestsInstrumentor().instrument()
    with app.app_context():
        SQLAlchemyInstrumentor().instrument(engine=db.engine)
    return True
