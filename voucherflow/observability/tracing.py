"""
Distributed Tracing with OpenTelemetry.

Spans cover HTTP requests, database statements, processor calls and the
settlement operations (authorize, webhook apply, redeem).

Business rejections such as an out-of-stock deal or an already redeemed
voucher are expected outcomes: their span carries the error code but keeps
an unset status. Only internal failures mark a span as errored.
"""

from contextlib import AbstractContextManager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from voucherflow.config import settings
from voucherflow.exceptions import SettlementError
from voucherflow.models.api import ErrorCode

# Probes are scraped constantly and would drown the request traces
UNTRACED_URLS = "health,metrics"


def setup_tracing() -> None:
    """Install the global tracer provider with OTLP export."""
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    if not settings.tracing_enabled:
        return

    FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_URLS)


def instrument_sqlalchemy(engine: Any) -> None:
    """Instrument an async SQLAlchemy engine for automatic query tracing."""
    if not settings.tracing_enabled:
        return

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer(name: str) -> Tracer:
    return trace.get_tracer(name)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """
    Add attributes to a span, stringifying non-primitive values.

    Usage:
        add_span_attributes(span, purchase_id=purchase_id, amount_minor=999)
    """
    for key, value in attributes.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            span.set_attribute(key, value)
        else:
            span.set_attribute(key, str(value))


def record_span_error(span: Span, error: BaseException) -> None:
    """
    Record an exception on a span.

    Settlement errors are tagged with their code; the span is marked as
    errored only for internal failures and non-settlement exceptions.
    """
    if isinstance(error, SettlementError):
        span.set_attribute("settlement.error_code", error.code.value)
        if error.code != ErrorCode.INTERNAL:
            span.add_event("settlement_rejected", {"error.type": type(error).__name__})
            return

    span.set_status(Status(StatusCode.ERROR, str(error)))
    span.record_exception(error)


class trace_operation:
    """
    Context manager for a traced settlement operation.

    Usage:
        with trace_operation("voucher_redeem", purchase_id=purchase_id) as span:
            span.set_attribute("redeemer_id", redeemer_id)
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = attributes
        self.tracer = get_tracer("voucherflow.operations")
        self._span_cm: AbstractContextManager[Span] | None = None
        self.span: Span | None = None

    def __enter__(self) -> Span:
        self._span_cm = self.tracer.start_as_current_span(
            self.operation_name, record_exception=False, set_status_on_exception=False
        )
        self.span = self._span_cm.__enter__()
        add_span_attributes(self.span, **self.attributes)
        return self.span

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self.span is not None and exc_val is not None:
            record_span_error(self.span, exc_val)
        if self._span_cm is not None:
            self._span_cm.__exit__(exc_type, exc_val, exc_tb)
