"""
Distributed Tracing with OpenTelemetry.

Spans cover one purchase run (iap_process) and every vendor round trip
(iap_vendor_call). Vendor-call spans also feed the Prometheus call metrics,
so a call is timed once for both.
"""

import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from iap_engine.config import settings
from iap_engine.observability.metrics import metrics

TRACER_NAME = "iap_engine"


def setup_tracing() -> None:
    """Install an OTLP-exporting tracer provider when TRACING_ENABLED is set."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.service_version,
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def get_tracer(name: str = TRACER_NAME) -> Tracer:
    return trace.get_tracer(name)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """Set attributes on a span; None values are skipped, non-primitives stringified."""
    for key, value in attributes.items():
        if value is None:
            continue
        if not isinstance(value, (str, int, float, bool)):
            value = str(value)
        span.set_attribute(key, value)


def set_span_error(span: Span, error: BaseException) -> None:
    span.set_status(Status(StatusCode.ERROR, str(error)))
    span.record_exception(error)


class trace_operation:
    """
    Context manager for a traced engine operation.

    Usage:
        with trace_operation("iap_process", vendor="google", user_id=user_id) as span:
            ...
            add_span_attributes(span, stage="applied")
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = attributes
        self.span: Span | None = None
        self.tracer = get_tracer(TRACER_NAME)

    def __enter__(self) -> Span:
        self.span = self.tracer.start_span(self.operation_name)
        add_span_attributes(self.span, **self.attributes)
        return self.span

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        if self.span:
            if exc_val:
                set_span_error(self.span, exc_val)
            self.span.end()


@contextmanager
def vendor_call_span(vendor: str, operation: str, **attributes: Any) -> Iterator[Span]:
    """
    Trace and time one vendor API call.

    The call counts as failed when the block raises. Metrics are recorded
    whether or not tracing is enabled.

    Usage:
        with vendor_call_span("google", "products.get"):
            result = await asyncio.to_thread(request.execute)
    """
    started = time.perf_counter()
    success = False
    with trace_operation("iap_vendor_call", vendor=vendor, operation=operation, **attributes) as span:
        try:
            yield span
            success = True
        finally:
            metrics.record_vendor_call(vendor, operation, success, time.perf_counter() - started)
