"""OpenTelemetry spans for pipeline stages and RAG phases.

- configure_tracing: install a tracer provider once; a console exporter is
  attached only when OTEL_CONSOLE_EXPORT is enabled, otherwise spans go to
  whatever exporter the deployment configures.
- span: context manager opening a span with optional attributes and recording
  exceptions raised inside it.
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span

from sitekb.config import settings

_otel_inited: bool = False


def configure_tracing(console_export: Optional[bool] = None) -> None:
    """Set the global tracer provider once.

    Args:
        console_export: Attach a console exporter; defaults to settings.OTEL_CONSOLE_EXPORT.
    """
    global _otel_inited
    if _otel_inited:
        return
    tp = TracerProvider()
    if settings.OTEL_CONSOLE_EXPORT if console_export is None else console_export:
        tp.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tp)
    _otel_inited = True


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Span]:
    """Run the enclosed block inside an OpenTelemetry span.

    Exceptions are recorded on the span and re-raised.
    """
    tracer = trace.get_tracer("sitekb")
    with tracer.start_as_current_span(name, attributes=attributes or {}) as current:
        yield current
