"""Observability helpers: logging setup and OpenTelemetry spans.

- configure_logging: root logging config shared by the CLI and the API process.
- span: context manager wrapping an OpenTelemetry span around a pipeline step.
  Without a configured tracer provider OpenTelemetry's API is a no-op; a console
  exporter is installed only when settings.OTEL_CONSOLE_EXPORT is true.
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

from docindex.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_otel_inited: bool = False


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def _init_otel() -> None:
    """Install a console-exporting tracer provider once, if enabled in settings."""
    global _otel_inited
    if _otel_inited:
        return
    _otel_inited = True
    if not settings.OTEL_CONSOLE_EXPORT:
        return
    tp = TracerProvider()
    tp.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tp)


def _attr(value: Any) -> Any:
    if isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """
    Lightweight context manager for an OpenTelemetry span.
    Exceptions raised inside are recorded on the span and re-raised.
    """
    _init_otel()
    tracer = trace.get_tracer("docindex")
    attrs = {k: _attr(v) for k, v in (attributes or {}).items() if v is not None}
    with tracer.start_as_current_span(name, attributes=attrs) as current:
        yield current
