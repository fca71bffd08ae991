"""OpenTelemetry tracing integration for llmchat.

Provides request/turn tracing with support for stdout, OTLP, and noop exporters.
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import NoOpTracer, Span, Tracer

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class TelemetryConfig:
    """Configuration for the llmchat tracing subsystem."""

    service_name: str = "llmchat"
    enabled: bool = True
    exporter: str = "none"  # "stdout" | "otlp" | "none"
    otlp_endpoint: str = "http://localhost:4317"


# ---------------------------------------------------------------------------
# ChatTracer
# ---------------------------------------------------------------------------


class ChatTracer:
    """Central tracer for llmchat.

    Wraps OpenTelemetry ``TracerProvider`` setup and provides helpers for
    creating spans and recording events.
    """

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self._config = config or TelemetryConfig()
        self._provider: TracerProvider | None = None
        self._tracer: Tracer = NoOpTracer()

    @property
    def config(self) -> TelemetryConfig:
        return self._config

    # -- lifecycle -----------------------------------------------------------

    def init(self) -> None:
        """Set up the OTel TracerProvider based on config."""
        cfg = self._config

        if not cfg.enabled or cfg.exporter == "none":
            return

        resource = Resource.create({"service.name": cfg.service_name})

        if cfg.exporter == "stdout":
            from opentelemetry.sdk.trace.export import (
                ConsoleSpanExporter,
                SimpleSpanProcessor,
            )

            provider = TracerProvider(resource=resource)
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
            self._provider = provider
            self._tracer = provider.get_tracer(cfg.service_name)

        elif cfg.exporter == "otlp":
            try:
                from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                    OTLPSpanExporter,
                )
                from opentelemetry.sdk.trace.export import SimpleSpanProcessor
            except ImportError:  # pragma: no cover
                # OTLP exporter is an optional extra; keep the noop tracer.
                return

            exporter = OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True)
            provider = TracerProvider(resource=resource)
            provider.add_span_processor(SimpleSpanProcessor(exporter))
            self._provider = provider
            self._tracer = provider.get_tracer(cfg.service_name)

    # -- span helpers --------------------------------------------------------

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Span, None, None]:
        """Create a span as a context manager.

        Usage::

            with tracer.span("dispatch/attempt", {"attempt": 1}) as s:
                ...
        """
        with self._tracer.start_as_current_span(name) as s:
            if attributes:
                for k, v in attributes.items():
                    s.set_attribute(k, v)
            yield s

    def record_event(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """Record a named event on the current active span (if any)."""
        current_span = trace.get_current_span()
        if current_span.is_recording():
            current_span.add_event(name, dict(attributes) if attributes else {})

    def shutdown(self) -> None:
        """Flush pending spans and shut down the provider.

        Safe to call multiple times.
        """
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None


# ---------------------------------------------------------------------------
# Module-level default (lazily initialised)
# ---------------------------------------------------------------------------

_DEFAULT_TRACER: ChatTracer | None = None


def get_default_tracer() -> ChatTracer:
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is None:
        _DEFAULT_TRACER = ChatTracer()
    return _DEFAULT_TRACER


def set_default_tracer(tracer: ChatTracer) -> None:
    global _DEFAULT_TRACER  # noqa: PLW0603
    _DEFAULT_TRACER = tracer


# ---------------------------------------------------------------------------
# Convenience context managers
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def trace_chat_turn(message_count: int) -> Generator[Span, None, None]:
    """Trace one user turn."""
    with get_default_tracer().span("chat/turn", {"chat.messages": message_count}) as s:
        yield s


@contextlib.contextmanager
def trace_dispatch_attempt(attempt: int, model: str) -> Generator[Span, None, None]:
    """Trace one HTTP attempt made by the dispatcher."""
    attrs = {"dispatch.attempt": attempt, "llm.model": model}
    with get_default_tracer().span("dispatch/attempt", attrs) as s:
        yield s


@contextlib.contextmanager
def trace_stream_decode() -> Generator[Span, None, None]:
    """Trace decoding of one response stream."""
    with get_default_tracer().span("stream/decode") as s:
        yield s


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def record_retry(attempt: int, delay: float, cause: BaseException | None) -> None:
    """Attach a failed attempt and its backoff to the current turn span."""
    get_default_tracer().record_event(
        "dispatch/retry",
        {
            "dispatch.attempt": attempt,
            "dispatch.backoff_s": round(delay, 3),
            "error.type": type(cause).__name__ if cause is not None else "",
            "error.message": str(cause) if cause is not None else "",
        },
    )


def record_stream_stats(fragments: int, malformed: int, *, completed: bool) -> None:
    """Attach decode counters to the current ``stream/decode`` span."""
    get_default_tracer().record_event(
        "stream/decoded",
        {
            "stream.fragments": fragments,
            "stream.malformed_records": malformed,
            "stream.completed": completed,
        },
    )
