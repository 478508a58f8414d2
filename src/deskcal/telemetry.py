"""OpenTelemetry span helpers for backend calls.

deskcal depends on the OTel API only. Without an SDK provider installed by the
host application every span is a no-op.
"""

from __future__ import annotations

from opentelemetry import trace

_TRACER_NAME = "deskcal"


def get_tracer() -> trace.Tracer:
    return trace.get_tracer(_TRACER_NAME)


class backend_span:
    """Context manager wrapping one backend phase in a span.

    The span is named ``deskcal.<phase>`` and carries ``deskcal.backend``.
    Exceptions are recorded on the span and the status set to ERROR before
    the exception propagates.
    """

    def __init__(self, phase: str, *, backend: str) -> None:
        self._phase = phase
        self._backend = backend
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        self._span = get_tracer().start_span(f"deskcal.{self._phase}")
        self._span.set_attribute("deskcal.backend", self._backend)
        self._span.set_attribute("deskcal.phase", self._phase)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)
