"""Metric vocabulary and tracing for the execution engine.

Every series the engine emits is declared in ``METRICS`` with its instrument
kind and the attribute keys it accepts. Services record through the typed
helpers on :class:`Instrumentation`; the raw ``counter``/``histogram`` calls
reject undeclared names and unexpected attributes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from autobalancer.errors import ConfigurationError

logger = logging.getLogger(__name__)

SERVICE_NAME = "autobalancer"


class MetricKind(StrEnum):
    COUNTER = "counter"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class MetricSpec:
    name: str
    kind: MetricKind
    description: str
    attrs: frozenset[str] = frozenset()
    unit: str = "1"


DCA_EXECUTIONS = "dca_executions_total"
DCA_RESULTS = "dca_results_total"
REBALANCE_EXECUTIONS = "rebalance_executions_total"
REBALANCE_RESULTS = "rebalance_results_total"
PERMISSION_REJECTIONS = "permission_rejections_total"
SCHEDULER_CYCLES = "scheduler_cycles_total"
SCHEDULER_CYCLES_SKIPPED = "scheduler_cycles_skipped_total"
SCHEDULER_CRITICAL_ERRORS = "scheduler_critical_errors_total"
SCHEDULER_CYCLE_DURATION = "scheduler_cycle_duration_seconds"
ANALYTICS_DROPPED = "analytics_dropped_total"
ANALYTICS_FAILURES = "analytics_failures_total"

METRICS: Mapping[str, MetricSpec] = {
    spec.name: spec
    for spec in (
        MetricSpec(
            DCA_EXECUTIONS,
            MetricKind.COUNTER,
            "DCA trades submitted to the ledger",
            frozenset({"status"}),
        ),
        MetricSpec(
            DCA_RESULTS, MetricKind.COUNTER, "DCA plan outcomes per pass", frozenset({"status"})
        ),
        MetricSpec(
            REBALANCE_EXECUTIONS,
            MetricKind.COUNTER,
            "Rebalance batches submitted to the ledger",
            frozenset({"status"}),
        ),
        MetricSpec(
            REBALANCE_RESULTS,
            MetricKind.COUNTER,
            "Rebalancer config outcomes per pass",
            frozenset({"status"}),
        ),
        MetricSpec(
            PERMISSION_REJECTIONS,
            MetricKind.COUNTER,
            "Permission checks that failed",
            frozenset({"reason"}),
        ),
        MetricSpec(
            SCHEDULER_CYCLES,
            MetricKind.COUNTER,
            "Completed scheduler cycles",
            frozenset({"has_errors"}),
        ),
        MetricSpec(
            SCHEDULER_CYCLES_SKIPPED,
            MetricKind.COUNTER,
            "Cycles skipped because one was in flight",
        ),
        MetricSpec(
            SCHEDULER_CRITICAL_ERRORS,
            MetricKind.COUNTER,
            "Cycles that escaped with an error and triggered backoff",
        ),
        MetricSpec(
            SCHEDULER_CYCLE_DURATION,
            MetricKind.HISTOGRAM,
            "Wall time of one scheduler cycle",
            unit="s",
        ),
        MetricSpec(ANALYTICS_DROPPED, MetricKind.COUNTER, "Execution logs dropped on a full queue"),
        MetricSpec(ANALYTICS_FAILURES, MetricKind.COUNTER, "Analytics deliveries that raised"),
    )
}


def resolve_metric(name: str, kind: MetricKind, attrs: Mapping[str, Any] | None) -> MetricSpec:
    spec = METRICS.get(name)
    if spec is None:
        raise ValueError(f"undeclared metric: {name}")
    if spec.kind is not kind:
        raise ValueError(f"metric {name} is a {spec.kind}, not a {kind}")
    unexpected = set(attrs or {}) - spec.attrs
    if unexpected:
        raise ValueError(f"metric {name} does not accept attributes: {sorted(unexpected)}")
    return spec


class Instrumentation:
    """Disabled instrumentation. Validates names, exports nothing."""

    def counter(self, name: str, value: int = 1, *, attrs: dict[str, Any] | None = None) -> None:
        self._add(resolve_metric(name, MetricKind.COUNTER, attrs), value, attrs or {})

    def histogram(self, name: str, value: float, *, attrs: dict[str, Any] | None = None) -> None:
        self._record(resolve_metric(name, MetricKind.HISTOGRAM, attrs), value, attrs or {})

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        del name, attrs
        yield

    def shutdown(self) -> None:
        return None

    def _add(self, spec: MetricSpec, value: int, attrs: dict[str, Any]) -> None:
        return None

    def _record(self, spec: MetricSpec, value: float, attrs: dict[str, Any]) -> None:
        return None

    # engine vocabulary

    def dca_execution(self, status: str) -> None:
        self.counter(DCA_EXECUTIONS, attrs={"status": status})

    def dca_result(self, status: str) -> None:
        self.counter(DCA_RESULTS, attrs={"status": status})

    def rebalance_execution(self, status: str) -> None:
        self.counter(REBALANCE_EXECUTIONS, attrs={"status": status})

    def rebalance_result(self, status: str) -> None:
        self.counter(REBALANCE_RESULTS, attrs={"status": status})

    def permission_rejected(self, reason: str) -> None:
        self.counter(PERMISSION_REJECTIONS, attrs={"reason": reason})

    def cycle_completed(self, *, has_errors: bool, duration_seconds: float) -> None:
        self.counter(SCHEDULER_CYCLES, attrs={"has_errors": has_errors})
        self.histogram(SCHEDULER_CYCLE_DURATION, duration_seconds)

    def cycle_skipped(self) -> None:
        self.counter(SCHEDULER_CYCLES_SKIPPED)

    def critical_error(self) -> None:
        self.counter(SCHEDULER_CRITICAL_ERRORS)

    def analytics_dropped(self) -> None:
        self.counter(ANALYTICS_DROPPED)

    def analytics_failed(self) -> None:
        self.counter(ANALYTICS_FAILURES)


class NoopInstrumentation(Instrumentation):
    pass


class OTelInstrumentation(Instrumentation):
    """Exports the declared metrics and spans over OTLP.

    Instruments are created once from ``METRICS`` so the exported set never
    grows at runtime.
    """

    def __init__(self, *, metrics_exporter: str, otlp_endpoint: str | None) -> None:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        endpoint_kwargs = {"endpoint": otlp_endpoint} if otlp_endpoint else {}
        resource = Resource.create({"service.name": SERVICE_NAME})

        self._tracer_provider = TracerProvider(resource=resource)
        self._tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(**endpoint_kwargs))
        )
        trace.set_tracer_provider(self._tracer_provider)
        self._tracer = trace.get_tracer(SERVICE_NAME)

        readers = []
        if metrics_exporter == "otlp":
            readers.append(PeriodicExportingMetricReader(OTLPMetricExporter(**endpoint_kwargs)))
        self._meter_provider = MeterProvider(resource=resource, metric_readers=readers)
        metrics.set_meter_provider(self._meter_provider)
        meter = metrics.get_meter(SERVICE_NAME)

        self._instruments: dict[str, Any] = {}
        for spec in METRICS.values():
            factory = (
                meter.create_counter if spec.kind is MetricKind.COUNTER else meter.create_histogram
            )
            self._instruments[spec.name] = factory(
                spec.name, unit=spec.unit, description=spec.description
            )

    def _add(self, spec: MetricSpec, value: int, attrs: dict[str, Any]) -> None:
        self._instruments[spec.name].add(value, attrs)

    def _record(self, spec: MetricSpec, value: float, attrs: dict[str, Any]) -> None:
        self._instruments[spec.name].record(value, attrs)

    @contextmanager
    def trace(self, name: str, *, attrs: dict[str, Any] | None = None) -> Iterator[None]:
        with self._tracer.start_as_current_span(name, attributes=attrs or None):
            yield

    def shutdown(self) -> None:
        self._meter_provider.force_flush()
        self._tracer_provider.force_flush()
        self._meter_provider.shutdown()
        self._tracer_provider.shutdown()


_current: Instrumentation = NoopInstrumentation()


def configure_instrumentation(
    *,
    enabled: bool,
    metrics_exporter: str = "none",
    otlp_endpoint: str | None = None,
) -> Instrumentation:
    """Install the process-wide instrumentation used by services built afterwards."""
    global _current
    if not enabled:
        _current = NoopInstrumentation()
        return _current
    if isinstance(_current, OTelInstrumentation):
        return _current
    try:
        _current = OTelInstrumentation(
            metrics_exporter=metrics_exporter, otlp_endpoint=otlp_endpoint
        )
    except ImportError as exc:
        raise ConfigurationError(
            "OTEL_ENABLED requires the otel extra: pip install 'autobalancer[otel]'"
        ) from exc
    logger.info(
        "instrumentation_configured",
        extra={"extra": {"metrics_exporter": metrics_exporter, "metrics": len(METRICS)}},
    )
    return _current


def get_instrumentation() -> Instrumentation:
    return _current


def shutdown_instrumentation() -> None:
    global _current
    _current.shutdown()
    _current = NoopInstrumentation()
