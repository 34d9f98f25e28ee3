from __future__ import annotations

import pytest

from autobalancer.observability import (
    DCA_EXECUTIONS,
    METRICS,
    SCHEDULER_CYCLE_DURATION,
    SCHEDULER_CYCLES,
    MetricKind,
    NoopInstrumentation,
    configure_instrumentation,
    get_instrumentation,
    shutdown_instrumentation,
)


class _RecordingInstrumentation(NoopInstrumentation):
    def __init__(self) -> None:
        self.points: list[tuple[str, float, dict]] = []

    def _add(self, spec, value, attrs) -> None:
        self.points.append((spec.name, value, attrs))

    def _record(self, spec, value, attrs) -> None:
        self.points.append((spec.name, value, attrs))


def test_every_declared_metric_has_a_kind_and_description() -> None:
    for name, spec in METRICS.items():
        assert spec.name == name
        assert spec.description
        assert spec.kind in set(MetricKind)
    assert METRICS[SCHEDULER_CYCLE_DURATION].kind is MetricKind.HISTOGRAM
    assert METRICS[SCHEDULER_CYCLE_DURATION].unit == "s"


def test_typed_helpers_emit_fixed_series() -> None:
    instrumentation = _RecordingInstrumentation()

    instrumentation.dca_execution("success")
    instrumentation.rebalance_result("skipped")
    instrumentation.permission_rejected("owner mismatch")
    instrumentation.cycle_completed(has_errors=True, duration_seconds=0.25)
    instrumentation.analytics_dropped()

    assert instrumentation.points == [
        (DCA_EXECUTIONS, 1, {"status": "success"}),
        ("rebalance_results_total", 1, {"status": "skipped"}),
        ("permission_rejections_total", 1, {"reason": "owner mismatch"}),
        (SCHEDULER_CYCLES, 1, {"has_errors": True}),
        (SCHEDULER_CYCLE_DURATION, 0.25, {}),
        ("analytics_dropped_total", 1, {}),
    ]


@pytest.mark.parametrize(
    ("call", "message"),
    [
        (lambda i: i.counter("orders_total"), "undeclared metric"),
        (lambda i: i.histogram(DCA_EXECUTIONS, 1.0), "is a counter"),
        (lambda i: i.counter(DCA_EXECUTIONS, attrs={"plan_id": "p1"}), "does not accept"),
    ],
)
def test_raw_calls_reject_undeclared_series(call, message) -> None:
    with pytest.raises(ValueError, match=message):
        call(_RecordingInstrumentation())


def test_disabled_instrumentation_is_noop() -> None:
    instrumentation = configure_instrumentation(enabled=False)

    assert isinstance(instrumentation, NoopInstrumentation)
    assert get_instrumentation() is instrumentation
    with instrumentation.trace("dca_execute", attrs={"plan_id": "p1"}):
        instrumentation.dca_result("success")

    shutdown_instrumentation()
    assert isinstance(get_instrumentation(), NoopInstrumentation)
