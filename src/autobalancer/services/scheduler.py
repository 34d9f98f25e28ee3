from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Protocol
from uuid import uuid4

from autobalancer.domain.results import DcaResult, EngineTally, RebalanceResult
from autobalancer.logging_context import with_cycle_context
from autobalancer.observability import Instrumentation, get_instrumentation
from autobalancer.ports import DeactivationCounts, StorePort
from autobalancer.services.analytics_outbox import AnalyticsOutbox

logger = logging.getLogger(__name__)

STATS_STATE_KEY = "scheduler_stats"
_MAX_BACKOFF_EXPONENT = 32


class SchedulerState(StrEnum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class SchedulerConfig:
    interval_minutes: int = 1
    warmup_seconds: float = 5.0
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 60_000
    max_healthy_errors: int = 10

    def __post_init__(self) -> None:
        if self.interval_minutes < 1:
            raise ValueError("interval_minutes must be >= 1")
        if self.warmup_seconds < 0:
            raise ValueError("warmup_seconds must be >= 0")
        if self.backoff_base_ms <= 0 or self.backoff_cap_ms <= 0:
            raise ValueError("backoff values must be > 0")

    @property
    def interval_seconds(self) -> float:
        return float(self.interval_minutes * 60)


@dataclass(frozen=True)
class CycleReport:
    cycle_id: str
    started_at: float
    duration_seconds: float
    dca: EngineTally
    rebalance: EngineTally
    has_errors: bool
    dca_results: tuple[DcaResult, ...] = ()
    rebalance_results: tuple[RebalanceResult, ...] = ()


@dataclass(frozen=True)
class SchedulerStats:
    state: SchedulerState
    total_runs: int
    total_dca_executions: int
    total_rebalance_executions: int
    total_errors: int
    average_run_duration_seconds: float
    last_run_time: float | None
    started_at: float | None
    uptime_seconds: float
    interval_minutes: int

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["state"] = str(self.state)
        return payload


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    details: dict[str, Any] = field(default_factory=dict)


class CycleEngine(Protocol):
    async def process_all(self) -> list[Any]: ...


CycleListener = Callable[[CycleReport], None]


def compute_backoff_ms(error_count: int, *, base_ms: int = 1000, cap_ms: int = 60_000) -> int:
    exponent = min(max(0, error_count), _MAX_BACKOFF_EXPONENT)
    return min(base_ms * 2**exponent, cap_ms)


def evaluate_health(
    *,
    state: SchedulerState,
    last_run_time: float | None,
    now: float,
    interval_seconds: float,
    total_errors: int,
    max_healthy_errors: int = 10,
) -> HealthReport:
    last_run_age = max(0.0, now - last_run_time) if last_run_time else 0.0
    details: dict[str, Any] = {
        "state": str(state),
        "last_run_age_seconds": round(last_run_age, 3),
        "total_errors": total_errors,
        "interval_seconds": interval_seconds,
    }
    if state is SchedulerState.STOPPED:
        return HealthReport(status=HealthStatus.UNHEALTHY, details=details)
    if last_run_age <= 2 * interval_seconds and total_errors <= max_healthy_errors:
        return HealthReport(status=HealthStatus.HEALTHY, details=details)
    return HealthReport(status=HealthStatus.DEGRADED, details=details)


class Scheduler:
    """Fixed-interval driver running the DCA engine then the rebalance engine.

    Only one cycle runs at a time; a tick or ``force_run`` that arrives while a
    cycle is in flight is skipped, not queued. An exception escaping a cycle
    pauses the trigger for an exponential backoff before it resumes.
    """

    def __init__(
        self,
        *,
        dca_engine: CycleEngine,
        rebalance_engine: CycleEngine,
        store: StorePort,
        outbox: AnalyticsOutbox | None = None,
        config: SchedulerConfig | None = None,
        clock: Callable[[], float] = time.time,
        instrumentation: Instrumentation | None = None,
    ) -> None:
        self.dca_engine = dca_engine
        self.rebalance_engine = rebalance_engine
        self.store = store
        self.outbox = outbox
        self.config = config or SchedulerConfig()
        self.clock = clock
        self.instrumentation = instrumentation or get_instrumentation()
        self._state = SchedulerState.STOPPED
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._cycle_in_flight = False
        self._cycle_done: asyncio.Event | None = None
        self._listeners: list[CycleListener] = []
        self.run_id: str | None = None
        self._started_at: float | None = None
        self._total_runs = 0
        self._total_dca_executions = 0
        self._total_rebalance_executions = 0
        self._total_errors = 0
        self._average_duration = 0.0
        self._last_run_time: float | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is not SchedulerState.STOPPED

    def add_listener(self, listener: CycleListener) -> None:
        self._listeners.append(listener)

    async def start(self) -> bool:
        if self.is_running:
            logger.warning("scheduler_already_running", extra={"extra": {"run_id": self.run_id}})
            return False
        self._stop_event = asyncio.Event()
        self._cycle_done = asyncio.Event()
        self._cycle_done.set()
        self.run_id = uuid4().hex[:12]
        self._started_at = self.clock()
        if self.outbox is not None:
            self.outbox.start()
        self._state = SchedulerState.RUNNING
        self._task = asyncio.get_running_loop().create_task(
            self._run_loop(), name="scheduler-trigger"
        )
        logger.info(
            "scheduler_started",
            extra={
                "extra": {
                    "run_id": self.run_id,
                    "interval_minutes": self.config.interval_minutes,
                    "warmup_seconds": self.config.warmup_seconds,
                }
            },
        )
        return True

    async def stop(self) -> bool:
        if not self.is_running:
            logger.warning("scheduler_not_running")
            return False
        if self._stop_event is not None:
            self._stop_event.set()
        task = self._task
        self._task = None
        called_from_trigger = task is not None and task is asyncio.current_task()
        if task is not None and not called_from_trigger:
            await task
        if self._cycle_in_flight and self._cycle_done is not None and not called_from_trigger:
            await self._cycle_done.wait()
        self._state = SchedulerState.STOPPED
        if self.outbox is not None:
            await self.outbox.close(drain=True)
        self.store.flush()
        self._persist_stats()
        logger.info("scheduler_stopped", extra={"extra": self.stats().as_dict()})
        return True

    async def force_run(self) -> CycleReport | None:
        if self._state is not SchedulerState.RUNNING:
            logger.warning(
                "scheduler_force_run_refused", extra={"extra": {"state": str(self._state)}}
            )
            return None
        try:
            return await self.execute_cycle()
        except Exception:  # noqa: BLE001
            self._total_errors += 1
            logger.exception(
                "scheduler_force_run_critical_error",
                extra={"extra": {"total_errors": self._total_errors}},
            )
            return None

    async def emergency_stop(self, reason: str) -> DeactivationCounts:
        logger.critical("scheduler_emergency_stop", extra={"extra": {"reason": reason}})
        if self.is_running:
            await self.stop()
        counts = self.store.deactivate_all()
        logger.critical(
            "scheduler_emergency_stop_completed",
            extra={
                "extra": {"reason": reason, "plans": counts.plans, "configs": counts.configs}
            },
        )
        return counts

    async def reconfigure(self, config: SchedulerConfig) -> None:
        was_running = self.is_running
        if was_running:
            await self.stop()
        previous = self.config
        self.config = config
        logger.info(
            "scheduler_reconfigured",
            extra={
                "extra": {
                    "previous_interval_minutes": previous.interval_minutes,
                    "interval_minutes": config.interval_minutes,
                }
            },
        )
        if was_running:
            await self.start()

    def health_check(self) -> HealthReport:
        return evaluate_health(
            state=self._state,
            last_run_time=self._last_run_time,
            now=self.clock(),
            interval_seconds=self.config.interval_seconds,
            total_errors=self._total_errors,
            max_healthy_errors=self.config.max_healthy_errors,
        )

    def stats(self) -> SchedulerStats:
        uptime = 0.0
        if self.is_running and self._started_at is not None:
            uptime = max(0.0, self.clock() - self._started_at)
        return SchedulerStats(
            state=self._state,
            total_runs=self._total_runs,
            total_dca_executions=self._total_dca_executions,
            total_rebalance_executions=self._total_rebalance_executions,
            total_errors=self._total_errors,
            average_run_duration_seconds=self._average_duration,
            last_run_time=self._last_run_time,
            started_at=self._started_at,
            uptime_seconds=uptime,
            interval_minutes=self.config.interval_minutes,
        )

    async def execute_cycle(self) -> CycleReport | None:
        if self._cycle_in_flight:
            self.instrumentation.cycle_skipped()
            logger.warning("scheduler_cycle_overlap_skipped")
            return None
        self._cycle_in_flight = True
        if self._cycle_done is not None:
            self._cycle_done.clear()
        try:
            return await self._run_cycle()
        finally:
            self._cycle_in_flight = False
            if self._cycle_done is not None:
                self._cycle_done.set()

    async def _run_cycle(self) -> CycleReport:
        cycle_id = uuid4().hex[:12]
        started = self.clock()
        with with_cycle_context(cycle_id, run_id=self.run_id):
            with self.instrumentation.trace("scheduler_cycle", attrs={"cycle_id": cycle_id}):
                has_errors = False
                dca_results: list[DcaResult] = []
                rebalance_results: list[RebalanceResult] = []
                try:
                    dca_results = await self.dca_engine.process_all()
                except Exception:  # noqa: BLE001
                    has_errors = True
                    logger.exception("scheduler_dca_engine_error")
                try:
                    rebalance_results = await self.rebalance_engine.process_all()
                except Exception:  # noqa: BLE001
                    has_errors = True
                    logger.exception("scheduler_rebalance_engine_error")

            report = CycleReport(
                cycle_id=cycle_id,
                started_at=started,
                duration_seconds=max(0.0, self.clock() - started),
                dca=EngineTally.from_results(dca_results),
                rebalance=EngineTally.from_results(rebalance_results),
                has_errors=has_errors,
                dca_results=tuple(dca_results),
                rebalance_results=tuple(rebalance_results),
            )
            self._record_cycle(report)
            logger.info(
                "scheduler_cycle_completed",
                extra={
                    "extra": {
                        "duration_seconds": round(report.duration_seconds, 3),
                        "has_errors": has_errors,
                        "dca": report.dca.as_dict(),
                        "rebalance": report.rebalance.as_dict(),
                    }
                },
            )
            for listener in list(self._listeners):
                listener(report)
            self._persist_stats(raise_errors=True)
        return report

    def _record_cycle(self, report: CycleReport) -> None:
        self._total_runs += 1
        self._last_run_time = report.started_at
        self._total_dca_executions += report.dca.executed
        self._total_rebalance_executions += report.rebalance.executed
        if report.has_errors:
            self._total_errors += 1
        self._average_duration += (
            report.duration_seconds - self._average_duration
        ) / self._total_runs
        self.instrumentation.cycle_completed(
            has_errors=report.has_errors, duration_seconds=report.duration_seconds
        )

    def _persist_stats(self, *, raise_errors: bool = False) -> None:
        try:
            self.store.set_runtime_state(STATS_STATE_KEY, json.dumps(self.stats().as_dict()))
        except Exception:  # noqa: BLE001
            if raise_errors:
                raise
            logger.exception("scheduler_stats_persist_failed")

    async def _run_loop(self) -> None:
        if not await self._wait(self.config.warmup_seconds):
            return
        loop = asyncio.get_running_loop()
        while True:
            tick_started = loop.time()
            try:
                await self.execute_cycle()
            except Exception:  # noqa: BLE001
                if not await self._backoff():
                    return
                tick_started = loop.time()
            remaining = self.config.interval_seconds - (loop.time() - tick_started)
            if not await self._wait(max(0.0, remaining)):
                return

    async def _backoff(self) -> bool:
        self._total_errors += 1
        delay_ms = compute_backoff_ms(
            self._total_errors,
            base_ms=self.config.backoff_base_ms,
            cap_ms=self.config.backoff_cap_ms,
        )
        self._state = SchedulerState.PAUSED
        self.instrumentation.critical_error()
        logger.exception(
            "scheduler_critical_error_backoff",
            extra={"extra": {"total_errors": self._total_errors, "backoff_ms": delay_ms}},
        )
        if not await self._wait(delay_ms / 1000.0):
            return False
        self._state = SchedulerState.RUNNING
        logger.info("scheduler_resumed", extra={"extra": {"total_errors": self._total_errors}})
        return True

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; False means a stop was requested."""
        stop_event = self._stop_event
        if stop_event is None or stop_event.is_set():
            return False
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except TimeoutError:
            return True
        return False
