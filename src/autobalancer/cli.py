from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from autobalancer.adapters.analytics_http import HttpAnalyticsSink
from autobalancer.adapters.simulated_ledger import SimulatedLedger
from autobalancer.config import Settings
from autobalancer.domain.amounts import parse_base_units
from autobalancer.domain.models import (
    AssetWeight,
    ExecutionType,
    Period,
    Permission,
    Plan,
    RebalancerConfig,
)
from autobalancer.domain.time_periods import SECONDS_PER_DAY, epoch_seconds
from autobalancer.errors import AutobalancerError, ConfigurationError
from autobalancer.logging_utils import setup_logging
from autobalancer.observability import configure_instrumentation, shutdown_instrumentation
from autobalancer.services.allowance_validator import AllowanceValidator
from autobalancer.services.analytics_outbox import AnalyticsOutbox
from autobalancer.services.dca_engine import DcaEngine
from autobalancer.services.rebalance_engine import RebalanceEngine
from autobalancer.services.scheduler import (
    STATS_STATE_KEY,
    CycleReport,
    HealthStatus,
    Scheduler,
    SchedulerState,
    evaluate_health,
)
from autobalancer.services.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    store: StateStore
    ledger: SimulatedLedger
    sink: HttpAnalyticsSink
    outbox: AnalyticsOutbox
    dca_engine: DcaEngine
    rebalance_engine: RebalanceEngine
    scheduler: Scheduler


def build_runtime(
    settings: Settings,
    *,
    store: StateStore | None = None,
    ledger: SimulatedLedger | None = None,
    sink: HttpAnalyticsSink | None = None,
) -> Runtime:
    store = store or StateStore(db_path=settings.state_db_path)
    if ledger is None:
        ledger = SimulatedLedger(prices_usd=settings.simulated_prices_usd)
        ledger.load_permissions(store.list_permissions())
    sink = sink or HttpAnalyticsSink(
        base_url=settings.analytics_api_url,
        api_key=settings.analytics_api_key_value(),
        timeout_seconds=settings.analytics_timeout_seconds,
    )
    outbox = AnalyticsOutbox(sink, maxsize=settings.analytics_queue_maxsize)
    validator = AllowanceValidator(
        ledger, permissions=store, ledger_check_enabled=settings.ledger_allowance_check
    )
    dca_engine = DcaEngine(
        store=store,
        validator=validator,
        ledger=ledger,
        quote=ledger,
        outbox=outbox,
        config=settings.dca_engine_config(),
    )
    rebalance_engine = RebalanceEngine(
        store=store,
        validator=validator,
        ledger=ledger,
        oracle=ledger,
        quote=ledger,
        outbox=outbox,
        config=settings.rebalance_engine_config(),
    )
    scheduler = Scheduler(
        dca_engine=dca_engine,
        rebalance_engine=rebalance_engine,
        store=store,
        outbox=outbox,
        config=settings.scheduler_config(),
    )
    return Runtime(
        settings=settings,
        store=store,
        ledger=ledger,
        sink=sink,
        outbox=outbox,
        dca_engine=dca_engine,
        rebalance_engine=rebalance_engine,
        scheduler=scheduler,
    )


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _load_balances(path: str | None) -> dict[str, dict[str, int]]:
    if not path:
        return {}
    file_path = Path(path)
    if not file_path.exists():
        return {}
    raw = json.loads(file_path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("balances file must contain an object of owner -> {asset: amount}")
    return {
        str(owner): {str(asset): parse_base_units(amount) for asset, amount in dict(assets).items()}
        for owner, assets in raw.items()
    }


def _save_balances(path: str | None, ledger: SimulatedLedger) -> None:
    if not path:
        return
    snapshot = {
        owner: {asset: str(amount) for asset, amount in assets.items()}
        for owner, assets in ledger.balances_snapshot().items()
    }
    Path(path).write_text(json.dumps(snapshot, indent=2, sort_keys=True), encoding="utf-8")


def _sync_permissions(runtime: Runtime) -> None:
    for permission in runtime.store.list_permissions():
        window = {
            "spent": runtime.ledger.spent(permission.permission_id),
            "reset_time": runtime.ledger.reset_time(permission.permission_id),
        }
        if window["spent"] > permission.allowance:
            continue
        if any(getattr(permission, key) != value for key, value in window.items()):
            runtime.store.upsert_permission(permission.model_copy(update=window))


def _report_summary(report: CycleReport) -> dict[str, Any]:
    return {
        "cycle_id": report.cycle_id,
        "has_errors": report.has_errors,
        "duration_seconds": round(report.duration_seconds, 3),
        "dca": report.dca.as_dict(),
        "rebalance": report.rebalance.as_dict(),
    }


async def _run_once(runtime: Runtime) -> int:
    try:
        report = await runtime.scheduler.execute_cycle()
    finally:
        await runtime.outbox.close(drain=True)
        await runtime.sink.close()
        runtime.store.flush()
    if report is None:
        return 1
    _print_json(_report_summary(report))
    return 1 if report.has_errors else 0


async def _run_loop(runtime: Runtime, *, max_cycles: int | None) -> int:
    done = asyncio.Event()
    completed = 0

    def _on_cycle(report: CycleReport) -> None:
        nonlocal completed
        completed += 1
        print(json.dumps(_report_summary(report), sort_keys=True, default=str), flush=True)
        if max_cycles is not None and completed >= max_cycles:
            done.set()

    runtime.scheduler.add_listener(_on_cycle)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, done.set)
    await runtime.scheduler.start()
    try:
        await done.wait()
    finally:
        await runtime.scheduler.stop()
        await runtime.sink.close()
    return 0


def run_cycle(
    settings: Settings,
    *,
    loop_enabled: bool = False,
    max_cycles: int | None = None,
    balances_file: str | None = None,
    runtime: Runtime | None = None,
) -> int:
    if max_cycles is not None and max_cycles < 1:
        print("max-cycles must be >= 1")
        return 2
    runtime = runtime or build_runtime(settings)
    runtime.ledger.load_balances(_load_balances(balances_file))
    try:
        if loop_enabled:
            return asyncio.run(_run_loop(runtime, max_cycles=max_cycles))
        return asyncio.run(_run_once(runtime))
    finally:
        _sync_permissions(runtime)
        _save_balances(balances_file, runtime.ledger)


def run_health(settings: Settings, *, now: float | None = None) -> int:
    store = StateStore(db_path=settings.state_db_path)
    raw = store.get_runtime_state(STATS_STATE_KEY)
    if raw is None:
        print("Scheduler: no run recorded")
        print(f"Health: {HealthStatus.UNHEALTHY}")
        return 1
    snapshot = json.loads(raw)
    report = evaluate_health(
        state=SchedulerState(snapshot.get("state", SchedulerState.STOPPED)),
        last_run_time=snapshot.get("last_run_time"),
        now=float(now if now is not None else epoch_seconds()),
        interval_seconds=float(snapshot.get("interval_minutes", 1)) * 60.0,
        total_errors=int(snapshot.get("total_errors", 0)),
        max_healthy_errors=settings.scheduler_max_healthy_errors,
    )
    print(f"State DB: OK ({store.db_path_abs})")
    print(f"Health: {report.status}")
    for key, value in sorted(report.details.items()):
        print(f"  {key}={value}")
    return 0 if report.status is HealthStatus.HEALTHY else 1


def run_stats(settings: Settings, *, owner: str | None = None) -> int:
    runtime = build_runtime(settings)
    raw = runtime.store.get_runtime_state(STATS_STATE_KEY)
    _print_json(
        {
            "scheduler": json.loads(raw) if raw else None,
            "dca": asdict(runtime.dca_engine.execution_stats(owner)),
            "rebalance": asdict(runtime.rebalance_engine.rebalance_stats(owner)),
        }
    )
    return 0


def run_logs(
    settings: Settings,
    *,
    owner: str | None = None,
    execution_type: str | None = None,
    limit: int = 100,
) -> int:
    store = StateStore(db_path=settings.state_db_path)
    logs = store.list_logs(
        owner=owner,
        execution_type=ExecutionType(execution_type) if execution_type else None,
        limit=limit,
    )
    for log in logs:
        print(log.model_dump_json())
    return 0


def run_emergency_stop(settings: Settings, *, reason: str) -> int:
    runtime = build_runtime(settings)
    counts = asyncio.run(runtime.scheduler.emergency_stop(reason))
    print(f"Emergency stop: deactivated {counts.plans} plans and {counts.configs} configs")
    return 0


def run_preview(settings: Settings, *, config_id: str, balances_file: str | None = None) -> int:
    runtime = build_runtime(settings)
    config = runtime.store.get_config(config_id)
    if config is None:
        print(f"rebalancer config not found: {config_id}")
        return 2
    runtime.ledger.load_balances(_load_balances(balances_file))
    plan = asyncio.run(runtime.rebalance_engine.preview(config))
    _print_json(
        {
            "config_id": config_id,
            "total_usd_value": plan.snapshot.total_usd_value,
            "max_deviation": plan.max_deviation,
            "threshold": config.rebalance_threshold_percent,
            "assets": [asdict(asset) for asset in plan.snapshot.assets],
            "recommendations": [asdict(rec) for rec in plan.recommendations],
            "no_matches": [asdict(item) for item in plan.no_matches],
        }
    )
    return 0


def _parse_weights(raw_weights: Sequence[str]) -> tuple[AssetWeight, ...]:
    weights: list[AssetWeight] = []
    for item in raw_weights:
        asset, sep, weight = item.partition("=")
        if not sep:
            raise ValueError(f"asset weights must look like ASSET=PERCENT: {item}")
        weights.append(
            AssetWeight(asset_id=asset.strip().upper(), target_weight_percent=float(weight))
        )
    return tuple(weights)


def _set_active(store: StateStore, args: argparse.Namespace, active: bool) -> int:
    if args.plan_id:
        plan = store.set_plan_active(args.plan_id, active)
        print(f"plan {plan.plan_id} active={plan.is_active}")
    else:
        config = store.set_config_active(args.config_id, active)
        print(f"config {config.config_id} active={config.is_active}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autobalancer")
    parser.add_argument("--env-file", default=None, help="Optional dotenv file to load")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one execution cycle")
    run_parser.add_argument("--loop", action="store_true", help="Run on the scheduler interval")
    run_parser.add_argument("--max-cycles", type=int, default=None)
    run_parser.add_argument(
        "--balances-file",
        default=None,
        help="JSON owner -> {asset: base units} used by the simulated ledger",
    )

    subparsers.add_parser("health", help="Report scheduler health from the state DB")

    stats_parser = subparsers.add_parser("stats", help="Print scheduler and engine statistics")
    stats_parser.add_argument("--owner", default=None)

    logs_parser = subparsers.add_parser("logs", help="Print recent execution logs")
    logs_parser.add_argument("--owner", default=None)
    logs_parser.add_argument("--type", choices=[str(t) for t in ExecutionType], default=None)
    logs_parser.add_argument("--limit", type=int, default=100)

    stop_parser = subparsers.add_parser(
        "emergency-stop", help="Deactivate every active plan and rebalancer config"
    )
    stop_parser.add_argument("--reason", required=True)

    plan_parser = subparsers.add_parser("plan-create", help="Create a DCA plan")
    plan_parser.add_argument("--owner", required=True)
    plan_parser.add_argument("--from-asset", required=True)
    plan_parser.add_argument("--to-asset", required=True)
    plan_parser.add_argument("--amount", type=int, required=True, help="Base units per period")
    plan_parser.add_argument("--period", choices=[str(p) for p in Period], default="daily")
    plan_parser.add_argument("--duration-days", type=int, required=True)
    plan_parser.add_argument("--permission-id", required=True)
    plan_parser.add_argument("--start-time", type=int, default=None)

    config_parser = subparsers.add_parser("config-create", help="Create a rebalancer config")
    config_parser.add_argument("--owner", required=True)
    config_parser.add_argument(
        "--asset", action="append", required=True, help="ASSET=PERCENT, repeat per asset"
    )
    config_parser.add_argument("--threshold", type=float, default=None)
    config_parser.add_argument("--permission-id", required=True)

    grant_parser = subparsers.add_parser("permission-grant", help="Mirror a ledger permission")
    grant_parser.add_argument("--permission-id", required=True)
    grant_parser.add_argument("--owner", required=True)
    grant_parser.add_argument("--delegatee", default=None)
    grant_parser.add_argument("--allowance", type=int, required=True)
    grant_parser.add_argument("--time-window-seconds", type=int, default=0)

    revoke_parser = subparsers.add_parser("permission-revoke", help="Revoke a permission")
    revoke_parser.add_argument("--permission-id", required=True)

    for name, help_text in (
        ("pause", "Pause a plan or config"),
        ("resume", "Resume a plan or config"),
        ("delete", "Logically delete a plan or config"),
    ):
        toggle_parser = subparsers.add_parser(name, help=help_text)
        target = toggle_parser.add_mutually_exclusive_group(required=True)
        target.add_argument("--plan-id")
        target.add_argument("--config-id")

    preview_parser = subparsers.add_parser(
        "preview", help="Show rebalance recommendations without trading"
    )
    preview_parser.add_argument("--config-id", required=True)
    preview_parser.add_argument("--balances-file", default=None)
    return parser


def _dispatch(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "run":
        return run_cycle(
            settings,
            loop_enabled=args.loop,
            max_cycles=args.max_cycles,
            balances_file=args.balances_file,
        )
    if args.command == "health":
        return run_health(settings)
    if args.command == "stats":
        return run_stats(settings, owner=args.owner)
    if args.command == "logs":
        return run_logs(settings, owner=args.owner, execution_type=args.type, limit=args.limit)
    if args.command == "emergency-stop":
        return run_emergency_stop(settings, reason=args.reason)
    if args.command == "preview":
        return run_preview(settings, config_id=args.config_id, balances_file=args.balances_file)

    store = StateStore(db_path=settings.state_db_path)
    if args.command == "plan-create":
        start_time = args.start_time if args.start_time is not None else epoch_seconds()
        plan = store.create_plan(
            Plan(
                owner=args.owner,
                asset_from=args.from_asset.upper(),
                asset_to=args.to_asset.upper(),
                amount_per_period=args.amount,
                period=Period(args.period),
                duration_seconds=args.duration_days * SECONDS_PER_DAY,
                start_time=start_time,
                permission_id=args.permission_id,
            )
        )
        print(plan.plan_id)
        return 0
    if args.command == "config-create":
        threshold = (
            args.threshold if args.threshold is not None else settings.rebalance_threshold_percent
        )
        config = store.create_config(
            RebalancerConfig(
                owner=args.owner,
                assets=_parse_weights(args.asset),
                rebalance_threshold_percent=threshold,
                permission_id=args.permission_id,
            )
        )
        print(config.config_id)
        return 0
    if args.command == "permission-grant":
        permission = store.upsert_permission(
            Permission(
                permission_id=args.permission_id,
                owner=args.owner,
                delegatee=args.delegatee or settings.agent_address,
                allowance=args.allowance,
                time_window_seconds=args.time_window_seconds,
                reset_time=(
                    epoch_seconds() + args.time_window_seconds
                    if args.time_window_seconds > 0
                    else 0
                ),
            )
        )
        print(permission.permission_id)
        return 0
    if args.command == "permission-revoke":
        store.revoke_permission(args.permission_id)
        return 0
    if args.command in {"pause", "delete"}:
        return _set_active(store, args, False)
    if args.command == "resume":
        return _set_active(store, args, True)
    raise AssertionError(f"unhandled command: {args.command}")


def _load_settings(env_file: str | None) -> Settings:
    try:
        if env_file:
            settings = Settings(_env_file=env_file)
        else:
            settings = Settings()
    except ValidationError as exc:
        raise ConfigurationError(f"invalid settings: {exc}") from exc
    if (
        settings.otel_enabled
        and settings.otel_metrics_exporter == "otlp"
        and not settings.otel_exporter_otlp_endpoint
    ):
        raise ConfigurationError("OTEL_EXPORTER_OTLP_ENDPOINT is required for the otlp exporter")
    return settings


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        settings = _load_settings(args.env_file)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        return 2
    setup_logging(settings.log_level)
    try:
        configure_instrumentation(
            enabled=settings.otel_enabled,
            metrics_exporter=settings.otel_metrics_exporter,
            otlp_endpoint=settings.otel_exporter_otlp_endpoint,
        )
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        return 2
    logger.info(
        "runtime_prepared",
        extra={"extra": {"command": args.command, "db_path": settings.state_db_path}},
    )
    try:
        return _dispatch(args, settings)
    except (AutobalancerError, ValidationError, ValueError) as exc:
        logger.error(
            "command_failed",
            extra={"extra": {"command": args.command, "error_type": type(exc).__name__}},
        )
        print(f"Error: {exc}")
        return 2
    finally:
        shutdown_instrumentation()


if __name__ == "__main__":
    sys.exit(main())
