from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from autobalancer.domain.amounts import min_output_with_slippage
from autobalancer.domain.models import (
    ExecutionLog,
    ExecutionStatus,
    ExecutionType,
    RebalancerConfig,
)
from autobalancer.domain.results import RebalanceResult, Recommendation, ResultStatus, SkipReason
from autobalancer.domain.time_periods import cooldown_elapsed, epoch_seconds
from autobalancer.errors import InvalidConfigError
from autobalancer.logging_context import with_item_context
from autobalancer.observability import Instrumentation, get_instrumentation
from autobalancer.ports import (
    IdentityQuote,
    LedgerExecutionPort,
    OraclePort,
    QuotePort,
    RebalanceReceipt,
    StorePort,
)
from autobalancer.services.allowance_validator import AllowanceValidator
from autobalancer.services.analytics_outbox import AnalyticsOutbox
from autobalancer.services.rebalance_planner import (
    DEFAULT_NOISE_FLOOR_PERCENT,
    RebalancePlan,
    RebalancePlanner,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RebalanceEngineConfig:
    slippage_bps: int = 500
    inter_item_delay_seconds: float = 2.0
    min_interval_seconds: int = 3600
    noise_floor_percent: float = DEFAULT_NOISE_FLOOR_PERCENT
    # Exact trade sizes are unknown before the snapshot, so the permission
    # check uses this fixed amount and only warns when it exceeds the remainder.
    reference_amount: int = 10**18


@dataclass(frozen=True)
class RebalanceStats:
    total_configs: int
    active_configs: int
    total_rebalances: int
    successful_rebalances: int
    failed_rebalances: int
    success_rate: float


class RebalanceEngine:
    def __init__(
        self,
        *,
        store: StorePort,
        validator: AllowanceValidator,
        ledger: LedgerExecutionPort,
        oracle: OraclePort,
        quote: QuotePort | None = None,
        outbox: AnalyticsOutbox | None = None,
        config: RebalanceEngineConfig | None = None,
        clock: Callable[[], int] = epoch_seconds,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        instrumentation: Instrumentation | None = None,
    ) -> None:
        self.store = store
        self.validator = validator
        self.ledger = ledger
        self.oracle = oracle
        self.quote = quote or IdentityQuote()
        self.outbox = outbox
        self.config = config or RebalanceEngineConfig()
        self.clock = clock
        self.sleep_fn = sleep_fn
        self.instrumentation = instrumentation or get_instrumentation()

    async def process_all(self) -> list[RebalanceResult]:
        active = self.store.get_active()
        results: list[RebalanceResult] = []
        for config in active.configs:
            try:
                result = await self.process_one(config)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "rebalance_config_unexpected_error",
                    extra={"extra": {"config_id": config.config_id}},
                )
                result = RebalanceResult.failure(config.config_id, f"unexpected error: {exc}")
            results.append(result)
            self.instrumentation.rebalance_result(str(result.status))
            if result.executed and self.config.inter_item_delay_seconds > 0:
                await self.sleep_fn(self.config.inter_item_delay_seconds)
        return results

    async def process_one(self, config: RebalancerConfig) -> RebalanceResult:
        now = self.clock()
        with with_item_context(config_id=config.config_id, permission_id=config.permission_id):
            if not cooldown_elapsed(
                config.last_rebalance_time, now, self.config.min_interval_seconds
            ):
                return RebalanceResult.skip(config.config_id, SkipReason.TOO_SOON)

            check = await self.validator.check(
                config.permission_id,
                config.owner,
                self.config.reference_amount,
                enforce_amount=False,
            )
            if not check.valid:
                return RebalanceResult.skip(config.config_id, SkipReason.PERMISSION_INVALID)

            try:
                config.validate_weights()
            except InvalidConfigError as exc:
                logger.error(
                    "rebalance_config_invalid",
                    extra={"extra": {"config_id": config.config_id, "problems": str(exc)}},
                )
                return RebalanceResult.failure(config.config_id, f"invalid config: {exc}")

            try:
                plan = await self.preview(config)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "rebalance_snapshot_failed", extra={"extra": {"config_id": config.config_id}}
                )
                return RebalanceResult.failure(config.config_id, f"snapshot failed: {exc}")

            for no_match in plan.no_matches:
                logger.info(
                    "rebalance_no_destination",
                    extra={
                        "extra": {
                            "config_id": config.config_id,
                            "asset_from": no_match.asset_from,
                            "deviation": round(no_match.deviation, 4),
                        }
                    },
                )

            threshold = config.rebalance_threshold_percent
            if plan.max_deviation < threshold:
                return RebalanceResult.skip(
                    config.config_id,
                    SkipReason.BELOW_THRESHOLD,
                    recommendations=plan.recommendations,
                    no_matches=plan.no_matches,
                    max_deviation=plan.max_deviation,
                    message=(
                        f"Portfolio deviation {plan.max_deviation:.2f}% "
                        f"below threshold {threshold:.2f}%"
                    ),
                )

            if not plan.recommendations:
                return RebalanceResult.skip(
                    config.config_id,
                    SkipReason.NO_TRADES,
                    no_matches=plan.no_matches,
                    max_deviation=plan.max_deviation,
                    message="No rebalancing trades needed",
                )

            return await self._execute(config, plan, now)

    async def preview(self, config: RebalancerConfig) -> RebalancePlan:
        """Snapshot the portfolio and compute recommendations without trading."""
        asset_ids = list(config.asset_ids)
        balances = await self.oracle.get_balances(asset_ids, config.owner)
        usd_values: dict[str, float] = {}
        decimals: dict[str, int] = {}
        for asset_id in asset_ids:
            balance = int(balances.get(asset_id, 0))
            decimals[asset_id] = await self.oracle.get_decimals(asset_id)
            usd_values[asset_id] = await self.oracle.get_usd_value(asset_id, balance)
        snapshot = RebalancePlanner.weigh(
            config.assets, balances=balances, usd_values=usd_values, decimals=decimals
        )
        return RebalancePlanner.recommend(
            snapshot, noise_floor_percent=self.config.noise_floor_percent
        )

    async def _execute(
        self, config: RebalancerConfig, plan: RebalancePlan, now: int
    ) -> RebalanceResult:
        recommendations = plan.recommendations
        try:
            with self.instrumentation.trace(
                "rebalance_execute", attrs={"config_id": config.config_id}
            ):
                min_amounts_out: list[int] = []
                for rec in recommendations:
                    expected = await self.quote.expected_output(
                        rec.asset_from, rec.asset_to, rec.amount_from
                    )
                    min_amounts_out.append(
                        min_output_with_slippage(expected, self.config.slippage_bps)
                    )
                receipt = await self.ledger.execute_rebalance(
                    config.permission_id,
                    [rec.asset_from for rec in recommendations],
                    [rec.asset_to for rec in recommendations],
                    [rec.amount_from for rec in recommendations],
                    min_amounts_out,
                )
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or type(exc).__name__
            logger.exception(
                "rebalance_execution_failed",
                extra={"extra": {"config_id": config.config_id, "trades": len(recommendations)}},
            )
            self.instrumentation.rebalance_execution("failed")
            self._record_log(config, recommendations, now, receipt=None, error=message)
            return RebalanceResult.failure(
                config.config_id,
                message,
                recommendations=recommendations,
                max_deviation=plan.max_deviation,
            )

        self.store.record_rebalance(config.config_id, executed_at=now)
        self.instrumentation.rebalance_execution("success")
        logger.info(
            "rebalance_execution_succeeded",
            extra={
                "extra": {
                    "config_id": config.config_id,
                    "tx_ref": receipt.tx_ref,
                    "trades": len(recommendations),
                    "max_deviation": round(plan.max_deviation, 4),
                }
            },
        )
        self._record_log(config, recommendations, now, receipt=receipt, error=None)
        return RebalanceResult(
            config_id=config.config_id,
            status=ResultStatus.SUCCESS,
            tx_ref=receipt.tx_ref,
            recommendations=recommendations,
            no_matches=plan.no_matches,
            max_deviation=plan.max_deviation,
            amounts_out=tuple(receipt.amounts_out),
        )

    def _record_log(
        self,
        config: RebalancerConfig,
        recommendations: tuple[Recommendation, ...],
        now: int,
        *,
        receipt: RebalanceReceipt | None,
        error: str | None,
    ) -> None:
        output_amounts: tuple[int, ...] = ()
        if receipt is not None and len(receipt.amounts_out) == len(recommendations):
            output_amounts = tuple(receipt.amounts_out)
        log = ExecutionLog(
            execution_type=ExecutionType.REBALANCE,
            config_id=config.config_id,
            owner=config.owner,
            permission_id=config.permission_id,
            tx_ref=receipt.tx_ref if receipt is not None else None,
            gas_used=receipt.gas_used if receipt is not None else 0,
            input_amounts=tuple(rec.amount_from for rec in recommendations),
            output_amounts=output_amounts,
            assets_from=tuple(rec.asset_from for rec in recommendations),
            assets_to=tuple(rec.asset_to for rec in recommendations),
            executed_at=now,
            status=ExecutionStatus.SUCCESS if receipt is not None else ExecutionStatus.FAILED,
            error_message=error,
        )
        try:
            self.store.append_log(log)
        except Exception:  # noqa: BLE001
            logger.exception("execution_log_append_failed", extra={"extra": {"log_id": log.log_id}})
        if self.outbox is not None:
            self.outbox.publish(log)

    def rebalance_stats(self, owner: str | None = None) -> RebalanceStats:
        configs = self.store.list_configs(owner=owner)
        counts = self.store.count_logs_by_status(
            execution_type=ExecutionType.REBALANCE, owner=owner
        )
        successful = counts.get(ExecutionStatus.SUCCESS, 0)
        failed = counts.get(ExecutionStatus.FAILED, 0)
        attempts = successful + failed
        return RebalanceStats(
            total_configs=len(configs),
            active_configs=sum(1 for config in configs if config.is_active),
            total_rebalances=sum(config.total_rebalances for config in configs),
            successful_rebalances=successful,
            failed_rebalances=failed,
            success_rate=(successful / attempts * 100.0) if attempts else 0.0,
        )

    def emergency_pause(self, owner: str) -> int:
        paused = self.store.deactivate_owner(owner, plans=False).configs
        logger.warning(
            "rebalance_emergency_pause", extra={"extra": {"owner": owner, "configs": paused}}
        )
        return paused
