from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from autobalancer.domain.amounts import min_output_with_slippage
from autobalancer.domain.models import ExecutionLog, ExecutionStatus, ExecutionType, Plan
from autobalancer.domain.results import DcaResult, SkipReason
from autobalancer.domain.time_periods import (
    epoch_seconds,
    is_plan_due,
    is_plan_expired,
    seconds_until_due,
)
from autobalancer.logging_context import with_item_context
from autobalancer.observability import Instrumentation, get_instrumentation
from autobalancer.ports import (
    DcaReceipt,
    IdentityQuote,
    LedgerExecutionPort,
    QuotePort,
    StorePort,
)
from autobalancer.services.allowance_validator import AllowanceValidator
from autobalancer.services.analytics_outbox import AnalyticsOutbox

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DcaEngineConfig:
    slippage_bps: int = 500
    inter_item_delay_seconds: float = 1.0


@dataclass(frozen=True)
class DcaStats:
    total_plans: int
    active_plans: int
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_rate: float
    total_volume: int


class DcaEngine:
    """Runs at most one recurring purchase per eligible plan per invocation."""

    def __init__(
        self,
        *,
        store: StorePort,
        validator: AllowanceValidator,
        ledger: LedgerExecutionPort,
        quote: QuotePort | None = None,
        outbox: AnalyticsOutbox | None = None,
        config: DcaEngineConfig | None = None,
        clock: Callable[[], int] = epoch_seconds,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        instrumentation: Instrumentation | None = None,
    ) -> None:
        self.store = store
        self.validator = validator
        self.ledger = ledger
        self.quote = quote or IdentityQuote()
        self.outbox = outbox
        self.config = config or DcaEngineConfig()
        self.clock = clock
        self.sleep_fn = sleep_fn
        self.instrumentation = instrumentation or get_instrumentation()

    async def process_all(self) -> list[DcaResult]:
        active = self.store.get_active()
        results: list[DcaResult] = []
        for plan in active.plans:
            try:
                result = await self.process_one(plan)
            except Exception as exc:  # noqa: BLE001
                logger.exception(
                    "dca_plan_unexpected_error", extra={"extra": {"plan_id": plan.plan_id}}
                )
                result = DcaResult.failure(plan.plan_id, f"unexpected error: {exc}")
            results.append(result)
            self.instrumentation.dca_result(str(result.status))
            if result.executed and self.config.inter_item_delay_seconds > 0:
                await self.sleep_fn(self.config.inter_item_delay_seconds)
        return results

    async def process_one(self, plan: Plan) -> DcaResult:
        now = self.clock()
        with with_item_context(plan_id=plan.plan_id, permission_id=plan.permission_id):
            if is_plan_expired(plan, now):
                if plan.is_active:
                    self.store.update_plan(plan.plan_id, is_active=False)
                logger.info(
                    "dca_plan_expired",
                    extra={"extra": {"plan_id": plan.plan_id, "expired_at": plan.expires_at}},
                )
                return DcaResult.skip(plan.plan_id, SkipReason.EXPIRED)

            if not is_plan_due(plan, now):
                logger.debug(
                    "dca_plan_not_due",
                    extra={
                        "extra": {
                            "plan_id": plan.plan_id,
                            "seconds_until_due": seconds_until_due(plan, now),
                        }
                    },
                )
                return DcaResult.skip(plan.plan_id, SkipReason.NOT_DUE)

            check = await self.validator.check(
                plan.permission_id, plan.owner, plan.amount_per_period
            )
            if not check.valid:
                return DcaResult.skip(plan.plan_id, SkipReason.PERMISSION_INVALID)

            return await self._execute(plan, now)

    async def _execute(self, plan: Plan, now: int) -> DcaResult:
        amount = plan.amount_per_period
        try:
            with self.instrumentation.trace("dca_execute", attrs={"plan_id": plan.plan_id}):
                expected = await self.quote.expected_output(plan.asset_from, plan.asset_to, amount)
                min_out = min_output_with_slippage(expected, self.config.slippage_bps)
                receipt = await self.ledger.execute_dca(
                    plan.permission_id, plan.asset_from, plan.asset_to, amount, min_out
                )
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or type(exc).__name__
            logger.exception(
                "dca_execution_failed",
                extra={"extra": {"plan_id": plan.plan_id, "amount": str(amount)}},
            )
            self.instrumentation.dca_execution("failed")
            self._record_log(plan, now, receipt=None, error=message)
            return DcaResult.failure(plan.plan_id, message)

        self.store.record_dca_execution(plan.plan_id, executed_at=now, amount=amount)
        self.instrumentation.dca_execution("success")
        logger.info(
            "dca_execution_succeeded",
            extra={
                "extra": {
                    "plan_id": plan.plan_id,
                    "tx_ref": receipt.tx_ref,
                    "amount_in": str(amount),
                    "amount_out": str(receipt.amount_out),
                    "min_out": str(min_out),
                }
            },
        )
        self._record_log(plan, now, receipt=receipt, error=None)
        return DcaResult.success(
            plan.plan_id, tx_ref=receipt.tx_ref, amount_in=amount, amount_out=receipt.amount_out
        )

    def _record_log(
        self, plan: Plan, now: int, *, receipt: DcaReceipt | None, error: str | None
    ) -> None:
        log = ExecutionLog(
            execution_type=ExecutionType.DCA,
            plan_id=plan.plan_id,
            owner=plan.owner,
            permission_id=plan.permission_id,
            tx_ref=receipt.tx_ref if receipt is not None else None,
            gas_used=receipt.gas_used if receipt is not None else 0,
            input_amounts=(plan.amount_per_period,),
            output_amounts=(receipt.amount_out,) if receipt is not None else (),
            assets_from=(plan.asset_from,),
            assets_to=(plan.asset_to,),
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

    def execution_stats(self, owner: str | None = None) -> DcaStats:
        plans = self.store.list_plans(owner=owner)
        counts = self.store.count_logs_by_status(execution_type=ExecutionType.DCA, owner=owner)
        successful = counts.get(ExecutionStatus.SUCCESS, 0)
        failed = counts.get(ExecutionStatus.FAILED, 0)
        attempts = successful + failed
        return DcaStats(
            total_plans=len(plans),
            active_plans=sum(1 for plan in plans if plan.is_active),
            total_executions=sum(plan.total_executions for plan in plans),
            successful_executions=successful,
            failed_executions=failed,
            success_rate=(successful / attempts * 100.0) if attempts else 0.0,
            total_volume=sum(plan.total_amount_spent for plan in plans),
        )

    def emergency_pause(self, owner: str) -> int:
        paused = self.store.deactivate_owner(owner, configs=False).plans
        logger.warning("dca_emergency_pause", extra={"extra": {"owner": owner, "plans": paused}})
        return paused
