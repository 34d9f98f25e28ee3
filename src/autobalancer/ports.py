from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from autobalancer.domain.models import (
    ExecutionLog,
    ExecutionStatus,
    ExecutionType,
    Permission,
    PermissionInfo,
    Plan,
    RebalancerConfig,
)


@dataclass(frozen=True)
class ActiveItems:
    plans: tuple[Plan, ...]
    configs: tuple[RebalancerConfig, ...]


@dataclass(frozen=True)
class DcaReceipt:
    tx_ref: str
    amount_out: int
    gas_used: int = 0


@dataclass(frozen=True)
class RebalanceReceipt:
    tx_ref: str
    amounts_out: tuple[int, ...]
    gas_used: int = 0


@dataclass(frozen=True)
class DeactivationCounts:
    plans: int
    configs: int


class StorePort(Protocol):
    def get_active(self) -> ActiveItems: ...

    def get_plan(self, plan_id: str) -> Plan | None: ...

    def get_config(self, config_id: str) -> RebalancerConfig | None: ...

    def update_plan(self, plan_id: str, **patch: object) -> Plan: ...

    def update_config(self, config_id: str, **patch: object) -> RebalancerConfig: ...

    def record_dca_execution(self, plan_id: str, *, executed_at: int, amount: int) -> Plan: ...

    def record_rebalance(self, config_id: str, *, executed_at: int) -> RebalancerConfig: ...

    def append_log(self, log: ExecutionLog) -> None: ...

    def get_permission(self, permission_id: str) -> Permission | None: ...

    def deactivate_all(self) -> DeactivationCounts: ...

    def deactivate_owner(
        self, owner: str, *, plans: bool = True, configs: bool = True
    ) -> DeactivationCounts: ...

    def list_plans(self, *, owner: str | None = None, active_only: bool = False) -> list[Plan]: ...

    def list_configs(
        self, *, owner: str | None = None, active_only: bool = False
    ) -> list[RebalancerConfig]: ...

    def count_logs_by_status(
        self, *, execution_type: ExecutionType, owner: str | None = None
    ) -> dict[ExecutionStatus, int]: ...

    def set_runtime_state(self, key: str, text: str) -> None: ...

    def flush(self) -> None: ...


class LedgerQueryPort(Protocol):
    async def get_permission_info(self, permission_id: str) -> PermissionInfo | None: ...

    async def check_allowance(self, permission_id: str, amount: int) -> bool: ...


class LedgerExecutionPort(Protocol):
    async def execute_dca(
        self,
        permission_id: str,
        asset_from: str,
        asset_to: str,
        amount: int,
        min_out: int,
    ) -> DcaReceipt: ...

    async def execute_rebalance(
        self,
        permission_id: str,
        assets_from: Sequence[str],
        assets_to: Sequence[str],
        amounts: Sequence[int],
        min_amounts_out: Sequence[int],
    ) -> RebalanceReceipt: ...


class OraclePort(Protocol):
    async def get_balances(self, asset_ids: Sequence[str], owner: str) -> Mapping[str, int]: ...

    async def get_usd_value(self, asset_id: str, amount: int) -> float: ...

    async def get_decimals(self, asset_id: str) -> int: ...


class QuotePort(Protocol):
    async def expected_output(self, asset_from: str, asset_to: str, amount: int) -> int: ...


class AnalyticsSink(Protocol):
    async def log_execution(self, log: ExecutionLog) -> bool: ...


class IdentityQuote:
    """Assumes a 1:1 exchange; real pricing is resolved by the ledger call."""

    async def expected_output(self, asset_from: str, asset_to: str, amount: int) -> int:
        del asset_from, asset_to
        return amount
