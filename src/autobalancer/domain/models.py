from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from autobalancer.errors import InvalidConfigError

ZERO_IDENTITY = "0x0000000000000000000000000000000000000000"
WEIGHT_SUM_TOLERANCE = 0.01


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_record_id() -> str:
    return uuid4().hex


def normalize_identity(value: str) -> str:
    return value.strip().casefold()


def is_zero_identity(value: str | None) -> bool:
    if value is None:
        return True
    normalized = normalize_identity(value)
    if not normalized:
        return True
    digits = normalized[2:] if normalized.startswith("0x") else normalized
    return not digits or set(digits) == {"0"}


def same_identity(left: str, right: str) -> bool:
    return normalize_identity(left) == normalize_identity(right)


class Period(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ExecutionType(StrEnum):
    DCA = "dca"
    REBALANCE = "rebalance"


class ExecutionStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"


class Plan(BaseModel):
    """Recurring purchase of ``asset_to`` paid with ``amount_per_period`` of ``asset_from``."""

    model_config = ConfigDict(frozen=True)

    plan_id: str = Field(default_factory=new_record_id)
    owner: str
    asset_from: str
    asset_to: str
    amount_per_period: int = Field(ge=0)
    period: Period
    duration_seconds: int = Field(gt=0)
    start_time: int = Field(ge=0)
    last_execution_time: int = Field(default=0, ge=0)
    total_executions: int = Field(default=0, ge=0)
    total_amount_spent: int = Field(default=0, ge=0)
    permission_id: str
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_bookkeeping(self) -> Plan:
        if same_identity(self.asset_from, self.asset_to):
            raise ValueError("asset_from and asset_to must differ")
        if (self.last_execution_time == 0) != (self.total_executions == 0):
            raise ValueError("last_execution_time must be 0 exactly when total_executions is 0")
        return self

    @property
    def expires_at(self) -> int:
        return self.start_time + self.duration_seconds


class AssetWeight(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_id: str = Field(min_length=1)
    target_weight_percent: float = Field(gt=0, le=100)


class RebalancerConfig(BaseModel):
    """Target-weight portfolio definition.

    Weight rules are enforced by whoever creates the record and checked
    again with :meth:`validate_weights` before the engine acts on it.
    """

    model_config = ConfigDict(frozen=True)

    config_id: str = Field(default_factory=new_record_id)
    owner: str
    assets: tuple[AssetWeight, ...]
    rebalance_threshold_percent: float = Field(default=5.0, ge=0, le=100)
    permission_id: str
    last_rebalance_time: int = Field(default=0, ge=0)
    total_rebalances: int = Field(default=0, ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def weight_problems(self) -> list[str]:
        problems: list[str] = []
        seen: set[str] = set()
        duplicates: list[str] = []
        for weight in self.assets:
            key = normalize_identity(weight.asset_id)
            if key in seen:
                duplicates.append(weight.asset_id)
            seen.add(key)
        if len(seen) < 2:
            problems.append("at least two distinct assets are required")
        if duplicates:
            problems.append(f"duplicate assets: {', '.join(sorted(duplicates))}")
        total = sum(weight.target_weight_percent for weight in self.assets)
        if abs(total - 100.0) > WEIGHT_SUM_TOLERANCE:
            problems.append(f"target weights sum to {total:.4f}, expected 100")
        return problems

    def validate_weights(self) -> None:
        problems = self.weight_problems()
        if problems:
            raise InvalidConfigError("; ".join(problems))

    @property
    def asset_ids(self) -> tuple[str, ...]:
        return tuple(weight.asset_id for weight in self.assets)


class Permission(BaseModel):
    """Local mirror of an allowance grant held by the ledger."""

    model_config = ConfigDict(frozen=True)

    permission_id: str
    owner: str
    delegatee: str
    allowance: int = Field(ge=0)
    spent: int = Field(default=0, ge=0)
    time_window_seconds: int = Field(default=0, ge=0)
    reset_time: int = Field(default=0, ge=0)
    is_active: bool = True
    parent_permission_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_spent(self) -> Permission:
        if self.is_active and self.spent > self.allowance:
            raise ValueError("spent must not exceed allowance on an active permission")
        return self

    @property
    def remaining(self) -> int:
        return self.allowance - self.spent


class PermissionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner: str
    allowance: int = Field(ge=0)
    spent: int = Field(ge=0)
    reset_time: int = 0
    time_window_seconds: int = 0

    @property
    def remaining(self) -> int:
        return self.allowance - self.spent


class ExecutionLog(BaseModel):
    """Immutable record of one execution attempt that reached the ledger."""

    model_config = ConfigDict(frozen=True)

    log_id: str = Field(default_factory=new_record_id)
    execution_type: ExecutionType
    plan_id: str | None = None
    config_id: str | None = None
    owner: str
    permission_id: str
    tx_ref: str | None = None
    gas_used: int = Field(default=0, ge=0)
    input_amounts: tuple[int, ...]
    output_amounts: tuple[int, ...] = ()
    assets_from: tuple[str, ...]
    assets_to: tuple[str, ...]
    executed_at: int = Field(ge=0)
    status: ExecutionStatus
    error_message: str | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> ExecutionLog:
        if self.execution_type is ExecutionType.DCA and not self.plan_id:
            raise ValueError("dca execution logs must reference a plan_id")
        if self.execution_type is ExecutionType.REBALANCE and not self.config_id:
            raise ValueError("rebalance execution logs must reference a config_id")
        legs = len(self.input_amounts)
        if len(self.assets_from) != legs or len(self.assets_to) != legs:
            raise ValueError("input amounts and asset identifiers must be parallel")
        if self.output_amounts and len(self.output_amounts) != legs:
            raise ValueError("output amounts must be parallel to input amounts")
        if self.status is ExecutionStatus.SUCCESS and not self.tx_ref:
            raise ValueError("successful execution logs require a tx_ref")
        return self

    @property
    def subject_id(self) -> str:
        if self.execution_type is ExecutionType.DCA:
            return self.plan_id or ""
        return self.config_id or ""
