from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class ResultStatus(StrEnum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(StrEnum):
    EXPIRED = "expired"
    NOT_DUE = "not due"
    PERMISSION_INVALID = "permission invalid"
    TOO_SOON = "too soon"
    BELOW_THRESHOLD = "below threshold"
    NO_TRADES = "no trades"


@dataclass(frozen=True)
class Recommendation:
    asset_from: str
    asset_to: str
    amount_from: int
    target_weight: float
    current_weight: float
    deviation: float
    excess_usd: float = 0.0


@dataclass(frozen=True)
class NoMatch:
    """An overweight asset for which no underweight destination exists."""

    asset_from: str
    target_weight: float
    current_weight: float
    deviation: float


@dataclass(frozen=True)
class AssetSnapshot:
    asset_id: str
    balance: int
    decimals: int
    usd_value: float
    target_weight: float
    current_weight: float = 0.0

    @property
    def deviation(self) -> float:
        return self.current_weight - self.target_weight


@dataclass(frozen=True)
class PortfolioSnapshot:
    assets: tuple[AssetSnapshot, ...]
    total_usd_value: float

    def get(self, asset_id: str) -> AssetSnapshot | None:
        for asset in self.assets:
            if asset.asset_id == asset_id:
                return asset
        return None


@dataclass(frozen=True)
class DcaResult:
    plan_id: str
    status: ResultStatus
    skip_reason: SkipReason | None = None
    tx_ref: str | None = None
    amount_in: int = 0
    amount_out: int | None = None
    error: str | None = None

    @classmethod
    def success(cls, plan_id: str, *, tx_ref: str, amount_in: int, amount_out: int) -> DcaResult:
        return cls(
            plan_id=plan_id,
            status=ResultStatus.SUCCESS,
            tx_ref=tx_ref,
            amount_in=amount_in,
            amount_out=amount_out,
        )

    @classmethod
    def skip(cls, plan_id: str, reason: SkipReason) -> DcaResult:
        return cls(plan_id=plan_id, status=ResultStatus.SKIPPED, skip_reason=reason)

    @classmethod
    def failure(cls, plan_id: str, error: str) -> DcaResult:
        return cls(plan_id=plan_id, status=ResultStatus.FAILED, error=error)

    @property
    def executed(self) -> bool:
        return self.status is ResultStatus.SUCCESS


@dataclass(frozen=True)
class RebalanceResult:
    config_id: str
    status: ResultStatus
    skip_reason: SkipReason | None = None
    tx_ref: str | None = None
    recommendations: tuple[Recommendation, ...] = ()
    no_matches: tuple[NoMatch, ...] = ()
    max_deviation: float | None = None
    amounts_out: tuple[int, ...] = ()
    error: str | None = None
    message: str | None = None

    @classmethod
    def skip(
        cls,
        config_id: str,
        reason: SkipReason,
        *,
        recommendations: tuple[Recommendation, ...] = (),
        no_matches: tuple[NoMatch, ...] = (),
        max_deviation: float | None = None,
        message: str | None = None,
    ) -> RebalanceResult:
        return cls(
            config_id=config_id,
            status=ResultStatus.SKIPPED,
            skip_reason=reason,
            recommendations=recommendations,
            no_matches=no_matches,
            max_deviation=max_deviation,
            message=message,
        )

    @classmethod
    def failure(
        cls,
        config_id: str,
        error: str,
        *,
        recommendations: tuple[Recommendation, ...] = (),
        max_deviation: float | None = None,
    ) -> RebalanceResult:
        return cls(
            config_id=config_id,
            status=ResultStatus.FAILED,
            error=error,
            recommendations=recommendations,
            max_deviation=max_deviation,
        )

    @property
    def executed(self) -> bool:
        return self.status is ResultStatus.SUCCESS


@dataclass(frozen=True)
class EngineTally:
    executed: int = 0
    skipped: int = 0
    failed: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_results(cls, results: list[DcaResult] | list[RebalanceResult]) -> EngineTally:
        executed = skipped = failed = 0
        reasons: dict[str, int] = {}
        for result in results:
            if result.status is ResultStatus.SUCCESS:
                executed += 1
            elif result.status is ResultStatus.SKIPPED:
                skipped += 1
                key = str(result.skip_reason) if result.skip_reason else "unknown"
                reasons[key] = reasons.get(key, 0) + 1
            else:
                failed += 1
        return cls(executed=executed, skipped=skipped, failed=failed, skip_reasons=reasons)

    def as_dict(self) -> dict[str, object]:
        return {
            "executed": self.executed,
            "skipped": self.skipped,
            "failed": self.failed,
            "skip_reasons": dict(self.skip_reasons),
        }
