from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from autobalancer.domain.amounts import usd_to_base_units
from autobalancer.domain.models import AssetWeight
from autobalancer.domain.results import AssetSnapshot, NoMatch, PortfolioSnapshot, Recommendation

DEFAULT_NOISE_FLOOR_PERCENT = 0.1


@dataclass(frozen=True)
class RebalancePlan:
    snapshot: PortfolioSnapshot
    recommendations: tuple[Recommendation, ...]
    no_matches: tuple[NoMatch, ...]
    max_deviation: float


class RebalancePlanner:
    """Greedy single-best-match rebalancing.

    Each overweight asset is paired with the single most underweight asset.
    Overweight assets with no underweight counterpart become ``NoMatch``
    entries and are not traded; leftover excess is not spilled onto a
    second-best destination, so one pass does not guarantee convergence.
    """

    @staticmethod
    def weigh(
        assets: Sequence[AssetWeight],
        *,
        balances: Mapping[str, int],
        usd_values: Mapping[str, float],
        decimals: Mapping[str, int],
    ) -> PortfolioSnapshot:
        total = sum(max(0.0, float(usd_values.get(weight.asset_id, 0.0))) for weight in assets)
        snapshots: list[AssetSnapshot] = []
        for weight in assets:
            usd_value = max(0.0, float(usd_values.get(weight.asset_id, 0.0)))
            snapshots.append(
                AssetSnapshot(
                    asset_id=weight.asset_id,
                    balance=int(balances.get(weight.asset_id, 0)),
                    decimals=int(decimals.get(weight.asset_id, 0)),
                    usd_value=usd_value,
                    target_weight=weight.target_weight_percent,
                    current_weight=(usd_value / total * 100.0) if total > 0 else 0.0,
                )
            )
        return PortfolioSnapshot(assets=tuple(snapshots), total_usd_value=total)

    @staticmethod
    def recommend(
        snapshot: PortfolioSnapshot,
        *,
        noise_floor_percent: float = DEFAULT_NOISE_FLOOR_PERCENT,
    ) -> RebalancePlan:
        recommendations: list[Recommendation] = []
        no_matches: list[NoMatch] = []
        for source in snapshot.assets:
            deviation = source.deviation
            if deviation <= 0 or abs(deviation) <= noise_floor_percent:
                continue
            destination = RebalancePlanner._largest_deficit(snapshot, exclude=source.asset_id)
            excess_usd = deviation / 100.0 * snapshot.total_usd_value
            amount = usd_to_base_units(
                excess_usd,
                balance=source.balance,
                balance_usd=source.usd_value,
                decimals=source.decimals,
            )
            if destination is None or amount <= 0:
                no_matches.append(
                    NoMatch(
                        asset_from=source.asset_id,
                        target_weight=source.target_weight,
                        current_weight=source.current_weight,
                        deviation=deviation,
                    )
                )
                continue
            recommendations.append(
                Recommendation(
                    asset_from=source.asset_id,
                    asset_to=destination.asset_id,
                    amount_from=amount,
                    target_weight=source.target_weight,
                    current_weight=source.current_weight,
                    deviation=deviation,
                    excess_usd=excess_usd,
                )
            )
        max_deviation = max((abs(asset.deviation) for asset in snapshot.assets), default=0.0)
        return RebalancePlan(
            snapshot=snapshot,
            recommendations=tuple(recommendations),
            no_matches=tuple(no_matches),
            max_deviation=max_deviation,
        )

    @staticmethod
    def _largest_deficit(snapshot: PortfolioSnapshot, *, exclude: str) -> AssetSnapshot | None:
        best: AssetSnapshot | None = None
        best_deficit = 0.0
        for candidate in snapshot.assets:
            if candidate.asset_id == exclude:
                continue
            deficit = candidate.target_weight - candidate.current_weight
            # Strict comparison keeps the earliest declared asset on ties.
            if deficit > best_deficit:
                best = candidate
                best_deficit = deficit
        return best
