from __future__ import annotations

import pytest
from pydantic import ValidationError

from autobalancer.domain.models import (
    AssetWeight,
    ExecutionLog,
    ExecutionStatus,
    ExecutionType,
    Permission,
    Plan,
    RebalancerConfig,
    is_zero_identity,
    same_identity,
)
from autobalancer.errors import InvalidConfigError


def _config(*weights: tuple[str, float]) -> RebalancerConfig:
    return RebalancerConfig(
        owner="0xowner",
        assets=tuple(AssetWeight(asset_id=a, target_weight_percent=w) for a, w in weights),
        permission_id="perm-1",
    )


def test_plan_requires_matching_bookkeeping(make_plan_kwargs) -> None:
    with pytest.raises(ValidationError):
        Plan(**make_plan_kwargs(last_execution_time=1_700_000_100, total_executions=0))
    with pytest.raises(ValidationError):
        Plan(**make_plan_kwargs(last_execution_time=0, total_executions=2))

    plan = Plan(**make_plan_kwargs(last_execution_time=1_700_000_100, total_executions=1))
    assert plan.total_executions == 1


def test_plan_rejects_same_asset_and_exposes_expiry(make_plan_kwargs) -> None:
    with pytest.raises(ValidationError):
        Plan(**make_plan_kwargs(asset_from="eth", asset_to="ETH"))

    plan = Plan(**make_plan_kwargs(start_time=1_000, duration_seconds=500))
    assert plan.expires_at == 1_500
    assert plan.is_active is True


def test_plan_is_frozen(make_plan_kwargs) -> None:
    plan = Plan(**make_plan_kwargs())
    with pytest.raises(ValidationError):
        plan.is_active = False  # type: ignore[misc]


def test_rebalancer_config_weight_checks() -> None:
    valid = _config(("ETH", 60.0), ("USDC", 40.0))
    valid.validate_weights()
    assert valid.asset_ids == ("ETH", "USDC")

    near = _config(("ETH", 33.333), ("USDC", 33.333), ("WBTC", 33.334))
    assert near.weight_problems() == []

    single = _config(("ETH", 100.0))
    assert "at least two distinct assets are required" in single.weight_problems()

    duplicate = _config(("ETH", 50.0), ("eth", 50.0))
    problems = duplicate.weight_problems()
    assert any(problem.startswith("duplicate assets") for problem in problems)

    off = _config(("ETH", 60.0), ("USDC", 30.0))
    with pytest.raises(InvalidConfigError, match="sum to 90.0000"):
        off.validate_weights()


def test_asset_weight_bounds() -> None:
    with pytest.raises(ValidationError):
        AssetWeight(asset_id="ETH", target_weight_percent=0)
    with pytest.raises(ValidationError):
        AssetWeight(asset_id="ETH", target_weight_percent=100.5)


def test_permission_spent_cannot_exceed_allowance_while_active() -> None:
    with pytest.raises(ValidationError):
        Permission(
            permission_id="p", owner="0xowner", delegatee="0xagent", allowance=10, spent=11
        )

    revoked = Permission(
        permission_id="p",
        owner="0xowner",
        delegatee="0xagent",
        allowance=10,
        spent=11,
        is_active=False,
    )
    assert revoked.remaining == -1


def test_execution_log_shape_rules() -> None:
    base = {
        "owner": "0xowner",
        "permission_id": "perm-1",
        "input_amounts": (100,),
        "assets_from": ("USDC",),
        "assets_to": ("ETH",),
        "executed_at": 1_700_000_000,
    }
    with pytest.raises(ValidationError, match="plan_id"):
        ExecutionLog(execution_type=ExecutionType.DCA, status=ExecutionStatus.FAILED, **base)
    with pytest.raises(ValidationError, match="tx_ref"):
        ExecutionLog(
            execution_type=ExecutionType.DCA,
            plan_id="plan-1",
            status=ExecutionStatus.SUCCESS,
            **base,
        )
    with pytest.raises(ValidationError, match="parallel"):
        ExecutionLog(
            execution_type=ExecutionType.REBALANCE,
            config_id="cfg-1",
            status=ExecutionStatus.FAILED,
            **{**base, "assets_to": ("ETH", "DAI")},
        )

    failed = ExecutionLog(
        execution_type=ExecutionType.REBALANCE,
        config_id="cfg-1",
        status=ExecutionStatus.FAILED,
        error_message="boom",
        **base,
    )
    assert failed.output_amounts == ()
    assert failed.subject_id == "cfg-1"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, True),
        ("", True),
        ("0x", True),
        ("0x0000000000000000000000000000000000000000", True),
        ("0xabc", False),
        (" 0xABC ", False),
    ],
)
def test_is_zero_identity(value: str | None, expected: bool) -> None:
    assert is_zero_identity(value) is expected


def test_same_identity_is_case_insensitive() -> None:
    assert same_identity("0xABCdef", " 0xabcDEF")
    assert not same_identity("0xabc", "0xabd")
