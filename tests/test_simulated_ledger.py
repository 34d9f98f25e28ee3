from __future__ import annotations

import asyncio

import pytest

from autobalancer.adapters.simulated_ledger import GAS_PER_LEG, SimulatedLedger
from autobalancer.domain.models import Permission
from autobalancer.errors import LedgerExecutionError

PRICES = {"ETH": 2_500.0, "USDC": 1.0, "WBTC": 50_000.0}


class _Clock:
    def __init__(self, now: int = 1_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def _ledger(clock: _Clock | None = None) -> SimulatedLedger:
    ledger = SimulatedLedger(prices_usd=PRICES, clock=clock or _Clock())
    ledger.grant("perm-1", "0xOwner", allowance=1_000 * 10**6)
    ledger.set_balance("0xowner", "USDC", 5_000 * 10**6)
    ledger.set_balance("0xowner", "ETH", 2 * 10**18)
    return ledger


def test_permission_info_and_allowance() -> None:
    ledger = _ledger()

    info = asyncio.run(ledger.get_permission_info("perm-1"))
    assert info is not None
    assert info.owner == "0xOwner"
    assert info.remaining == 1_000 * 10**6
    assert asyncio.run(ledger.check_allowance("perm-1", 1_000 * 10**6)) is True
    assert asyncio.run(ledger.check_allowance("perm-1", 1_000 * 10**6 + 1)) is False
    assert asyncio.run(ledger.get_permission_info("missing")) is None

    ledger.revoke("perm-1")
    assert asyncio.run(ledger.get_permission_info("perm-1")) is None
    assert asyncio.run(ledger.check_allowance("perm-1", 1)) is False


def test_oracle_values_use_decimals_and_prices() -> None:
    ledger = _ledger()

    balances = asyncio.run(ledger.get_balances(["USDC", "ETH", "WBTC"], "0xOWNER"))
    assert balances == {"USDC": 5_000 * 10**6, "ETH": 2 * 10**18, "WBTC": 0}
    assert asyncio.run(ledger.get_usd_value("ETH", 2 * 10**18)) == pytest.approx(5_000.0)
    assert asyncio.run(ledger.get_decimals("wbtc")) == 8
    assert asyncio.run(ledger.expected_output("USDC", "ETH", 2_500 * 10**6)) == 10**18


def test_execute_dca_moves_balances_and_spends_allowance() -> None:
    ledger = _ledger()

    receipt = asyncio.run(ledger.execute_dca("perm-1", "USDC", "ETH", 250 * 10**6, 0))

    assert receipt.amount_out == 10**17
    assert receipt.gas_used == GAS_PER_LEG
    assert receipt.tx_ref.startswith("0x") and len(receipt.tx_ref) == 66
    assert ledger.balance_of("0xowner", "USDC") == 4_750 * 10**6
    assert ledger.balance_of("0xowner", "ETH") == 2 * 10**18 + 10**17
    assert ledger.spent("perm-1") == 250 * 10**6


def test_execute_dca_enforces_min_out_and_allowance() -> None:
    ledger = _ledger()

    with pytest.raises(LedgerExecutionError, match="slippage"):
        asyncio.run(ledger.execute_dca("perm-1", "USDC", "ETH", 250 * 10**6, 10**18))
    with pytest.raises(LedgerExecutionError, match="allowance exceeded"):
        asyncio.run(ledger.execute_dca("perm-1", "USDC", "ETH", 2_000 * 10**6, 0))
    with pytest.raises(LedgerExecutionError, match="no price"):
        asyncio.run(ledger.execute_dca("perm-1", "USDC", "DOGE", 10, 0))

    assert ledger.spent("perm-1") == 0
    assert ledger.balance_of("0xowner", "USDC") == 5_000 * 10**6


def test_execute_rebalance_is_all_or_nothing() -> None:
    ledger = _ledger()
    ledger.grant("perm-2", "0xowner", allowance=10**30)

    with pytest.raises(LedgerExecutionError, match="insufficient USDC"):
        asyncio.run(
            ledger.execute_rebalance(
                "perm-2", ["ETH", "USDC"], ["USDC", "ETH"], [10**17, 6_000 * 10**6], [0, 0]
            )
        )
    assert ledger.balance_of("0xowner", "ETH") == 2 * 10**18
    assert ledger.spent("perm-2") == 0

    receipt = asyncio.run(
        ledger.execute_rebalance("perm-2", ["ETH"], ["USDC"], [10**18], [2_000 * 10**6])
    )
    assert receipt.amounts_out == (2_500 * 10**6,)
    assert receipt.gas_used == GAS_PER_LEG
    assert ledger.balance_of("0xowner", "ETH") == 10**18
    assert ledger.balance_of("0xowner", "USDC") == 7_500 * 10**6
    assert ledger.spent("perm-2") == 10**18

    with pytest.raises(LedgerExecutionError, match="parallel"):
        asyncio.run(ledger.execute_rebalance("perm-2", ["ETH"], [], [1], [0]))


def test_time_window_resets_spent() -> None:
    clock = _Clock(1_000)
    ledger = SimulatedLedger(prices_usd=PRICES, clock=clock)
    ledger.grant(
        "perm-1", "0xowner", allowance=100, spent=100, time_window_seconds=60, reset_time=1_050
    )

    assert asyncio.run(ledger.check_allowance("perm-1", 1)) is False
    clock.now = 1_050
    assert asyncio.run(ledger.check_allowance("perm-1", 100)) is True
    assert ledger.spent("perm-1") == 0


def test_load_permissions_mirrors_revocation() -> None:
    ledger = SimulatedLedger(prices_usd=PRICES)
    ledger.load_permissions(
        [
            Permission(permission_id="a", owner="0x1", delegatee="0xagent", allowance=10),
            Permission(
                permission_id="b", owner="0x2", delegatee="0xagent", allowance=10, is_active=False
            ),
        ]
    )

    assert asyncio.run(ledger.get_permission_info("a")) is not None
    assert asyncio.run(ledger.get_permission_info("b")) is None


def test_windowed_grant_without_reset_time_starts_window_now() -> None:
    clock = _Clock(5_000)
    ledger = SimulatedLedger(prices_usd=PRICES, clock=clock)
    ledger.grant("perm-1", "0xowner", allowance=100, spent=80, time_window_seconds=60)

    assert ledger.reset_time("perm-1") == 5_060
    assert asyncio.run(ledger.check_allowance("perm-1", 21)) is False
    assert ledger.spent("perm-1") == 80
    clock.now = 5_060
    assert asyncio.run(ledger.check_allowance("perm-1", 100)) is True
    assert ledger.reset_time("perm-1") == 5_120
