from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from autobalancer.domain.models import Permission, PermissionInfo, normalize_identity
from autobalancer.domain.time_periods import epoch_seconds
from autobalancer.errors import LedgerExecutionError
from autobalancer.ports import DcaReceipt, RebalanceReceipt

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = {
    "ETH": 18,
    "WETH": 18,
    "DAI": 18,
    "USDC": 6,
    "USDT": 6,
    "WBTC": 8,
}
GAS_PER_LEG = 21_000


@dataclass
class _Grant:
    owner: str
    allowance: int
    spent: int = 0
    time_window_seconds: int = 0
    reset_time: int = 0
    active: bool = True


class SimulatedLedger:
    """In-memory ledger with static USD prices, used for dry runs and tests.

    Implements the permission query, execution, oracle and quote ports.
    Allowances are spent in base units of the source asset.
    """

    def __init__(
        self,
        *,
        prices_usd: Mapping[str, float],
        decimals: Mapping[str, int] | None = None,
        clock: Callable[[], int] = epoch_seconds,
    ) -> None:
        self.prices_usd = {str(asset).upper(): float(price) for asset, price in prices_usd.items()}
        merged = dict(DEFAULT_DECIMALS)
        merged.update({str(asset).upper(): int(value) for asset, value in (decimals or {}).items()})
        self.decimals = merged
        self.clock = clock
        self._grants: dict[str, _Grant] = {}
        self._balances: dict[str, dict[str, int]] = {}
        self._nonce = 0

    # setup

    def grant(
        self,
        permission_id: str,
        owner: str,
        allowance: int,
        *,
        spent: int = 0,
        time_window_seconds: int = 0,
        reset_time: int = 0,
    ) -> None:
        if time_window_seconds > 0 and reset_time == 0:
            reset_time = self.clock() + time_window_seconds
        self._grants[permission_id] = _Grant(
            owner=owner,
            allowance=allowance,
            spent=spent,
            time_window_seconds=time_window_seconds,
            reset_time=reset_time,
        )

    def load_permissions(self, permissions: Iterable[Permission]) -> None:
        for permission in permissions:
            self.grant(
                permission.permission_id,
                permission.owner,
                permission.allowance,
                spent=permission.spent,
                time_window_seconds=permission.time_window_seconds,
                reset_time=permission.reset_time,
            )
            if not permission.is_active:
                self.revoke(permission.permission_id)

    def revoke(self, permission_id: str) -> None:
        grant = self._grants.get(permission_id)
        if grant is not None:
            grant.active = False

    def spent(self, permission_id: str) -> int:
        grant = self._grants.get(permission_id)
        return grant.spent if grant is not None else 0

    def reset_time(self, permission_id: str) -> int:
        grant = self._grants.get(permission_id)
        return grant.reset_time if grant is not None else 0

    def set_balance(self, owner: str, asset_id: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("balances must be >= 0")
        self._balances.setdefault(normalize_identity(owner), {})[asset_id.upper()] = amount

    def load_balances(self, balances: Mapping[str, Mapping[str, int]]) -> None:
        for owner, assets in balances.items():
            for asset_id, amount in assets.items():
                self.set_balance(owner, asset_id, int(amount))

    def balance_of(self, owner: str, asset_id: str) -> int:
        return self._balances.get(normalize_identity(owner), {}).get(asset_id.upper(), 0)

    def balances_snapshot(self) -> dict[str, dict[str, int]]:
        return {owner: dict(assets) for owner, assets in self._balances.items()}

    # ledger query port

    async def get_permission_info(self, permission_id: str) -> PermissionInfo | None:
        grant = self._grants.get(permission_id)
        if grant is None or not grant.active:
            return None
        self._maybe_reset(grant)
        return PermissionInfo(
            owner=grant.owner,
            allowance=grant.allowance,
            spent=grant.spent,
            reset_time=grant.reset_time,
            time_window_seconds=grant.time_window_seconds,
        )

    async def check_allowance(self, permission_id: str, amount: int) -> bool:
        grant = self._grants.get(permission_id)
        if grant is None or not grant.active:
            return False
        self._maybe_reset(grant)
        return grant.allowance - grant.spent >= amount

    # ledger execution port

    async def execute_dca(
        self,
        permission_id: str,
        asset_from: str,
        asset_to: str,
        amount: int,
        min_out: int,
    ) -> DcaReceipt:
        grant = self._require_grant(permission_id, amount)
        amount_out = self._convert(asset_from, asset_to, amount)
        if amount_out < min_out:
            raise LedgerExecutionError(
                f"slippage exceeded: {amount_out} < {min_out}", permission_id=permission_id
            )
        self._move(grant.owner, asset_from, asset_to, amount, amount_out, permission_id)
        grant.spent += amount
        tx_ref = self._next_tx_ref(permission_id, [asset_from], [asset_to], [amount])
        logger.debug("simulated_dca_executed", extra={"extra": {"tx_ref": tx_ref}})
        return DcaReceipt(tx_ref=tx_ref, amount_out=amount_out, gas_used=GAS_PER_LEG)

    async def execute_rebalance(
        self,
        permission_id: str,
        assets_from: Sequence[str],
        assets_to: Sequence[str],
        amounts: Sequence[int],
        min_amounts_out: Sequence[int],
    ) -> RebalanceReceipt:
        legs = len(amounts)
        if not (len(assets_from) == len(assets_to) == len(min_amounts_out) == legs):
            raise LedgerExecutionError(
                "rebalance arrays must be parallel", permission_id=permission_id
            )
        grant = self._require_grant(permission_id, sum(amounts))
        outputs = [
            self._convert(asset_from, asset_to, amount)
            for asset_from, asset_to, amount in zip(assets_from, assets_to, amounts)
        ]
        for index, (amount_out, min_out) in enumerate(zip(outputs, min_amounts_out)):
            if amount_out < min_out:
                raise LedgerExecutionError(
                    f"slippage exceeded on leg {index}: {amount_out} < {min_out}",
                    permission_id=permission_id,
                )
        required: dict[str, int] = {}
        for asset_from, amount in zip(assets_from, amounts):
            required[asset_from] = required.get(asset_from, 0) + amount
        for asset_from, total in required.items():
            if self.balance_of(grant.owner, asset_from) < total:
                raise LedgerExecutionError(
                    f"insufficient {asset_from} balance", permission_id=permission_id
                )
        for asset_from, asset_to, amount, amount_out in zip(
            assets_from, assets_to, amounts, outputs
        ):
            self._move(grant.owner, asset_from, asset_to, amount, amount_out, permission_id)
        grant.spent += sum(amounts)
        tx_ref = self._next_tx_ref(permission_id, list(assets_from), list(assets_to), list(amounts))
        return RebalanceReceipt(
            tx_ref=tx_ref, amounts_out=tuple(outputs), gas_used=GAS_PER_LEG * max(1, legs)
        )

    # oracle and quote ports

    async def get_balances(self, asset_ids: Sequence[str], owner: str) -> dict[str, int]:
        return {asset_id: self.balance_of(owner, asset_id) for asset_id in asset_ids}

    async def get_usd_value(self, asset_id: str, amount: int) -> float:
        price = self._price(asset_id)
        scale = Decimal(10) ** self._decimals(asset_id)
        return float(Decimal(amount) / scale * Decimal(str(price)))

    async def get_decimals(self, asset_id: str) -> int:
        return self._decimals(asset_id)

    async def expected_output(self, asset_from: str, asset_to: str, amount: int) -> int:
        return self._convert(asset_from, asset_to, amount)

    # internals

    def _price(self, asset_id: str) -> float:
        try:
            return self.prices_usd[asset_id.upper()]
        except KeyError as exc:
            raise LedgerExecutionError(f"no price for asset {asset_id}") from exc

    def _decimals(self, asset_id: str) -> int:
        return self.decimals.get(asset_id.upper(), 18)

    def _convert(self, asset_from: str, asset_to: str, amount: int) -> int:
        price_from = Decimal(str(self._price(asset_from)))
        price_to = Decimal(str(self._price(asset_to)))
        if price_to <= 0:
            raise LedgerExecutionError(f"asset {asset_to} has no positive price")
        value = Decimal(amount) / (Decimal(10) ** self._decimals(asset_from)) * price_from
        units = value / price_to * (Decimal(10) ** self._decimals(asset_to))
        return int(units.quantize(Decimal("1"), rounding=ROUND_DOWN))

    def _maybe_reset(self, grant: _Grant) -> None:
        if grant.time_window_seconds <= 0:
            return
        now = self.clock()
        if now >= grant.reset_time:
            grant.spent = 0
            grant.reset_time = now + grant.time_window_seconds

    def _require_grant(self, permission_id: str, amount: int) -> _Grant:
        grant = self._grants.get(permission_id)
        if grant is None or not grant.active:
            raise LedgerExecutionError("permission not active", permission_id=permission_id)
        self._maybe_reset(grant)
        if grant.allowance - grant.spent < amount:
            raise LedgerExecutionError("allowance exceeded", permission_id=permission_id)
        return grant

    def _move(
        self,
        owner: str,
        asset_from: str,
        asset_to: str,
        amount: int,
        amount_out: int,
        permission_id: str,
    ) -> None:
        available = self.balance_of(owner, asset_from)
        if available < amount:
            raise LedgerExecutionError(
                f"insufficient {asset_from} balance", permission_id=permission_id
            )
        self.set_balance(owner, asset_from, available - amount)
        self.set_balance(owner, asset_to, self.balance_of(owner, asset_to) + amount_out)

    def _next_tx_ref(
        self,
        permission_id: str,
        assets_from: list[str],
        assets_to: list[str],
        amounts: list[int],
    ) -> str:
        self._nonce += 1
        material = f"{permission_id}|{self._nonce}|{assets_from}|{assets_to}|{amounts}"
        return "0x" + hashlib.sha256(material.encode("utf-8")).hexdigest()
