from __future__ import annotations

import asyncio

from autobalancer.domain.models import Permission, PermissionInfo
from autobalancer.observability import NoopInstrumentation
from autobalancer.services.allowance_validator import (
    REASON_INSUFFICIENT,
    REASON_LEDGER_CHECK,
    REASON_NOT_ACTIVE,
    REASON_OK,
    REASON_OWNER_MISMATCH,
    REASON_REVOKED,
    AllowanceValidator,
)


class _FakeLedger:
    def __init__(
        self,
        info: PermissionInfo | None,
        *,
        allowed: bool = True,
        raise_on_info: bool = False,
        raise_on_check: bool = False,
    ) -> None:
        self.info = info
        self.allowed = allowed
        self.raise_on_info = raise_on_info
        self.raise_on_check = raise_on_check
        self.check_calls: list[tuple[str, int]] = []

    async def get_permission_info(self, permission_id: str) -> PermissionInfo | None:
        if self.raise_on_info:
            raise ConnectionError("rpc down")
        return self.info

    async def check_allowance(self, permission_id: str, amount: int) -> bool:
        self.check_calls.append((permission_id, amount))
        if self.raise_on_check:
            raise TimeoutError("rpc timeout")
        return self.allowed


class _FakePermissions:
    def __init__(self, permission: Permission | None) -> None:
        self.permission = permission

    def get_permission(self, permission_id: str) -> Permission | None:
        return self.permission


class _CountingInstrumentation(NoopInstrumentation):
    def __init__(self) -> None:
        self.counters: list[tuple[str, dict]] = []

    def counter(self, name, value=1, *, attrs=None) -> None:
        self.counters.append((name, dict(attrs or {})))


def _info(owner: str = "0xOwner", allowance: int = 1_000, spent: int = 0) -> PermissionInfo:
    return PermissionInfo(owner=owner, allowance=allowance, spent=spent)


def test_valid_permission() -> None:
    ledger = _FakeLedger(_info())
    validator = AllowanceValidator(ledger)

    check = asyncio.run(validator.check("perm-1", "0xowner", 400))

    assert check.valid is True
    assert check.reason == REASON_OK
    assert check.remaining == 1_000
    assert ledger.check_calls == [("perm-1", 400)]
    assert asyncio.run(validator.validate("perm-1", "0xOWNER", 1_000)) is True


def test_missing_or_zero_owner_is_not_active() -> None:
    assert asyncio.run(AllowanceValidator(_FakeLedger(None)).check("p", "0xowner", 1)).reason == (
        REASON_NOT_ACTIVE
    )
    zero = _FakeLedger(_info(owner="0x0000000000000000000000000000000000000000"))
    assert asyncio.run(AllowanceValidator(zero).check("p", "0xowner", 1)).reason == (
        REASON_NOT_ACTIVE
    )


def test_owner_mismatch() -> None:
    validator = AllowanceValidator(_FakeLedger(_info(owner="0xsomeoneelse")))
    check = asyncio.run(validator.check("p", "0xowner", 1))
    assert not check
    assert check.reason == REASON_OWNER_MISMATCH


def test_insufficient_allowance_is_enforced_for_dca() -> None:
    ledger = _FakeLedger(_info(allowance=1_000, spent=700))
    instrumentation = _CountingInstrumentation()
    validator = AllowanceValidator(ledger, instrumentation=instrumentation)

    check = asyncio.run(validator.check("p", "0xowner", 301))

    assert check.valid is False
    assert check.reason == REASON_INSUFFICIENT
    assert check.remaining == 300
    assert ledger.check_calls == []
    assert instrumentation.counters == [
        ("permission_rejections_total", {"reason": REASON_INSUFFICIENT})
    ]


def test_insufficient_allowance_is_advisory_for_rebalance() -> None:
    ledger = _FakeLedger(_info(allowance=1_000, spent=999))
    validator = AllowanceValidator(ledger)

    check = asyncio.run(validator.check("p", "0xowner", 10**18, enforce_amount=False))

    assert check.valid is True
    assert check.remaining == 1
    assert ledger.check_calls == []


def test_ledger_allowance_check_rejection_and_error() -> None:
    rejected = AllowanceValidator(_FakeLedger(_info(), allowed=False))
    assert asyncio.run(rejected.check("p", "0xowner", 1)).reason == REASON_LEDGER_CHECK

    erroring = AllowanceValidator(_FakeLedger(_info(), raise_on_check=True))
    assert asyncio.run(erroring.check("p", "0xowner", 1)).reason == REASON_LEDGER_CHECK


def test_ledger_allowance_check_can_be_disabled() -> None:
    ledger = _FakeLedger(_info(), allowed=False)
    validator = AllowanceValidator(ledger, ledger_check_enabled=False)

    assert asyncio.run(validator.validate("p", "0xowner", 1)) is True
    assert ledger.check_calls == []


def test_ledger_exception_means_invalid() -> None:
    validator = AllowanceValidator(_FakeLedger(_info(), raise_on_info=True))

    check = asyncio.run(validator.check("p", "0xowner", 1))

    assert check.valid is False
    assert check.reason == REASON_NOT_ACTIVE


def test_locally_revoked_permission_short_circuits() -> None:
    ledger = _FakeLedger(_info())
    mirrored = Permission(
        permission_id="p",
        owner="0xowner",
        delegatee="0xagent",
        allowance=1_000,
        is_active=False,
    )
    validator = AllowanceValidator(ledger, permissions=_FakePermissions(mirrored))

    check = asyncio.run(validator.check("p", "0xowner", 1))

    assert check.reason == REASON_REVOKED
    assert ledger.check_calls == []
