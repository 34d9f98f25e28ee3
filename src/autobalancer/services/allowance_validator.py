from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from autobalancer.domain.models import Permission, is_zero_identity, same_identity
from autobalancer.observability import Instrumentation, get_instrumentation
from autobalancer.ports import LedgerQueryPort

logger = logging.getLogger(__name__)

REASON_OK = "ok"
REASON_REVOKED = "permission revoked"
REASON_NOT_ACTIVE = "permission not active"
REASON_OWNER_MISMATCH = "owner mismatch"
REASON_INSUFFICIENT = "insufficient allowance"
REASON_LEDGER_CHECK = "ledger check failed"


class PermissionSource(Protocol):
    def get_permission(self, permission_id: str) -> Permission | None: ...


@dataclass(frozen=True)
class PermissionCheck:
    valid: bool
    reason: str
    remaining: int | None = None

    def __bool__(self) -> bool:
        return self.valid


class AllowanceValidator:
    """Decides whether a stored permission still authorizes a requested spend.

    Every failure is reported as an invalid :class:`PermissionCheck`; nothing
    raised by the ledger escapes :meth:`check`.
    """

    def __init__(
        self,
        ledger: LedgerQueryPort,
        *,
        permissions: PermissionSource | None = None,
        ledger_check_enabled: bool = True,
        instrumentation: Instrumentation | None = None,
    ) -> None:
        self.ledger = ledger
        self.permissions = permissions
        self.ledger_check_enabled = ledger_check_enabled
        self.instrumentation = instrumentation or get_instrumentation()

    async def validate(self, permission_id: str, owner: str, amount_needed: int) -> bool:
        return (await self.check(permission_id, owner, amount_needed)).valid

    async def check(
        self,
        permission_id: str,
        owner: str,
        amount_needed: int,
        *,
        enforce_amount: bool = True,
    ) -> PermissionCheck:
        try:
            result = await self._check(permission_id, owner, amount_needed, enforce_amount)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "permission_validation_error",
                extra={"extra": {"permission_id": permission_id, "error_type": type(exc).__name__}},
            )
            result = PermissionCheck(valid=False, reason=REASON_NOT_ACTIVE)
        if not result.valid:
            self.instrumentation.permission_rejected(result.reason)
            logger.warning(
                "permission_invalid",
                extra={
                    "extra": {
                        "permission_id": permission_id,
                        "owner": owner,
                        "reason": result.reason,
                        "amount_needed": str(amount_needed),
                    }
                },
            )
        return result

    async def _check(
        self, permission_id: str, owner: str, amount_needed: int, enforce_amount: bool
    ) -> PermissionCheck:
        if self.permissions is not None:
            mirrored = self.permissions.get_permission(permission_id)
            if mirrored is not None and not mirrored.is_active:
                return PermissionCheck(valid=False, reason=REASON_REVOKED)

        info = await self.ledger.get_permission_info(permission_id)
        if info is None or is_zero_identity(info.owner):
            return PermissionCheck(valid=False, reason=REASON_NOT_ACTIVE)

        if not same_identity(info.owner, owner):
            return PermissionCheck(valid=False, reason=REASON_OWNER_MISMATCH)

        remaining = info.remaining
        if remaining < amount_needed:
            if enforce_amount:
                return PermissionCheck(
                    valid=False, reason=REASON_INSUFFICIENT, remaining=remaining
                )
            logger.warning(
                "permission_allowance_low",
                extra={
                    "extra": {
                        "permission_id": permission_id,
                        "remaining": str(remaining),
                        "reference_amount": str(amount_needed),
                    }
                },
            )

        if enforce_amount and self.ledger_check_enabled:
            try:
                allowed = await self.ledger.check_allowance(permission_id, amount_needed)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "permission_ledger_check_error",
                    extra={"extra": {"permission_id": permission_id}},
                )
                allowed = False
            if not allowed:
                return PermissionCheck(
                    valid=False, reason=REASON_LEDGER_CHECK, remaining=remaining
                )

        return PermissionCheck(valid=True, reason=REASON_OK, remaining=remaining)
