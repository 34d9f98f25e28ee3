from __future__ import annotations

from typing import Protocol

from autobalancer.domain.models import Plan


class PlansRepoProtocol(Protocol):
    def get(self, plan_id: str) -> Plan | None: ...

    def list_plans(self, *, owner: str | None = None, active_only: bool = False) -> list[Plan]: ...

    def save(self, plan: Plan) -> None: ...

    def set_active_where(self, *, active: bool, owner: str | None = None) -> int: ...
