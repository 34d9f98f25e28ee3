from __future__ import annotations

from typing import Protocol

from autobalancer.domain.models import RebalancerConfig


class ConfigsRepoProtocol(Protocol):
    def get(self, config_id: str) -> RebalancerConfig | None: ...

    def list_configs(
        self, *, owner: str | None = None, active_only: bool = False
    ) -> list[RebalancerConfig]: ...

    def save(self, config: RebalancerConfig) -> None: ...

    def set_active_where(self, *, active: bool, owner: str | None = None) -> int: ...
