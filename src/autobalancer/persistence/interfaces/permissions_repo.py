from __future__ import annotations

from typing import Protocol

from autobalancer.domain.models import Permission


class PermissionsRepoProtocol(Protocol):
    def get(self, permission_id: str) -> Permission | None: ...

    def list_permissions(self, *, owner: str | None = None) -> list[Permission]: ...

    def save(self, permission: Permission) -> None: ...
