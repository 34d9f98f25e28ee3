from __future__ import annotations

from typing import Protocol

from autobalancer.domain.models import ExecutionLog, ExecutionStatus, ExecutionType


class ExecutionLogsRepoProtocol(Protocol):
    def append(self, log: ExecutionLog) -> None: ...

    def list_logs(
        self,
        *,
        owner: str | None = None,
        execution_type: ExecutionType | None = None,
        subject_id: str | None = None,
        limit: int = 100,
    ) -> list[ExecutionLog]: ...

    def count_by_status(
        self, *, execution_type: ExecutionType, owner: str | None = None
    ) -> dict[ExecutionStatus, int]: ...
