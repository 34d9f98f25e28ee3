from __future__ import annotations

import logging
import sqlite3

from autobalancer.domain.models import ExecutionLog, ExecutionStatus, ExecutionType
from autobalancer.persistence.sqlite.codec import (
    dump_amounts,
    dump_strings,
    load_amounts,
    load_strings,
)

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 100


def _row_to_log(row: sqlite3.Row) -> ExecutionLog:
    return ExecutionLog(
        log_id=str(row["log_id"]),
        execution_type=ExecutionType(str(row["execution_type"])),
        plan_id=row["plan_id"],
        config_id=row["config_id"],
        owner=str(row["owner"]),
        permission_id=str(row["permission_id"]),
        tx_ref=row["tx_ref"],
        gas_used=int(row["gas_used"]),
        input_amounts=load_amounts(row["input_amounts_json"]),
        output_amounts=load_amounts(row["output_amounts_json"]),
        assets_from=load_strings(row["assets_from_json"]),
        assets_to=load_strings(row["assets_to_json"]),
        executed_at=int(row["executed_at"]),
        status=ExecutionStatus(str(row["status"])),
        error_message=row["error_message"],
    )


class SqliteExecutionLogsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "execution_logs"}})
            raise PermissionError("UnitOfWork is read-only; execution log writes are blocked")

    def append(self, log: ExecutionLog) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO execution_logs(
                log_id, execution_type, plan_id, config_id, owner, permission_id, tx_ref,
                gas_used, input_amounts_json, output_amounts_json, assets_from_json,
                assets_to_json, executed_at, status, error_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                log.log_id,
                str(log.execution_type),
                log.plan_id,
                log.config_id,
                log.owner,
                log.permission_id,
                log.tx_ref,
                log.gas_used,
                dump_amounts(log.input_amounts),
                dump_amounts(log.output_amounts),
                dump_strings(log.assets_from),
                dump_strings(log.assets_to),
                log.executed_at,
                str(log.status),
                log.error_message,
            ),
        )

    def list_logs(
        self,
        *,
        owner: str | None = None,
        execution_type: ExecutionType | None = None,
        subject_id: str | None = None,
        limit: int = DEFAULT_LOG_LIMIT,
    ) -> list[ExecutionLog]:
        clauses: list[str] = []
        params: list[object] = []
        if owner is not None:
            clauses.append("lower(owner) = lower(?)")
            params.append(owner)
        if execution_type is not None:
            clauses.append("execution_type = ?")
            params.append(str(execution_type))
        if subject_id is not None:
            clauses.append("(plan_id = ? OR config_id = ?)")
            params.extend([subject_id, subject_id])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(0, int(limit)))
        rows = self._conn.execute(
            f"SELECT * FROM execution_logs {where} ORDER BY executed_at DESC, rowid DESC LIMIT ?",
            params,
        ).fetchall()
        return [_row_to_log(row) for row in rows]

    def count_by_status(
        self, *, execution_type: ExecutionType, owner: str | None = None
    ) -> dict[ExecutionStatus, int]:
        params: list[object] = [str(execution_type)]
        sql = "SELECT status, COUNT(*) AS n FROM execution_logs WHERE execution_type = ?"
        if owner is not None:
            sql += " AND lower(owner) = lower(?)"
            params.append(owner)
        sql += " GROUP BY status"
        counts = {status: 0 for status in ExecutionStatus}
        for row in self._conn.execute(sql, params):
            counts[ExecutionStatus(str(row["status"]))] = int(row["n"])
        return counts
