from __future__ import annotations

import logging
import sqlite3

from autobalancer.domain.models import Period, Plan, utc_now
from autobalancer.persistence.sqlite.codec import dump_amount, dump_datetime, load_datetime

logger = logging.getLogger(__name__)


def _row_to_plan(row: sqlite3.Row) -> Plan:
    return Plan(
        plan_id=str(row["plan_id"]),
        owner=str(row["owner"]),
        asset_from=str(row["asset_from"]),
        asset_to=str(row["asset_to"]),
        amount_per_period=int(row["amount_per_period"]),
        period=Period(str(row["period"])),
        duration_seconds=int(row["duration_seconds"]),
        start_time=int(row["start_time"]),
        last_execution_time=int(row["last_execution_time"]),
        total_executions=int(row["total_executions"]),
        total_amount_spent=int(row["total_amount_spent"]),
        permission_id=str(row["permission_id"]),
        is_active=bool(row["is_active"]),
        created_at=load_datetime(row["created_at"]),
        updated_at=load_datetime(row["updated_at"]),
    )


class SqlitePlansRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "plans"}})
            raise PermissionError("UnitOfWork is read-only; plan writes are blocked")

    def get(self, plan_id: str) -> Plan | None:
        row = self._conn.execute("SELECT * FROM dca_plans WHERE plan_id = ?", (plan_id,)).fetchone()
        return _row_to_plan(row) if row is not None else None

    def list_plans(self, *, owner: str | None = None, active_only: bool = False) -> list[Plan]:
        clauses: list[str] = []
        params: list[object] = []
        if owner is not None:
            clauses.append("lower(owner) = lower(?)")
            params.append(owner)
        if active_only:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM dca_plans {where} ORDER BY created_at, plan_id", params
        ).fetchall()
        return [_row_to_plan(row) for row in rows]

    def save(self, plan: Plan) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO dca_plans(
                plan_id, owner, asset_from, asset_to, amount_per_period, period,
                duration_seconds, start_time, last_execution_time, total_executions,
                total_amount_spent, permission_id, is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(plan_id) DO UPDATE SET
                owner=excluded.owner,
                asset_from=excluded.asset_from,
                asset_to=excluded.asset_to,
                amount_per_period=excluded.amount_per_period,
                period=excluded.period,
                duration_seconds=excluded.duration_seconds,
                start_time=excluded.start_time,
                last_execution_time=excluded.last_execution_time,
                total_executions=excluded.total_executions,
                total_amount_spent=excluded.total_amount_spent,
                permission_id=excluded.permission_id,
                is_active=excluded.is_active,
                updated_at=excluded.updated_at
            """,
            (
                plan.plan_id,
                plan.owner,
                plan.asset_from,
                plan.asset_to,
                dump_amount(plan.amount_per_period),
                str(plan.period),
                plan.duration_seconds,
                plan.start_time,
                plan.last_execution_time,
                plan.total_executions,
                dump_amount(plan.total_amount_spent),
                plan.permission_id,
                int(plan.is_active),
                dump_datetime(plan.created_at),
                dump_datetime(plan.updated_at),
            ),
        )

    def set_active_where(self, *, active: bool, owner: str | None = None) -> int:
        self._ensure_writable()
        params: list[object] = [int(active), dump_datetime(utc_now()), int(not active)]
        sql = "UPDATE dca_plans SET is_active = ?, updated_at = ? WHERE is_active = ?"
        if owner is not None:
            sql += " AND lower(owner) = lower(?)"
            params.append(owner)
        cursor = self._conn.execute(sql, params)
        return int(cursor.rowcount)
