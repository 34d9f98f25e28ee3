from __future__ import annotations

import logging
import sqlite3

from autobalancer.domain.models import Permission
from autobalancer.persistence.sqlite.codec import dump_amount, dump_datetime, load_datetime

logger = logging.getLogger(__name__)


def _row_to_permission(row: sqlite3.Row) -> Permission:
    parent = row["parent_permission_id"]
    return Permission(
        permission_id=str(row["permission_id"]),
        owner=str(row["owner"]),
        delegatee=str(row["delegatee"]),
        allowance=int(row["allowance"]),
        spent=int(row["spent"]),
        time_window_seconds=int(row["time_window_seconds"]),
        reset_time=int(row["reset_time"]),
        is_active=bool(row["is_active"]),
        parent_permission_id=str(parent) if parent is not None else None,
        created_at=load_datetime(row["created_at"]),
        updated_at=load_datetime(row["updated_at"]),
    )


class SqlitePermissionsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "permissions"}})
            raise PermissionError("UnitOfWork is read-only; permission writes are blocked")

    def get(self, permission_id: str) -> Permission | None:
        row = self._conn.execute(
            "SELECT * FROM permissions WHERE permission_id = ?", (permission_id,)
        ).fetchone()
        return _row_to_permission(row) if row is not None else None

    def list_permissions(self, *, owner: str | None = None) -> list[Permission]:
        if owner is None:
            rows = self._conn.execute(
                "SELECT * FROM permissions ORDER BY created_at, permission_id"
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT * FROM permissions
                WHERE lower(owner) = lower(?)
                ORDER BY created_at, permission_id
                """,
                (owner,),
            ).fetchall()
        return [_row_to_permission(row) for row in rows]

    def save(self, permission: Permission) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO permissions(
                permission_id, owner, delegatee, allowance, spent, time_window_seconds,
                reset_time, is_active, parent_permission_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(permission_id) DO UPDATE SET
                owner=excluded.owner,
                delegatee=excluded.delegatee,
                allowance=excluded.allowance,
                spent=excluded.spent,
                time_window_seconds=excluded.time_window_seconds,
                reset_time=excluded.reset_time,
                is_active=excluded.is_active,
                parent_permission_id=excluded.parent_permission_id,
                updated_at=excluded.updated_at
            """,
            (
                permission.permission_id,
                permission.owner,
                permission.delegatee,
                dump_amount(permission.allowance),
                dump_amount(permission.spent),
                permission.time_window_seconds,
                permission.reset_time,
                int(permission.is_active),
                permission.parent_permission_id,
                dump_datetime(permission.created_at),
                dump_datetime(permission.updated_at),
            ),
        )
