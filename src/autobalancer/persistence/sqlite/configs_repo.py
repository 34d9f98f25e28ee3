from __future__ import annotations

import json
import logging
import sqlite3

from autobalancer.domain.models import AssetWeight, RebalancerConfig, utc_now
from autobalancer.persistence.sqlite.codec import dump_datetime, load_datetime

logger = logging.getLogger(__name__)


def _dump_assets(assets: tuple[AssetWeight, ...]) -> str:
    return json.dumps(
        [
            {"asset_id": weight.asset_id, "target_weight_percent": weight.target_weight_percent}
            for weight in assets
        ]
    )


def _row_to_config(row: sqlite3.Row) -> RebalancerConfig:
    return RebalancerConfig(
        config_id=str(row["config_id"]),
        owner=str(row["owner"]),
        assets=tuple(AssetWeight(**item) for item in json.loads(str(row["assets_json"]))),
        rebalance_threshold_percent=float(row["rebalance_threshold_percent"]),
        permission_id=str(row["permission_id"]),
        last_rebalance_time=int(row["last_rebalance_time"]),
        total_rebalances=int(row["total_rebalances"]),
        is_active=bool(row["is_active"]),
        created_at=load_datetime(row["created_at"]),
        updated_at=load_datetime(row["updated_at"]),
    )


class SqliteConfigsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "configs"}})
            raise PermissionError("UnitOfWork is read-only; config writes are blocked")

    def get(self, config_id: str) -> RebalancerConfig | None:
        row = self._conn.execute(
            "SELECT * FROM rebalancer_configs WHERE config_id = ?", (config_id,)
        ).fetchone()
        return _row_to_config(row) if row is not None else None

    def list_configs(
        self, *, owner: str | None = None, active_only: bool = False
    ) -> list[RebalancerConfig]:
        clauses: list[str] = []
        params: list[object] = []
        if owner is not None:
            clauses.append("lower(owner) = lower(?)")
            params.append(owner)
        if active_only:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM rebalancer_configs {where} ORDER BY created_at, config_id", params
        ).fetchall()
        return [_row_to_config(row) for row in rows]

    def save(self, config: RebalancerConfig) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            INSERT INTO rebalancer_configs(
                config_id, owner, assets_json, rebalance_threshold_percent, permission_id,
                last_rebalance_time, total_rebalances, is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(config_id) DO UPDATE SET
                owner=excluded.owner,
                assets_json=excluded.assets_json,
                rebalance_threshold_percent=excluded.rebalance_threshold_percent,
                permission_id=excluded.permission_id,
                last_rebalance_time=excluded.last_rebalance_time,
                total_rebalances=excluded.total_rebalances,
                is_active=excluded.is_active,
                updated_at=excluded.updated_at
            """,
            (
                config.config_id,
                config.owner,
                _dump_assets(config.assets),
                float(config.rebalance_threshold_percent),
                config.permission_id,
                config.last_rebalance_time,
                config.total_rebalances,
                int(config.is_active),
                dump_datetime(config.created_at),
                dump_datetime(config.updated_at),
            ),
        )

    def set_active_where(self, *, active: bool, owner: str | None = None) -> int:
        self._ensure_writable()
        params: list[object] = [int(active), dump_datetime(utc_now()), int(not active)]
        sql = "UPDATE rebalancer_configs SET is_active = ?, updated_at = ? WHERE is_active = ?"
        if owner is not None:
            sql += " AND lower(owner) = lower(?)"
            params.append(owner)
        cursor = self._conn.execute(sql, params)
        return int(cursor.rowcount)
