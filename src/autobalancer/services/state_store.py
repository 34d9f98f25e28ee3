from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel

from autobalancer.domain.models import (
    ExecutionLog,
    ExecutionStatus,
    ExecutionType,
    Permission,
    Plan,
    RebalancerConfig,
    utc_now,
)
from autobalancer.errors import RecordNotFoundError
from autobalancer.persistence.sqlite.execution_logs_repo import DEFAULT_LOG_LIMIT
from autobalancer.persistence.sqlite.sqlite_connection import (
    create_sqlite_connection,
    ensure_schema,
)
from autobalancer.persistence.uow import UnitOfWorkFactory
from autobalancer.ports import ActiveItems, DeactivationCounts

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)
_IMMUTABLE_FIELDS = {"plan_id", "config_id", "permission_id", "owner", "created_at"}


def _apply_patch(record: _ModelT, patch: Mapping[str, object]) -> _ModelT:
    unknown = set(patch) - set(type(record).model_fields)
    if unknown:
        raise ValueError(f"unknown fields in patch: {', '.join(sorted(unknown))}")
    frozen = set(patch) & _IMMUTABLE_FIELDS
    if frozen:
        raise ValueError(f"fields cannot be patched: {', '.join(sorted(frozen))}")
    payload = record.model_dump()
    payload.update(patch)
    payload["updated_at"] = utc_now()
    return type(record).model_validate(payload)


class StateStore:
    """SQLite-backed persistence for plans, rebalancer configs, permissions and execution logs."""

    def __init__(self, db_path: str = "autobalancer_state.db", *, read_only: bool = False) -> None:
        self.db_path = db_path
        self.db_path_abs = str(Path(db_path).expanduser().resolve())
        self.read_only = read_only
        self._uow_factory = UnitOfWorkFactory(db_path, read_only=read_only)
        with self._connect() as conn:
            ensure_schema(conn)
        logger.info("state_store_startup", extra={"extra": {"db_path": self.db_path_abs}})

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = create_sqlite_connection(self.db_path)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # plans

    def create_plan(self, plan: Plan) -> Plan:
        with self._uow_factory() as uow:
            if uow.plans.get(plan.plan_id) is not None:
                raise ValueError(f"plan already exists: {plan.plan_id}")
            uow.plans.save(plan)
        logger.info(
            "plan_created",
            extra={"extra": {"plan_id": plan.plan_id, "owner": plan.owner, "period": plan.period}},
        )
        return plan

    def get_plan(self, plan_id: str) -> Plan | None:
        with self._uow_factory() as uow:
            return uow.plans.get(plan_id)

    def list_plans(self, *, owner: str | None = None, active_only: bool = False) -> list[Plan]:
        with self._uow_factory() as uow:
            return uow.plans.list_plans(owner=owner, active_only=active_only)

    def update_plan(self, plan_id: str, **patch: object) -> Plan:
        with self._uow_factory() as uow:
            current = uow.plans.get(plan_id)
            if current is None:
                raise RecordNotFoundError("plan", plan_id)
            updated = _apply_patch(current, patch)
            uow.plans.save(updated)
        return updated

    def set_plan_active(self, plan_id: str, active: bool) -> Plan:
        plan = self.update_plan(plan_id, is_active=active)
        logger.info("plan_active_changed", extra={"extra": {"plan_id": plan_id, "active": active}})
        return plan

    def record_dca_execution(self, plan_id: str, *, executed_at: int, amount: int) -> Plan:
        with self._uow_factory() as uow:
            current = uow.plans.get(plan_id)
            if current is None:
                raise RecordNotFoundError("plan", plan_id)
            updated = _apply_patch(
                current,
                {
                    "last_execution_time": max(current.last_execution_time, executed_at),
                    "total_executions": current.total_executions + 1,
                    "total_amount_spent": current.total_amount_spent + amount,
                },
            )
            uow.plans.save(updated)
        return updated

    # rebalancer configs

    def create_config(self, config: RebalancerConfig) -> RebalancerConfig:
        config.validate_weights()
        with self._uow_factory() as uow:
            if uow.configs.get(config.config_id) is not None:
                raise ValueError(f"rebalancer config already exists: {config.config_id}")
            uow.configs.save(config)
        logger.info(
            "rebalancer_config_created",
            extra={
                "extra": {
                    "config_id": config.config_id,
                    "owner": config.owner,
                    "assets": list(config.asset_ids),
                }
            },
        )
        return config

    def get_config(self, config_id: str) -> RebalancerConfig | None:
        with self._uow_factory() as uow:
            return uow.configs.get(config_id)

    def list_configs(
        self, *, owner: str | None = None, active_only: bool = False
    ) -> list[RebalancerConfig]:
        with self._uow_factory() as uow:
            return uow.configs.list_configs(owner=owner, active_only=active_only)

    def update_config(self, config_id: str, **patch: object) -> RebalancerConfig:
        with self._uow_factory() as uow:
            current = uow.configs.get(config_id)
            if current is None:
                raise RecordNotFoundError("rebalancer config", config_id)
            updated = _apply_patch(current, patch)
            if "assets" in patch:
                updated.validate_weights()
            uow.configs.save(updated)
        return updated

    def set_config_active(self, config_id: str, active: bool) -> RebalancerConfig:
        config = self.update_config(config_id, is_active=active)
        logger.info(
            "rebalancer_config_active_changed",
            extra={"extra": {"config_id": config_id, "active": active}},
        )
        return config

    def record_rebalance(self, config_id: str, *, executed_at: int) -> RebalancerConfig:
        with self._uow_factory() as uow:
            current = uow.configs.get(config_id)
            if current is None:
                raise RecordNotFoundError("rebalancer config", config_id)
            updated = _apply_patch(
                current,
                {
                    "last_rebalance_time": max(current.last_rebalance_time, executed_at),
                    "total_rebalances": current.total_rebalances + 1,
                },
            )
            uow.configs.save(updated)
        return updated

    # shared

    def get_active(self) -> ActiveItems:
        with self._uow_factory() as uow:
            plans = uow.plans.list_plans(active_only=True)
            configs = uow.configs.list_configs(active_only=True)
        return ActiveItems(plans=tuple(plans), configs=tuple(configs))

    def deactivate_all(self) -> DeactivationCounts:
        with self._uow_factory() as uow:
            plans = uow.plans.set_active_where(active=False)
            configs = uow.configs.set_active_where(active=False)
        return DeactivationCounts(plans=plans, configs=configs)

    def deactivate_owner(
        self, owner: str, *, plans: bool = True, configs: bool = True
    ) -> DeactivationCounts:
        plan_count = config_count = 0
        with self._uow_factory() as uow:
            if plans:
                plan_count = uow.plans.set_active_where(active=False, owner=owner)
            if configs:
                config_count = uow.configs.set_active_where(active=False, owner=owner)
        return DeactivationCounts(plans=plan_count, configs=config_count)

    # permissions

    def upsert_permission(self, permission: Permission) -> Permission:
        with self._uow_factory() as uow:
            existing = uow.permissions.get(permission.permission_id)
            if existing is not None:
                permission = permission.model_copy(update={"created_at": existing.created_at})
            uow.permissions.save(permission)
        return permission

    def get_permission(self, permission_id: str) -> Permission | None:
        with self._uow_factory() as uow:
            return uow.permissions.get(permission_id)

    def list_permissions(self, *, owner: str | None = None) -> list[Permission]:
        with self._uow_factory() as uow:
            return uow.permissions.list_permissions(owner=owner)

    def revoke_permission(self, permission_id: str) -> Permission:
        with self._uow_factory() as uow:
            current = uow.permissions.get(permission_id)
            if current is None:
                raise RecordNotFoundError("permission", permission_id)
            revoked = _apply_patch(current, {"is_active": False})
            uow.permissions.save(revoked)
        logger.info("permission_revoked", extra={"extra": {"permission_id": permission_id}})
        return revoked

    # execution logs

    def append_log(self, log: ExecutionLog) -> None:
        with self._uow_factory() as uow:
            uow.logs.append(log)

    def list_logs(
        self,
        *,
        owner: str | None = None,
        execution_type: ExecutionType | None = None,
        subject_id: str | None = None,
        limit: int = DEFAULT_LOG_LIMIT,
    ) -> list[ExecutionLog]:
        with self._uow_factory() as uow:
            return uow.logs.list_logs(
                owner=owner, execution_type=execution_type, subject_id=subject_id, limit=limit
            )

    def count_logs_by_status(
        self, *, execution_type: ExecutionType, owner: str | None = None
    ) -> dict[ExecutionStatus, int]:
        with self._uow_factory() as uow:
            return uow.logs.count_by_status(execution_type=execution_type, owner=owner)

    # runtime state

    def set_runtime_state(self, key: str, text: str) -> None:
        now = utc_now().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO op_state(key, int_value, text_value, updated_at)
                VALUES (?, NULL, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    text_value=excluded.text_value,
                    updated_at=excluded.updated_at
                """,
                (key, text, now),
            )

    def get_runtime_state(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT text_value FROM op_state WHERE key = ?", (key,)).fetchone()
        if row is None or row["text_value"] is None:
            return None
        return str(row["text_value"])

    def flush(self) -> None:
        if self.read_only:
            return
        with self._connect() as conn:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        logger.debug("state_store_flushed", extra={"extra": {"db_path": self.db_path_abs}})
