from __future__ import annotations

import sqlite3


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS dca_plans (
            plan_id TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            asset_from TEXT NOT NULL,
            asset_to TEXT NOT NULL,
            amount_per_period TEXT NOT NULL,
            period TEXT NOT NULL,
            duration_seconds INTEGER NOT NULL,
            start_time INTEGER NOT NULL,
            last_execution_time INTEGER NOT NULL DEFAULT 0,
            total_executions INTEGER NOT NULL DEFAULT 0,
            total_amount_spent TEXT NOT NULL DEFAULT '0',
            permission_id TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_dca_plans_active ON dca_plans(is_active)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_dca_plans_owner ON dca_plans(owner)")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS rebalancer_configs (
            config_id TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            assets_json TEXT NOT NULL,
            rebalance_threshold_percent REAL NOT NULL,
            permission_id TEXT NOT NULL,
            last_rebalance_time INTEGER NOT NULL DEFAULT 0,
            total_rebalances INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_rebalancer_configs_active ON rebalancer_configs(is_active)"
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS permissions (
            permission_id TEXT PRIMARY KEY,
            owner TEXT NOT NULL,
            delegatee TEXT NOT NULL,
            allowance TEXT NOT NULL,
            spent TEXT NOT NULL DEFAULT '0',
            time_window_seconds INTEGER NOT NULL DEFAULT 0,
            reset_time INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    permission_columns = {
        str(row["name"]) for row in conn.execute("PRAGMA table_info(permissions)")
    }
    if "parent_permission_id" not in permission_columns:
        conn.execute("ALTER TABLE permissions ADD COLUMN parent_permission_id TEXT")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS execution_logs (
            log_id TEXT PRIMARY KEY,
            execution_type TEXT NOT NULL CHECK(execution_type IN ('dca','rebalance')),
            plan_id TEXT,
            config_id TEXT,
            owner TEXT NOT NULL,
            permission_id TEXT NOT NULL,
            tx_ref TEXT,
            gas_used INTEGER NOT NULL DEFAULT 0,
            input_amounts_json TEXT NOT NULL,
            output_amounts_json TEXT NOT NULL,
            assets_from_json TEXT NOT NULL,
            assets_to_json TEXT NOT NULL,
            executed_at INTEGER NOT NULL,
            status TEXT NOT NULL CHECK(status IN ('success','failed')),
            error_message TEXT
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_execution_logs_executed_at ON execution_logs(executed_at)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_execution_logs_owner ON execution_logs(owner)")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS op_state (
            key TEXT PRIMARY KEY,
            int_value INTEGER,
            text_value TEXT,
            updated_at TEXT NOT NULL
        )
        """
    )
