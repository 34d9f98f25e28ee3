from __future__ import annotations

import sqlite3
from dataclasses import dataclass

from autobalancer.persistence.interfaces import (
    ConfigsRepoProtocol,
    ExecutionLogsRepoProtocol,
    PermissionsRepoProtocol,
    PlansRepoProtocol,
)
from autobalancer.persistence.sqlite import (
    SqliteConfigsRepo,
    SqliteExecutionLogsRepo,
    SqlitePermissionsRepo,
    SqlitePlansRepo,
)
from autobalancer.persistence.sqlite.sqlite_connection import create_sqlite_connection


class UnitOfWork:
    """One SQLite transaction exposing every repository over the same connection."""

    def __init__(self, db_path: str, *, read_only: bool = False) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self.plans: PlansRepoProtocol
        self.configs: ConfigsRepoProtocol
        self.permissions: PermissionsRepoProtocol
        self.logs: ExecutionLogsRepoProtocol

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("UnitOfWork is not active")
        return self._conn

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        if self.read_only:
            conn.execute("BEGIN")
        else:
            conn.execute("BEGIN IMMEDIATE")
        self._conn = conn
        self.plans = SqlitePlansRepo(conn, read_only=self.read_only)
        self.configs = SqliteConfigsRepo(conn, read_only=self.read_only)
        self.permissions = SqlitePermissionsRepo(conn, read_only=self.read_only)
        self.logs = SqliteExecutionLogsRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only)
