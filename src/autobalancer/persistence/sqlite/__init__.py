from autobalancer.persistence.sqlite.configs_repo import SqliteConfigsRepo
from autobalancer.persistence.sqlite.execution_logs_repo import SqliteExecutionLogsRepo
from autobalancer.persistence.sqlite.permissions_repo import SqlitePermissionsRepo
from autobalancer.persistence.sqlite.plans_repo import SqlitePlansRepo

__all__ = [
    "SqlitePlansRepo",
    "SqliteConfigsRepo",
    "SqlitePermissionsRepo",
    "SqliteExecutionLogsRepo",
]
