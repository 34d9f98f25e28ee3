from autobalancer.persistence.interfaces.configs_repo import ConfigsRepoProtocol
from autobalancer.persistence.interfaces.execution_logs_repo import ExecutionLogsRepoProtocol
from autobalancer.persistence.interfaces.permissions_repo import PermissionsRepoProtocol
from autobalancer.persistence.interfaces.plans_repo import PlansRepoProtocol

__all__ = [
    "PlansRepoProtocol",
    "ConfigsRepoProtocol",
    "PermissionsRepoProtocol",
    "ExecutionLogsRepoProtocol",
]
