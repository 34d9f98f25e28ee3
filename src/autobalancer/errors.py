from __future__ import annotations


class AutobalancerError(Exception):
    """Base class for errors raised by the execution engine."""


class ConfigurationError(AutobalancerError):
    pass


class InvalidConfigError(AutobalancerError, ValueError):
    """Raised when a rebalancer configuration violates its weight rules."""


class LedgerExecutionError(AutobalancerError):
    def __init__(self, message: str, *, permission_id: str | None = None) -> None:
        super().__init__(message)
        self.permission_id = permission_id


class RecordNotFoundError(AutobalancerError, LookupError):
    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id
