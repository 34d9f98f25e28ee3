from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Any

import httpx

from autobalancer.domain.models import ExecutionLog, ExecutionType
from autobalancer.observability import get_instrumentation

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "autobalancer-agent"


class AnalyticsErrorKind(StrEnum):
    NETWORK = "network"
    HTTP = "http"
    PAYLOAD = "payload"


class AnalyticsRequestError(RuntimeError):
    def __init__(
        self, *, kind: AnalyticsErrorKind, message: str, status_code: int | None = None
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


def build_execution_payload(
    log: ExecutionLog, *, sent_at_ms: int, source: str = DEFAULT_SOURCE
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "type": str(log.execution_type),
        "user": log.owner,
        "permissionId": log.permission_id,
        "txHash": log.tx_ref,
        "gasUsed": str(log.gas_used),
        "timestamp": log.executed_at,
        "status": str(log.status),
        "error": log.error_message,
    }
    if log.execution_type is ExecutionType.DCA:
        data["dcaData"] = {
            "planId": log.plan_id,
            "tokenIn": log.assets_from[0] if log.assets_from else None,
            "tokenOut": log.assets_to[0] if log.assets_to else None,
            "amountIn": str(log.input_amounts[0]) if log.input_amounts else "0",
            "amountOut": str(log.output_amounts[0]) if log.output_amounts else None,
        }
    else:
        data["rebalanceData"] = {
            "configId": log.config_id,
            "tokensFrom": list(log.assets_from),
            "tokensTo": list(log.assets_to),
            "amountsIn": [str(amount) for amount in log.input_amounts],
            "amountsOut": [str(amount) for amount in log.output_amounts],
        }
    return {"timestamp": sent_at_ms, "data": data, "source": source}


class HttpAnalyticsSink:
    """Best-effort mirror of execution logs to an indexer HTTP API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        timeout_seconds: float = 10.0,
        source: str = DEFAULT_SOURCE,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.api_key = api_key
        self.source = source
        self.clock = clock
        self._warned_missing_key = False
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=httpx.Timeout(timeout_seconds)
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def close(self) -> None:
        await self._client.aclose()

    async def log_execution(self, log: ExecutionLog) -> bool:
        if not self.enabled:
            if not self._warned_missing_key:
                logger.warning("analytics_api_key_missing_skipping")
                self._warned_missing_key = True
            return False
        payload = build_execution_payload(
            log, sent_at_ms=int(self.clock() * 1000), source=self.source
        )
        try:
            await self._request("POST", "/executions", json_body=payload)
        except AnalyticsRequestError as exc:
            logger.warning(
                "analytics_log_execution_failed",
                extra={
                    "extra": {
                        "log_id": log.log_id,
                        "kind": str(exc.kind),
                        "status_code": exc.status_code,
                        "error": str(exc),
                    }
                },
            )
            return False
        logger.debug("analytics_log_execution_sent", extra={"extra": {"log_id": log.log_id}})
        return True

    async def fetch_executions(
        self,
        *,
        owner: str | None = None,
        execution_type: ExecutionType | None = None,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if owner:
            params["user"] = owner
        if execution_type is not None:
            params["type"] = str(execution_type)
        if start_time is not None:
            params["startTime"] = start_time
        if end_time is not None:
            params["endTime"] = end_time
        payload = await self._request("GET", "/executions", params=params)
        items = payload.get("data", payload.get("executions", []))
        if not isinstance(items, list):
            raise AnalyticsRequestError(
                kind=AnalyticsErrorKind.PAYLOAD, message="executions payload must be a list"
            )
        return [item for item in items if isinstance(item, dict)]

    async def get_analytics(self, owner: str, *, time_range: str = "7d") -> dict[str, Any]:
        return await self._request(
            "GET", "/analytics", params={"user": owner, "timeRange": time_range}
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            with get_instrumentation().trace(
                "analytics_call", attrs={"method": method, "path": path}
            ):
                response = await self._client.request(
                    method, path, params=params, json=json_body, headers=headers
                )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise AnalyticsRequestError(kind=AnalyticsErrorKind.NETWORK, message=str(exc)) from exc

        if response.status_code >= 400:
            raise AnalyticsRequestError(
                kind=AnalyticsErrorKind.HTTP,
                message=f"analytics API returned {response.status_code}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise AnalyticsRequestError(
                kind=AnalyticsErrorKind.PAYLOAD,
                message="analytics API returned invalid JSON",
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise AnalyticsRequestError(
                kind=AnalyticsErrorKind.PAYLOAD,
                message="analytics payload must be an object",
                status_code=response.status_code,
            )
        return payload
