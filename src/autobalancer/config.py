from __future__ import annotations

import json
from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from autobalancer.services.dca_engine import DcaEngineConfig
from autobalancer.services.rebalance_engine import RebalanceEngineConfig
from autobalancer.services.scheduler import SchedulerConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    state_db_path: str = Field(default="autobalancer_state.db", alias="STATE_DB_PATH")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    agent_address: str = Field(default="", alias="AGENT_ADDRESS")

    scheduler_interval_minutes: int = Field(default=1, alias="SCHEDULER_INTERVAL_MINUTES")
    scheduler_warmup_seconds: float = Field(default=5.0, alias="SCHEDULER_WARMUP_SECONDS")
    scheduler_backoff_base_ms: int = Field(default=1000, alias="SCHEDULER_BACKOFF_BASE_MS")
    scheduler_backoff_cap_ms: int = Field(default=60000, alias="SCHEDULER_BACKOFF_CAP_MS")
    scheduler_max_healthy_errors: int = Field(default=10, alias="SCHEDULER_MAX_HEALTHY_ERRORS")

    rebalance_threshold_percent: float = Field(default=5.0, alias="REBALANCE_THRESHOLD_PERCENT")
    dca_slippage_bps: int = Field(default=500, alias="DCA_SLIPPAGE_BPS")
    rebalance_slippage_bps: int = Field(default=500, alias="REBALANCE_SLIPPAGE_BPS")
    dca_inter_item_delay_seconds: float = Field(
        default=1.0, alias="DCA_INTER_ITEM_DELAY_SECONDS"
    )
    rebalance_inter_item_delay_seconds: float = Field(
        default=2.0, alias="REBALANCE_INTER_ITEM_DELAY_SECONDS"
    )
    rebalance_min_interval_seconds: int = Field(
        default=3600, alias="REBALANCE_MIN_INTERVAL_SECONDS"
    )
    rebalance_noise_floor_percent: float = Field(
        default=0.1, alias="REBALANCE_NOISE_FLOOR_PERCENT"
    )
    rebalance_reference_allowance: int = Field(
        default=10**18, alias="REBALANCE_REFERENCE_ALLOWANCE"
    )
    ledger_allowance_check: bool = Field(default=True, alias="LEDGER_ALLOWANCE_CHECK")

    analytics_api_url: str = Field(default="https://api.envio.dev", alias="ANALYTICS_API_URL")
    analytics_api_key: SecretStr | None = Field(default=None, alias="ANALYTICS_API_KEY")
    analytics_timeout_seconds: float = Field(default=10.0, alias="ANALYTICS_TIMEOUT_SECONDS")
    analytics_queue_maxsize: int = Field(default=1000, alias="ANALYTICS_QUEUE_MAXSIZE")

    simulated_prices_usd: Annotated[dict[str, float], NoDecode] = Field(
        default_factory=lambda: {
            "ETH": 2500.0,
            "WETH": 2500.0,
            "USDC": 1.0,
            "USDT": 1.0,
            "DAI": 1.0,
            "WBTC": 45000.0,
        },
        alias="SIMULATED_PRICES_USD",
    )

    otel_enabled: bool = Field(default=False, alias="OTEL_ENABLED")
    otel_metrics_exporter: str = Field(default="none", alias="OTEL_METRICS_EXPORTER")
    otel_exporter_otlp_endpoint: str | None = Field(
        default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )

    @field_validator("scheduler_interval_minutes")
    def validate_interval(cls, value: int) -> int:
        if value < 1:
            raise ValueError("SCHEDULER_INTERVAL_MINUTES must be >= 1")
        return value

    @field_validator("scheduler_warmup_seconds", "dca_inter_item_delay_seconds")
    def validate_non_negative_seconds(cls, value: float) -> float:
        if value < 0:
            raise ValueError("delay seconds must be >= 0")
        return value

    @field_validator("rebalance_inter_item_delay_seconds")
    def validate_rebalance_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("REBALANCE_INTER_ITEM_DELAY_SECONDS must be >= 0")
        return value

    @field_validator("dca_slippage_bps", "rebalance_slippage_bps")
    def validate_slippage_bps(cls, value: int) -> int:
        if value < 0 or value > 10_000:
            raise ValueError("slippage bps must be within [0, 10000]")
        return value

    @field_validator("rebalance_threshold_percent")
    def validate_threshold(cls, value: float) -> float:
        if value < 0 or value > 100:
            raise ValueError("REBALANCE_THRESHOLD_PERCENT must be within [0, 100]")
        return value

    @field_validator("scheduler_backoff_base_ms", "scheduler_backoff_cap_ms")
    def validate_backoff(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("scheduler backoff values must be > 0")
        return value

    @field_validator("analytics_queue_maxsize")
    def validate_queue_maxsize(cls, value: int) -> int:
        if value < 1:
            raise ValueError("ANALYTICS_QUEUE_MAXSIZE must be >= 1")
        return value

    @field_validator("otel_metrics_exporter")
    def validate_metrics_exporter(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"none", "otlp"}:
            raise ValueError("OTEL_METRICS_EXPORTER must be one of: none, otlp")
        return normalized

    @field_validator("simulated_prices_usd", mode="before")
    def parse_prices(cls, value: str | dict[str, float]) -> dict[str, float]:
        items: dict[str, object]
        if isinstance(value, str):
            raw = value.strip()
            if not raw:
                return {}
            if raw.startswith("{"):
                parsed = json.loads(raw)
                if not isinstance(parsed, dict):
                    raise ValueError("SIMULATED_PRICES_USD JSON value must be an object")
                items = parsed
            else:
                items = {}
                for chunk in raw.split(","):
                    if not chunk.strip():
                        continue
                    asset, sep, price = chunk.partition("=")
                    if not sep:
                        raise ValueError(f"SIMULATED_PRICES_USD entry must be ASSET=price: {chunk}")
                    items[asset] = price
        else:
            items = dict(value)

        prices: dict[str, float] = {}
        for asset, price in items.items():
            key = str(asset).strip().upper()
            if not key:
                continue
            numeric = float(price)
            if numeric < 0:
                raise ValueError(f"SIMULATED_PRICES_USD price must be >= 0: {key}")
            prices[key] = numeric
        return prices

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig(
            interval_minutes=self.scheduler_interval_minutes,
            warmup_seconds=self.scheduler_warmup_seconds,
            backoff_base_ms=self.scheduler_backoff_base_ms,
            backoff_cap_ms=self.scheduler_backoff_cap_ms,
            max_healthy_errors=self.scheduler_max_healthy_errors,
        )

    def dca_engine_config(self) -> DcaEngineConfig:
        return DcaEngineConfig(
            slippage_bps=self.dca_slippage_bps,
            inter_item_delay_seconds=self.dca_inter_item_delay_seconds,
        )

    def rebalance_engine_config(self) -> RebalanceEngineConfig:
        return RebalanceEngineConfig(
            slippage_bps=self.rebalance_slippage_bps,
            inter_item_delay_seconds=self.rebalance_inter_item_delay_seconds,
            min_interval_seconds=self.rebalance_min_interval_seconds,
            noise_floor_percent=self.rebalance_noise_floor_percent,
            reference_amount=self.rebalance_reference_allowance,
        )

    def analytics_api_key_value(self) -> str | None:
        if self.analytics_api_key is None:
            return None
        secret = self.analytics_api_key.get_secret_value().strip()
        return secret or None
