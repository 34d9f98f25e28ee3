from __future__ import annotations

from pathlib import Path

import pytest

from autobalancer.config import Settings


def test_defaults_build_engine_configs() -> None:
    settings = Settings()

    scheduler = settings.scheduler_config()
    assert scheduler.interval_minutes == 1
    assert scheduler.interval_seconds == 60.0
    assert scheduler.backoff_base_ms == 1000
    assert scheduler.backoff_cap_ms == 60_000

    dca = settings.dca_engine_config()
    assert dca.slippage_bps == 500
    assert dca.inter_item_delay_seconds == 1.0

    rebalance = settings.rebalance_engine_config()
    assert rebalance.min_interval_seconds == 3600
    assert rebalance.inter_item_delay_seconds == 2.0
    assert rebalance.noise_floor_percent == 0.1
    assert rebalance.reference_amount == 10**18
    assert settings.analytics_api_key_value() is None


def test_parse_simulated_prices_json() -> None:
    settings = Settings(SIMULATED_PRICES_USD='{"eth": 3000, "usdc": 1}')
    assert settings.simulated_prices_usd == {"ETH": 3000.0, "USDC": 1.0}


def test_parse_simulated_prices_csv() -> None:
    settings = Settings(SIMULATED_PRICES_USD="eth=3000, wbtc = 60000 ,")
    assert settings.simulated_prices_usd == {"ETH": 3000.0, "WBTC": 60000.0}


def test_simulated_prices_from_env(monkeypatch) -> None:
    monkeypatch.setenv("SIMULATED_PRICES_USD", "DAI=1")
    assert Settings().simulated_prices_usd == {"DAI": 1.0}


def test_loads_values_from_env_file(monkeypatch, tmp_path: Path) -> None:
    env_file = tmp_path / ".env.test"
    env_file.write_text(
        "\n".join(
            [
                "SCHEDULER_INTERVAL_MINUTES=5",
                "REBALANCE_THRESHOLD_PERCENT=2.5",
                "ANALYTICS_API_KEY=  key-123  ",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    settings = Settings(_env_file=str(env_file))

    assert settings.scheduler_interval_minutes == 5
    assert settings.rebalance_threshold_percent == 2.5
    assert settings.analytics_api_key_value() == "key-123"


@pytest.mark.parametrize(
    ("field", "value"),
    [
        ("SCHEDULER_INTERVAL_MINUTES", "0"),
        ("SCHEDULER_WARMUP_SECONDS", "-1"),
        ("SCHEDULER_BACKOFF_BASE_MS", "0"),
        ("DCA_SLIPPAGE_BPS", "10001"),
        ("REBALANCE_THRESHOLD_PERCENT", "101"),
        ("REBALANCE_INTER_ITEM_DELAY_SECONDS", "-0.5"),
        ("ANALYTICS_QUEUE_MAXSIZE", "0"),
        ("OTEL_METRICS_EXPORTER", "prometheus"),
        ("SIMULATED_PRICES_USD", "ETH"),
        ("SIMULATED_PRICES_USD", "ETH=-1"),
    ],
)
def test_invalid_values_rejected(monkeypatch, field: str, value: str) -> None:
    monkeypatch.setenv(field, value)
    with pytest.raises(ValueError):
        Settings()


def test_metrics_exporter_is_normalized() -> None:
    assert Settings(OTEL_METRICS_EXPORTER=" OTLP ").otel_metrics_exporter == "otlp"
