from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from autobalancer import cli
from autobalancer.config import Settings
from autobalancer.domain.time_periods import epoch_seconds
from autobalancer.services.scheduler import STATS_STATE_KEY
from autobalancer.services.state_store import StateStore


@pytest.fixture(autouse=True)
def _no_inter_item_delay(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DCA_INTER_ITEM_DELAY_SECONDS", "0")
    monkeypatch.setenv("REBALANCE_INTER_ITEM_DELAY_SECONDS", "0")
    monkeypatch.setenv("SCHEDULER_WARMUP_SECONDS", "0")


def _store() -> StateStore:
    return StateStore(db_path=os.environ["STATE_DB_PATH"])


def _grant(allowance: int = 1_000_000_000, *, window_seconds: int = 0) -> None:
    assert (
        cli.main(
            [
                "permission-grant",
                "--permission-id",
                "perm-1",
                "--owner",
                "0xowner",
                "--delegatee",
                "0xagent",
                "--allowance",
                str(allowance),
                "--time-window-seconds",
                str(window_seconds),
            ]
        )
        == 0
    )


def _create_plan(capsys) -> str:
    code = cli.main(
        [
            "plan-create",
            "--owner",
            "0xowner",
            "--from-asset",
            "usdc",
            "--to-asset",
            "eth",
            "--amount",
            "100000000",
            "--duration-days",
            "30",
            "--permission-id",
            "perm-1",
            "--start-time",
            str(epoch_seconds() - 60),
        ]
    )
    assert code == 0
    return capsys.readouterr().out.strip().splitlines()[-1]


def _write_balances(tmp_path: Path, balances: dict[str, dict[str, int]]) -> Path:
    path = tmp_path / "balances.json"
    path.write_text(json.dumps(balances), encoding="utf-8")
    return path


def test_run_executes_due_plan_and_persists_effects(tmp_path, capsys) -> None:
    _grant()
    capsys.readouterr()
    plan_id = _create_plan(capsys)
    balances = _write_balances(tmp_path, {"0xowner": {"USDC": 500_000_000}})

    assert cli.main(["run", "--balances-file", str(balances)]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["has_errors"] is False
    assert summary["dca"]["executed"] == 1

    persisted = json.loads(balances.read_text(encoding="utf-8"))
    assert persisted["0xowner"]["USDC"] == "400000000"
    assert persisted["0xowner"]["ETH"] == str(4 * 10**16)

    store = _store()
    assert store.get_plan(plan_id).total_executions == 1
    assert store.get_permission("perm-1").spent == 100_000_000

    assert cli.main(["logs", "--owner", "0xOWNER", "--type", "dca"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["status"] == "success"

    assert cli.main(["stats"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["dca"]["successful_executions"] == 1
    assert stats["scheduler"]["total_runs"] == 1


def test_second_run_skips_plan_that_is_not_due(tmp_path, capsys) -> None:
    _grant()
    _create_plan(capsys)
    balances = _write_balances(tmp_path, {"0xowner": {"USDC": 500_000_000}})

    assert cli.main(["run", "--balances-file", str(balances)]) == 0
    capsys.readouterr()
    assert cli.main(["run", "--balances-file", str(balances)]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["dca"]["executed"] == 0
    assert summary["dca"]["skip_reasons"] == {"not due": 1}
    assert _store().get_permission("perm-1").spent == 100_000_000


def test_run_loop_stops_after_max_cycles(capsys) -> None:
    assert cli.main(["run", "--loop", "--max-cycles", "1"]) == 0

    out = capsys.readouterr().out.strip().splitlines()
    assert len(out) == 1
    assert json.loads(out[0])["dca"]["executed"] == 0


def test_run_rejects_non_positive_max_cycles(capsys) -> None:
    assert cli.main(["run", "--max-cycles", "0"]) == 2
    assert "max-cycles must be >= 1" in capsys.readouterr().out


def test_health_without_recorded_run_is_unhealthy(capsys) -> None:
    assert cli.main(["health"]) == 1

    out = capsys.readouterr().out
    assert "Scheduler: no run recorded" in out
    assert "Health: unhealthy" in out


def test_health_reads_persisted_scheduler_snapshot(capsys) -> None:
    now = 2_000_000_000.0
    _store().set_runtime_state(
        STATS_STATE_KEY,
        json.dumps(
            {
                "state": "running",
                "last_run_time": now - 30,
                "interval_minutes": 1,
                "total_errors": 0,
            }
        ),
    )

    assert cli.run_health(Settings(), now=now) == 0
    out = capsys.readouterr().out
    assert "State DB: OK" in out
    assert "Health: healthy" in out

    assert cli.run_health(Settings(), now=now + 600) == 1
    assert "Health: degraded" in capsys.readouterr().out


def test_health_after_one_shot_run_reports_stopped(capsys) -> None:
    assert cli.main(["run"]) == 0
    capsys.readouterr()

    assert cli.main(["health"]) == 1
    assert "state=stopped" in capsys.readouterr().out


def test_pause_resume_and_delete_plan(capsys) -> None:
    plan_id = _create_plan(capsys)

    assert cli.main(["pause", "--plan-id", plan_id]) == 0
    assert "active=False" in capsys.readouterr().out
    assert cli.main(["resume", "--plan-id", plan_id]) == 0
    assert "active=True" in capsys.readouterr().out
    assert cli.main(["delete", "--plan-id", plan_id]) == 0

    plan = _store().get_plan(plan_id)
    assert plan is not None
    assert plan.is_active is False
    assert cli.main(["pause", "--plan-id", "missing"]) == 2


def test_emergency_stop_deactivates_everything(capsys) -> None:
    _create_plan(capsys)
    assert (
        cli.main(
            [
                "config-create",
                "--owner",
                "0xowner",
                "--asset",
                "eth=60",
                "--asset",
                "usdc=40",
                "--permission-id",
                "perm-1",
            ]
        )
        == 0
    )
    capsys.readouterr()

    assert cli.main(["emergency-stop", "--reason", "oracle compromised"]) == 0

    assert "deactivated 1 plans and 1 configs" in capsys.readouterr().out
    active = _store().get_active()
    assert active.plans == ()
    assert active.configs == ()


@pytest.mark.parametrize(
    "assets",
    [
        ["ETH=70", "USDC=20"],
        ["ETH=100"],
        ["ETH"],
    ],
)
def test_config_create_rejects_invalid_weights(assets, capsys) -> None:
    argv = ["config-create", "--owner", "0xowner", "--permission-id", "perm-1"]
    for asset in assets:
        argv.extend(["--asset", asset])

    assert cli.main(argv) == 2
    assert "Error:" in capsys.readouterr().out
    assert _store().list_configs() == []


def test_preview_reports_recommendations_without_trading(tmp_path, capsys) -> None:
    code = cli.main(
        [
            "config-create",
            "--owner",
            "0xowner",
            "--asset",
            "ETH=60",
            "--asset",
            "USDC=40",
            "--threshold",
            "5",
            "--permission-id",
            "perm-1",
        ]
    )
    assert code == 0
    config_id = capsys.readouterr().out.strip().splitlines()[-1]
    balances = _write_balances(tmp_path, {"0xowner": {"ETH": 10**18, "USDC": 500_000_000}})

    assert cli.main(["preview", "--config-id", config_id, "--balances-file", str(balances)]) == 0

    preview = json.loads(capsys.readouterr().out)
    assert preview["total_usd_value"] == pytest.approx(3_000.0)
    assert preview["max_deviation"] > 5
    assert preview["recommendations"][0]["asset_from"] == "ETH"
    assert preview["recommendations"][0]["asset_to"] == "USDC"
    assert _store().list_logs() == []

    assert cli.main(["preview", "--config-id", "missing"]) == 2


def test_permission_revoke_blocks_execution(tmp_path, capsys) -> None:
    _grant()
    _create_plan(capsys)
    assert cli.main(["permission-revoke", "--permission-id", "perm-1"]) == 0
    balances = _write_balances(tmp_path, {"0xowner": {"USDC": 500_000_000}})

    assert cli.main(["run", "--balances-file", str(balances)]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["dca"]["executed"] == 0
    assert summary["dca"]["skip_reasons"] == {"permission invalid": 1}


def test_invalid_settings_return_configuration_error(monkeypatch, capsys) -> None:
    monkeypatch.setenv("SCHEDULER_INTERVAL_MINUTES", "0")

    assert cli.main(["health"]) == 2
    assert "Configuration error" in capsys.readouterr().out


def test_otlp_exporter_requires_endpoint(monkeypatch, capsys) -> None:
    monkeypatch.setenv("OTEL_ENABLED", "true")
    monkeypatch.setenv("OTEL_METRICS_EXPORTER", "otlp")

    assert cli.main(["health"]) == 2
    assert "OTEL_EXPORTER_OTLP_ENDPOINT" in capsys.readouterr().out


def test_windowed_allowance_carries_across_runs(tmp_path, capsys) -> None:
    _grant(150_000_000, window_seconds=86_400)
    capsys.readouterr()
    granted = _store().get_permission("perm-1")
    assert granted.reset_time >= epoch_seconds() + 86_400 - 5
    _create_plan(capsys)
    balances = _write_balances(tmp_path, {"0xowner": {"USDC": 500_000_000}})

    assert cli.main(["run", "--balances-file", str(balances)]) == 0
    assert json.loads(capsys.readouterr().out)["dca"]["executed"] == 1
    _create_plan(capsys)
    assert cli.main(["run", "--balances-file", str(balances)]) == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["dca"]["executed"] == 0
    assert summary["dca"]["skip_reasons"] == {"not due": 1, "permission invalid": 1}
    mirrored = _store().get_permission("perm-1")
    assert mirrored.spent == 100_000_000
    assert mirrored.reset_time == granted.reset_time


def test_run_rejects_negative_balances(tmp_path, capsys) -> None:
    balances = _write_balances(tmp_path, {"0xowner": {"USDC": "-5"}})

    assert cli.main(["run", "--balances-file", str(balances)]) == 2
    assert "base-unit amounts must be >= 0" in capsys.readouterr().out
