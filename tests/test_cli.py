from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner

from gen_batch.config import DEFAULT_COMMAND_TEMPLATE as ECHO_AGENT_COMMAND_TEMPLATE
from gen_batch.main import gen_batch

pytestmark = [
    allure.epic("Batch Runs"),
    allure.feature("CLI"),
]


def _only_run_dir(runs_dir: Path, job_name: str = "demo") -> Path:
    run_dirs = [path for path in (runs_dir / job_name).iterdir() if path.is_dir()]
    assert len(run_dirs) == 1
    return run_dirs[0]


def _start(runner: CliRunner, runs_dir: Path, *extra: str):  # noqa: ANN202
    return runner.invoke(
        gen_batch,
        [
            "run",
            "start",
            "--job-name",
            "demo",
            "--prompt",
            "a quiet harbor",
            "--runs-dir",
            str(runs_dir),
            *extra,
        ],
    )


def test_run_start_with_pool_completes_and_writes_outputs(fast_env: Path) -> None:
    runner = CliRunner()

    result = _start(runner, fast_env, "--count", "3", "--workers", "2")

    assert result.exit_code == 0, result.output
    assert "Run started:" in result.output
    assert "items=3 workers=2" in result.output
    assert "status=COMPLETED total=3 completed=3 failed=0 remaining=0" in result.output
    run_dir = _only_run_dir(fast_env)
    assert (run_dir / "run.log").exists()
    assert "=== Run Summary ===" in (run_dir / "run.log").read_text("utf-8")
    payload = json.loads((run_dir / "output" / "item-0002" / "result.json").read_text("utf-8"))
    assert payload["index"] == 2
    assert payload["prompt"] == "a quiet harbor"


def test_run_start_with_single_worker_runs_sequentially(fast_env: Path) -> None:
    runner = CliRunner()

    result = _start(runner, fast_env, "--count", "2", "--workers", "1")

    assert result.exit_code == 0, result.output
    assert "status=COMPLETED total=2 completed=2" in result.output
    run_dir = _only_run_dir(fast_env)
    manifest = json.loads((run_dir / "manifest.json").read_text("utf-8"))
    assert {item["worker_id"] for item in manifest["items"]} == {"sequential"}


def test_status_and_list_report_finished_run(fast_env: Path) -> None:
    runner = CliRunner()
    assert _start(runner, fast_env, "--count", "2", "--workers", "2").exit_code == 0
    run_dir = _only_run_dir(fast_env)

    status = runner.invoke(gen_batch, ["run", "status", str(run_dir)])
    as_json = runner.invoke(gen_batch, ["run", "status", str(run_dir), "--json"])
    listing = runner.invoke(gen_batch, ["run", "list", "--runs-dir", str(fast_env)])

    assert status.exit_code == 0, status.output
    assert "job=demo status=COMPLETED" in status.output
    assert "#0 COMPLETED attempts=1" in status.output
    assert as_json.exit_code == 0, as_json.output
    payload = json.loads(as_json.output)
    assert payload["job_name"] == "demo"
    assert payload["completed"] == 2
    assert [item["status"] for item in payload["items"]] == ["COMPLETED", "COMPLETED"]
    assert listing.exit_code == 0, listing.output
    assert f"Runs in {fast_env}: 1" in listing.output
    assert f"demo/{run_dir.name} status=COMPLETED completed=2/2 failed=0" in listing.output


def test_list_without_runs(fast_env: Path) -> None:
    result = CliRunner().invoke(gen_batch, ["run", "list", "--runs-dir", str(fast_env)])

    assert result.exit_code == 0
    assert "No runs found" in result.output


def test_rate_limited_run_exits_non_zero_and_resumes(fast_env: Path) -> None:
    runner = CliRunner()

    started = _start(
        runner,
        fast_env,
        "--count",
        "3",
        "--workers",
        "1",
        "--command",
        f"{ECHO_AGENT_COMMAND_TEMPLATE} --rate-limit-index 1",
    )

    assert started.exit_code == 1
    assert "status=STOPPED_RATE_LIMIT" in started.output
    assert "Rate limited (not attempted): 1" in started.output
    assert "Run finished with status STOPPED_RATE_LIMIT" in started.output
    run_dir = _only_run_dir(fast_env)

    resumed = runner.invoke(
        gen_batch,
        ["run", "resume", str(run_dir), "--command", ECHO_AGENT_COMMAND_TEMPLATE],
    )

    assert resumed.exit_code == 0, resumed.output
    assert "Run resumed:" in resumed.output
    assert "status=COMPLETED total=3 completed=3 failed=0 remaining=0" in resumed.output
    manifest = json.loads((run_dir / "manifest.json").read_text("utf-8"))
    assert manifest["items"][1]["attempts"] == 1


def test_failed_items_are_reported(fast_env: Path) -> None:
    runner = CliRunner()

    result = _start(
        runner,
        fast_env,
        "--count",
        "2",
        "--workers",
        "2",
        "--command",
        f"{ECHO_AGENT_COMMAND_TEMPLATE} --fail-index 0",
    )

    assert result.exit_code == 0, result.output
    assert "completed=1 failed=1" in result.output
    status = runner.invoke(gen_batch, ["run", "status", str(_only_run_dir(fast_env))])
    assert "#0 FAILED attempts=3" in status.output
    assert "error=command_generation_error" in status.output


def test_status_for_missing_run_is_an_error(fast_env: Path) -> None:
    result = CliRunner().invoke(gen_batch, ["run", "status", str(fast_env / "nope")])

    assert result.exit_code == 1
    assert "No run found" in result.output


def test_invalid_environment_is_reported(fast_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("GEN_BATCH_LOG_LEVEL", "CHATTY")

    result = _start(CliRunner(), fast_env, "--count", "1")

    assert result.exit_code == 1
    assert "Invalid GEN_BATCH_LOG_LEVEL" in result.output


def test_count_above_limit_is_rejected(fast_env: Path) -> None:
    result = _start(CliRunner(), fast_env, "--count", "1001")

    assert result.exit_code == 2


def test_resume_of_finished_run_reports_without_rerunning(fast_env: Path) -> None:
    runner = CliRunner()
    assert _start(runner, fast_env, "--count", "2", "--workers", "2").exit_code == 0
    run_dir = _only_run_dir(fast_env)
    before = json.loads((run_dir / "manifest.json").read_text("utf-8"))

    resumed = runner.invoke(gen_batch, ["run", "resume", str(run_dir), "--workers", "2"])

    assert resumed.exit_code == 0, resumed.output
    assert "Run already finished:" in resumed.output
    assert "status=COMPLETED total=2 completed=2" in resumed.output
    after = json.loads((run_dir / "manifest.json").read_text("utf-8"))
    assert after["status"] == "COMPLETED"
    assert [item["attempts"] for item in after["items"]] == [
        item["attempts"] for item in before["items"]
    ]
