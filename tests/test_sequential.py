from __future__ import annotations

import allure
import pytest

from gen_batch.orchestrator.backend import OutcomeScript, ScriptedBackend
from gen_batch.orchestrator.ledger import RunClosed, WorkLedger
from gen_batch.orchestrator.models import ItemStatus, OutcomeKind, RunStatus
from gen_batch.orchestrator.retry import ExponentialBackoff
from gen_batch.orchestrator.sequential import SequentialRunner

pytestmark = [
    allure.epic("Worker Pool"),
    allure.feature("Sequential Runner"),
]


def _runner(
    ledger: WorkLedger,
    backend: ScriptedBackend,
    *,
    max_retries: int = 3,
    max_consecutive_failures: int = 5,
    sleeps: list[float] | None = None,
) -> SequentialRunner:
    recorded = sleeps if sleeps is not None else []
    return SequentialRunner(
        ledger,
        backend,
        retry_policy=ExponentialBackoff(base_seconds=1.0, max_seconds=8.0, max_retries=max_retries),
        max_consecutive_failures=max_consecutive_failures,
        sleep=recorded.append,
    )


def test_sequential_run_completes_every_item(ledger: WorkLedger) -> None:
    script = OutcomeScript()
    backend = ScriptedBackend(script, worker_id="sequential")
    runner = _runner(ledger, backend)
    runner.init(job_name="demo", batch_size=3, target={"prompt": "a lighthouse"})

    summary = runner.start()

    assert summary.status == RunStatus.COMPLETED
    assert summary.completed == 3
    assert script.indices() == [0, 1, 2]
    assert backend.opened and backend.closed
    assert not runner.workdirs.path_for("sequential").exists()


def test_transient_failure_is_retried_in_place_with_reset(ledger: WorkLedger) -> None:
    script = OutcomeScript({1: [OutcomeKind.TIMEOUT, OutcomeKind.NETWORK_ERROR]})
    backend = ScriptedBackend(script)
    sleeps: list[float] = []
    runner = _runner(ledger, backend, sleeps=sleeps)
    runner.init(job_name="demo", batch_size=2)

    summary = runner.start()

    assert summary.status == RunStatus.COMPLETED
    assert summary.completed == 2
    assert backend.resets == 2
    assert len(sleeps) == 2
    assert 1.0 <= sleeps[0] <= 1.3
    assert 2.0 <= sleeps[1] <= 2.6
    state = ledger.load()
    assert state is not None
    assert state.items[1].attempts == 1


def test_exhausted_retries_record_failure_and_move_on(ledger: WorkLedger) -> None:
    script = OutcomeScript({0: [OutcomeKind.GENERATION_ERROR] * 2})
    runner = _runner(ledger, ScriptedBackend(script), max_retries=1)
    runner.init(job_name="demo", batch_size=2)

    summary = runner.start()

    assert summary.status == RunStatus.COMPLETED
    assert summary.completed == 2
    state = ledger.load()
    assert state is not None
    assert state.items[0].attempts == 2
    assert state.items[0].status == ItemStatus.COMPLETED
    assert state.items[0].last_error is None
    assert script.indices() == [0, 0, 0, 1]


def test_consecutive_failures_abort_run(ledger: WorkLedger) -> None:
    script = OutcomeScript(default=OutcomeKind.UNKNOWN)
    runner = _runner(ledger, ScriptedBackend(script), max_retries=0, max_consecutive_failures=2)
    runner.init(job_name="demo", batch_size=5)

    summary = runner.start()

    assert summary.status == RunStatus.FAILED
    assert summary.stop_reason is not None
    assert summary.stop_reason.startswith("Too many consecutive failures")
    assert summary.failed == 1
    assert len(script.calls) == 2


def test_rate_limit_stops_sequential_run(ledger: WorkLedger) -> None:
    script = OutcomeScript({1: [OutcomeKind.RATE_LIMITED]})
    runner = _runner(ledger, ScriptedBackend(script))
    runner.init(job_name="demo", batch_size=3)

    summary = runner.start()

    assert summary.status == RunStatus.STOPPED_RATE_LIMIT
    assert summary.stop_reason == "scripted rate_limited for item 1"
    assert summary.completed == 1
    assert summary.rate_limited == 1
    assert script.indices() == [0, 1]


def test_auth_loss_fails_sequential_run(ledger: WorkLedger) -> None:
    script = OutcomeScript({0: [OutcomeKind.AUTH_REQUIRED]})
    runner = _runner(ledger, ScriptedBackend(script))
    runner.init(job_name="demo", batch_size=2)

    summary = runner.start()

    assert summary.status == RunStatus.FAILED
    assert summary.stop_reason == "Authentication required"
    state = ledger.load()
    assert state is not None
    assert state.items[0].status == ItemStatus.PENDING


def test_session_open_failure_fails_run(ledger: WorkLedger) -> None:
    runner = _runner(ledger, ScriptedBackend(OutcomeScript(), fail_open=True))
    runner.init(job_name="demo", batch_size=1)

    with pytest.raises(RuntimeError, match="refused to open"):
        runner.start()

    state = ledger.load()
    assert state is not None
    assert state.status == RunStatus.FAILED


def test_stopped_runner_claims_nothing(ledger: WorkLedger) -> None:
    script = OutcomeScript()
    runner = _runner(ledger, ScriptedBackend(script))
    runner.init(job_name="demo", batch_size=2)

    runner.stop()
    summary = runner.start()

    assert script.calls == []
    assert summary.completed == 0
    assert summary.status == RunStatus.COMPLETED


def test_finished_run_cannot_be_started_again(ledger: WorkLedger) -> None:
    script = OutcomeScript()
    runner = _runner(ledger, ScriptedBackend(script))
    runner.init(job_name="demo", batch_size=1)
    assert runner.start().status == RunStatus.COMPLETED

    with pytest.raises(RunClosed):
        _runner(ledger, ScriptedBackend(script)).start()

    state = ledger.load()
    assert state is not None
    assert state.status == RunStatus.COMPLETED
    assert state.stop_reason is None
    assert script.indices() == [0]
