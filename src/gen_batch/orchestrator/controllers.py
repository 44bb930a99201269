"""Controllers for batch run CLI commands."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from gen_batch.config import Settings
from gen_batch.orchestrator.backend import CommandBackend
from gen_batch.orchestrator.ledger import MANIFEST_FILENAME, LedgerNotFound, WorkLedger
from gen_batch.orchestrator.models import (
    TERMINAL_RUN_STATUSES,
    RunState,
    RunStatus,
    RunSummary,
    utc_now,
)
from gen_batch.orchestrator.pool import BackendFactory, WorkerPool, resume_pool
from gen_batch.orchestrator.retry import ExponentialBackoff, FixedCooldown
from gen_batch.orchestrator.sequential import SequentialRunner

RUN_LOG_FILENAME = "run.log"
OUTPUT_DIRNAME = "output"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


@dataclass(slots=True)
class RunStartCommand:
    """CLI input for a new run."""

    runs_dir: Path | None
    job_name: str
    count: int | None
    workers: int | None
    command_template: str | None
    prompt: str


@dataclass(slots=True)
class RunResumeCommand:
    """CLI input for resuming an interrupted run."""

    run_dir: Path
    workers: int | None
    command_template: str | None


@dataclass(slots=True)
class RunStatusCommand:
    """CLI input for run inspection."""

    run_dir: Path
    as_json: bool = False


@dataclass(slots=True)
class RunListCommand:
    """CLI input for run listing."""

    runs_dir: Path | None


@dataclass(slots=True)
class RunReport:
    """Run outcome to render in CLI."""

    lines: list[str]
    status: RunStatus

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED


class BatchCliController:
    """Coordinates run start, resume, and inspection CLI operations."""

    def start(self, command: RunStartCommand) -> RunReport:
        settings = _settings(runs_dir=command.runs_dir, workers=command.workers)
        if command.count is not None:
            settings.pool.batch_size = command.count
        if command.command_template is not None:
            settings.backend.command_template = command.command_template
        settings.validate()

        run_dir = settings.runs_dir / command.job_name / _run_dirname()
        ledger = _ledger(run_dir, settings)
        target = {"prompt": command.prompt, "command": settings.backend.command_template}
        with _run_logging(run_dir, settings.log_level):
            if settings.pool.workers == 1:
                runner = _sequential_runner(ledger, settings, target)
                state = runner.init(
                    job_name=command.job_name,
                    batch_size=settings.pool.batch_size,
                    target=target,
                )
                summary = runner.start()
            else:
                pool = _pool(ledger, settings, _backend_factory(settings, target, run_dir))
                state = pool.init(
                    job_name=command.job_name,
                    batch_size=settings.pool.batch_size,
                    target=target,
                )
                summary = pool.start()

        return RunReport(
            lines=[
                f"Run started: run_id={state.run_id} job={state.job_name} "
                f"items={state.batch_size} workers={settings.pool.workers}",
                f"Run dir: {run_dir}",
                *_summary_lines(summary),
            ],
            status=summary.status,
        )

    def resume(self, command: RunResumeCommand) -> RunReport:
        settings = _settings(runs_dir=None, workers=command.workers)
        ledger = _ledger(command.run_dir, settings)
        persisted = ledger.load()
        if persisted is None:
            raise LedgerNotFound(f"No run found in {command.run_dir}")
        target = dict(persisted.target)
        settings.backend.command_template = (
            command.command_template
            or str(target.get("command") or "")
            or settings.backend.command_template
        )
        target["command"] = settings.backend.command_template
        settings.validate()

        with _run_logging(command.run_dir, settings.log_level):
            runner: SequentialRunner | WorkerPool
            if settings.pool.workers == 1:
                state = ledger.resume()
                runner = _sequential_runner(ledger, settings, target)
            else:
                runner = resume_pool(
                    command.run_dir,
                    _backend_factory(settings, target, command.run_dir),
                    workers=settings.pool.workers,
                    ledger=ledger,
                    seed_dir=settings.backend.seed_dir,
                    between_items_seconds=settings.pool.between_items_seconds,
                    retry_policy=_backoff(settings),
                )
                state = ledger.load() or persisted
            if state.status in TERMINAL_RUN_STATUSES:
                return RunReport(
                    lines=[
                        f"Run already finished: run_id={state.run_id} job={state.job_name}",
                        *_summary_lines(state.summary()),
                    ],
                    status=state.status,
                )
            summary = runner.start()

        return RunReport(
            lines=[
                f"Run resumed: run_id={state.run_id} job={state.job_name} "
                f"workers={settings.pool.workers}",
                *_summary_lines(summary),
            ],
            status=summary.status,
        )

    def status(self, command: RunStatusCommand) -> list[str]:
        state = WorkLedger(command.run_dir).load()
        if state is None:
            raise LedgerNotFound(f"No run found in {command.run_dir}")
        summary = state.summary()
        if command.as_json:
            payload: dict[str, Any] = {
                "run_id": state.run_id,
                "job_name": state.job_name,
                **summary.to_dict(),
                "items": [item.to_dict() for item in state.items],
            }
            return [json.dumps(payload, ensure_ascii=False, indent=2)]

        lines = [
            f"Run: run_id={state.run_id} job={state.job_name} status={state.status.value}",
            *_summary_lines(summary),
            "Items:",
        ]
        for item in state.items:
            line = f"  #{item.index} {item.status.value} attempts={item.attempts}"
            if item.worker_id:
                line += f" worker={item.worker_id}"
            if item.last_error is not None:
                line += f" error={item.last_error.kind}: {item.last_error.message}"
            lines.append(line)
        return lines

    def list_runs(self, command: RunListCommand) -> list[str]:
        runs_dir = _settings(runs_dir=command.runs_dir, workers=None).runs_dir
        manifests = sorted(runs_dir.glob(f"*/*/{MANIFEST_FILENAME}"))
        if not manifests:
            return [f"No runs found in {runs_dir}"]

        lines = [f"Runs in {runs_dir}: {len(manifests)}"]
        for manifest in manifests:
            state = WorkLedger(manifest.parent).load()
            if state is None:
                continue
            lines.append(_run_line(manifest.parent.relative_to(runs_dir), state))
        return lines


def _settings(*, runs_dir: Path | None, workers: int | None) -> Settings:
    settings = Settings.from_env(runs_dir=runs_dir)
    if workers is not None:
        settings.pool.workers = workers
    return settings


def _ledger(run_dir: Path, settings: Settings) -> WorkLedger:
    return WorkLedger(
        run_dir,
        lock_timeout_seconds=settings.lock.timeout_seconds,
        lock_poll_interval_seconds=settings.lock.poll_interval_seconds,
        stale_lock_seconds=settings.lock.stale_after_seconds,
        max_item_attempts=settings.retry.max_item_attempts,
    )


def _command_backend(
    settings: Settings,
    target: dict[str, Any],
    output_root: Path,
) -> CommandBackend:
    return CommandBackend(
        settings.backend.command_template,
        timeout_seconds=settings.backend.timeout_seconds,
        target=target,
        output_root=output_root,
        content_retry=FixedCooldown(
            cooldown_seconds=settings.retry.content_cooldown_seconds,
            max_retries=settings.retry.content_max_retries,
        ),
    )


def _backend_factory(
    settings: Settings,
    target: dict[str, Any],
    run_dir: Path,
) -> BackendFactory:
    def _factory(worker_id: str) -> CommandBackend:  # noqa: ARG001
        return _command_backend(settings, target, run_dir / OUTPUT_DIRNAME)

    return _factory


def _pool(ledger: WorkLedger, settings: Settings, factory: BackendFactory) -> WorkerPool:
    return WorkerPool(
        ledger,
        factory,
        workers=settings.pool.workers,
        seed_dir=settings.backend.seed_dir,
        between_items_seconds=settings.pool.between_items_seconds,
        retry_policy=_backoff(settings),
    )


def _sequential_runner(
    ledger: WorkLedger,
    settings: Settings,
    target: dict[str, Any],
) -> SequentialRunner:
    return SequentialRunner(
        ledger,
        _command_backend(settings, target, ledger.run_dir / OUTPUT_DIRNAME),
        retry_policy=_backoff(settings),
        max_consecutive_failures=settings.pool.max_consecutive_failures,
        seed_dir=settings.backend.seed_dir,
        between_items_seconds=settings.pool.between_items_seconds,
    )


def _backoff(settings: Settings) -> ExponentialBackoff:
    return ExponentialBackoff(
        base_seconds=settings.retry.base_seconds,
        max_seconds=settings.retry.max_seconds,
        max_retries=settings.retry.max_retries,
    )


def _run_dirname() -> str:
    return f"{utc_now().strftime('%Y%m%dT%H%M%SZ')}-{uuid4().hex[:6]}"


def _summary_lines(summary: RunSummary) -> list[str]:
    lines = [
        "Summary: "
        f"status={summary.status.value} total={summary.total} "
        f"completed={summary.completed} failed={summary.failed} "
        f"remaining={summary.remaining} attempts={summary.attempts}",
    ]
    if summary.rate_limited:
        lines.append(f"Rate limited (not attempted): {summary.rate_limited}")
    if summary.stop_reason:
        lines.append(f"Stop reason: {summary.stop_reason}")
    return lines


def _run_line(relative_dir: Path, state: RunState) -> str:
    return (
        f"  {relative_dir} status={state.status.value} "
        f"completed={state.completed_count}/{state.batch_size} failed={state.failed_count}"
    )


@contextmanager
def _run_logging(run_dir: Path, level: str) -> Iterator[None]:
    run_dir.mkdir(parents=True, exist_ok=True)
    package_logger = logging.getLogger("gen_batch")
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = logging.FileHandler(run_dir / RUN_LOG_FILENAME, encoding="utf-8")
    stream_handler = logging.StreamHandler(sys.stderr)
    handlers: list[logging.Handler] = [file_handler, stream_handler]
    for handler in handlers:
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
    previous_level = package_logger.level
    package_logger.setLevel(level)
    try:
        yield
    finally:
        package_logger.setLevel(previous_level)
        for handler in handlers:
            package_logger.removeHandler(handler)
            handler.close()
