"""Subprocess-based generation backend."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from gen_batch.orchestrator.backend.base import AttemptResult, attempt_with_content_retry
from gen_batch.orchestrator.failure_classifier import classify_command_output
from gen_batch.orchestrator.models import ItemState, OutcomeKind
from gen_batch.orchestrator.retry import FixedCooldown
from gen_batch.orchestrator.workdir import WorkerWorkdir

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 4_000


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CommandBackend:
    """Run one command per item attempt and classify its result.

    The command template may use ``{index}``, ``{workdir}``, ``{output_dir}``
    and ``{prompt}`` placeholders. Item output lands under ``output_root``
    when given, else inside the worker directory. Content-rejected results
    are retried here, at the backend boundary, with a fixed cooldown; the
    worker only records the final outcome.
    """

    def __init__(  # noqa: PLR0913
        self,
        command_template: str,
        *,
        timeout_seconds: float = 60.0,
        target: dict[str, Any] | None = None,
        content_retry: FixedCooldown | None = None,
        sleep: Callable[[float], None] = time.sleep,
        env: dict[str, str] | None = None,
        output_root: Path | None = None,
    ) -> None:
        _validate_template(command_template)
        self.command_template = command_template.strip()
        self.timeout_seconds = timeout_seconds
        self.target = dict(target or {})
        self.content_retry = content_retry or FixedCooldown()
        self.sleep = sleep
        self.env = env
        self.output_root = output_root
        self._workdir: WorkerWorkdir | None = None

    def open(self, workdir: Path) -> None:
        workdir.mkdir(parents=True, exist_ok=True)
        self._workdir = WorkerWorkdir(root=workdir, output_root=self.output_root)

    def close(self) -> None:
        self._workdir = None

    def attempt(self, item: ItemState) -> AttemptResult:
        started = time.monotonic()
        try:
            result = attempt_with_content_retry(
                lambda: self._run_once(item),
                index=item.index,
                policy=self.content_retry,
                sleep=self.sleep,
            )
        except BackendRunError as error:
            result = AttemptResult(
                outcome=OutcomeKind.GENERATION_ERROR if error.transient else OutcomeKind.UNKNOWN,
                error_kind="backend_run_error",
                error_message=str(error),
            )
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    def _run_once(self, item: ItemState) -> AttemptResult:
        workdir = self._require_workdir()
        paths = workdir.item_paths(item.index)
        paths.output_dir.mkdir(parents=True, exist_ok=True)
        argv = _build_argv(
            self.command_template,
            values={
                "index": str(item.index),
                "workdir": str(workdir.root),
                "output_dir": str(paths.output_dir),
                "prompt": str(self.target.get("prompt", "")),
            },
        )
        env = os.environ.copy()
        env.update(self.env or {})
        env["GEN_BATCH_ITEM_INDEX"] = str(item.index)
        env["GEN_BATCH_ITEM_ATTEMPT"] = str(item.attempts)
        logger.debug("Item %d: running %s", item.index, argv[0])

        try:
            with (
                paths.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                paths.stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                completed = subprocess.run(  # noqa: S603
                    argv,
                    env=env,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                    timeout=self.timeout_seconds,
                    check=False,
                )
            exit_code, timed_out = completed.returncode, False
        except subprocess.TimeoutExpired:
            exit_code, timed_out = 124, True
        except FileNotFoundError as error:
            raise BackendRunError(f"Backend command not found: {argv[0]}", transient=False) from error
        except OSError as error:
            raise BackendRunError(f"Backend command failed to start: {error}", transient=True) from error

        stdout = _read_preview(paths.stdout_path)
        stderr = _read_preview(paths.stderr_path)
        classification = classify_command_output(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            timed_out=timed_out,
        )
        if classification.outcome == OutcomeKind.SUCCESS:
            return AttemptResult(outcome=OutcomeKind.SUCCESS)
        return AttemptResult(
            outcome=classification.outcome,
            attempted=classification.outcome != OutcomeKind.RATE_LIMITED,
            error_kind=classification.reason_code,
            error_message=_error_message(exit_code, stderr or stdout, timed_out, self.timeout_seconds),
        )

    def _require_workdir(self) -> WorkerWorkdir:
        if self._workdir is None:
            raise BackendRunError("Backend session is not open.", transient=False)
        return self._workdir


def _validate_template(command_template: str) -> None:
    if not command_template.strip():
        raise BackendRunError("Backend command template is empty.", transient=False)


def _build_argv(command_template: str, *, values: dict[str, str]) -> list[str]:
    try:
        rendered = command_template.format(
            **{key: shlex.quote(value) for key, value in values.items()},
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Backend command template rendered empty command.", transient=False)
    return argv


def _read_preview(path: Path) -> str:
    try:
        return path.read_text("utf-8", errors="replace")[-_PREVIEW_CHARS:]
    except FileNotFoundError:
        return ""


def _error_message(exit_code: int, output: str, timed_out: bool, timeout_seconds: float) -> str:
    if timed_out:
        return f"Command exceeded {timeout_seconds}s"
    tail = output.strip().splitlines()[-1:] or [""]
    return f"exit code {exit_code}: {tail[0]}".rstrip(": ")
