"""CLI entrypoint for gen-batch."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from gen_batch import __version__
from gen_batch.config import MAX_BATCH_SIZE, MAX_WORKERS
from gen_batch.orchestrator.controllers import (
    BatchCliController,
    RunListCommand,
    RunReport,
    RunResumeCommand,
    RunStartCommand,
    RunStatusCommand,
)
from gen_batch.orchestrator.ledger import LedgerError
from gen_batch.orchestrator.lock import LockTimeout
from gen_batch.orchestrator.pool import NoWorkersAvailable

click.rich_click.USE_MARKDOWN = True
BATCH_CONTROLLER = BatchCliController()


@click.group()
@click.version_option(version=__version__, prog_name="gen-batch")
def gen_batch() -> None:
    """Batch generation CLI."""


@gen_batch.group()
def run() -> None:
    """Batch run commands."""


@run.command("start")
@click.option("--job-name", required=True, help="Job name; runs are grouped under it.")
@click.option(
    "--count",
    type=click.IntRange(min=1, max=MAX_BATCH_SIZE),
    default=None,
    help="Number of items in the batch. Defaults to GEN_BATCH_BATCH_SIZE.",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1, max=MAX_WORKERS),
    default=None,
    help="Concurrent workers. One worker runs sequentially with in-place retries.",
)
@click.option(
    "--command",
    "command_template",
    default=None,
    help="Command template with {index}, {workdir}, {output_dir} and {prompt} placeholders.",
)
@click.option("--prompt", default="", help="Prompt passed to every item.")
@click.option(
    "--runs-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Root directory for run ledgers.",
)
def run_start(  # noqa: PLR0913
    job_name: str,
    count: int | None,
    workers: int | None,
    command_template: str | None,
    prompt: str,
    runs_dir: Path | None,
) -> None:
    """Create a new run and process it to completion."""

    with _cli_errors():
        report = BATCH_CONTROLLER.start(
            RunStartCommand(
                runs_dir=runs_dir,
                job_name=job_name,
                count=count,
                workers=workers,
                command_template=command_template,
                prompt=prompt,
            ),
        )
    _emit_report(report)


@run.command("resume")
@click.argument("run_dir", type=click.Path(path_type=Path, file_okay=False))
@click.option(
    "--workers",
    type=click.IntRange(min=1, max=MAX_WORKERS),
    default=None,
    help="Concurrent workers for the resumed run.",
)
@click.option(
    "--command",
    "command_template",
    default=None,
    help="Override the command template stored with the run.",
)
def run_resume(run_dir: Path, workers: int | None, command_template: str | None) -> None:
    """Resume an interrupted or rate-limited run."""

    with _cli_errors():
        report = BATCH_CONTROLLER.resume(
            RunResumeCommand(
                run_dir=run_dir,
                workers=workers,
                command_template=command_template,
            ),
        )
    _emit_report(report)


@run.command("status")
@click.argument("run_dir", type=click.Path(path_type=Path, file_okay=False))
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON.")
def run_status(run_dir: Path, as_json: bool) -> None:
    """Show run progress and per-item state."""

    with _cli_errors():
        lines = BATCH_CONTROLLER.status(RunStatusCommand(run_dir=run_dir, as_json=as_json))
    _emit_lines(lines)


@run.command("list")
@click.option(
    "--runs-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Root directory for run ledgers.",
)
def run_list(runs_dir: Path | None) -> None:
    """List known runs."""

    with _cli_errors():
        lines = BATCH_CONTROLLER.list_runs(RunListCommand(runs_dir=runs_dir))
    _emit_lines(lines)


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (LedgerError, LockTimeout, NoWorkersAvailable, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_report(report: RunReport) -> None:
    _emit_lines(report.lines)
    if not report.success:
        raise click.ClickException(f"Run finished with status {report.status.value}.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    gen_batch()
