"""Worker pool coordinating concurrent item processing for one run."""

from __future__ import annotations

import logging
import signal
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from gen_batch.orchestrator.backend.base import GenerationBackend
from gen_batch.orchestrator.ledger import WorkLedger
from gen_batch.orchestrator.models import RunState, RunStatus, RunSummary
from gen_batch.orchestrator.retry import RetryPolicy
from gen_batch.orchestrator.workdir import WorkerWorkdirManager
from gen_batch.orchestrator.worker import (
    AUTH_REQUIRED_REASON,
    RATE_LIMIT_REASON,
    AuthRequiredStop,
    RateLimitStop,
    Worker,
)

logger = logging.getLogger(__name__)

BackendFactory = Callable[[str], GenerationBackend]

MAX_WORKERS = 100
ALL_WORKERS_FAILED_REASON = "All workers failed"


class NoWorkersAvailable(RuntimeError):
    """Not a single worker managed to initialize."""


class WorkerPool:
    """Runs N workers against one ledger and finalizes the run.

    Worker errors never cancel siblings. A ``RateLimitStop`` from any worker
    stops every worker cooperatively; an ``AuthRequiredStop`` does the same
    and fails the run. ``retry_policy`` and ``sleep`` are handed to every
    worker for its in-place retries.
    """

    def __init__(  # noqa: PLR0913
        self,
        ledger: WorkLedger,
        backend_factory: BackendFactory,
        *,
        workers: int = 1,
        seed_dir: Path | None = None,
        between_items_seconds: float = 0.0,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], object] | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        if workers < 1 or workers > MAX_WORKERS:
            raise ValueError(f"Workers must be between 1 and {MAX_WORKERS}: {workers}")
        self.ledger = ledger
        self.backend_factory = backend_factory
        self.worker_count = workers
        self.seed_dir = seed_dir
        self.between_items_seconds = between_items_seconds
        self.retry_policy = retry_policy
        self.sleep = sleep
        self.install_signal_handlers = install_signal_handlers
        self.workdirs = WorkerWorkdirManager(ledger.run_dir)
        self.workers: list[Worker] = []
        self.rate_limit_detected = False
        self.auth_failed = False
        self.stop_signal_name: str | None = None

    def init(
        self,
        *,
        job_name: str,
        batch_size: int,
        target: dict[str, Any] | None = None,
    ) -> RunState:
        """Create the ledger for a new run."""

        state = self.ledger.init(job_name=job_name, batch_size=batch_size, target=target)
        logger.info(
            "Run %s: job=%s batch=%d workers=%d dir=%s",
            state.run_id,
            job_name,
            batch_size,
            self.worker_count,
            self.ledger.run_dir,
        )
        return state

    def start(self) -> RunSummary:
        """Run every worker to completion and return the final summary.

        Raises ``RunClosed`` without touching the run if it already finished.
        """

        self.ledger.update_run_status(RunStatus.IN_PROGRESS)
        try:
            self.workers = [self._build_worker(index) for index in range(self.worker_count)]
            ready = self._initialize_workers()
            if not ready:
                raise NoWorkersAvailable("No workers initialized successfully")
            with self._signal_handlers():
                errors = self._run_workers(ready)
            return self._finalize(ready_count=len(ready), error_count=len(errors))
        except Exception as error:
            logger.error("Pool run failed: %s", error)
            self._mark_failed(str(error))
            raise
        finally:
            self.cleanup()

    def stop(self) -> None:
        """Ask every worker to stop after its current item."""

        for worker in self.workers:
            worker.stop()

    def cleanup(self) -> None:
        """Shut down every worker independently; one failure never blocks another."""

        if not self.workers:
            return
        logger.info("Cleaning up workers (%d)...", len(self.workers))
        for worker in self.workers:
            try:
                worker.shutdown()
            except Exception as error:  # noqa: BLE001
                logger.warning("%s cleanup error: %s", worker.worker_id, error)

    def _build_worker(self, index: int) -> Worker:
        worker_id = f"worker-{index}"
        return Worker(
            worker_id,
            ledger=self.ledger,
            backend=self.backend_factory(worker_id),
            workdirs=self.workdirs,
            seed_dir=self.seed_dir,
            between_items_seconds=self.between_items_seconds,
            retry_policy=self.retry_policy,
            sleep=self.sleep,
        )

    def _initialize_workers(self) -> list[Worker]:
        logger.info("Launching %d workers...", len(self.workers))

        def _init(worker: Worker) -> bool:
            try:
                worker.initialize()
            except Exception as error:  # noqa: BLE001
                logger.error("%s initialization failed: %s", worker.worker_id, error)
                return False
            return True

        with ThreadPoolExecutor(
            max_workers=len(self.workers),
            thread_name_prefix="gen-batch-init",
        ) as executor:
            outcomes = list(executor.map(_init, self.workers))
        ready = [worker for worker, ok in zip(self.workers, outcomes, strict=True) if ok]
        logger.info("%d workers initialized successfully", len(ready))
        return ready

    def _run_workers(self, ready: list[Worker]) -> list[BaseException]:
        errors: list[BaseException] = []
        with ThreadPoolExecutor(
            max_workers=len(ready),
            thread_name_prefix="gen-batch-worker",
        ) as executor:
            futures = {executor.submit(worker.run): worker for worker in ready}
            for future in as_completed(futures):
                worker = futures[future]
                try:
                    future.result()
                except RateLimitStop as error:
                    errors.append(error)
                    if not self.rate_limit_detected:
                        self.rate_limit_detected = True
                        logger.warning("Rate limit detected by %s: %s", worker.worker_id, error)
                        logger.info("Signaling all workers to stop after their current item")
                        self.stop()
                except AuthRequiredStop as error:
                    errors.append(error)
                    if not self.auth_failed:
                        self.auth_failed = True
                        logger.error("Authentication lost on %s: %s", worker.worker_id, error)
                        self.stop()
                except Exception as error:  # noqa: BLE001
                    errors.append(error)
                    logger.error(
                        "%s fatal error in work loop: %s",
                        worker.worker_id,
                        error,
                        exc_info=error,
                    )
        return errors

    def _finalize(self, *, ready_count: int, error_count: int) -> RunSummary:
        state = self.ledger.load()
        persisted_status = state.status if state is not None else None
        if self.auth_failed:
            self.ledger.update_run_status(RunStatus.FAILED, AUTH_REQUIRED_REASON)
        elif self.rate_limit_detected or persisted_status == RunStatus.STOPPED_RATE_LIMIT:
            logger.warning("Run stopped due to rate limit")
            reason = state.stop_reason if state is not None else None
            self.ledger.update_run_status(RunStatus.STOPPED_RATE_LIMIT, reason or RATE_LIMIT_REASON)
        elif error_count > 0 and error_count == ready_count:
            logger.error("All workers failed")
            self.ledger.update_run_status(RunStatus.FAILED, ALL_WORKERS_FAILED_REASON)
        else:
            reason = f"Stopped by {self.stop_signal_name}" if self.stop_signal_name else None
            self.ledger.update_run_status(RunStatus.COMPLETED, reason)

        summary = self.ledger.summary()
        _log_summary(summary, workers=self.worker_count)
        return summary

    def _mark_failed(self, reason: str) -> None:
        try:
            self.ledger.update_run_status(RunStatus.FAILED, reason)
        except Exception:
            logger.exception("Could not mark run as FAILED")

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not self.install_signal_handlers or not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s, stopping workers after their current item", name)
            self.stop_signal_name = name
            self.stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def resume_pool(  # noqa: PLR0913
    run_dir: Path,
    backend_factory: BackendFactory,
    *,
    workers: int = 1,
    ledger: WorkLedger | None = None,
    seed_dir: Path | None = None,
    between_items_seconds: float = 0.0,
    retry_policy: RetryPolicy | None = None,
) -> WorkerPool:
    """Reopen a persisted run and return a pool ready to ``start()``."""

    ledger = ledger or WorkLedger(run_dir)
    state = ledger.resume()
    logger.info("Resuming run %s (%s): %s", state.run_id, state.job_name, state.summary().to_dict())
    return WorkerPool(
        ledger,
        backend_factory,
        workers=workers,
        seed_dir=seed_dir,
        between_items_seconds=between_items_seconds,
        retry_policy=retry_policy,
    )


def _log_summary(summary: RunSummary, *, workers: int) -> None:
    logger.info("=== Run Summary ===")
    logger.info("Workers: %d", workers)
    logger.info("Total attempts: %d", summary.attempts)
    logger.info("  Completed: %d / %d", summary.completed, summary.total)
    logger.info("  Failed: %d", summary.failed)
    if summary.rate_limited:
        logger.info("Rate limited: %d (not attempted)", summary.rate_limited)
    logger.info("Status: %s", summary.status.value)
    if summary.stop_reason:
        logger.info("Stop reason: %s", summary.stop_reason)
