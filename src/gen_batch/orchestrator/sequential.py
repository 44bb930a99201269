"""Single-worker runner with in-place retries and a consecutive-failure breaker."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from gen_batch.orchestrator.backend.base import AttemptResult, GenerationBackend, SessionBackend
from gen_batch.orchestrator.ledger import WorkLedger
from gen_batch.orchestrator.models import ItemState, RunState, RunStatus, RunSummary
from gen_batch.orchestrator.retry import ExponentialBackoff
from gen_batch.orchestrator.workdir import WorkerWorkdirManager
from gen_batch.orchestrator.worker import (
    AUTH_REQUIRED_REASON,
    RATE_LIMIT_REASON,
    AuthRequiredStop,
    RateLimitStop,
    attempt_with_backoff,
    record_outcome,
)

logger = logging.getLogger(__name__)

SEQUENTIAL_WORKER_ID = "sequential"
DEFAULT_MAX_CONSECUTIVE_FAILURES = 5


class ConsecutiveFailuresExceeded(RuntimeError):
    """Too many items failed back to back; the run is aborted."""


class SequentialRunner:
    """Processes items one at a time using the same ledger as the pool.

    Transient outcomes are retried in place with exponential backoff before
    the item is recorded; between retries the backend's ``reset()`` hook (if
    any) returns the session to a clean state.
    """

    def __init__(  # noqa: PLR0913
        self,
        ledger: WorkLedger,
        backend: GenerationBackend,
        *,
        retry_policy: ExponentialBackoff | None = None,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        seed_dir: Path | None = None,
        between_items_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.ledger = ledger
        self.backend = backend
        self.retry_policy = retry_policy or ExponentialBackoff()
        self.max_consecutive_failures = max_consecutive_failures
        self.seed_dir = seed_dir
        self.between_items_seconds = between_items_seconds
        self.sleep = sleep
        self.worker_id = SEQUENTIAL_WORKER_ID
        self.workdirs = WorkerWorkdirManager(ledger.run_dir)
        self._stop_event = threading.Event()
        self._session_open = False

    def init(
        self,
        *,
        job_name: str,
        batch_size: int,
        target: dict[str, Any] | None = None,
    ) -> RunState:
        return self.ledger.init(job_name=job_name, batch_size=batch_size, target=target)

    def stop(self) -> None:
        self._stop_event.set()

    def start(self) -> RunSummary:
        """Process every eligible item and return the final summary.

        Raises ``RunClosed`` without touching the run if it already finished.
        """

        self.ledger.update_run_status(RunStatus.IN_PROGRESS)
        try:
            self._open_session()
            self._process_items()
            self.ledger.update_run_status(RunStatus.COMPLETED)
        except RateLimitStop as error:
            logger.warning("Rate limit detected, stopping run: %s", error)
            state = self.ledger.load()
            reason = state.stop_reason if state is not None else None
            self.ledger.update_run_status(RunStatus.STOPPED_RATE_LIMIT, reason or RATE_LIMIT_REASON)
        except AuthRequiredStop as error:
            logger.error("Batch run failed: %s", error)
            self.ledger.update_run_status(RunStatus.FAILED, AUTH_REQUIRED_REASON)
        except ConsecutiveFailuresExceeded as error:
            logger.error("Batch run failed: %s", error)
            self.ledger.update_run_status(RunStatus.FAILED, str(error))
        except Exception as error:
            logger.error("Batch run failed: %s", error)
            self.ledger.update_run_status(RunStatus.FAILED, str(error))
            raise
        finally:
            self.cleanup()
        summary = self.ledger.summary()
        logger.info("Batch run finished: %s", summary.to_dict())
        return summary

    def cleanup(self) -> None:
        if self._session_open and isinstance(self.backend, SessionBackend):
            try:
                self.backend.close()
            except Exception:
                logger.exception("Backend session close failed")
            self._session_open = False
        try:
            self.workdirs.remove(self.worker_id)
        except OSError as error:
            logger.warning("Workdir cleanup failed: %s", error)

    def _open_session(self) -> None:
        workdir = self.workdirs.materialize(self.worker_id, seed_dir=self.seed_dir)
        if isinstance(self.backend, SessionBackend):
            self.backend.open(workdir.root)
            self._session_open = True

    def _process_items(self) -> None:
        consecutive_failures = 0
        while not self._stop_event.is_set():
            item = self.ledger.claim_next(self.worker_id)
            if item is None:
                logger.info("No more pending items")
                return
            if self._stop_event.is_set():
                self.ledger.release_item(item.index, self.worker_id)
                return

            summary = self.ledger.summary()
            logger.info(
                "[%d/%d] Generating item %d...",
                summary.completed,
                summary.total,
                item.index,
            )
            result = self._attempt_with_retries(item)
            updated = record_outcome(
                ledger=self.ledger,
                backend=self.backend,
                worker_id=self.worker_id,
                item=item,
                result=result,
            )
            if result.success:
                consecutive_failures = 0
            else:
                consecutive_failures += 1
                logger.warning(
                    "Item %d failed (%s), continuing to next item",
                    updated.index,
                    result.error_message or result.outcome.value,
                )
                if consecutive_failures >= self.max_consecutive_failures:
                    raise ConsecutiveFailuresExceeded(
                        f"Too many consecutive failures: {result.error_message or result.outcome.value}",
                    )
            if self.between_items_seconds > 0:
                self._stop_event.wait(self.between_items_seconds)

    def _attempt_with_retries(self, item: ItemState) -> AttemptResult:
        return attempt_with_backoff(
            self.backend,
            item,
            policy=self.retry_policy,
            label=self.worker_id,
            sleep=self.sleep,
            keep_going=lambda: not self._stop_event.is_set(),
        )
