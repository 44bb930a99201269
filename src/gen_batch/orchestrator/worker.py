"""Pool worker that claims ledger items and executes them via a backend."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from gen_batch.orchestrator.backend.base import (
    AttemptResult,
    GenerationBackend,
    PostProcessingBackend,
    PostProcessResult,
    PostProcessStep,
    ResettableBackend,
    SessionBackend,
)
from gen_batch.orchestrator.ledger import WorkLedger
from gen_batch.orchestrator.models import (
    COUNTABLE_FAILURES,
    ItemError,
    ItemState,
    ItemStatus,
    OutcomeKind,
    RunStatus,
)
from gen_batch.orchestrator.retry import (
    ExponentialBackoff,
    RetryableOutcome,
    RetryPolicy,
    is_outcome,
    retry_call,
)
from gen_batch.orchestrator.workdir import WorkerWorkdir, WorkerWorkdirManager

logger = logging.getLogger(__name__)

RATE_LIMIT_REASON = "Rate limit detected"
AUTH_REQUIRED_REASON = "Authentication required"

TRANSIENT_OUTCOMES = (
    OutcomeKind.TIMEOUT,
    OutcomeKind.NETWORK_ERROR,
    OutcomeKind.GENERATION_ERROR,
    OutcomeKind.UNKNOWN,
)


class RateLimitStop(RuntimeError):
    """A worker observed a rate limit; the whole pool must stop claiming."""

    def __init__(self, worker_id: str, index: int, message: str | None = None) -> None:
        super().__init__(message or f"Rate limit detected by {worker_id} on item {index}")
        self.worker_id = worker_id
        self.index = index


class AuthRequiredStop(RuntimeError):
    """The backend session lost authentication; the run cannot continue."""

    def __init__(self, worker_id: str, index: int, message: str | None = None) -> None:
        super().__init__(message or f"Authentication required ({worker_id}, item {index})")
        self.worker_id = worker_id
        self.index = index


@dataclass(slots=True)
class WorkerRunStats:
    """Per-worker counters for pool reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    released: int = 0


def record_outcome(
    *,
    ledger: WorkLedger,
    backend: GenerationBackend,
    worker_id: str,
    item: ItemState,
    result: AttemptResult,
) -> ItemState:
    """Write one attempt's outcome to the ledger.

    Raises ``RateLimitStop`` or ``AuthRequiredStop`` after recording those
    outcomes; both also close the run to new claims.
    """

    outcome = result.outcome
    error = _item_error(result)

    if outcome == OutcomeKind.SUCCESS:
        updated = ledger.update_item(
            item.index,
            expected_owner=worker_id,
            status=ItemStatus.COMPLETED,
            last_error=None,
        )
        if isinstance(backend, PostProcessingBackend):
            updated = _post_process(ledger, backend, worker_id, updated)
        return updated

    if outcome == OutcomeKind.RATE_LIMITED:
        message = result.error_message or RATE_LIMIT_REASON
        ledger.mark_rate_limited(message, index=item.index, worker_id=worker_id, error=error)
        raise RateLimitStop(worker_id, item.index, message)

    if outcome == OutcomeKind.AUTH_REQUIRED:
        ledger.restore_unattempted(item.index, worker_id, status=ItemStatus.PENDING, error=error)
        ledger.update_run_status(RunStatus.FAILED, AUTH_REQUIRED_REASON)
        raise AuthRequiredStop(worker_id, item.index, result.error_message)

    if outcome not in COUNTABLE_FAILURES:  # pragma: no cover - exhaustive enum
        raise ValueError(f"Unhandled outcome: {outcome}")
    return ledger.update_item(
        item.index,
        expected_owner=worker_id,
        status=ItemStatus.FAILED,
        last_error=error,
    )


def attempt_with_backoff(  # noqa: PLR0913
    backend: GenerationBackend,
    item: ItemState,
    *,
    policy: RetryPolicy,
    label: str,
    sleep: Callable[[float], object] = time.sleep,
    keep_going: Callable[[], bool] | None = None,
) -> AttemptResult:
    """Run one item attempt, retrying transient outcomes in place.

    TIMEOUT, NETWORK_ERROR, GENERATION_ERROR and UNKNOWN are retried with
    ``policy`` delays; the backend's ``reset()`` hook (if any) runs before
    each retry. Retrying ends early once ``keep_going`` returns False, also
    when that happens during a backoff wait. The last result is returned
    whatever its outcome.
    """

    transient = is_outcome(*TRANSIENT_OUTCOMES)
    previous: list[AttemptResult] = []

    def _keep_going() -> bool:
        return keep_going is None or keep_going()

    def _once() -> AttemptResult:
        if previous and not _keep_going():
            result = previous[-1]
        else:
            result = _safe_attempt(backend, item, label)
            previous.append(result)
        if not result.success:
            raise RetryableOutcome(result.outcome, result.error_message or "", result=result)
        return result

    def _should_retry(error: Exception) -> bool:
        return transient(error) and _keep_going()

    def _on_retry(retry_no: int, max_retries: int, delay_ms: int, error: Exception) -> None:
        logger.warning(
            "[%s] Item %d attempt %d/%d failed: %s. Retrying in %.1fs...",
            label,
            item.index,
            retry_no,
            max_retries,
            error,
            delay_ms / 1000,
        )
        if isinstance(backend, ResettableBackend):
            backend.reset()

    try:
        return retry_call(
            _once,
            policy=policy,
            should_retry=_should_retry,
            on_retry=_on_retry,
            sleep=sleep,
        )
    except RetryableOutcome as error:
        return error.result


def _safe_attempt(backend: GenerationBackend, item: ItemState, label: str) -> AttemptResult:
    try:
        return backend.attempt(item)
    except Exception as error:
        logger.exception("[%s] Backend raised on item %d", label, item.index)
        return AttemptResult(
            outcome=OutcomeKind.UNKNOWN,
            error_kind="backend_exception",
            error_message=f"{type(error).__name__}: {error}",
        )


class Worker:
    """One concurrent execution unit of the pool.

    ``stop()`` only sets a flag; the loop observes it after each claim and
    after each attempt, so in-flight work always finishes. A worker can still
    claim at most one extra item after a stop raised mid-claim; that item is
    released back to PENDING without being attempted.

    Transient failures are retried in place with ``retry_policy`` before the
    outcome is recorded. Backoff waits on the stop flag, so a stop cuts the
    wait short and ends the retries.
    """

    def __init__(  # noqa: PLR0913
        self,
        worker_id: str,
        *,
        ledger: WorkLedger,
        backend: GenerationBackend,
        workdirs: WorkerWorkdirManager,
        seed_dir: Path | None = None,
        between_items_seconds: float = 0.0,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], object] | None = None,
    ) -> None:
        self.worker_id = worker_id
        self.ledger = ledger
        self.backend = backend
        self.workdirs = workdirs
        self.seed_dir = seed_dir
        self.between_items_seconds = between_items_seconds
        self.retry_policy = retry_policy or ExponentialBackoff()
        self.stats = WorkerRunStats()
        self.workdir: WorkerWorkdir | None = None
        self.initialized = False
        self.running = False
        self.current_index: int | None = None
        self._stop_event = threading.Event()
        self.sleep = sleep or self._stop_event.wait
        self._session_open = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def initialize(self) -> None:
        """Create worker storage and open the backend session."""

        try:
            self.workdir = self.workdirs.materialize(self.worker_id, seed_dir=self.seed_dir)
            if isinstance(self.backend, SessionBackend):
                self.backend.open(self.workdir.root)
                self._session_open = True
        except Exception:
            logger.exception("[%s] Initialization failed", self.worker_id)
            self.shutdown()
            raise
        self.initialized = True
        logger.info("[%s] Ready", self.worker_id)

    def run(self) -> WorkerRunStats:
        """Claim and process items until no work remains or a stop is requested."""

        self.running = True
        try:
            while not self.stop_requested:
                item = self.ledger.claim_next(self.worker_id)
                if item is None:
                    logger.info("[%s] No more work available, exiting", self.worker_id)
                    break
                if self.stop_requested:
                    logger.info(
                        "[%s] Stop requested, releasing unattempted item %d",
                        self.worker_id,
                        item.index,
                    )
                    self.ledger.release_item(item.index, self.worker_id)
                    self.stats.released += 1
                    break

                self.current_index = item.index
                self._process(item)
                self.current_index = None

                if self.stop_requested:
                    logger.info(
                        "[%s] Stop requested, exiting after item %d",
                        self.worker_id,
                        item.index,
                    )
                    break
                if self.between_items_seconds > 0:
                    self._stop_event.wait(self.between_items_seconds)
        finally:
            self.running = False
            self.current_index = None
        return self.stats

    def stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("[%s] Stop signal received", self.worker_id)
            self._stop_event.set()

    def shutdown(self) -> None:
        """Close the backend session and remove worker storage; never raises."""

        started = time.monotonic()
        if self._session_open and isinstance(self.backend, SessionBackend):
            try:
                self.backend.close()
            except Exception:
                logger.exception("[%s] Backend session close failed", self.worker_id)
            self._session_open = False
        try:
            self.workdirs.remove(self.worker_id)
        except OSError as error:
            logger.warning("[%s] Workdir cleanup failed: %s", self.worker_id, error)
        self.workdir = None
        logger.info(
            "[%s] Shutdown complete in %dms",
            self.worker_id,
            int((time.monotonic() - started) * 1000),
        )

    def _process(self, item: ItemState) -> None:
        logger.info("[%s] Attempting item %d (attempt %d)", self.worker_id, item.index, item.attempts)
        result = self._attempt(item)
        self.stats.processed += 1
        updated = record_outcome(
            ledger=self.ledger,
            backend=self.backend,
            worker_id=self.worker_id,
            item=item,
            result=result,
        )
        if updated.status == ItemStatus.COMPLETED:
            self.stats.succeeded += 1
            logger.info(
                "[%s] Item %d: success in %ss",
                self.worker_id,
                item.index,
                round((result.duration_ms or 0) / 1000),
            )
        else:
            self.stats.failed += 1
            logger.warning(
                "[%s] Item %d: %s (%s)",
                self.worker_id,
                item.index,
                result.outcome.value,
                result.error_message or "no details",
            )

    def _attempt(self, item: ItemState) -> AttemptResult:
        return attempt_with_backoff(
            self.backend,
            item,
            policy=self.retry_policy,
            label=self.worker_id,
            sleep=self.sleep,
            keep_going=lambda: not self.stop_requested,
        )


def _item_error(result: AttemptResult) -> ItemError | None:
    if result.outcome == OutcomeKind.SUCCESS:
        return None
    return ItemError(
        kind=result.error_kind or result.outcome.value,
        message=result.error_message or result.outcome.value,
    )


def _post_process(
    ledger: WorkLedger,
    backend: PostProcessingBackend,
    worker_id: str,
    item: ItemState,
) -> ItemState:
    try:
        processed = backend.post_process(item)
    except Exception as error:
        logger.exception("[%s] Post-processing failed for item %d", worker_id, item.index)
        processed = PostProcessResult(
            steps=[PostProcessStep(name="post_process", success=False, message=str(error))],
        )
    if not processed.steps:
        return item
    if not processed.success:
        logger.warning("[%s] Post-processing incomplete for item %d", worker_id, item.index)
    return ledger.update_item(
        item.index,
        expected_owner=worker_id,
        post_process=[step.to_dict() for step in processed.steps],
    )
