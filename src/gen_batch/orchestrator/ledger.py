"""Durable run ledger with atomic claim/update operations."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

from gen_batch.orchestrator.lock import (
    DEFAULT_ACQUIRE_TIMEOUT_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_STALE_AFTER_SECONDS,
    FileLock,
)
from gen_batch.orchestrator.models import (
    TERMINAL_RUN_STATUSES,
    ItemError,
    ItemState,
    ItemStatus,
    RunState,
    RunStatus,
    RunSummary,
    apply_status_delta,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MANIFEST_FILENAME = "manifest.json"
LOCK_FILENAME = "manifest.lock"
MAX_BATCH_SIZE = 1000
DEFAULT_MAX_ITEM_ATTEMPTS = 3

_UPDATABLE_FIELDS = frozenset(
    {"status", "attempts", "worker_id", "last_error", "completed_at", "post_process"},
)
_INTERRUPTED_ITEM_STATUSES = frozenset({ItemStatus.IN_PROGRESS, ItemStatus.RATE_LIMITED})


class LedgerError(RuntimeError):
    """Base class for ledger coordination errors."""


class AlreadyInitialized(LedgerError):
    """A manifest already exists for this run directory."""


class LedgerNotFound(LedgerError):
    """No manifest exists for this run directory."""


class ItemNotFound(LedgerError):
    """Item index is outside the run's batch."""


class RunClosed(LedgerError):
    """The run is terminal and only ``resume()`` may reopen it."""


class OwnershipViolation(LedgerError):
    """Caller does not own the item it tries to update."""

    def __init__(self, index: int, expected_owner: str, actual_owner: str | None) -> None:
        super().__init__(
            f"Item {index} is owned by {actual_owner!r}, not {expected_owner!r}",
        )
        self.index = index
        self.expected_owner = expected_owner
        self.actual_owner = actual_owner


class WorkLedger:
    """Persisted record of one run and its items.

    Every mutation runs inside the lock and reloads the manifest from disk
    before changing it, so the file (not any in-memory copy) is the source
    of truth. ``load`` is a lock-free read-only snapshot for status tooling.
    """

    def __init__(
        self,
        run_dir: Path,
        *,
        lock_timeout_seconds: float = DEFAULT_ACQUIRE_TIMEOUT_SECONDS,
        lock_poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        stale_lock_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        max_item_attempts: int = DEFAULT_MAX_ITEM_ATTEMPTS,
    ) -> None:
        self.run_dir = run_dir
        self.manifest_path = run_dir / MANIFEST_FILENAME
        self.lock_timeout_seconds = lock_timeout_seconds
        self.max_item_attempts = max_item_attempts
        self.lock = FileLock(
            run_dir / LOCK_FILENAME,
            poll_interval_seconds=lock_poll_interval_seconds,
            stale_after_seconds=stale_lock_seconds,
        )

    def exists(self) -> bool:
        return self.manifest_path.exists()

    def init(
        self,
        *,
        job_name: str,
        batch_size: int,
        target: dict[str, Any] | None = None,
    ) -> RunState:
        """Create the run with ``batch_size`` pending items."""

        if batch_size < 1 or batch_size > MAX_BATCH_SIZE:
            raise ValueError(f"Batch size must be between 1 and {MAX_BATCH_SIZE}: {batch_size}")
        self.run_dir.mkdir(parents=True, exist_ok=True)

        def _create() -> RunState:
            if self.exists():
                raise AlreadyInitialized(f"Run already initialized: {self.manifest_path}")
            now = utc_now()
            state = RunState(
                run_id=uuid4().hex,
                job_name=job_name,
                batch_size=batch_size,
                target=dict(target or {}),
                status=RunStatus.PENDING,
                created_at=now,
                updated_at=now,
                items=[ItemState(index=index) for index in range(batch_size)],
            )
            self._write(state)
            return state

        state = self._locked(_create)
        logger.info("Initialized run %s (%s) with %d items", state.run_id, job_name, batch_size)
        return state

    def load(self) -> RunState | None:
        """Read the persisted state without taking the lock."""

        try:
            raw = self.manifest_path.read_text("utf-8")
        except FileNotFoundError:
            return None
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise TypeError(f"Expected JSON object in {self.manifest_path}")
        return RunState.from_dict(payload)

    def claim_next(self, worker_id: str) -> ItemState | None:
        """Atomically claim the lowest-index eligible item, or return None."""

        def _claim(state: RunState) -> ItemState | None:
            if state.status in TERMINAL_RUN_STATUSES:
                return None
            for item in state.items:
                if not self._is_eligible(item):
                    continue
                apply_status_delta(state, item.status, ItemStatus.IN_PROGRESS)
                item.status = ItemStatus.IN_PROGRESS
                item.worker_id = worker_id
                item.claimed_at = utc_now()
                item.attempts += 1
                return ItemState.from_dict(item.to_dict())
            return None

        claimed = self._mutate(_claim, persist_if_none=False)
        if claimed is not None:
            logger.debug(
                "Worker %s claimed item %d (attempt %d)",
                worker_id,
                claimed.index,
                claimed.attempts,
            )
        return claimed

    def update_item(
        self,
        index: int,
        *,
        expected_owner: str | None = None,
        **fields: Any,
    ) -> ItemState:
        """Apply field updates to one item, keeping run counters consistent."""

        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported item fields: {', '.join(sorted(unknown))}")

        def _update(state: RunState) -> ItemState:
            item = self._owned_item(state, index, expected_owner)
            _apply_item_fields(state, item, fields)
            return ItemState.from_dict(item.to_dict())

        return self._mutate(_update)

    def release_item(self, index: int, worker_id: str) -> ItemState:
        """Return a claimed but unattempted item to PENDING.

        The claim's attempt is handed back, see ``restore_unattempted``.
        """

        def _release(state: RunState) -> ItemState:
            item = self._owned_item(state, index, worker_id)
            return _restore_item(state, item, {"status": ItemStatus.PENDING})

        released = self._mutate(_release)
        logger.info("Worker %s released item %d back to PENDING", worker_id, index)
        return released

    def restore_unattempted(
        self,
        index: int,
        worker_id: str,
        *,
        status: ItemStatus,
        error: ItemError | None = None,
    ) -> ItemState:
        """Record an outcome that must not consume the claim's attempt.

        Lowers ``attempts`` by one. Together with ``release_item`` this is the
        only decrease: a rate limit or lost session never reached the backend
        and does not count against the item's attempt budget.
        """

        def _restore(state: RunState) -> ItemState:
            item = self._owned_item(state, index, worker_id)
            return _restore_item(state, item, {"status": status, "last_error": error})

        return self._mutate(_restore)

    def update_run_status(self, status: RunStatus, reason: str | None = None) -> RunState:
        """Set the run status and, optionally, its stop reason.

        Raises ``RunClosed`` when a terminal run would become active again;
        moving between terminal statuses is allowed so finalization can
        settle the outcome.
        """

        def _update(state: RunState) -> RunState:
            if state.status in TERMINAL_RUN_STATUSES and status not in TERMINAL_RUN_STATUSES:
                raise RunClosed(
                    f"Run {state.run_id} is {state.status.value}; use resume to reopen it",
                )
            state.status = status
            if reason is not None:
                state.stop_reason = reason
            return state

        updated = self._mutate(_update)
        logger.info("Run %s status -> %s%s", updated.run_id, status.value, _reason_suffix(reason))
        return updated

    def mark_rate_limited(
        self,
        reason: str,
        *,
        index: int | None = None,
        worker_id: str | None = None,
        error: ItemError | None = None,
    ) -> RunState:
        """Stop new claims pool-wide unless the run is already terminal.

        With ``index`` and ``worker_id`` the rate-limited item is handed back
        in the same write, so no sibling sees the item settled while the run
        is still open.
        """

        def _stop(state: RunState) -> RunState:
            if index is not None and worker_id is not None:
                item = self._owned_item(state, index, worker_id)
                _restore_item(state, item, {"status": ItemStatus.RATE_LIMITED, "last_error": error})
            if state.status not in TERMINAL_RUN_STATUSES:
                state.status = RunStatus.STOPPED_RATE_LIMIT
                state.stop_reason = reason
            return state

        return self._mutate(_stop)

    def resume(self) -> RunState:
        """Reopen an interrupted run and reset interrupted items to PENDING."""

        def _resume(state: RunState) -> RunState:
            if state.status in {RunStatus.COMPLETED, RunStatus.FAILED} and not any(
                self._is_eligible(item) or item.status in _INTERRUPTED_ITEM_STATUSES
                for item in state.items
            ):
                return state
            reset = 0
            for item in state.items:
                if item.status in _INTERRUPTED_ITEM_STATUSES:
                    _apply_item_fields(state, item, {"status": ItemStatus.PENDING})
                    reset += 1
            state.status = RunStatus.IN_PROGRESS
            state.stop_reason = None
            if reset:
                logger.warning("Reset %d interrupted item(s) to PENDING", reset)
            return state

        if not self.exists():
            raise LedgerNotFound(f"No manifest found in run directory: {self.run_dir}")
        return self._mutate(_resume)

    def summary(self, state: RunState | None = None) -> RunSummary:
        """Return counts for ``state`` or for the freshly loaded manifest."""

        if state is None:
            state = self.load()
        if state is None:
            raise LedgerNotFound(f"No manifest found in run directory: {self.run_dir}")
        return state.summary()

    def _is_eligible(self, item: ItemState) -> bool:
        if item.status == ItemStatus.PENDING:
            return True
        return item.status == ItemStatus.FAILED and item.attempts < self.max_item_attempts

    def _owned_item(self, state: RunState, index: int, expected_owner: str | None) -> ItemState:
        item = state.item(index)
        if item is None:
            raise ItemNotFound(f"Item {index} not found in manifest")
        if expected_owner is not None and item.worker_id != expected_owner:
            raise OwnershipViolation(index, expected_owner, item.worker_id)
        return item

    def _mutate(
        self,
        fn: Callable[[RunState], T],
        *,
        persist_if_none: bool = True,
    ) -> T:
        def _critical_section() -> T:
            state = self.load()
            if state is None:
                raise LedgerNotFound(f"No manifest found in run directory: {self.run_dir}")
            result = fn(state)
            if result is not None or persist_if_none:
                self._write(state)
            return result

        return self._locked(_critical_section)

    def _locked(self, fn: Callable[[], T]) -> T:
        return self.lock.with_lock(fn, timeout_seconds=self.lock_timeout_seconds)

    def _write(self, state: RunState) -> None:
        state.updated_at = utc_now()
        payload = json.dumps(state.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.run_dir,
            prefix=f".{MANIFEST_FILENAME}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.manifest_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def _apply_item_fields(
    state: RunState,
    item: ItemState,
    fields: dict[str, Any],
    *,
    allow_attempt_decrease: bool = False,
) -> None:
    old_status = item.status
    if "status" in fields:
        new_status = ItemStatus(fields["status"])
        apply_status_delta(state, old_status, new_status)
        item.status = new_status
        if new_status == ItemStatus.COMPLETED and "completed_at" not in fields:
            item.completed_at = utc_now()
        if new_status != ItemStatus.IN_PROGRESS and "worker_id" not in fields:
            if new_status in {ItemStatus.PENDING, ItemStatus.RATE_LIMITED}:
                item.worker_id = None
                item.claimed_at = None
    if "attempts" in fields:
        attempts = int(fields["attempts"])
        if allow_attempt_decrease or attempts >= item.attempts:
            item.attempts = attempts
    if "worker_id" in fields:
        item.worker_id = fields["worker_id"]
    if "last_error" in fields:
        item.last_error = _coerce_error(fields["last_error"])
    if "completed_at" in fields:
        item.completed_at = fields["completed_at"]
    if "post_process" in fields:
        item.post_process = list(fields["post_process"] or [])


def _restore_item(state: RunState, item: ItemState, fields: dict[str, Any]) -> ItemState:
    _apply_item_fields(
        state,
        item,
        {**fields, "attempts": max(0, item.attempts - 1)},
        allow_attempt_decrease=True,
    )
    return ItemState.from_dict(item.to_dict())


def _coerce_error(value: Any) -> ItemError | None:
    if value is None or isinstance(value, ItemError):
        return value
    if isinstance(value, dict):
        return ItemError.from_dict(value)
    return ItemError(kind="unknown", message=str(value))


def _reason_suffix(reason: str | None) -> str:
    return f" ({reason})" if reason else ""
