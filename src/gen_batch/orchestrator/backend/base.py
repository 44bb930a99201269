"""Backend interface for generation attempts."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from gen_batch.orchestrator.models import ItemState, OutcomeKind
from gen_batch.orchestrator.retry import FixedCooldown, RetryableOutcome, is_outcome, retry_call

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AttemptResult:
    """Classified outcome of one item attempt."""

    outcome: OutcomeKind
    attempted: bool = True
    error_kind: str | None = None
    error_message: str | None = None
    duration_ms: int | None = None

    @property
    def success(self) -> bool:
        return self.outcome == OutcomeKind.SUCCESS


@dataclass(slots=True)
class PostProcessStep:
    """One post-processing step (download, upscale, ...) and how it went."""

    name: str
    success: bool
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "success": self.success, "message": self.message}


@dataclass(slots=True)
class PostProcessResult:
    steps: list[PostProcessStep] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(step.success for step in self.steps)


class GenerationBackend(Protocol):
    """Performs one opaque unit of work and reports a classified outcome."""

    def attempt(self, item: ItemState) -> AttemptResult:
        """Run one attempt for ``item``."""


@runtime_checkable
class SessionBackend(Protocol):
    """Backend owning a per-worker session (browser, process, connection)."""

    def open(self, workdir: Path) -> None:
        """Acquire the session; raising excludes the worker from the pool."""

    def close(self) -> None:
        """Release the session."""


@runtime_checkable
class ResettableBackend(Protocol):
    def reset(self) -> None:
        """Return the session to a clean state before a retry."""


@runtime_checkable
class PostProcessingBackend(Protocol):
    def post_process(self, item: ItemState) -> PostProcessResult:
        """Run follow-up steps for a successfully generated item."""


def attempt_with_content_retry(
    run_once: Callable[[], AttemptResult],
    *,
    index: int,
    policy: FixedCooldown,
    sleep: Callable[[float], None] = time.sleep,
) -> AttemptResult:
    """Repeat ``run_once`` while it reports CONTENT_REJECTED, with a fixed cooldown."""

    retries = 0

    def _once() -> AttemptResult:
        result = run_once()
        if result.outcome == OutcomeKind.CONTENT_REJECTED:
            raise RetryableOutcome(result.outcome, result.error_message or "")
        return result

    def _on_retry(retry_no: int, max_retries: int, delay_ms: int, error: Exception) -> None:
        nonlocal retries
        retries = retry_no
        logger.info(
            "Item %d content rejected (%s), retry %d/%d in %dms",
            index,
            error,
            retry_no,
            max_retries,
            delay_ms,
        )

    try:
        return retry_call(
            _once,
            policy=policy,
            should_retry=is_outcome(OutcomeKind.CONTENT_REJECTED),
            on_retry=_on_retry,
            sleep=sleep,
        )
    except RetryableOutcome as error:
        return AttemptResult(
            outcome=error.outcome,
            error_kind=error.outcome.value,
            error_message=f"{error} (after {retries} content retries)",
        )
