"""Deterministic in-process backend for tests and local dry runs."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from gen_batch.orchestrator.backend.base import (
    AttemptResult,
    PostProcessResult,
    PostProcessStep,
    attempt_with_content_retry,
)
from gen_batch.orchestrator.models import ItemState, OutcomeKind
from gen_batch.orchestrator.retry import FixedCooldown


@dataclass(slots=True)
class ScriptedCall:
    """One recorded backend call."""

    worker_id: str
    index: int
    outcome: OutcomeKind


class OutcomeScript:
    """Per-item queue of outcomes shared by every scripted session.

    Each backend call for an item pops the next scripted outcome; once the
    queue is empty the default outcome is returned.
    """

    def __init__(
        self,
        outcomes: dict[int, list[OutcomeKind]] | None = None,
        *,
        default: OutcomeKind = OutcomeKind.SUCCESS,
        delay_seconds: float = 0.0,
    ) -> None:
        self._queues = {index: deque(values) for index, values in (outcomes or {}).items()}
        self.default = default
        self.delay_seconds = delay_seconds
        self.calls: list[ScriptedCall] = []
        self._lock = threading.Lock()

    def next_outcome(self, worker_id: str, index: int) -> OutcomeKind:
        with self._lock:
            queue = self._queues.get(index)
            outcome = queue.popleft() if queue else self.default
            self.calls.append(ScriptedCall(worker_id=worker_id, index=index, outcome=outcome))
            return outcome

    def indices(self) -> list[int]:
        with self._lock:
            return [call.index for call in self.calls]


class ScriptedBackend:
    """Session-owning backend that replays an ``OutcomeScript``."""

    def __init__(  # noqa: PLR0913
        self,
        script: OutcomeScript,
        *,
        worker_id: str = "scripted",
        fail_open: bool = False,
        content_retry: FixedCooldown | None = None,
        before_attempt: Callable[[str, ItemState], None] | None = None,
        post_process_steps: tuple[str, ...] = (),
    ) -> None:
        self.script = script
        self.worker_id = worker_id
        self.fail_open = fail_open
        self.content_retry = content_retry or FixedCooldown(cooldown_seconds=0.0, max_retries=3)
        self.before_attempt = before_attempt
        self.post_process_steps = post_process_steps
        self.opened = False
        self.closed = False
        self.resets = 0

    def open(self, workdir: Path) -> None:  # noqa: ARG002
        if self.fail_open:
            raise RuntimeError(f"Scripted session for {self.worker_id} refused to open")
        self.opened = True

    def close(self) -> None:
        self.closed = True

    def reset(self) -> None:
        self.resets += 1

    def attempt(self, item: ItemState) -> AttemptResult:
        if self.before_attempt is not None:
            self.before_attempt(self.worker_id, item)
        return attempt_with_content_retry(
            lambda: self._replay(item),
            index=item.index,
            policy=self.content_retry,
            sleep=time.sleep,
        )

    def post_process(self, item: ItemState) -> PostProcessResult:  # noqa: ARG002
        return PostProcessResult(
            steps=[PostProcessStep(name=name, success=True) for name in self.post_process_steps],
        )

    def _replay(self, item: ItemState) -> AttemptResult:
        if self.script.delay_seconds > 0:
            time.sleep(self.script.delay_seconds)
        outcome = self.script.next_outcome(self.worker_id, item.index)
        if outcome == OutcomeKind.SUCCESS:
            return AttemptResult(outcome=outcome, duration_ms=0)
        return AttemptResult(
            outcome=outcome,
            attempted=outcome != OutcomeKind.RATE_LIMITED,
            error_kind=outcome.value,
            error_message=f"scripted {outcome.value} for item {item.index}",
            duration_ms=0,
        )


def scripted_factory(
    script: OutcomeScript,
    **kwargs: object,
) -> Callable[[str], ScriptedBackend]:
    """Backend factory building one scripted session per worker."""

    def _factory(worker_id: str) -> ScriptedBackend:
        return ScriptedBackend(script, worker_id=worker_id, **kwargs)  # type: ignore[arg-type]

    return _factory
