"""Retry policies applied around backend attempts."""

from __future__ import annotations

import math
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from gen_batch.orchestrator.models import OutcomeKind

T = TypeVar("T")


class RetryPolicy(Protocol):
    """Attempt ceiling plus a delay schedule."""

    max_retries: int

    def delay_ms(self, attempt: int, rng: random.Random | None = None) -> int:
        """Delay before retry number ``attempt + 1`` (attempt is zero-based)."""


@dataclass(slots=True, frozen=True)
class ExponentialBackoff:
    """``min(base * 2**attempt, cap)`` plus up to ``jitter_ratio`` random jitter.

    Used for generic transient failures (timeouts, network errors, broken
    generations).
    """

    base_seconds: float = 5.0
    max_seconds: float = 60.0
    max_retries: int = 3
    jitter_ratio: float = 0.3

    def base_delay_ms(self, attempt: int) -> int:
        exponent = min(max(0, attempt), 62)
        delay = min(self.base_seconds * 1000 * math.pow(2, exponent), self.max_seconds * 1000)
        return math.floor(delay)

    def delay_ms(self, attempt: int, rng: random.Random | None = None) -> int:
        base = self.base_delay_ms(attempt)
        jitter = (rng or random).random() * self.jitter_ratio * base
        return math.floor(base + jitter)


@dataclass(slots=True, frozen=True)
class FixedCooldown:
    """Constant delay between attempts.

    Dedicated to the backend's "content rejected, try again" outcome, which
    is expected and common, so it gets its own, higher ceiling.
    """

    cooldown_seconds: float = 1.0
    max_retries: int = 100

    def delay_ms(self, attempt: int, rng: random.Random | None = None) -> int:  # noqa: ARG002
        return math.floor(self.cooldown_seconds * 1000)


class RetryableOutcome(Exception):  # noqa: N818
    """Carries a non-success outcome through ``retry_call``."""

    def __init__(self, outcome: OutcomeKind, message: str = "", *, result: Any = None) -> None:
        super().__init__(message or outcome.value)
        self.outcome = outcome
        self.result = result


def retry_call(  # noqa: PLR0913
    operation: Callable[[], T],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[Exception], bool],
    on_retry: Callable[[int, int, int, Exception], None] | None = None,
    sleep: Callable[[float], object] = time.sleep,
    rng: random.Random | None = None,
) -> T:
    """Call ``operation`` up to ``policy.max_retries + 1`` times.

    ``should_retry`` decides whether an exception is retryable; the last
    error is re-raised once attempts are exhausted. ``on_retry`` receives
    ``(retry_number, max_retries, delay_ms, error)`` before each sleep.
    """

    attempt = 0
    while True:
        try:
            return operation()
        except Exception as error:
            if attempt >= policy.max_retries or not should_retry(error):
                raise
            delay = policy.delay_ms(attempt, rng)
            if on_retry is not None:
                on_retry(attempt + 1, policy.max_retries, delay, error)
            sleep(delay / 1000)
            attempt += 1


def is_outcome(*outcomes: OutcomeKind) -> Callable[[Exception], bool]:
    """Predicate matching ``RetryableOutcome`` errors of the given kinds."""

    wanted = frozenset(outcomes)

    def _predicate(error: Exception) -> bool:
        return isinstance(error, RetryableOutcome) and error.outcome in wanted

    return _predicate
