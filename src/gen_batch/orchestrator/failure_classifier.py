"""Deterministic outcome classification for command-driven attempts."""

from __future__ import annotations

from dataclasses import dataclass

from gen_batch.orchestrator.models import OutcomeKind

OUTCOME_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "try again later",
    "usage limit",
    "video limit",
    "limit reached",
    "daily limit",
    "hourly limit",
    "quota exceeded",
    "http 429",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "auth_required",
    "not authenticated",
    "unauthorized",
    "forbidden",
    "log in",
    "sign in",
    "invalid api key",
)
_CONTENT_REJECTED_PATTERNS: tuple[str, ...] = (
    "content_moderated",
    "content moderated",
    "try a different idea",
    "moderated",
    "blocked",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network error",
    "connection lost",
    "connection reset",
    "failed to load",
    "could not resolve host",
    "temporarily unavailable",
)
_GENERATION_PATTERNS: tuple[str, ...] = (
    "generation failed",
    "error generating",
    "something went wrong",
)

_RULES: tuple[tuple[str, OutcomeKind, tuple[str, ...]], ...] = (
    ("rate_limit", OutcomeKind.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
    ("auth_required", OutcomeKind.AUTH_REQUIRED, _AUTH_PATTERNS),
    ("content_rejected", OutcomeKind.CONTENT_REJECTED, _CONTENT_REJECTED_PATTERNS),
    ("network_error", OutcomeKind.NETWORK_ERROR, _NETWORK_PATTERNS),
    ("generation_error", OutcomeKind.GENERATION_ERROR, _GENERATION_PATTERNS),
)


@dataclass(slots=True)
class OutcomeClassification:
    """Normalized classification result."""

    outcome: OutcomeKind
    reason_code: str
    matched_rule: str
    matched_pattern: str | None


def classify_command_output(
    *,
    exit_code: int,
    stdout: str,
    stderr: str,
    timed_out: bool = False,
) -> OutcomeClassification:
    """Classify one finished command into an outcome.

    Rate limits and auth failures win over everything else, including a zero
    exit code, because they must stop the run even when the command itself
    reports success.
    """

    if timed_out:
        return OutcomeClassification(
            outcome=OutcomeKind.TIMEOUT,
            reason_code="command_timeout",
            matched_rule="timeout",
            matched_pattern=None,
        )

    haystack = f"{stderr}\n{stdout}".lower()
    for rule, outcome, patterns in _RULES[:2]:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return OutcomeClassification(
                outcome=outcome,
                reason_code=f"command_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if exit_code == 0:
        return OutcomeClassification(
            outcome=OutcomeKind.SUCCESS,
            reason_code="completed",
            matched_rule="exit_code_zero",
            matched_pattern=None,
        )

    for rule, outcome, patterns in _RULES[2:]:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return OutcomeClassification(
                outcome=outcome,
                reason_code=f"command_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return OutcomeClassification(
        outcome=OutcomeKind.UNKNOWN,
        reason_code="command_unknown_failure",
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
