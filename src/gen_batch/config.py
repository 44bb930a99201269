"""Runtime configuration for batch generation runs."""

from __future__ import annotations

import logging
import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

from gen_batch.orchestrator.ledger import MAX_BATCH_SIZE
from gen_batch.orchestrator.pool import MAX_WORKERS

DEFAULT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m gen_batch.orchestrator.backend.echo_agent "
    "--index {index} --output-dir {output_dir} --prompt {prompt}"
)


@dataclass(slots=True)
class LockSettings:
    """Manifest lock timing."""

    timeout_seconds: float = 30.0
    poll_interval_seconds: float = 0.1
    stale_after_seconds: float = 60.0


@dataclass(slots=True)
class RetrySettings:
    """Retry ceilings and delays for item attempts."""

    max_item_attempts: int = 3
    base_seconds: float = 5.0
    max_seconds: float = 60.0
    max_retries: int = 3
    content_cooldown_seconds: float = 1.0
    content_max_retries: int = 100


@dataclass(slots=True)
class PoolSettings:
    """Worker pool sizing and pacing."""

    workers: int = 1
    batch_size: int = 10
    between_items_seconds: float = 2.0
    max_consecutive_failures: int = 5


@dataclass(slots=True)
class BackendSettings:
    """Command backend settings."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    timeout_seconds: float = 60.0
    seed_dir: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    runs_dir: Path = Path("runs")
    log_level: str = "INFO"
    lock: LockSettings = field(default_factory=LockSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    pool: PoolSettings = field(default_factory=PoolSettings)
    backend: BackendSettings = field(default_factory=BackendSettings)

    @classmethod
    def from_env(cls, runs_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local runs."""

        seed_dir = os.getenv("GEN_BATCH_SEED_DIR", "").strip()
        return cls(
            runs_dir=runs_dir or Path(os.getenv("GEN_BATCH_RUNS_DIR", "runs")),
            log_level=os.getenv("GEN_BATCH_LOG_LEVEL", "INFO").strip().upper(),
            lock=LockSettings(
                timeout_seconds=_env_float("GEN_BATCH_LOCK_TIMEOUT_SECONDS", "30.0"),
                poll_interval_seconds=_env_float("GEN_BATCH_LOCK_POLL_SECONDS", "0.1"),
                stale_after_seconds=_env_float("GEN_BATCH_LOCK_STALE_SECONDS", "60.0"),
            ),
            retry=RetrySettings(
                max_item_attempts=_env_int("GEN_BATCH_MAX_ITEM_ATTEMPTS", "3"),
                base_seconds=_env_float("GEN_BATCH_RETRY_BASE_SECONDS", "5.0"),
                max_seconds=_env_float("GEN_BATCH_RETRY_MAX_SECONDS", "60.0"),
                max_retries=_env_int("GEN_BATCH_RETRY_MAX_RETRIES", "3"),
                content_cooldown_seconds=_env_float(
                    "GEN_BATCH_CONTENT_COOLDOWN_SECONDS",
                    "1.0",
                ),
                content_max_retries=_env_int("GEN_BATCH_CONTENT_MAX_RETRIES", "100"),
            ),
            pool=PoolSettings(
                workers=_env_int("GEN_BATCH_WORKERS", "1"),
                batch_size=_env_int("GEN_BATCH_BATCH_SIZE", "10"),
                between_items_seconds=_env_float("GEN_BATCH_BETWEEN_ITEMS_SECONDS", "2.0"),
                max_consecutive_failures=_env_int("GEN_BATCH_MAX_CONSECUTIVE_FAILURES", "5"),
            ),
            backend=BackendSettings(
                command_template=os.getenv("GEN_BATCH_COMMAND", DEFAULT_COMMAND_TEMPLATE),
                timeout_seconds=_env_float("GEN_BATCH_COMMAND_TIMEOUT_SECONDS", "60.0"),
                seed_dir=Path(seed_dir) if seed_dir else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.lock.timeout_seconds <= 0:
            raise ValueError("GEN_BATCH_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.lock.poll_interval_seconds <= 0:
            raise ValueError("GEN_BATCH_LOCK_POLL_SECONDS must be > 0.")
        if self.lock.stale_after_seconds <= 0:
            raise ValueError("GEN_BATCH_LOCK_STALE_SECONDS must be > 0.")
        if self.retry.max_item_attempts < 1:
            raise ValueError("GEN_BATCH_MAX_ITEM_ATTEMPTS must be >= 1.")
        if self.retry.base_seconds < 0 or self.retry.max_seconds < self.retry.base_seconds:
            raise ValueError(
                "GEN_BATCH_RETRY_BASE_SECONDS must be >= 0 and "
                "<= GEN_BATCH_RETRY_MAX_SECONDS.",
            )
        if self.retry.max_retries < 0:
            raise ValueError("GEN_BATCH_RETRY_MAX_RETRIES must be >= 0.")
        if self.retry.content_cooldown_seconds < 0:
            raise ValueError("GEN_BATCH_CONTENT_COOLDOWN_SECONDS must be >= 0.")
        if self.retry.content_max_retries < 0:
            raise ValueError("GEN_BATCH_CONTENT_MAX_RETRIES must be >= 0.")
        if not 1 <= self.pool.workers <= MAX_WORKERS:
            raise ValueError(f"GEN_BATCH_WORKERS must be between 1 and {MAX_WORKERS}.")
        if not 1 <= self.pool.batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"GEN_BATCH_BATCH_SIZE must be between 1 and {MAX_BATCH_SIZE}.")
        if self.pool.between_items_seconds < 0:
            raise ValueError("GEN_BATCH_BETWEEN_ITEMS_SECONDS must be >= 0.")
        if self.pool.max_consecutive_failures < 1:
            raise ValueError("GEN_BATCH_MAX_CONSECUTIVE_FAILURES must be >= 1.")
        if not self.backend.command_template.strip():
            raise ValueError("GEN_BATCH_COMMAND must not be empty.")
        if self.backend.timeout_seconds <= 0:
            raise ValueError("GEN_BATCH_COMMAND_TIMEOUT_SECONDS must be > 0.")
        if self.backend.seed_dir is not None and not self.backend.seed_dir.is_dir():
            raise ValueError(
                f"GEN_BATCH_SEED_DIR is not a directory: {self.backend.seed_dir}",
            )
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid GEN_BATCH_LOG_LEVEL: {self.log_level!r}")


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {raw!r}") from error
