"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from gen_batch.config import DEFAULT_COMMAND_TEMPLATE
from gen_batch.orchestrator.ledger import WorkLedger


@pytest.fixture()
def run_dir(tmp_path: Path) -> Path:
    return tmp_path / "runs" / "demo" / "run-1"


@pytest.fixture()
def ledger(run_dir: Path) -> WorkLedger:
    return WorkLedger(run_dir, lock_timeout_seconds=5.0, lock_poll_interval_seconds=0.005)


@pytest.fixture()
def fast_env(monkeypatch, tmp_path: Path) -> Path:
    """Point settings at a temp runs dir with no pacing delays."""

    runs_dir = tmp_path / "runs"
    monkeypatch.setenv("GEN_BATCH_RUNS_DIR", str(runs_dir))
    monkeypatch.setenv("GEN_BATCH_BETWEEN_ITEMS_SECONDS", "0")
    monkeypatch.setenv("GEN_BATCH_CONTENT_COOLDOWN_SECONDS", "0")
    monkeypatch.setenv("GEN_BATCH_CONTENT_MAX_RETRIES", "2")
    monkeypatch.setenv("GEN_BATCH_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv("GEN_BATCH_RETRY_MAX_SECONDS", "0")
    monkeypatch.setenv("GEN_BATCH_LOCK_POLL_SECONDS", "0.005")
    monkeypatch.setenv("GEN_BATCH_COMMAND", DEFAULT_COMMAND_TEMPLATE)
    monkeypatch.delenv("GEN_BATCH_SEED_DIR", raising=False)
    monkeypatch.delenv("GEN_BATCH_LOG_LEVEL", raising=False)
    return runs_dir
