from __future__ import annotations

import json
import threading
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from gen_batch.orchestrator.lock import FileLock, LockTimeout

pytestmark = [
    allure.epic("Run Ledger"),
    allure.feature("Manifest Lock"),
]


def _write_record(lock_path: Path, *, acquired_at: datetime, holder: str = "ghost") -> None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(
        json.dumps({"holder": holder, "pid": 999_999, "acquired_at": acquired_at.isoformat()}),
        "utf-8",
    )


def test_acquire_writes_holder_record_and_release_removes_it(tmp_path: Path) -> None:
    lock = FileLock(tmp_path / "manifest.lock", holder="worker-0")

    lock.acquire(timeout_seconds=1.0)
    record = json.loads((tmp_path / "manifest.lock").read_text("utf-8"))
    assert lock.locked
    assert lock.is_locked()
    assert record["holder"] == "worker-0"
    assert "acquired_at" in record

    lock.release()
    assert not lock.locked
    assert not (tmp_path / "manifest.lock").exists()


def test_release_is_safe_when_not_held(tmp_path: Path) -> None:
    lock = FileLock(tmp_path / "manifest.lock")

    lock.release()
    lock.acquire(timeout_seconds=1.0)
    lock.release()
    lock.release()

    assert not lock.is_locked()


def test_second_holder_times_out_while_lock_is_fresh(tmp_path: Path) -> None:
    lock_path = tmp_path / "manifest.lock"
    first = FileLock(lock_path, poll_interval_seconds=0.01)
    second = FileLock(lock_path, poll_interval_seconds=0.01)

    with first.held(timeout_seconds=1.0):
        started = time.monotonic()
        with pytest.raises(LockTimeout, match="Failed to acquire lock"):
            second.acquire(timeout_seconds=0.1)
        assert time.monotonic() - started >= 0.1

    second.acquire(timeout_seconds=1.0)
    second.release()


def test_stale_record_is_removed_and_lock_acquired(tmp_path: Path) -> None:
    lock_path = tmp_path / "manifest.lock"
    _write_record(lock_path, acquired_at=datetime.now(tz=UTC) - timedelta(hours=2))
    lock = FileLock(lock_path, stale_after_seconds=60.0, holder="fresh")

    lock.acquire(timeout_seconds=0.5)

    assert json.loads(lock_path.read_text("utf-8"))["holder"] == "fresh"
    lock.release()


def test_fresh_record_of_other_holder_is_respected(tmp_path: Path) -> None:
    lock_path = tmp_path / "manifest.lock"
    _write_record(lock_path, acquired_at=datetime.now(tz=UTC))
    lock = FileLock(lock_path, poll_interval_seconds=0.01, stale_after_seconds=60.0)

    with pytest.raises(LockTimeout):
        lock.acquire(timeout_seconds=0.05)

    assert json.loads(lock_path.read_text("utf-8"))["holder"] == "ghost"


def test_corrupt_record_is_treated_as_stale(tmp_path: Path) -> None:
    lock_path = tmp_path / "manifest.lock"
    lock_path.write_text("{not json", "utf-8")
    lock = FileLock(lock_path)

    lock.acquire(timeout_seconds=0.5)

    assert lock.locked
    lock.release()


def test_with_lock_releases_on_error(tmp_path: Path) -> None:
    lock = FileLock(tmp_path / "manifest.lock")

    def _boom() -> None:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        lock.with_lock(_boom, timeout_seconds=1.0)

    assert not lock.is_locked()
    assert lock.with_lock(lambda: 42, timeout_seconds=1.0) == 42


def test_threads_sharing_one_lock_never_interleave(tmp_path: Path) -> None:
    lock = FileLock(tmp_path / "manifest.lock", poll_interval_seconds=0.001)
    counter = {"value": 0}

    def _increment() -> None:
        current = counter["value"]
        time.sleep(0.0005)
        counter["value"] = current + 1

    def _worker() -> None:
        for _ in range(20):
            lock.with_lock(_increment, timeout_seconds=5.0)

    threads = [threading.Thread(target=_worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert counter["value"] == 120
    assert not lock.is_locked()


def test_separate_lock_objects_exclude_each_other(tmp_path: Path) -> None:
    lock_path = tmp_path / "manifest.lock"
    counter = {"value": 0}

    def _worker() -> None:
        lock = FileLock(lock_path, poll_interval_seconds=0.001)
        for _ in range(10):
            with lock.held(timeout_seconds=5.0):
                current = counter["value"]
                time.sleep(0.0005)
                counter["value"] = current + 1

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert counter["value"] == 40


def test_stale_removal_never_deletes_a_record_that_replaced_it(tmp_path: Path) -> None:
    lock_path = tmp_path / "manifest.lock"
    _write_record(lock_path, acquired_at=datetime.now(tz=UTC) - timedelta(hours=2))
    winner = FileLock(lock_path, stale_after_seconds=60.0, holder="winner")

    class LateReaper(FileLock):
        raced = False

        def _discard_record(self, expected_raw: str) -> bool:
            # Another contender reaps the same stale record and takes the
            # lock between our staleness check and our removal.
            if not self.raced:
                self.raced = True
                winner.acquire(timeout_seconds=0.5)
            return super()._discard_record(expected_raw)

    reaper = LateReaper(
        lock_path,
        poll_interval_seconds=0.01,
        stale_after_seconds=60.0,
        holder="reaper",
    )

    with pytest.raises(LockTimeout):
        reaper.acquire(timeout_seconds=0.2)

    assert reaper.raced
    assert winner.locked
    assert json.loads(lock_path.read_text("utf-8"))["holder"] == "winner"
    assert list(tmp_path.glob("*.stale")) == []
    winner.release()
    assert not lock_path.exists()


def test_release_leaves_a_record_that_took_over(tmp_path: Path) -> None:
    lock_path = tmp_path / "manifest.lock"
    lock = FileLock(lock_path, holder="slow")
    lock.acquire(timeout_seconds=1.0)

    _write_record(lock_path, acquired_at=datetime.now(tz=UTC), holder="successor")
    lock.release()

    assert not lock.locked
    assert json.loads(lock_path.read_text("utf-8"))["holder"] == "successor"
