"""File-backed mutex guarding the run ledger."""

from __future__ import annotations

import json
import logging
import os
import socket
import tempfile
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar
from uuid import uuid4

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL_SECONDS = 0.1
DEFAULT_STALE_AFTER_SECONDS = 60.0
DEFAULT_ACQUIRE_TIMEOUT_SECONDS = 30.0


class LockTimeout(RuntimeError):
    """Lock could not be acquired within the allotted time."""

    def __init__(self, lock_path: Path, timeout_seconds: float) -> None:
        super().__init__(f"Failed to acquire lock within {timeout_seconds}s: {lock_path}")
        self.lock_path = lock_path
        self.timeout_seconds = timeout_seconds


class FileLock:
    """Mutex whose record lives on disk while held.

    The lock file is published with an exclusive hard link of a fully written
    record; its presence means "locked". A record older than
    ``stale_after_seconds`` (or one that cannot be parsed) is presumed to
    belong to a crashed holder and is removed. Removal first renames the
    record aside and checks it is still the one judged stale; a fresh record
    that slipped in meanwhile is put back. Release removes the record only
    while it is still ours.
    Staleness is a liveness heuristic, not fencing: a holder that stalls past
    the threshold can lose the lock to another caller.

    Threads of one process additionally serialize on an in-process mutex, so
    they never busy-poll the filesystem against each other.
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        holder: str | None = None,
    ) -> None:
        self.lock_path = lock_path
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.holder = holder or f"pid-{os.getpid()}"
        self._mutex = threading.Lock()
        self._locked = False
        self._record_raw: str | None = None

    @property
    def locked(self) -> bool:
        return self._locked

    def acquire(self, timeout_seconds: float = DEFAULT_ACQUIRE_TIMEOUT_SECONDS) -> None:
        """Block until the lock is held or raise ``LockTimeout``."""

        deadline = time.monotonic() + timeout_seconds
        if not self._mutex.acquire(timeout=max(0.0, timeout_seconds)):
            raise LockTimeout(self.lock_path, timeout_seconds)
        try:
            self._acquire_file(deadline=deadline, timeout_seconds=timeout_seconds)
        except BaseException:
            self._mutex.release()
            raise
        self._locked = True

    def release(self) -> None:
        """Remove the lock record. Safe to call when not held."""

        if not self._locked:
            return
        try:
            raw = self.lock_path.read_text("utf-8")
            if raw != self._record_raw:
                logger.warning("Lock %s was taken over by %s", self.lock_path, _record_holder(raw))
            elif not self._discard_record(raw):
                logger.warning("Lock %s changed hands during release", self.lock_path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.exception("Error releasing lock %s", self.lock_path)
        finally:
            self._record_raw = None
            self._locked = False
            self._mutex.release()

    def with_lock(
        self,
        fn: Callable[[], T],
        timeout_seconds: float = DEFAULT_ACQUIRE_TIMEOUT_SECONDS,
    ) -> T:
        """Run ``fn`` with the lock held, releasing it even on error."""

        self.acquire(timeout_seconds)
        try:
            return fn()
        finally:
            self.release()

    @contextmanager
    def held(self, timeout_seconds: float = DEFAULT_ACQUIRE_TIMEOUT_SECONDS) -> Iterator[None]:
        self.acquire(timeout_seconds)
        try:
            yield
        finally:
            self.release()

    def is_locked(self) -> bool:
        """Check whether a lock record exists (held by anyone)."""

        return self.lock_path.exists()

    def _acquire_file(self, *, deadline: float, timeout_seconds: float) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            if self._try_create():
                return
            if self._remove_if_stale():
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeout(self.lock_path, timeout_seconds)
            time.sleep(min(self.poll_interval_seconds, remaining))

    def _try_create(self) -> bool:
        record = {
            "holder": self.holder,
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": datetime.now(tz=UTC).isoformat(),
            "token": uuid4().hex,
        }
        raw = json.dumps(record, indent=2)
        # Contenders must never observe a partially written record.
        fd, tmp_name = tempfile.mkstemp(
            dir=self.lock_path.parent,
            prefix=f".{self.lock_path.name}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(raw)
            os.link(tmp_name, self.lock_path)
        except FileExistsError:
            return False
        finally:
            Path(tmp_name).unlink(missing_ok=True)
        self._record_raw = raw
        return True

    def _remove_if_stale(self) -> bool:
        try:
            raw = self.lock_path.read_text("utf-8")
        except FileNotFoundError:
            # Released between our create attempt and this read.
            return True
        age = _record_age_seconds(raw)
        if age is None:
            logger.warning("Removing corrupt lock file %s", self.lock_path)
        elif age > self.stale_after_seconds:
            logger.warning(
                "Removing stale lock file %s (age: %.1fs, holder: %s)",
                self.lock_path,
                age,
                _record_holder(raw),
            )
        else:
            return False
        return self._discard_record(raw)

    def _discard_record(self, expected_raw: str) -> bool:
        """Remove the lock file if it still holds ``expected_raw``.

        Returns False when another record replaced it; that record is put
        back in place.
        """

        tombstone = self.lock_path.with_name(f".{self.lock_path.name}.{uuid4().hex}.stale")
        try:
            os.rename(self.lock_path, tombstone)
        except FileNotFoundError:
            return True
        try:
            if tombstone.read_text("utf-8") == expected_raw:
                return True
            try:
                os.link(tombstone, self.lock_path)
            except FileExistsError:
                logger.warning("Could not restore lock record %s; a newer one exists", self.lock_path)
            return False
        finally:
            tombstone.unlink(missing_ok=True)


def _record_age_seconds(raw: str) -> float | None:
    try:
        payload = json.loads(raw)
        acquired_at = datetime.fromisoformat(str(payload["acquired_at"]))
    except (ValueError, TypeError, KeyError):
        return None
    if acquired_at.tzinfo is None:
        acquired_at = acquired_at.replace(tzinfo=UTC)
    return (datetime.now(tz=UTC) - acquired_at).total_seconds()


def _record_holder(raw: str) -> str:
    try:
        payload = json.loads(raw)
    except ValueError:
        return "unknown"
    if not isinstance(payload, dict):
        return "unknown"
    return str(payload.get("holder") or payload.get("pid") or "unknown")
