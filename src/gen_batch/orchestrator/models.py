"""Domain models for the run ledger and worker outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class RunStatus(str, Enum):
    """Durable run lifecycle states."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    STOPPED_RATE_LIMIT = "STOPPED_RATE_LIMIT"
    FAILED = "FAILED"


class ItemStatus(str, Enum):
    """Durable item lifecycle states."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CONTENT_MODERATED = "CONTENT_MODERATED"
    RATE_LIMITED = "RATE_LIMITED"


class OutcomeKind(str, Enum):
    """Normalized outcome of one backend attempt."""

    SUCCESS = "success"
    CONTENT_REJECTED = "content_rejected"
    RATE_LIMITED = "rate_limited"
    AUTH_REQUIRED = "auth_required"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    GENERATION_ERROR = "generation_error"
    UNKNOWN = "unknown"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.STOPPED_RATE_LIMIT, RunStatus.FAILED},
)

# Outcomes a worker records as a countable item failure and moves past.
COUNTABLE_FAILURES = frozenset(
    {
        OutcomeKind.CONTENT_REJECTED,
        OutcomeKind.TIMEOUT,
        OutcomeKind.NETWORK_ERROR,
        OutcomeKind.GENERATION_ERROR,
        OutcomeKind.UNKNOWN,
    },
)

_COUNTED_STATUSES = {
    ItemStatus.COMPLETED: "completed_count",
    ItemStatus.FAILED: "failed_count",
}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(slots=True)
class ItemError:
    """Last error recorded against an item."""

    kind: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> ItemError | None:
        if not payload:
            return None
        return cls(kind=str(payload.get("kind", "unknown")), message=str(payload.get("message", "")))


@dataclass(slots=True)
class ItemState:
    """One claimable unit of work inside a run."""

    index: int
    status: ItemStatus = ItemStatus.PENDING
    attempts: int = 0
    worker_id: str | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: ItemError | None = None
    post_process: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "status": self.status.value,
            "attempts": self.attempts,
            "worker_id": self.worker_id,
            "claimed_at": isoformat(self.claimed_at),
            "completed_at": isoformat(self.completed_at),
            "last_error": self.last_error.to_dict() if self.last_error is not None else None,
            "post_process": list(self.post_process),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ItemState:
        return cls(
            index=int(payload["index"]),
            status=ItemStatus(payload.get("status", ItemStatus.PENDING.value)),
            attempts=int(payload.get("attempts", 0)),
            worker_id=payload.get("worker_id"),
            claimed_at=parse_datetime(payload.get("claimed_at")),
            completed_at=parse_datetime(payload.get("completed_at")),
            last_error=ItemError.from_dict(payload.get("last_error")),
            post_process=list(payload.get("post_process") or []),
        )


@dataclass(slots=True)
class RunSummary:
    """Projection of run progress for callers and the CLI."""

    total: int
    completed: int
    failed: int
    remaining: int
    status: RunStatus
    stop_reason: str | None
    rate_limited: int = 0
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "remaining": self.remaining,
            "status": self.status.value,
            "stop_reason": self.stop_reason,
            "rate_limited": self.rate_limited,
            "attempts": self.attempts,
        }


@dataclass(slots=True)
class RunState:
    """Ledger root: one batch run and its items."""

    run_id: str
    job_name: str
    batch_size: int
    target: dict[str, Any] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    stop_reason: str | None = None
    completed_count: int = 0
    failed_count: int = 0
    items: list[ItemState] = field(default_factory=list)

    def item(self, index: int) -> ItemState | None:
        if 0 <= index < len(self.items):
            return self.items[index]
        return None

    def summary(self) -> RunSummary:
        return RunSummary(
            total=self.batch_size,
            completed=self.completed_count,
            failed=self.failed_count,
            remaining=self.batch_size - self.completed_count - self.failed_count,
            status=self.status,
            stop_reason=self.stop_reason,
            rate_limited=sum(1 for item in self.items if item.status == ItemStatus.RATE_LIMITED),
            attempts=sum(item.attempts for item in self.items),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "job_name": self.job_name,
            "batch_size": self.batch_size,
            "target": dict(self.target),
            "status": self.status.value,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "stop_reason": self.stop_reason,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunState:
        created_at = parse_datetime(payload.get("created_at")) or utc_now()
        return cls(
            run_id=str(payload["run_id"]),
            job_name=str(payload["job_name"]),
            batch_size=int(payload["batch_size"]),
            target=dict(payload.get("target") or {}),
            status=RunStatus(payload.get("status", RunStatus.PENDING.value)),
            created_at=created_at,
            updated_at=parse_datetime(payload.get("updated_at")) or created_at,
            stop_reason=payload.get("stop_reason"),
            completed_count=int(payload.get("completed_count", 0)),
            failed_count=int(payload.get("failed_count", 0)),
            items=[ItemState.from_dict(item) for item in payload.get("items") or []],
        )


def apply_status_delta(state: RunState, old: ItemStatus, new: ItemStatus) -> None:
    """Keep run counters equal to the number of items in each counted status."""

    if old == new:
        return
    old_counter = _COUNTED_STATUSES.get(old)
    if old_counter is not None:
        setattr(state, old_counter, getattr(state, old_counter) - 1)
    new_counter = _COUNTED_STATUSES.get(new)
    if new_counter is not None:
        setattr(state, new_counter, getattr(state, new_counter) + 1)
