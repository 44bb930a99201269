"""Worker-scoped storage layout inside a run directory."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

WORKER_PROFILES_DIRNAME = "worker-profiles"


@dataclass(slots=True)
class ItemPaths:
    """Per-item files produced by one attempt."""

    output_dir: Path
    stdout_path: Path
    stderr_path: Path


@dataclass(slots=True)
class WorkerWorkdir:
    """Directory exclusively owned by one worker for the length of a run."""

    root: Path
    output_root: Path | None = None

    def item_paths(self, index: int) -> ItemPaths:
        output_dir = (self.output_root or self.root / "output") / f"item-{index:04d}"
        return ItemPaths(
            output_dir=output_dir,
            stdout_path=output_dir / "stdout.log",
            stderr_path=output_dir / "stderr.log",
        )


class WorkerWorkdirManager:
    """Creates and removes deterministic per-worker directories."""

    def __init__(self, run_dir: Path) -> None:
        self.root_dir = run_dir / WORKER_PROFILES_DIRNAME

    def path_for(self, worker_id: str) -> Path:
        return self.root_dir / worker_id

    def materialize(self, worker_id: str, *, seed_dir: Path | None = None) -> WorkerWorkdir:
        """Create the worker directory, optionally copying a seed profile into it."""

        base_dir = self.path_for(worker_id)
        if seed_dir is not None and seed_dir.is_dir():
            shutil.copytree(seed_dir, base_dir, dirs_exist_ok=True)
        (base_dir / "output").mkdir(parents=True, exist_ok=True)
        return WorkerWorkdir(root=base_dir)

    def remove(self, worker_id: str) -> None:
        path = self.path_for(worker_id)
        if path.exists():
            shutil.rmtree(path)
