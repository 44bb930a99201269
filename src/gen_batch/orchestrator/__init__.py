"""Work ledger and worker pool for batch generation runs.

Why not a task queue?
~~~~~~~~~~~~~~~~~~~~~
One run is a fixed batch of N interchangeable items processed inside a
single process by a handful of long-lived backend sessions. Everything the
pool needs from a broker fits in one JSON manifest guarded by a lock file:

- atomic claim of the next eligible item, so no item is attempted twice
  concurrently;
- per-item attempt accounting with a retry ceiling;
- a run-wide "stop, we are rate limited" flag every worker observes;
- crash recovery by resetting interrupted items on resume.

The manifest stays human-readable and survives the process, which is the
whole persistence story for a single-machine, CLI-first tool.
"""
