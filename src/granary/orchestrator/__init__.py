"""Event-driven worker supervisor for external runner processes.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Workers here are triggered by the tracker's own event log, which already
lives in the workspace SQLite file. A broker would duplicate that log and add
an operational dependency to a single-machine, CLI-first tool. What the
package needs is narrower than a queue:

- Cursor-based consumption of lifecycle events with type patterns and
  ``field=value`` filters.
- A per-worker concurrency budget with FIFO waiting.
- One supervised OS process per run with log capture, pause/resume and
  SIGTERM then SIGKILL cancellation.
- Exponential backoff with jitter and a per-run attempt cap.

Workers and runs are kept in a global registry outside any workspace so they
stay controllable when the workspace disappears.
"""
