"""In-memory worker metrics.

Asyncio is single-threaded, so plain dicts are safe, no locking needed.
"""

import time

_start_time = time.monotonic()

_COUNTERS = (
    "jobs_processed",
    "jobs_failed",
    "jobs_dead",
    "jobs_rejected",
    "workouts_received",
    "workouts_duplicate",
    "workouts_skipped",
    "workouts_inserted",
    "events_published",
)

_metrics: dict = {name: 0 for name in _COUNTERS}
_metrics["handlers"] = {}


def record_handler_invocation(handler_name: str, duration_ms: float, success: bool) -> None:
    h = _metrics["handlers"].setdefault(handler_name, {
        "invocations": 0,
        "successes": 0,
        "failures": 0,
        "total_duration_ms": 0.0,
    })
    h["invocations"] += 1
    h["total_duration_ms"] += duration_ms
    if success:
        h["successes"] += 1
    else:
        h["failures"] += 1


def record_job_completed() -> None:
    _metrics["jobs_processed"] += 1


def record_job_failed() -> None:
    _metrics["jobs_failed"] += 1


def record_job_dead() -> None:
    _metrics["jobs_dead"] += 1


def record_job_rejected() -> None:
    _metrics["jobs_rejected"] += 1


def record_pipeline_run(
    *,
    received: int,
    duplicates: int,
    skipped: int,
    inserted: int,
    published: int,
) -> None:
    _metrics["workouts_received"] += received
    _metrics["workouts_duplicate"] += duplicates
    _metrics["workouts_skipped"] += skipped
    _metrics["workouts_inserted"] += inserted
    _metrics["events_published"] += published


def get_metrics() -> dict:
    """Return a snapshot of current metrics."""
    snapshot: dict = {"uptime_seconds": round(time.monotonic() - _start_time, 1)}
    for name in _COUNTERS:
        snapshot[name] = _metrics[name]
    snapshot["handlers"] = {
        name: dict(stats)
        for name, stats in _metrics["handlers"].items()
    }
    return snapshot


def reset_metrics() -> None:
    for name in _COUNTERS:
        _metrics[name] = 0
    _metrics["handlers"].clear()
