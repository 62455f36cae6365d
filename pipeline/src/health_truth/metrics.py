"""In-memory pipeline counters, exposed on GET /health.

Asyncio is single-threaded, so plain dicts are safe without locking.
Counters reset on restart; they describe this process, not the database.
"""

import time
from typing import Any

_start_time = time.monotonic()

_jobs: dict[str, int] = {"processed": 0, "failed": 0, "dead": 0}
_handlers: dict[str, dict[str, Any]] = {}
# provider -> outcome (created/duplicate/rejected) -> count
_ingestion: dict[str, dict[str, int]] = {}
# provider -> {runs, failures, fetched, written}
_resyncs: dict[str, dict[str, int]] = {}


def record_handler_invocation(handler_name: str, duration_ms: float, success: bool) -> None:
    h = _handlers.setdefault(handler_name, {
        "invocations": 0,
        "successes": 0,
        "failures": 0,
        "total_duration_ms": 0.0,
    })
    h["invocations"] += 1
    h["total_duration_ms"] += duration_ms
    h["successes" if success else "failures"] += 1


def record_ingest_outcome(provider: str, outcome: str) -> None:
    per_provider = _ingestion.setdefault(provider, {})
    per_provider[outcome] = per_provider.get(outcome, 0) + 1


def record_resync(provider: str, *, success: bool, fetched: int = 0, written: int = 0) -> None:
    stats = _resyncs.setdefault(
        provider, {"runs": 0, "failures": 0, "fetched": 0, "written": 0}
    )
    stats["runs"] += 1
    if not success:
        stats["failures"] += 1
    stats["fetched"] += fetched
    stats["written"] += written


def record_job_completed() -> None:
    _jobs["processed"] += 1


def record_job_failed() -> None:
    _jobs["failed"] += 1


def record_job_dead() -> None:
    _jobs["dead"] += 1


def _handler_snapshot(stats: dict[str, Any]) -> dict[str, Any]:
    snapshot = dict(stats)
    invocations = stats["invocations"]
    snapshot["avg_duration_ms"] = (
        round(stats["total_duration_ms"] / invocations, 2) if invocations else 0.0
    )
    return snapshot


def get_metrics() -> dict[str, Any]:
    """Copy of every counter; callers may mutate the result freely."""
    return {
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
        "jobs_processed": _jobs["processed"],
        "jobs_failed": _jobs["failed"],
        "jobs_dead": _jobs["dead"],
        "handlers": {name: _handler_snapshot(stats) for name, stats in _handlers.items()},
        "ingestion": {provider: dict(counts) for provider, counts in _ingestion.items()},
        "resyncs": {provider: dict(stats) for provider, stats in _resyncs.items()},
    }
