"""Shared fixtures: a fake psycopg connection and an in-memory store.

The in-memory store replaces the functions of ``health_truth.store`` so
ingestion, recompute, resync and the HTTP app run end to end without
Postgres. It keeps the same create-don't-overwrite semantics as the SQL.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from health_truth import store as store_module
from health_truth.derived_ledger_contract import DayLedger
from health_truth.errors import FailureConflictError, LedgerConflictError


class _FakeTransaction:
    """Mimics psycopg's async transaction context manager."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False  # don't suppress exceptions


class _FakeCursor:
    def __init__(self, rows: list[Any] | None = None):
        self.execute = AsyncMock()
        self.fetchone = AsyncMock(return_value=rows[0] if rows else None)
        self.fetchall = AsyncMock(return_value=rows or [])

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def make_mock_conn(rows: list[Any] | None = None):
    conn = AsyncMock()
    conn.transaction = MagicMock(side_effect=lambda: _FakeTransaction())
    conn.execute = AsyncMock()
    fake_cursor = _FakeCursor(rows)
    conn.cursor = MagicMock(return_value=fake_cursor)
    conn._fake_cursor = fake_cursor
    return conn


@pytest.fixture
def mock_conn():
    return make_mock_conn()


class InMemoryStore:
    def __init__(self) -> None:
        self.raw_events: dict[tuple[str, str], tuple[Any, str]] = {}
        self.canonical_events: dict[tuple[str, str], Any] = {}
        self.failures: dict[tuple[str, str], Any] = {}
        self.daily_facts: dict[tuple[str, str], Any] = {}
        self.insights: dict[tuple[str, str], dict[str, Any]] = {}
        self.contexts: dict[tuple[str, str], Any] = {}
        self.integrations: dict[tuple[str, str], dict[str, Any]] = {}
        self.ledger_runs: dict[tuple[str, str, str], Any] = {}
        self.ledger_snapshots: dict[tuple[str, str, str, str, str], Any] = {}
        self.ledger_days: dict[tuple[str, str], str] = {}
        self.jobs: list[dict[str, Any]] = []

    # raw events
    async def create_raw_event(self, conn, raw, fingerprint):
        key = (raw.user_id, raw.id)
        if key in self.raw_events:
            return False
        self.raw_events[key] = (raw, fingerprint)
        return True

    async def get_raw_event_fingerprint(self, conn, user_id, event_id):
        entry = self.raw_events.get((user_id, event_id))
        return entry[1] if entry else None

    async def load_superseded_ids(self, conn, user_id):
        return {
            raw.correction_of_raw_event_id
            for (uid, _), (raw, _) in self.raw_events.items()
            if uid == user_id and raw.correction_of_raw_event_id
        }

    # canonical events
    async def create_canonical_event(self, conn, event):
        key = (event.user_id, event.id)
        if key in self.canonical_events:
            return False
        self.canonical_events[key] = event
        return True

    async def get_canonical_event(self, conn, user_id, event_id):
        return self.canonical_events.get((user_id, event_id))

    async def load_canonical_events_for_day(self, conn, user_id, day):
        return sorted(
            (
                e
                for (uid, _), e in self.canonical_events.items()
                if uid == user_id and e.day == day
            ),
            key=lambda e: e.id,
        )

    async def users_with_events_on(self, conn, day):
        return sorted({uid for (uid, _), e in self.canonical_events.items() if e.day == day})

    # failures
    async def create_failure(self, conn, failure):
        key = (failure.user_id, failure.id)
        existing = self.failures.get(key)
        if existing is None:
            self.failures[key] = failure
            return True
        if existing.identity_view() != failure.identity_view():
            raise FailureConflictError(code="failure_conflict", message=failure.id)
        return False

    async def list_failures(self, conn, user_id, limit=100):
        return [f for (uid, _), f in self.failures.items() if uid == user_id][:limit]

    # derived documents
    async def load_daily_facts(self, conn, user_id, date):
        return self.daily_facts.get((user_id, date))

    async def load_daily_facts_for_dates(self, conn, user_id, dates):
        return [
            self.daily_facts[(user_id, d)]
            for d in sorted(dates)
            if (user_id, d) in self.daily_facts
        ]

    async def upsert_daily_facts(self, conn, facts):
        self.daily_facts[(facts.user_id, facts.date)] = facts

    async def replace_insights_for_day(self, conn, user_id, date, insights):
        previous = self.insights.get((user_id, date), {})
        replaced = {}
        for insight in insights:
            kept = previous.get(insight.kind)
            if kept is not None:
                insight = insight.model_copy(update={"created_at": kept.created_at})
            replaced[insight.kind] = insight
        self.insights[(user_id, date)] = replaced

    async def load_insights(self, conn, user_id, date):
        by_kind = self.insights.get((user_id, date), {})
        return [by_kind[k] for k in sorted(by_kind)]

    async def upsert_intelligence_context(self, conn, context):
        self.contexts[(context.user_id, context.date)] = context

    async def load_intelligence_context(self, conn, user_id, date):
        return self.contexts.get((user_id, date))

    # derived ledger
    async def create_ledger_run(self, conn, run):
        key = (run.user_id, run.date, run.run_id)
        existing = self.ledger_runs.get(key)
        if existing is None:
            self.ledger_runs[key] = run
            return True
        if existing.to_document() != run.to_document():
            raise LedgerConflictError(code="ledger_conflict", message=run.run_id)
        return False

    async def create_ledger_snapshot(self, conn, user_id, date, snapshot):
        key = (user_id, date, snapshot.run_id, snapshot.kind, snapshot.item_id)
        existing = self.ledger_snapshots.get(key)
        if existing is None:
            self.ledger_snapshots[key] = snapshot
            return True
        if existing.hash != snapshot.hash:
            raise LedgerConflictError(code="ledger_conflict", message=snapshot.item_id)
        return False

    async def set_ledger_pointer(self, conn, run):
        self.ledger_days[(run.user_id, run.date)] = run.run_id

    async def load_day_ledger(self, conn, user_id, date):
        latest = self.ledger_days.get((user_id, date))
        if latest is None:
            return None
        return DayLedger(
            user_id=user_id,
            date=date,
            latest_run_id=latest,
            runs=[r for (uid, d, _), r in self.ledger_runs.items() if (uid, d) == (user_id, date)],
            latest_snapshots=sorted(
                (
                    s
                    for (uid, d, run_id, _, _), s in self.ledger_snapshots.items()
                    if (uid, d, run_id) == (user_id, date, latest)
                ),
                key=lambda s: (s.kind, s.item_id),
            ),
        )

    # integrations and jobs
    async def load_integration(self, conn, user_id, provider):
        return self.integrations.get((user_id, provider))

    async def enqueue_job(self, conn, *, user_id, job_type, payload, max_retries=3):
        for job in self.jobs:
            if job["job_type"] == job_type and job["payload"] == payload:
                return False
        self.jobs.append(
            {
                "user_id": user_id,
                "job_type": job_type,
                "payload": payload,
                "max_retries": max_retries,
            }
        )
        return True


_STORE_FUNCTIONS = (
    "create_raw_event",
    "get_raw_event_fingerprint",
    "load_superseded_ids",
    "create_canonical_event",
    "get_canonical_event",
    "load_canonical_events_for_day",
    "users_with_events_on",
    "create_failure",
    "list_failures",
    "load_daily_facts",
    "load_daily_facts_for_dates",
    "upsert_daily_facts",
    "replace_insights_for_day",
    "load_insights",
    "upsert_intelligence_context",
    "load_intelligence_context",
    "create_ledger_run",
    "create_ledger_snapshot",
    "set_ledger_pointer",
    "load_day_ledger",
    "load_integration",
    "enqueue_job",
)


@pytest.fixture
def memory_store(monkeypatch):
    """Patch every store function with an in-memory equivalent."""
    fake = InMemoryStore()
    for name in _STORE_FUNCTIONS:
        monkeypatch.setattr(store_module, name, getattr(fake, name))
    return fake


def manual_envelope(kind: str, payload: dict[str, Any], **overrides: Any) -> dict[str, Any]:
    envelope = {
        "provider": "manual",
        "kind": kind,
        "occurred_at": payload.get("start") or payload.get("time") or payload.get("started_at"),
        "time_zone": "UTC",
        "payload": payload,
    }
    envelope.update(overrides)
    return envelope
