"""Append-only ledger of derived-document recomputes.

Each recompute appends a run record and a hashed snapshot of every document
it wrote. Run ids and hashes derive from content, so rerunning with the same
truth anchor lands on the same rows; the store accepts that as a no-op and
raises LedgerConflictError for a different body under an existing id. The
per-day pointer is the only mutable row and names the latest run.
"""

from __future__ import annotations

import logging
from typing import Any

import psycopg

from . import store
from .daily_facts_contract import DailyFacts
from .derived_ledger_contract import LedgerOutputs, LedgerRun, LedgerSnapshot, LedgerTrigger
from .identity import stable_hash, stable_json
from .insight_contract import Insight
from .intelligence_context_contract import IntelligenceContext

logger = logging.getLogger(__name__)

SNAPSHOT_HASH_SIZE = 64


def ledger_run_id(
    user_id: str,
    date: str,
    computed_at: str,
    pipeline_version: int,
    trigger: LedgerTrigger,
) -> str:
    seed = stable_json(
        [user_id, date, computed_at, pipeline_version, trigger.model_dump(mode="json")]
    )
    return f"run_{stable_hash(seed)}"


def snapshot_hash(document: dict[str, Any]) -> str:
    return stable_hash(stable_json(document), size=SNAPSHOT_HASH_SIZE)


def build_ledger_entries(
    facts: DailyFacts,
    insights: list[Insight],
    context: IntelligenceContext,
    trigger: LedgerTrigger,
) -> tuple[LedgerRun, list[LedgerSnapshot]]:
    source = facts.meta.source if facts.meta else None
    run = LedgerRun(
        run_id=ledger_run_id(
            facts.user_id, facts.date, facts.computed_at, facts.pipeline_version, trigger
        ),
        user_id=facts.user_id,
        date=facts.date,
        computed_at=facts.computed_at,
        pipeline_version=facts.pipeline_version,
        trigger=trigger,
        latest_canonical_event_at=source.latest_canonical_event_at if source else None,
        outputs=LedgerOutputs(
            has_daily_facts=True,
            insights_count=len(insights),
            has_intelligence_context=True,
        ),
    )

    documents = [
        ("daily_facts", "daily_facts", facts.to_document()),
        ("intelligence_context", "intelligence_context", context.to_document()),
        *(("insight", insight.id, insight.to_document()) for insight in insights),
    ]
    snapshots = [
        LedgerSnapshot(
            run_id=run.run_id,
            kind=kind,
            item_id=item_id,
            hash=snapshot_hash(document),
            data=document,
        )
        for kind, item_id, document in documents
    ]
    return run, snapshots


async def record_ledger_run(
    conn: psycopg.AsyncConnection[Any],
    facts: DailyFacts,
    insights: list[Insight],
    context: IntelligenceContext,
    trigger: LedgerTrigger,
) -> LedgerRun:
    """Append the run and its snapshots, then move the day pointer to it."""
    run, snapshots = build_ledger_entries(facts, insights, context, trigger)

    created = await store.create_ledger_run(conn, run)
    for snapshot in snapshots:
        await store.create_ledger_snapshot(conn, run.user_id, run.date, snapshot)
    await store.set_ledger_pointer(conn, run)

    logger.debug(
        "Ledger run %s for %s/%s (%s)",
        run.run_id,
        run.user_id,
        run.date,
        "appended" if created else "already recorded",
        extra={"truth_user_id": run.user_id},
    )
    return run
