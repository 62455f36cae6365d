"""Day recompute handler.

Reacts to truth.recompute_day jobs ({user_id, date, trigger?}). Rebuilds
every derived document for one user-day from its canonical events:
DailyFacts -> Insights -> IntelligenceContext, then appends a derived
ledger run. The optional trigger is realtime (default), scheduled or manual.

Full recompute on every job; rerunning for the same inputs overwrites the
documents with identical content (modulo computed_at). Work for the same
user is serialized with pg_advisory_xact_lock, which releases on
commit/rollback.
"""

import logging
import time
from typing import Any, get_args

import psycopg

from .. import store
from ..contract_types import is_day_key
from ..daily_facts import (
    HISTORY_DAYS,
    PIPELINE_VERSION,
    aggregate_daily_facts,
    enrich_daily_facts,
    filter_superseded,
    latest_event_timestamp,
)
from ..daily_facts_contract import ComputeMeta, DailyFacts, FactsSource
from ..derived_ledger import record_ledger_run
from ..derived_ledger_contract import LedgerTrigger, TriggerType
from ..ingestion import RECOMPUTE_JOB_TYPE
from ..insights import build_rule_context, evaluate_insights
from ..intelligence_context import assemble_intelligence_context
from ..metrics import record_handler_invocation
from ..registry import register
from ..utils import previous_days, utc_now_iso

logger = logging.getLogger(__name__)

TRIGGER_TYPES = get_args(TriggerType)


async def _acquire_user_lock(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> None:
    """Serialize all derived-document work for the same user."""
    await conn.execute(
        "SELECT pg_advisory_xact_lock(hashtext(%s)::bigint)",
        (str(user_id),),
    )


async def recompute_day(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    date: str,
    *,
    truth_anchor: str | None = None,
    pipeline_version: int = PIPELINE_VERSION,
    trigger: LedgerTrigger | None = None,
) -> DailyFacts:
    """Recompute DailyFacts, Insights and IntelligenceContext for one day.

    The run and a snapshot of each written document are appended to the
    derived ledger. A rerun with the same ``truth_anchor`` and trigger lands
    on the same run id and snapshot hashes.
    """
    computed_at = truth_anchor or utc_now_iso()
    trigger = trigger or LedgerTrigger(type="manual", name="recompute_day")

    superseded = await store.load_superseded_ids(conn, user_id)
    events = filter_superseded(
        await store.load_canonical_events_for_day(conn, user_id, date), superseded
    )

    meta = ComputeMeta(
        computed_at=computed_at,
        pipeline_version=pipeline_version,
        source=FactsSource(
            events_for_day=len(events),
            latest_canonical_event_at=latest_event_timestamp(events),
        ),
    )
    history = await store.load_daily_facts_for_dates(
        conn, user_id, previous_days(date, HISTORY_DAYS)
    )
    facts = enrich_daily_facts(
        aggregate_daily_facts(
            user_id,
            date,
            computed_at,
            events,
            pipeline_version=pipeline_version,
            meta=meta,
        ),
        history,
    )
    await store.upsert_daily_facts(conn, facts)

    ctx = build_rule_context(user_id, date, [*history, facts], computed_at)
    insights = evaluate_insights(ctx)
    await store.replace_insights_for_day(conn, user_id, date, insights)

    context = assemble_intelligence_context(
        facts, insights, computed_at=computed_at, meta=meta
    )
    await store.upsert_intelligence_context(conn, context)
    run = await record_ledger_run(conn, facts, insights, context, trigger)

    logger.info(
        "Recomputed %s/%s: %d events, domains=%s, insights=%s, run=%s",
        user_id,
        date,
        len(events),
        facts.present_domains(),
        [i.kind for i in insights],
        run.run_id,
        extra={"truth_user_id": user_id},
    )
    return facts


@register(RECOMPUTE_JOB_TYPE)
async def handle_recompute_day(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    user_id = payload.get("user_id")
    date = payload.get("date")
    if not user_id:
        raise ValueError("Missing user_id in truth.recompute_day payload")
    if not is_day_key(date):
        raise ValueError(f"Invalid date in truth.recompute_day payload: {date!r}")
    trigger_type = payload.get("trigger", "realtime")
    if trigger_type not in TRIGGER_TYPES:
        raise ValueError(f"Invalid trigger in truth.recompute_day payload: {trigger_type!r}")

    await _acquire_user_lock(conn, user_id)

    start = time.monotonic()
    success = False
    try:
        await recompute_day(
            conn,
            user_id,
            date,
            trigger=LedgerTrigger(type=trigger_type, name=RECOMPUTE_JOB_TYPE),
        )
        success = True
    finally:
        elapsed_ms = (time.monotonic() - start) * 1000
        record_handler_invocation("recompute_day", elapsed_ms, success)
        logger.debug(
            "recompute_day took %.1fms",
            elapsed_ms,
            extra={
                "truth_user_id": user_id,
                "truth_job_type": RECOMPUTE_JOB_TYPE,
                "truth_duration_ms": round(elapsed_ms, 2),
            },
        )
