"""Postgres persistence for the truth pipeline.

RawEvents, CanonicalEvents, Failures and derived ledger runs and snapshots
only ever get ``create_*`` functions here: writes use INSERT ... ON CONFLICT
DO NOTHING and report whether a new row was created. Derived documents (daily facts, insights, intelligence
context) are replaced wholesale by the recompute job, as is the ledger's
per-day pointer.
"""

from __future__ import annotations

import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .canonical_event_contract import CanonicalEventBase, parse_canonical_event
from .daily_facts_contract import DailyFacts
from .derived_ledger_contract import DayLedger, LedgerRun, LedgerSnapshot
from .errors import FailureConflictError, LedgerConflictError
from .failure_contract import Failure
from .insight_contract import Insight
from .intelligence_context_contract import IntelligenceContext
from .raw_event_contract import RawEvent

logger = logging.getLogger(__name__)

JOBS_CHANNEL = "truth_jobs"


# --- raw events --------------------------------------------------------------


async def create_raw_event(
    conn: psycopg.AsyncConnection[Any], raw: RawEvent, fingerprint: str
) -> bool:
    """Insert a RawEvent; False when the id already exists (nothing written)."""
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO raw_events (
                user_id, id, provider, kind, payload_fingerprint,
                correction_of_raw_event_id, data, received_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, id) DO NOTHING
            RETURNING id
            """,
            (
                raw.user_id,
                raw.id,
                raw.provider,
                raw.kind,
                fingerprint,
                raw.correction_of_raw_event_id,
                Json(raw.model_dump(mode="json")),
                raw.received_at,
            ),
        )
        return await cur.fetchone() is not None


async def get_raw_event_fingerprint(
    conn: psycopg.AsyncConnection[Any], user_id: str, event_id: str
) -> str | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT payload_fingerprint FROM raw_events WHERE user_id = %s AND id = %s",
            (user_id, event_id),
        )
        row = await cur.fetchone()
    return row["payload_fingerprint"] if row else None


async def load_superseded_ids(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> set[str]:
    """RawEvent ids that a later correction replaced."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT correction_of_raw_event_id
            FROM raw_events
            WHERE user_id = %s
              AND correction_of_raw_event_id IS NOT NULL
            """,
            (user_id,),
        )
        rows = await cur.fetchall()
    return {row["correction_of_raw_event_id"] for row in rows}


# --- canonical events --------------------------------------------------------


async def create_canonical_event(
    conn: psycopg.AsyncConnection[Any], event: CanonicalEventBase
) -> bool:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO canonical_events (user_id, id, kind, day, data, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, id) DO NOTHING
            RETURNING id
            """,
            (
                event.user_id,
                event.id,
                event.kind,
                event.day,
                Json(event.to_document()),
                event.created_at,
            ),
        )
        return await cur.fetchone() is not None


async def get_canonical_event(
    conn: psycopg.AsyncConnection[Any], user_id: str, event_id: str
) -> CanonicalEventBase | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT data FROM canonical_events WHERE user_id = %s AND id = %s",
            (user_id, event_id),
        )
        row = await cur.fetchone()
    return parse_canonical_event(row["data"]) if row else None


async def load_canonical_events_for_day(
    conn: psycopg.AsyncConnection[Any], user_id: str, day: str
) -> list[CanonicalEventBase]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT data
            FROM canonical_events
            WHERE user_id = %s AND day = %s
            ORDER BY id
            """,
            (user_id, day),
        )
        rows = await cur.fetchall()
    return [parse_canonical_event(row["data"]) for row in rows]


async def users_with_events_on(
    conn: psycopg.AsyncConnection[Any], day: str
) -> list[str]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT DISTINCT user_id FROM canonical_events WHERE day = %s ORDER BY user_id",
            (day,),
        )
        rows = await cur.fetchall()
    return [row["user_id"] for row in rows]


# --- failures ----------------------------------------------------------------


async def create_failure(conn: psycopg.AsyncConnection[Any], failure: Failure) -> bool:
    """Create-or-assert-identical.

    Returns True for a new record, False when an identical record already
    exists, and raises FailureConflictError when the id exists with
    different content.
    """
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO failures (user_id, id, code, data)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id, id) DO NOTHING
            RETURNING id
            """,
            (failure.user_id, failure.id, failure.code, Json(failure.to_document())),
        )
        if await cur.fetchone() is not None:
            return True

        await cur.execute(
            "SELECT data FROM failures WHERE user_id = %s AND id = %s",
            (failure.user_id, failure.id),
        )
        row = await cur.fetchone()

    existing = Failure.model_validate(row["data"]) if row else None
    if existing is None or existing.identity_view() != failure.identity_view():
        raise FailureConflictError(
            code="failure_conflict",
            message=f"Failure {failure.id} already recorded with different content",
        )
    return False


async def list_failures(
    conn: psycopg.AsyncConnection[Any], user_id: str, limit: int = 100
) -> list[Failure]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT data
            FROM failures
            WHERE user_id = %s
            ORDER BY created_at DESC, id
            LIMIT %s
            """,
            (user_id, limit),
        )
        rows = await cur.fetchall()
    return [Failure.model_validate(row["data"]) for row in rows]


# --- derived documents -------------------------------------------------------


async def load_daily_facts(
    conn: psycopg.AsyncConnection[Any], user_id: str, date: str
) -> DailyFacts | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT data FROM daily_facts WHERE user_id = %s AND date = %s",
            (user_id, date),
        )
        row = await cur.fetchone()
    return DailyFacts.model_validate(row["data"]) if row else None


async def load_daily_facts_for_dates(
    conn: psycopg.AsyncConnection[Any], user_id: str, dates: list[str]
) -> list[DailyFacts]:
    if not dates:
        return []
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT data
            FROM daily_facts
            WHERE user_id = %s AND date = ANY(%s)
            ORDER BY date
            """,
            (user_id, dates),
        )
        rows = await cur.fetchall()
    return [DailyFacts.model_validate(row["data"]) for row in rows]


async def upsert_daily_facts(conn: psycopg.AsyncConnection[Any], facts: DailyFacts) -> None:
    await conn.execute(
        """
        INSERT INTO daily_facts (user_id, date, data, computed_at)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (user_id, date) DO UPDATE SET
            data = EXCLUDED.data,
            computed_at = EXCLUDED.computed_at
        """,
        (facts.user_id, facts.date, Json(facts.to_document()), facts.computed_at),
    )


async def replace_insights_for_day(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    date: str,
    insights: list[Insight],
) -> None:
    """Replace a day's insights by kind.

    Emitted kinds are upserted (keeping the original created_at); kinds the
    rule set no longer emits for this day are removed.
    """
    for insight in insights:
        await conn.execute(
            """
            INSERT INTO insights (user_id, date, kind, data, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, date, kind) DO UPDATE SET
                data = jsonb_set(EXCLUDED.data, '{created_at}', to_jsonb(insights.created_at)),
                updated_at = EXCLUDED.updated_at
            """,
            (
                user_id,
                date,
                insight.kind,
                Json(insight.to_document()),
                insight.created_at,
                insight.updated_at,
            ),
        )
    await conn.execute(
        """
        DELETE FROM insights
        WHERE user_id = %s AND date = %s AND NOT (kind = ANY(%s))
        """,
        (user_id, date, [insight.kind for insight in insights]),
    )


async def load_insights(
    conn: psycopg.AsyncConnection[Any], user_id: str, date: str
) -> list[Insight]:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT data FROM insights WHERE user_id = %s AND date = %s ORDER BY kind",
            (user_id, date),
        )
        rows = await cur.fetchall()
    return [Insight.model_validate(row["data"]) for row in rows]


async def upsert_intelligence_context(
    conn: psycopg.AsyncConnection[Any], context: IntelligenceContext
) -> None:
    await conn.execute(
        """
        INSERT INTO intelligence_contexts (user_id, date, data, computed_at)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (user_id, date) DO UPDATE SET
            data = EXCLUDED.data,
            computed_at = EXCLUDED.computed_at
        """,
        (context.user_id, context.date, Json(context.to_document()), context.computed_at),
    )


async def load_intelligence_context(
    conn: psycopg.AsyncConnection[Any], user_id: str, date: str
) -> IntelligenceContext | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT data FROM intelligence_contexts WHERE user_id = %s AND date = %s",
            (user_id, date),
        )
        row = await cur.fetchone()
    return IntelligenceContext.model_validate(row["data"]) if row else None


# --- derived ledger ----------------------------------------------------------


async def create_ledger_run(conn: psycopg.AsyncConnection[Any], run: LedgerRun) -> bool:
    """Create-or-assert-identical, like ``create_failure``."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO derived_ledger_runs (user_id, date, run_id, data)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id, date, run_id) DO NOTHING
            RETURNING run_id
            """,
            (run.user_id, run.date, run.run_id, Json(run.to_document())),
        )
        if await cur.fetchone() is not None:
            return True

        await cur.execute(
            """
            SELECT data FROM derived_ledger_runs
            WHERE user_id = %s AND date = %s AND run_id = %s
            """,
            (run.user_id, run.date, run.run_id),
        )
        row = await cur.fetchone()

    existing = LedgerRun.model_validate(row["data"]) if row else None
    if existing is None or existing.to_document() != run.to_document():
        raise LedgerConflictError(
            code="ledger_conflict",
            message=f"Ledger run {run.run_id} already recorded with different content",
        )
    return False


async def create_ledger_snapshot(
    conn: psycopg.AsyncConnection[Any], user_id: str, date: str, snapshot: LedgerSnapshot
) -> bool:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO derived_ledger_snapshots (user_id, date, run_id, kind, item_id, hash, data)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, date, run_id, kind, item_id) DO NOTHING
            RETURNING item_id
            """,
            (
                user_id,
                date,
                snapshot.run_id,
                snapshot.kind,
                snapshot.item_id,
                snapshot.hash,
                Json(snapshot.to_document()),
            ),
        )
        if await cur.fetchone() is not None:
            return True

        await cur.execute(
            """
            SELECT hash FROM derived_ledger_snapshots
            WHERE user_id = %s AND date = %s AND run_id = %s AND kind = %s AND item_id = %s
            """,
            (user_id, date, snapshot.run_id, snapshot.kind, snapshot.item_id),
        )
        row = await cur.fetchone()

    if row is None or row["hash"] != snapshot.hash:
        raise LedgerConflictError(
            code="ledger_conflict",
            message=(
                f"Ledger snapshot {snapshot.run_id}/{snapshot.kind}/{snapshot.item_id} "
                "already recorded with a different hash"
            ),
        )
    return False


async def set_ledger_pointer(conn: psycopg.AsyncConnection[Any], run: LedgerRun) -> None:
    """Point the day at ``run``; the only ledger row that is ever overwritten."""
    await conn.execute(
        """
        INSERT INTO derived_ledger_days (
            user_id, date, latest_run_id, latest_computed_at, pipeline_version, trigger, updated_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, NOW())
        ON CONFLICT (user_id, date) DO UPDATE SET
            latest_run_id = EXCLUDED.latest_run_id,
            latest_computed_at = EXCLUDED.latest_computed_at,
            pipeline_version = EXCLUDED.pipeline_version,
            trigger = EXCLUDED.trigger,
            updated_at = EXCLUDED.updated_at
        """,
        (
            run.user_id,
            run.date,
            run.run_id,
            run.computed_at,
            run.pipeline_version,
            Json(run.trigger.model_dump(mode="json", exclude_none=True)),
        ),
    )


async def load_day_ledger(
    conn: psycopg.AsyncConnection[Any], user_id: str, date: str
) -> DayLedger | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            "SELECT latest_run_id FROM derived_ledger_days WHERE user_id = %s AND date = %s",
            (user_id, date),
        )
        pointer = await cur.fetchone()
        if pointer is None:
            return None

        await cur.execute(
            """
            SELECT data FROM derived_ledger_runs
            WHERE user_id = %s AND date = %s
            ORDER BY created_at, run_id
            """,
            (user_id, date),
        )
        runs = await cur.fetchall()
        await cur.execute(
            """
            SELECT data FROM derived_ledger_snapshots
            WHERE user_id = %s AND date = %s AND run_id = %s
            ORDER BY kind, item_id
            """,
            (user_id, date, pointer["latest_run_id"]),
        )
        snapshots = await cur.fetchall()

    return DayLedger(
        user_id=user_id,
        date=date,
        latest_run_id=pointer["latest_run_id"],
        runs=[LedgerRun.model_validate(row["data"]) for row in runs],
        latest_snapshots=[LedgerSnapshot.model_validate(row["data"]) for row in snapshots],
    )


# --- integrations and jobs ---------------------------------------------------


async def load_integration(
    conn: psycopg.AsyncConnection[Any], user_id: str, provider: str
) -> dict[str, Any] | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT provider, access_token, data
            FROM integrations
            WHERE user_id = %s AND provider = %s
            """,
            (user_id, provider),
        )
        return await cur.fetchone()


async def enqueue_job(
    conn: psycopg.AsyncConnection[Any],
    *,
    user_id: str | None,
    job_type: str,
    payload: dict[str, Any],
    max_retries: int = 3,
) -> bool:
    """Enqueue a background job unless an identical one is already pending."""
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO background_jobs (user_id, job_type, payload, max_retries)
            SELECT %s, %s, %s, %s
            WHERE NOT EXISTS (
                SELECT 1 FROM background_jobs
                WHERE job_type = %s
                  AND status = 'pending'
                  AND payload = %s
            )
            RETURNING id
            """,
            (user_id, job_type, Json(payload), max_retries, job_type, Json(payload)),
        )
        created = await cur.fetchone() is not None
        if created:
            await cur.execute("SELECT pg_notify(%s, %s)", (JOBS_CHANNEL, job_type))
    return created


async def claim_jobs(
    conn: psycopg.AsyncConnection[Any], batch_size: int
) -> list[dict[str, Any]]:
    """Mark up to ``batch_size`` due jobs as processing and return them.

    SKIP LOCKED lets several workers claim from the same queue without
    blocking on each other's rows.
    """
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            UPDATE background_jobs
            SET status = 'processing', started_at = NOW(), attempt = attempt + 1
            WHERE id IN (
                SELECT id FROM background_jobs
                WHERE status = 'pending' AND scheduled_for <= NOW()
                ORDER BY scheduled_for, priority DESC, id
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING id, user_id, job_type, payload, attempt, max_retries
            """,
            (batch_size,),
        )
        return await cur.fetchall()


async def complete_job(conn: psycopg.AsyncConnection[Any], job_id: int) -> None:
    await conn.execute(
        """
        UPDATE background_jobs
        SET status = 'completed', completed_at = NOW()
        WHERE id = %s
        """,
        (job_id,),
    )


async def retry_job(
    conn: psycopg.AsyncConnection[Any], job_id: int, error: str, delay_seconds: float
) -> None:
    await conn.execute(
        """
        UPDATE background_jobs
        SET status = 'pending',
            error_message = %s,
            scheduled_for = NOW() + make_interval(secs => %s)
        WHERE id = %s
        """,
        (error, float(delay_seconds), job_id),
    )


async def dead_job(conn: psycopg.AsyncConnection[Any], job_id: int, error: str) -> None:
    await conn.execute(
        """
        UPDATE background_jobs
        SET status = 'dead', error_message = %s, completed_at = NOW()
        WHERE id = %s
        """,
        (error, job_id),
    )
