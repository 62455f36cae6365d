"""Durable daily recompute scheduler.

Once per interval, enqueue ``truth.recompute_day`` for the previous UTC day
for every user with canonical events on it. Scheduler state lives in
``recompute_scheduler_state`` so restarts and multiple workers agree on when
the next run is due.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row

from . import store
from .ingestion import RECOMPUTE_JOB_TYPE

logger = logging.getLogger(__name__)

DAILY_RECOMPUTE_SCHEDULER_KEY = "daily_recompute"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def due_run_count(now: datetime, next_run_at: datetime, interval_hours: int) -> int:
    """Return how many runs are due, including missed catch-up slots."""
    if interval_hours <= 0:
        raise ValueError("interval_hours must be positive")

    now_utc = _as_utc(now)
    next_run_utc = _as_utc(next_run_at)
    if now_utc < next_run_utc:
        return 0

    elapsed_seconds = (now_utc - next_run_utc).total_seconds()
    slot_seconds = interval_hours * 3600
    return int(elapsed_seconds // slot_seconds) + 1


def previous_utc_day(now: datetime) -> str:
    return (_as_utc(now) - timedelta(days=1)).date().isoformat()


async def ensure_daily_recompute_scheduler(
    conn: psycopg.AsyncConnection[Any],
    interval_hours: int,
    *,
    now: datetime | None = None,
    max_retries: int = 3,
) -> int:
    """Advance scheduler state and enqueue due recomputes.

    Returns the number of recompute jobs enqueued. Catch-up slots collapse
    into a single run: yesterday's recompute is the same job however many
    slots were missed.
    """
    now = _as_utc(now or datetime.now(UTC))

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO recompute_scheduler_state (
                scheduler_key, interval_hours, next_run_at, last_run_status
            )
            VALUES (%s, %s, %s, 'idle')
            ON CONFLICT (scheduler_key) DO NOTHING
            """,
            (DAILY_RECOMPUTE_SCHEDULER_KEY, interval_hours, now),
        )
        await cur.execute(
            """
            SELECT interval_hours, next_run_at
            FROM recompute_scheduler_state
            WHERE scheduler_key = %s
            FOR UPDATE
            """,
            (DAILY_RECOMPUTE_SCHEDULER_KEY,),
        )
        state = await cur.fetchone()
        if state is None:
            return 0

        run_count = due_run_count(now, state["next_run_at"], interval_hours)
        if run_count == 0:
            return 0

        day = previous_utc_day(now)
        enqueued = 0
        for user_id in await store.users_with_events_on(conn, day):
            created = await store.enqueue_job(
                conn,
                user_id=user_id,
                job_type=RECOMPUTE_JOB_TYPE,
                payload={"user_id": user_id, "date": day, "trigger": "scheduled"},
                max_retries=max_retries,
            )
            enqueued += int(created)

        await cur.execute(
            """
            UPDATE recompute_scheduler_state
            SET interval_hours = %s,
                next_run_at = next_run_at + make_interval(hours => %s),
                last_run_at = %s,
                last_run_status = 'scheduled',
                total_runs = total_runs + 1,
                updated_at = NOW()
            WHERE scheduler_key = %s
            """,
            (
                interval_hours,
                interval_hours * run_count,
                now,
                DAILY_RECOMPUTE_SCHEDULER_KEY,
            ),
        )

    logger.info(
        "Scheduled daily recompute for %s (jobs=%d, due_runs=%d, missed_runs=%d)",
        day,
        enqueued,
        run_count,
        max(0, run_count - 1),
    )
    return enqueued
