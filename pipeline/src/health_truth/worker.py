"""Background job worker for recompute jobs.

Wakes on NOTIFY from ``store.enqueue_job`` and falls back to polling. Every
tick first advances the daily recompute scheduler, then claims a batch and
runs each job with its handler; the handler's writes and the job's
completion commit together.
"""

import asyncio
import logging
import signal
import time
from typing import Any

import psycopg

from . import store
from .config import Config
from .identity import stable_json
from .metrics import record_job_completed, record_job_dead, record_job_failed
from .registry import get_handler
from .scheduler import ensure_daily_recompute_scheduler

logger = logging.getLogger(__name__)


def retry_backoff_seconds(attempt: int) -> int:
    return 2**attempt


def _job_extra(job: dict[str, Any]) -> dict[str, Any]:
    return {"truth_job_type": job["job_type"], "truth_user_id": job.get("user_id")}


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()

    async def run(self) -> None:
        """Run the listen and poll loops until SIGTERM/SIGINT."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown)

        logger.info(
            "Worker starting (poll_interval=%.1fs, batch_size=%d, recompute_every=%dh)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
            self.config.recompute_interval_hours,
        )
        if self.config.listen_database_url != self.config.database_url:
            logger.info("Worker LISTEN uses dedicated database URL")

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._listen_loop())
            tg.create_task(self._poll_loop())

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def _listen_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {store.JOBS_CHANNEL}")
                    logger.info("Listening on %s channel", store.JOBS_CHANNEL)

                    # Timeouts keep the connection; only OperationalError reconnects.
                    while not self._shutdown.is_set():
                        async for notify in conn.notifies(
                            timeout=self.config.poll_interval_seconds
                        ):
                            logger.debug("NOTIFY received: %s", notify.payload)
                            await self._process_batch()
                            if self._shutdown.is_set():
                                break
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning("LISTEN connection lost, reconnecting in 5s")
                await asyncio.sleep(5)

        logger.info("Listen loop stopped")

    async def _poll_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(),
                    timeout=self.config.poll_interval_seconds,
                )
                break
            except TimeoutError:
                pass

            await self._process_batch()

        logger.info("Poll loop stopped")

    async def _tick_scheduler(self, conn: psycopg.AsyncConnection[Any]) -> None:
        try:
            await ensure_daily_recompute_scheduler(
                conn,
                self.config.recompute_interval_hours,
                max_retries=self.config.max_retries,
            )
            await conn.commit()
        except psycopg.Error as exc:
            await conn.rollback()
            logger.warning("Daily recompute scheduler tick skipped: %s", exc)

    async def _process_batch(self) -> None:
        try:
            async with await psycopg.AsyncConnection.connect(
                self.config.database_url
            ) as conn:
                await self._tick_scheduler(conn)

                jobs = await store.claim_jobs(conn, self.config.batch_size)
                await conn.commit()  # claims survive a crash

                await self.run_jobs(conn, jobs)
        except Exception:
            logger.exception("Error in process_batch")

    async def run_jobs(
        self, conn: psycopg.AsyncConnection[Any], jobs: list[dict[str, Any]]
    ) -> None:
        """Run claimed jobs in order.

        A job whose type and payload repeat an earlier job of the same batch
        is completed without running: recomputing the same day twice in a
        row produces the same documents.
        """
        seen: set[str] = set()
        for job in jobs:
            key = stable_json([job["job_type"], job["payload"]])
            if key in seen:
                await store.complete_job(conn, job["id"])
                await conn.commit()
                logger.debug("Job %d coalesced into an earlier job of the batch", job["id"])
                continue
            seen.add(key)
            await self._process_job(conn, job)

    async def _process_job(
        self, conn: psycopg.AsyncConnection[Any], job: dict[str, Any]
    ) -> None:
        job_id = job["id"]
        job_type = job["job_type"]

        handler = get_handler(job_type)
        if handler is None:
            logger.warning("No handler for job_type=%s (job_id=%d)", job_type, job_id)
            await store.dead_job(conn, job_id, f"No handler for job_type={job_type}")
            await conn.commit()
            return

        start = time.monotonic()
        try:
            async with conn.transaction():
                await handler(conn, job["payload"])
                await store.complete_job(conn, job_id)
        except Exception as exc:
            logger.exception("Job %d failed (type=%s)", job_id, job_type, extra=_job_extra(job))
            await self._handle_failure(conn, job, str(exc))
            return

        record_job_completed()
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "Job %d completed (type=%s)",
            job_id,
            job_type,
            extra={**_job_extra(job), "truth_duration_ms": round(elapsed_ms, 2)},
        )

    async def _handle_failure(
        self, conn: psycopg.AsyncConnection[Any], job: dict[str, Any], error: str
    ) -> None:
        job_id = job["id"]
        attempt = job["attempt"]
        if attempt >= job["max_retries"]:
            record_job_dead()
            logger.error("Job %d is dead after max retries: %s", job_id, error)
            await store.dead_job(conn, job_id, error)
        else:
            record_job_failed()
            delay = retry_backoff_seconds(attempt)
            logger.info("Job %d retrying in %ds (attempt=%d)", job_id, delay, attempt)
            await store.retry_job(conn, job_id, error, delay)
        await conn.commit()
