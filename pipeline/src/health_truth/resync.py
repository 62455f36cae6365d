"""Provider resync: backfill the last N days from a provider API.

Flow: integration lookup -> fetch every page -> ingest in chunks.

Configuration problems and provider failures raise before the first write,
so a failed resync never leaves a partial commit behind. Each item is
ingested through ``ingest_raw_event`` with the provider's native id as
idempotency key, so rerunning a resync only writes what is new.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import psycopg

from . import store
from .errors import ProviderFetchError, ResyncConfigError
from .ingestion import ingest_raw_event
from .metrics import record_resync
from .providers import oura, withings
from .providers.common import ProviderItem
from .utils import normalize_timezone_name

logger = logging.getLogger(__name__)

RESYNC_PROVIDERS: tuple[str, ...] = ("oura", "withings")

DEFAULT_RESYNC_DAYS = 30
DEFAULT_CHUNK_SIZE = 450


@dataclass(frozen=True)
class ResyncResult:
    provider: str
    uid: str
    fetched: int
    written: int
    duplicates: int
    rejected: int

    def to_body(self) -> dict[str, Any]:
        return {
            "ok": True,
            "provider": self.provider,
            "uid": self.uid,
            "fetched": self.fetched,
            "written": self.written,
            "duplicates": self.duplicates,
            "rejected": self.rejected,
        }


def chunked(items: list[ProviderItem], size: int) -> list[list[ProviderItem]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [items[i : i + size] for i in range(0, len(items), size)]


async def _load_access(
    conn: psycopg.AsyncConnection[Any], uid: str, provider: str
) -> tuple[str, str]:
    integration = await store.load_integration(conn, uid, provider)
    if integration is None:
        raise ResyncConfigError(
            code=f"{provider}_integration_missing",
            message=f"No {provider} integration configured for user",
        )
    token = integration.get("access_token")
    if not token:
        raise ResyncConfigError(
            code=f"{provider}_token_missing",
            message=f"{provider} integration has no access token",
        )
    data = integration.get("data") or {}
    time_zone = normalize_timezone_name(data.get("timezone")) or "UTC"
    return token, time_zone


async def fetch_provider_items(
    http_client: httpx.AsyncClient,
    provider: str,
    *,
    access_token: str,
    time_zone: str,
    now: datetime,
    days: int,
    oura_base_url: str,
    withings_base_url: str,
) -> list[ProviderItem]:
    start = now - timedelta(days=days)
    if provider == "oura":
        return await oura.fetch_workouts(
            http_client,
            base_url=oura_base_url,
            access_token=access_token,
            start_date=start.date(),
            end_date=now.date(),
            time_zone=time_zone,
        )
    return await withings.fetch_measure_groups(
        http_client,
        base_url=withings_base_url,
        access_token=access_token,
        start=start,
        end=now,
    )


async def resync(
    conn: psycopg.AsyncConnection[Any],
    uid: str,
    provider: str,
    *,
    http_client: httpx.AsyncClient,
    now: datetime | None = None,
    days: int = DEFAULT_RESYNC_DAYS,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    oura_base_url: str = "https://api.ouraring.com",
    withings_base_url: str = "https://wbsapi.withings.net",
    max_retries: int = 3,
) -> ResyncResult:
    """Backfill ``days`` of ``provider`` history for ``uid``.

    Raises ResyncConfigError when the integration is unusable and
    ProviderFetchError when the provider API fails; both before any write.
    """
    if provider not in RESYNC_PROVIDERS:
        raise ResyncConfigError(
            code="unsupported_provider",
            message=f"Resync is not supported for provider {provider!r}",
        )
    if not uid:
        raise ResyncConfigError(code="missing_uid", message="uid is required")

    now = now or datetime.now(UTC)
    access_token, time_zone = await _load_access(conn, uid, provider)

    try:
        items = await fetch_provider_items(
            http_client,
            provider,
            access_token=access_token,
            time_zone=time_zone,
            now=now,
            days=days,
            oura_base_url=oura_base_url,
            withings_base_url=withings_base_url,
        )
    except ProviderFetchError:
        record_resync(provider, success=False)
        raise

    written = duplicates = rejected = 0
    for chunk in chunked(items, chunk_size):
        async with conn.transaction():
            for item in chunk:
                result = await ingest_raw_event(
                    conn,
                    uid,
                    item.to_envelope(),
                    idempotency_key=item.idempotency_key,
                    max_retries=max_retries,
                )
                if result.outcome == "created":
                    written += 1
                elif result.outcome == "duplicate":
                    duplicates += 1
                else:
                    rejected += 1
        logger.debug(
            "Committed resync chunk of %d items",
            len(chunk),
            extra={"truth_user_id": uid, "truth_provider": provider},
        )

    logger.info(
        "Resync %s for %s: fetched=%d written=%d duplicates=%d rejected=%d",
        provider,
        uid,
        len(items),
        written,
        duplicates,
        rejected,
        extra={"truth_user_id": uid, "truth_provider": provider},
    )
    record_resync(provider, success=True, fetched=len(items), written=written)
    return ResyncResult(
        provider=provider,
        uid=uid,
        fetched=len(items),
        written=written,
        duplicates=duplicates,
        rejected=rejected,
    )
