"""Withings measure API: weight and body-fat history for resync."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from ..errors import ProviderFetchError
from ..utils import normalize_timezone_name
from .common import ProviderItem, decode_provider_json, transport_error

logger = logging.getLogger(__name__)

PROVIDER = "withings"
MEASURE_PATH = "/measure"
# 1 = weight (kg), 6 = fat ratio (%)
MEASURE_TYPES = "1,6"
CATEGORY_REAL_MEASURES = 1


def measure_group_item(group: dict[str, Any], time_zone: str) -> ProviderItem:
    taken_at = group.get("date")
    occurred_at = (
        datetime.fromtimestamp(taken_at, tz=UTC).isoformat()
        if isinstance(taken_at, int) and not isinstance(taken_at, bool)
        else ""
    )
    return ProviderItem(
        provider=PROVIDER,
        kind="weight",
        native_id=group.get("grpid"),
        occurred_at=occurred_at,
        time_zone=time_zone,
        payload=group,
    )


async def fetch_measure_groups(
    client: httpx.AsyncClient,
    *,
    base_url: str,
    access_token: str,
    start: datetime,
    end: datetime,
) -> list[ProviderItem]:
    """Fetch every weight measure group in [start, end], following ``more``/``offset``."""
    form: dict[str, Any] = {
        "action": "getmeas",
        "access_token": access_token,
        "meastypes": MEASURE_TYPES,
        "category": CATEGORY_REAL_MEASURES,
        "startdate": int(start.timestamp()),
        "enddate": int(end.timestamp()),
    }
    headers = {"Authorization": f"Bearer {access_token}"}
    items: list[ProviderItem] = []

    while True:
        try:
            response = await client.post(f"{base_url}{MEASURE_PATH}", data=form, headers=headers)
        except httpx.HTTPError as exc:
            raise transport_error(PROVIDER, exc) from exc

        body = decode_provider_json(PROVIDER, response)
        status = body.get("status")
        if status != 0:
            raise ProviderFetchError(
                code=f"{PROVIDER}_fetch_failed_{status}",
                message=f"Withings API returned status {status}",
            )
        payload = body.get("body")
        groups = payload.get("measuregrps") if isinstance(payload, dict) else None
        if not isinstance(groups, list):
            raise ProviderFetchError(
                code=f"{PROVIDER}_fetch_failed_invalid_shape",
                message="Withings response has no body.measuregrps list",
            )
        time_zone = normalize_timezone_name(payload.get("timezone")) or "UTC"
        items.extend(
            measure_group_item(group, time_zone) for group in groups if isinstance(group, dict)
        )

        if not payload.get("more"):
            break
        form = {**form, "offset": payload.get("offset", 0)}

    logger.info(
        "Fetched %d Withings measure groups", len(items), extra={"truth_provider": PROVIDER}
    )
    return items
