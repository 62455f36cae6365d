"""Oura v2 API: workout history for resync."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx

from ..errors import ProviderFetchError
from .common import ProviderItem, decode_provider_json, transport_error

logger = logging.getLogger(__name__)

PROVIDER = "oura"
WORKOUT_PATH = "/v2/usercollection/workout"


def workout_item(record: dict[str, Any], time_zone: str) -> ProviderItem:
    start = record.get("start_datetime")
    end = record.get("end_datetime")
    occurred_at: str | dict[str, str]
    if isinstance(start, str) and isinstance(end, str):
        occurred_at = {"start": start, "end": end}
    else:
        occurred_at = str(start or record.get("day") or "")
    return ProviderItem(
        provider=PROVIDER,
        kind="workout",
        native_id=record.get("id"),
        occurred_at=occurred_at,
        time_zone=time_zone,
        payload=record,
    )


async def fetch_workouts(
    client: httpx.AsyncClient,
    *,
    base_url: str,
    access_token: str,
    start_date: date,
    end_date: date,
    time_zone: str = "UTC",
) -> list[ProviderItem]:
    """Fetch every workout in [start_date, end_date], following next_token."""
    params: dict[str, str] = {
        "start_date": start_date.isoformat(),
        "end_date": end_date.isoformat(),
    }
    headers = {"Authorization": f"Bearer {access_token}"}
    items: list[ProviderItem] = []

    while True:
        try:
            response = await client.get(
                f"{base_url}{WORKOUT_PATH}", params=params, headers=headers
            )
        except httpx.HTTPError as exc:
            raise transport_error(PROVIDER, exc) from exc

        body = decode_provider_json(PROVIDER, response)
        data = body.get("data")
        if not isinstance(data, list):
            raise ProviderFetchError(
                code=f"{PROVIDER}_fetch_failed_invalid_shape",
                message="Oura workout response has no data list",
            )
        items.extend(
            workout_item(record, time_zone) for record in data if isinstance(record, dict)
        )

        next_token = body.get("next_token")
        if not next_token:
            break
        params = {**params, "next_token": str(next_token)}

    logger.info("Fetched %d Oura workouts", len(items), extra={"truth_provider": PROVIDER})
    return items
