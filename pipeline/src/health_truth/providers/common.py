"""Shared pieces of the provider API clients used by resync."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from ..errors import ProviderFetchError
from ..identity import native_event_key

REQUEST_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class ProviderItem:
    """One provider record, shaped as a RawEvent envelope for ingestion."""

    provider: str
    kind: str
    native_id: Any
    occurred_at: str | dict[str, str]
    time_zone: str
    payload: dict[str, Any]

    @property
    def idempotency_key(self) -> str:
        return native_event_key(self.native_id, self.payload)

    def to_envelope(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "kind": self.kind,
            "occurred_at": self.occurred_at,
            "time_zone": self.time_zone,
            "payload": self.payload,
            "provenance": "backfill",
        }


def decode_provider_json(provider: str, response: httpx.Response) -> dict[str, Any]:
    """Raise ProviderFetchError unless the response is a 2xx JSON object."""
    if not response.is_success:
        raise ProviderFetchError(
            code=f"{provider}_fetch_failed_{response.status_code}",
            message=f"{provider} API returned HTTP {response.status_code}",
        )
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderFetchError(
            code=f"{provider}_fetch_failed_invalid_json",
            message=f"{provider} API returned a non-JSON body",
        ) from exc
    if not isinstance(body, dict):
        raise ProviderFetchError(
            code=f"{provider}_fetch_failed_invalid_json",
            message=f"{provider} API returned {type(body).__name__}, expected object",
        )
    return body


def transport_error(provider: str, exc: httpx.HTTPError) -> ProviderFetchError:
    return ProviderFetchError(
        code=f"{provider}_fetch_failed_network",
        message=f"{provider} API request failed: {exc}",
    )
