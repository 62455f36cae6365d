"""HTTP client for the derived-truth read APIs.

``get_json`` classifies every outcome as ok, network, http or parse;
``load_day_truth`` then validates the bodies and resolves readiness, so a
caller only ever sees facts that passed both gates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from ..daily_facts_contract import DailyFacts
from ..intelligence_context_contract import IntelligenceContext
from .contract import ApiFailure, ApiOk, validate_response
from .readiness import Readiness, ReadinessInput, resolve_readiness

logger = logging.getLogger(__name__)


class TruthApiClient:
    def __init__(self, http_client: httpx.AsyncClient, base_url: str = "") -> None:
        self._http = http_client
        self._base_url = base_url.rstrip("/")

    async def get_json(self, path: str) -> ApiOk[Any] | ApiFailure:
        try:
            response = await self._http.get(f"{self._base_url}{path}")
        except httpx.HTTPError as exc:
            logger.debug("GET %s failed: %s", path, exc)
            return ApiFailure(kind="network", error=str(exc) or type(exc).__name__)

        try:
            body = response.json()
        except ValueError:
            if not response.is_success:
                return ApiFailure(
                    kind="http", error=f"HTTP {response.status_code}", status=response.status_code
                )
            return ApiFailure(
                kind="parse", error="Response is not JSON", status=response.status_code
            )

        if not response.is_success:
            error = body.get("error") if isinstance(body, dict) else None
            return ApiFailure(
                kind="http",
                error=str(error or f"HTTP {response.status_code}"),
                status=response.status_code,
                json=body,
            )
        return ApiOk(body, status=response.status_code)


class RequestFence:
    """Sequence-number fencing: only the newest request's result is applied."""

    def __init__(self) -> None:
        self._seq = 0

    def next(self) -> int:
        self._seq += 1
        return self._seq

    def is_current(self, token: int) -> bool:
        return token == self._seq


@dataclass(frozen=True)
class DayTruth:
    date: str
    readiness: Readiness
    facts: DailyFacts | None = None
    context: IntelligenceContext | None = None
    failure: ApiFailure | None = None


def _readiness_fields(raw: Any) -> dict[str, Any]:
    """Readiness inputs read leniently from an unvalidated facts body.

    These only feed the resolver; rendering uses the validated model. A
    count that cannot be read is None.
    """
    meta = raw.get("meta") if isinstance(raw, dict) else None
    meta = meta if isinstance(meta, dict) else {}
    source = meta.get("source")
    source = source if isinstance(source, dict) else {}

    count = source.get("events_for_day")
    version = meta.get("pipeline_version")
    computed_at = meta.get("computed_at")
    latest = source.get("latest_canonical_event_at")
    return {
        "events_count": (
            count if isinstance(count, int) and not isinstance(count, bool) and count >= 0 else None
        ),
        "computed_at_iso": computed_at if isinstance(computed_at, str) else None,
        "latest_canonical_event_at_iso": latest if isinstance(latest, str) else None,
        "pipeline_version": (
            version if isinstance(version, int) and not isinstance(version, bool) else None
        ),
    }


def _is_not_found(result: ApiOk[Any] | ApiFailure) -> bool:
    return isinstance(result, ApiFailure) and result.kind == "http" and result.status == 404


async def load_day_truth(
    client: TruthApiClient,
    uid: str,
    date: str,
    expected_pipeline_version: int,
) -> DayTruth:
    """Fetch, validate and gate one day's derived truth.

    Facts and context are returned only when readiness is ``ready``. A 404
    for daily facts means nothing has been computed for the day; a 404 for
    the context alone is tolerated.
    """
    base = f"/users/{quote(uid, safe='')}"
    raw_facts = await client.get_json(f"{base}/daily-facts/{date}")
    raw_context = await client.get_json(f"{base}/intelligence-context/{date}")

    if _is_not_found(raw_facts):
        readiness = resolve_readiness(
            ReadinessInput(
                network="ok",
                schema_valid=True,
                events_count=0,
                expected_pipeline_version=expected_pipeline_version,
            )
        )
        return DayTruth(date=date, readiness=readiness)

    transport_failure = next(
        (
            result
            for result in (raw_facts, raw_context)
            if isinstance(result, ApiFailure) and not _is_not_found(result)
        ),
        None,
    )
    if transport_failure is not None:
        readiness = resolve_readiness(
            ReadinessInput(
                network="error",
                schema_valid=False,
                events_count=None,
                expected_pipeline_version=expected_pipeline_version,
            )
        )
        return DayTruth(date=date, readiness=readiness, failure=transport_failure)

    checked_facts = validate_response(raw_facts, DailyFacts)
    checked_context = (
        None if _is_not_found(raw_context) else validate_response(raw_context, IntelligenceContext)
    )
    contract_failure = next(
        (r for r in (checked_facts, checked_context) if isinstance(r, ApiFailure)), None
    )

    fields = _readiness_fields(raw_facts.data if isinstance(raw_facts, ApiOk) else None)
    # A 200 facts body is never "nothing computed"; only the 404 above is.
    if contract_failure is not None or fields["events_count"] is None:
        fields["events_count"] = max(fields["events_count"] or 0, 1)

    readiness = resolve_readiness(
        ReadinessInput(
            network="ok",
            schema_valid=contract_failure is None,
            expected_pipeline_version=expected_pipeline_version,
            **fields,
        )
    )
    if not readiness.renderable:
        return DayTruth(date=date, readiness=readiness, failure=contract_failure)
    return DayTruth(
        date=date,
        readiness=readiness,
        facts=checked_facts.data if isinstance(checked_facts, ApiOk) else None,
        context=checked_context.data if isinstance(checked_context, ApiOk) else None,
    )
