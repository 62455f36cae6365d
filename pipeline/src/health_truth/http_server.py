"""FastAPI app for the pipeline's external interfaces.

Intake (raw events, Oura webhooks, provider resync) and the per-day read
APIs. Every error body is ``{"ok": false, "error": code, "message"?}``:
TruthPipelineError maps to its own status, request validation to 400, and
anything unexpected to 500 internal_error.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import httpx
import psycopg
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import store
from .config import Config
from .contract_types import NonEmptyStr, is_day_key
from .errors import TruthPipelineError
from .failure_contract import FailureList
from .ingestion import ingest_raw_event
from .insight_contract import DayInsights
from .metrics import get_metrics
from .providers.common import REQUEST_TIMEOUT_SECONDS
from .resync import resync
from .webhooks import SIGNATURE_HEADER, handle_oura_webhook

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1024 * 1024

ConnectFn = Callable[[], AbstractAsyncContextManager[psycopg.AsyncConnection[Any]]]
HttpClientFactory = Callable[[], httpx.AsyncClient]

_HTTP_ERROR_CODES = {
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
}

router = APIRouter()


class ResyncRequest(BaseModel):
    uid: NonEmptyStr
    provider: NonEmptyStr


def _error(status_code: int, code: str, message: str | None = None) -> JSONResponse:
    body: dict[str, Any] = {"ok": False, "error": code}
    if message:
        body["message"] = message
    return JSONResponse(body, status_code=status_code)


async def _check_db(db_url: str) -> str:
    """Try SELECT 1 with a 2s timeout. Returns 'ok' or 'error'."""
    try:
        async with asyncio.timeout(2):
            async with await psycopg.AsyncConnection.connect(
                db_url, autocommit=True
            ) as conn:
                await conn.execute("SELECT 1")
        return "ok"
    except (OSError, TimeoutError, psycopg.Error):
        return "error"


def _database_connector(database_url: str) -> ConnectFn:
    @asynccontextmanager
    async def connect() -> AsyncIterator[psycopg.AsyncConnection[Any]]:
        async with await psycopg.AsyncConnection.connect(
            database_url, autocommit=True
        ) as conn:
            yield conn

    return connect


async def get_conn(request: Request) -> AsyncIterator[psycopg.AsyncConnection[Any]]:
    async with request.app.state.connect() as conn:
        yield conn


def _day_or_400(date: str) -> JSONResponse | None:
    return None if is_day_key(date) else _error(400, "invalid_date")


# --- service -----------------------------------------------------------------


@router.get("/health")
async def get_health(request: Request) -> JSONResponse:
    db_status = await _check_db(request.app.state.config.database_url)
    metrics = get_metrics()
    health = "ok" if db_status == "ok" else "degraded"
    return JSONResponse(
        {
            "status": health,
            "uptime_seconds": metrics["uptime_seconds"],
            "db": db_status,
            "metrics": metrics,
        },
        status_code=200 if health == "ok" else 503,
    )


@router.post("/jobs/resync")
async def post_resync(
    body: ResyncRequest,
    request: Request,
    conn: psycopg.AsyncConnection[Any] = Depends(get_conn),
) -> JSONResponse:
    config: Config = request.app.state.config
    async with request.app.state.http_client_factory() as client:
        result = await resync(
            conn,
            body.uid,
            body.provider,
            http_client=client,
            days=config.resync_days,
            chunk_size=config.resync_chunk_size,
            oura_base_url=config.oura_api_base_url,
            withings_base_url=config.withings_api_base_url,
            max_retries=config.max_retries,
        )
    return JSONResponse(result.to_body())


# --- intake ------------------------------------------------------------------


@router.post("/webhooks/oura")
async def post_oura_webhook(
    request: Request,
    uid: str | None = Query(None),
    signature: str | None = Header(None, alias=SIGNATURE_HEADER),
    conn: psycopg.AsyncConnection[Any] = Depends(get_conn),
) -> JSONResponse:
    # The HMAC covers the exact bytes sent, so the body is read raw.
    raw_body = await request.body()
    config: Config = request.app.state.config
    result = await handle_oura_webhook(
        conn,
        raw_body=raw_body,
        signature=signature,
        uid=uid,
        secret=config.oura_webhook_secret,
        max_retries=config.max_retries,
    )
    return JSONResponse(result)


@router.post("/users/{uid}/raw-events")
async def post_raw_event(
    uid: str,
    request: Request,
    idempotency_key: str | None = Header(None),
    conn: psycopg.AsyncConnection[Any] = Depends(get_conn),
) -> JSONResponse:
    raw_body = await request.body()
    if len(raw_body) > MAX_BODY_BYTES:
        return _error(413, "body_too_large")
    try:
        envelope = json.loads(raw_body or b"null")
    except (UnicodeDecodeError, json.JSONDecodeError):
        return _error(400, "invalid_json")
    if not isinstance(envelope, dict):
        return _error(400, "invalid_json")

    result = await ingest_raw_event(
        conn,
        uid,
        envelope,
        idempotency_key=idempotency_key,
        max_retries=request.app.state.config.max_retries,
    )

    if result.outcome == "rejected":
        body: dict[str, Any] = {
            "ok": False,
            "error": result.rejection,
            "raw_event_id": result.raw_event_id,
        }
        if result.failure is not None:
            body["failure_id"] = result.failure.id
        return JSONResponse(body, status_code=422)

    body = {
        "ok": True,
        "outcome": result.outcome,
        "raw_event_id": result.raw_event_id,
    }
    if result.canonical_day is not None:
        body["day"] = result.canonical_day
    return JSONResponse(body, status_code=201 if result.outcome == "created" else 200)


# --- reads -------------------------------------------------------------------


@router.get("/users/{uid}/failures")
async def get_failures(
    uid: str, conn: psycopg.AsyncConnection[Any] = Depends(get_conn)
) -> JSONResponse:
    failures = await store.list_failures(conn, uid)
    return JSONResponse(FailureList(user_id=uid, items=failures).model_dump(mode="json"))


@router.get("/users/{uid}/daily-facts/{date}")
async def get_daily_facts(
    uid: str, date: str, conn: psycopg.AsyncConnection[Any] = Depends(get_conn)
) -> JSONResponse:
    if (invalid := _day_or_400(date)) is not None:
        return invalid
    facts = await store.load_daily_facts(conn, uid, date)
    if facts is None:
        return _error(404, "not_found")
    return JSONResponse(facts.to_document())


@router.get("/users/{uid}/insights/{date}")
async def get_insights(
    uid: str, date: str, conn: psycopg.AsyncConnection[Any] = Depends(get_conn)
) -> JSONResponse:
    """Always 200; a day without insights is an empty list."""
    if (invalid := _day_or_400(date)) is not None:
        return invalid
    insights = await store.load_insights(conn, uid, date)
    return JSONResponse(
        DayInsights(user_id=uid, date=date, items=insights).model_dump(
            mode="json", exclude_none=True
        )
    )


@router.get("/users/{uid}/intelligence-context/{date}")
async def get_intelligence_context(
    uid: str, date: str, conn: psycopg.AsyncConnection[Any] = Depends(get_conn)
) -> JSONResponse:
    if (invalid := _day_or_400(date)) is not None:
        return invalid
    context = await store.load_intelligence_context(conn, uid, date)
    if context is None:
        return _error(404, "not_found")
    return JSONResponse(context.to_document())


@router.get("/users/{uid}/derived-ledger/{date}")
async def get_derived_ledger(
    uid: str, date: str, conn: psycopg.AsyncConnection[Any] = Depends(get_conn)
) -> JSONResponse:
    if (invalid := _day_or_400(date)) is not None:
        return invalid
    ledger = await store.load_day_ledger(conn, uid, date)
    if ledger is None:
        return _error(404, "not_found")
    return JSONResponse(ledger.model_dump(mode="json", exclude_none=True))


# --- error mapping -----------------------------------------------------------


async def _pipeline_error(request: Request, exc: TruthPipelineError) -> JSONResponse:
    if exc.status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.code)
    return JSONResponse(exc.to_body(), status_code=exc.status)


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()} - {""})
    return _error(400, "invalid_body", f"Invalid fields: {', '.join(fields)}" if fields else None)


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, _HTTP_ERROR_CODES.get(exc.status_code, "http_error"))


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error for %s %s", request.method, request.url.path)
    return _error(500, "internal_error")


def create_app(
    config: Config,
    *,
    connect: ConnectFn | None = None,
    http_client_factory: HttpClientFactory | None = None,
) -> FastAPI:
    app = FastAPI(title="Health Truth Pipeline", docs_url=None, redoc_url=None)
    app.state.config = config
    app.state.connect = connect or _database_connector(config.database_url)
    app.state.http_client_factory = http_client_factory or (
        lambda: httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS)
    )

    app.include_router(router)
    app.add_exception_handler(TruthPipelineError, _pipeline_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(Exception, _unhandled_error)
    return app
