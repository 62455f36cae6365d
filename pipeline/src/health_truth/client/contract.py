"""Schema parse at the client trust boundary.

Transport failures (network, http, parse) pass through untouched so callers
can still tell them apart. A response that arrived but does not match its
contract becomes a ``contract`` failure; nothing is ever cast.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

from pydantic import TypeAdapter, ValidationError

T = TypeVar("T")

FailureKind = Literal["network", "http", "parse", "contract"]
INVALID_RESPONSE_SHAPE = "Invalid response shape"


@dataclass(frozen=True)
class ApiOk(Generic[T]):
    data: T
    status: int = 200
    ok: Literal[True] = True


@dataclass(frozen=True)
class ApiFailure:
    kind: FailureKind
    error: str
    status: int | None = None
    json: Any = None
    ok: Literal[False] = False


ApiResult = ApiOk[T] | ApiFailure


def contract_issues(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {
            "path": [str(part) for part in error["loc"]],
            "message": error["msg"],
        }
        for error in exc.errors()
    ]


def validate_response(result: ApiOk[Any] | ApiFailure, schema: Any) -> ApiOk[Any] | ApiFailure:
    """Parse an ok result's body against ``schema``; failures pass through."""
    if isinstance(result, ApiFailure):
        return result
    try:
        parsed = TypeAdapter(schema).validate_python(result.data)
    except ValidationError as exc:
        return ApiFailure(
            kind="contract",
            error=INVALID_RESPONSE_SHAPE,
            status=result.status,
            json={"issues": contract_issues(exc)},
        )
    return ApiOk(parsed, status=result.status)
