"""Failure records: immutable audit trail for rejected or dropped writes."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel

from .contract_types import NonEmptyStr

FAILURE_SCHEMA_VERSION = 1

FailureCode = Literal["RAW_EVENT_INVALID", "DUPLICATE_EVENT", "MAPPING_REJECTED"]
FailureType = Literal["ingestion", "mapping"]


class Failure(BaseModel):
    id: NonEmptyStr
    user_id: NonEmptyStr
    type: FailureType
    code: FailureCode
    message: str
    subject_id: str | None = None
    details: dict[str, Any]
    created_at: str
    schema_version: Literal[1] = FAILURE_SCHEMA_VERSION

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def identity_view(self) -> dict[str, Any]:
        """Content compared when the same failure id is written twice."""
        doc = self.to_document()
        doc.pop("created_at", None)
        return doc


class FailureList(BaseModel):
    user_id: NonEmptyStr
    items: list[Failure]
