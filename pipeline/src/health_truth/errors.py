"""Typed boundary errors.

Input rejections are values (MappingFailure, IngestResult, Failure records)
and never pass through here. These exceptions are for the call boundaries
where a caller must stop: resync configuration, provider transport, webhook
authentication, and immutable-record conflicts. Each carries a stable
``code`` and the HTTP status the server maps it to.
"""

from __future__ import annotations


class TruthPipelineError(Exception):
    status: int = 500

    def __init__(
        self,
        *,
        code: str,
        message: str,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        if status is not None:
            self.status = status

    def to_body(self) -> dict[str, object]:
        return {"ok": False, "error": self.code, "message": self.message}


class ResyncConfigError(TruthPipelineError):
    """Integration missing or unusable; terminal, nothing was written."""

    status = 400


class ProviderFetchError(TruthPipelineError):
    """Provider API failed; the resync aborted before any write."""

    status = 500


class WebhookError(TruthPipelineError):
    status = 400


class FailureConflictError(TruthPipelineError):
    """A Failure id was written twice with different content."""

    status = 500


class LedgerConflictError(TruthPipelineError):
    """A ledger run or snapshot id was written twice with different content."""

    status = 500
