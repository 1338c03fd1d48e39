"""
Typed failures for the ingestion/finalize pipeline.

Every error carries a machine-readable ``kind`` and a human-readable
``detail``; the HTTP layer renders them as ``{"ok": false, "error": {...}}``
with ``status_code``.
"""

from typing import Any, Dict


class PipelineError(Exception):
    kind = "Internal"
    status_code = 500

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.kind

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "detail": self.detail}


class InvalidRequest(PipelineError):
    kind = "InvalidRequest"
    status_code = 400


class NotFound(PipelineError):
    kind = "NotFound"
    status_code = 404


class PayloadTooLarge(PipelineError):
    kind = "PayloadTooLarge"
    status_code = 413


class Conflict(PipelineError):
    kind = "Conflict"
    status_code = 409


class IncompleteSession(PipelineError):
    kind = "IncompleteSession"
    status_code = 422

    def __init__(self, detail: str = "", missing=None):
        super().__init__(detail)
        self.missing = list(missing or [])


class NoChunks(PipelineError):
    kind = "NoChunks"
    status_code = 422


class ExternalToolFailure(PipelineError):
    kind = "ExternalToolFailure"
    status_code = 502


class Timeout(PipelineError):
    kind = "Timeout"
    status_code = 504


class TranscriptionFailed(PipelineError):
    kind = "TranscriptionFailed"
    status_code = 502


class StorageFailure(PipelineError):
    kind = "StorageFailure"
    status_code = 500


# Extraction never fails a request; degradations are only logged under this kind.
EXTRACTION_DEGRADED = "ExtractionDegraded"
