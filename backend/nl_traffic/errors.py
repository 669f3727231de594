from __future__ import annotations

from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "fetch_failed",
        "source_timeout",
        "payload_invalid",
        "reference_table_unavailable",
        "enrichment_failed",
        "source_unavailable",
    }
)


class TrafficSourceError(RuntimeError):
    """Top-level ingestion failure carrying a stable reason code."""

    reason_code = "source_unavailable"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return self.message

    def as_warning(self) -> str:
        return f"{normalize_reason_code(self.reason_code)}: {self.message}"


class FetchError(TrafficSourceError):
    """Upstream answered with a non-success status or the transport failed."""

    reason_code = "fetch_failed"


class SourceTimeoutError(TrafficSourceError):
    reason_code = "source_timeout"


class ParseError(TrafficSourceError):
    """Payload is malformed or its envelope/root is missing."""

    reason_code = "payload_invalid"


class ResolutionError(TrafficSourceError):
    """Location table or measurement-site metadata could not be acquired."""

    reason_code = "reference_table_unavailable"


class EnrichmentError(TrafficSourceError):
    reason_code = "enrichment_failed"


def normalize_reason_code(reason_code: str, *, default: str = "source_unavailable") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default


def warning_for(exc: BaseException) -> str:
    if isinstance(exc, TrafficSourceError):
        return exc.as_warning()
    msg = str(exc).strip() or repr(exc)
    return f"{normalize_reason_code('')}: {type(exc).__name__}: {msg}"
