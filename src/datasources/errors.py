"""Error taxonomy for the data source layer.

Every failure that leaves the manager is a ``DataSourceError`` carrying one of
the stable ``DataSourceErrorCode`` values. ``classify_error`` maps arbitrary
raised values (httpx errors, timeouts, pydantic errors, plain exceptions) onto
that taxonomy and decides whether the failure is worth retrying.
"""

import asyncio
import re
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from src.datasources.constants import (
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_SERVER_ERROR_MAX,
    HTTP_STATUS_SERVER_ERROR_MIN,
)
from src.datasources.user_messages import ERROR_MESSAGES


class DataSourceErrorCode(str, Enum):
    """Stable error codes consumed by UI and analytics.

    - TIMEOUT: Request timed out
    - ABORTED: Caller cancelled the request
    - NETWORK: Connection could not be established or was dropped
    - HTTP_4XX: Non-retryable client error
    - HTTP_5XX: Retryable server error
    - VALIDATION: Response payload did not match the declared shape
    - PRIVACY_BLOCKED: Request violates the declared privacy policy
    - SSRF_BLOCKED: URL is not allowed (private IP or allowlist miss)
    - HTTPS_REQUIRED: Absolute URL is not HTTPS
    - SOURCE_NOT_FOUND: Unknown source id
    - INVALID_CONFIG: Malformed definition or template
    - CB_OPEN: Circuit breaker is open for the source
    - UNKNOWN: Unclassified error
    """

    TIMEOUT = "TIMEOUT"
    ABORTED = "ABORTED"
    NETWORK = "NETWORK"
    HTTP_4XX = "HTTP_4XX"
    HTTP_5XX = "HTTP_5XX"
    VALIDATION = "VALIDATION"
    PRIVACY_BLOCKED = "PRIVACY_BLOCKED"
    SSRF_BLOCKED = "SSRF_BLOCKED"
    HTTPS_REQUIRED = "HTTPS_REQUIRED"
    SOURCE_NOT_FOUND = "SOURCE_NOT_FOUND"
    INVALID_CONFIG = "INVALID_CONFIG"
    CB_OPEN = "CB_OPEN"
    UNKNOWN = "UNKNOWN"


RETRYABLE_CODES = frozenset(
    {
        DataSourceErrorCode.TIMEOUT,
        DataSourceErrorCode.NETWORK,
        DataSourceErrorCode.HTTP_5XX,
    }
)

# Codes that count as evidence of service degradation for the circuit breaker
DEGRADATION_CODES = RETRYABLE_CODES

_HTTP_4XX_PATTERN = re.compile(r"HTTP 4\d\d")
_HTTP_5XX_PATTERN = re.compile(r"HTTP 5\d\d")


class DataSourceError(Exception):
    """The only error shape raised across the manager's public boundary.

    Provides structured error information for logging, events, and UI.
    """

    def __init__(
        self,
        code: DataSourceErrorCode,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        source_id: str | None = None,
    ) -> None:
        """Initialize the data source error.

        Args:
            code: Stable error code.
            message: Human-readable message (defaults to the code's message).
            details: Additional structured error details.
            source_id: Identifier of the source that failed.
        """
        self.code = code
        self.message = message or ERROR_MESSAGES[code.value]
        self.details = details or {}
        self.source_id = source_id
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """Whether the failure is transient and worth retrying."""
        return self.code in RETRYABLE_CODES

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "source_id": self.source_id,
            "details": self.details,
        }


class ClassifiedError(BaseModel):
    """Result of classifying a raised value into the taxonomy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    code: DataSourceErrorCode
    message: str
    retryable: bool


def _classified(code: DataSourceErrorCode) -> ClassifiedError:
    return ClassifiedError(
        code=code,
        message=ERROR_MESSAGES[code.value],
        retryable=code in RETRYABLE_CODES,
    )


def _status_code(status: int) -> DataSourceErrorCode | None:
    if HTTP_STATUS_SERVER_ERROR_MIN <= status < HTTP_STATUS_SERVER_ERROR_MAX:
        return DataSourceErrorCode.HTTP_5XX
    if HTTP_STATUS_BAD_REQUEST <= status < HTTP_STATUS_SERVER_ERROR_MIN:
        return DataSourceErrorCode.HTTP_4XX
    return None


def _classify_by_type(error: BaseException) -> DataSourceErrorCode | None:
    """Map well-known exception types onto error codes."""
    if isinstance(error, asyncio.CancelledError) or type(error).__name__ == "AbortError":
        return DataSourceErrorCode.ABORTED
    if isinstance(error, TimeoutError | httpx.TimeoutException):
        return DataSourceErrorCode.TIMEOUT
    if isinstance(error, httpx.HTTPStatusError):
        return _status_code(error.response.status_code)
    if isinstance(error, httpx.TransportError | ConnectionError):
        return DataSourceErrorCode.NETWORK
    if isinstance(error, ValidationError):
        return DataSourceErrorCode.VALIDATION
    return None


def _classify_by_message(message: str) -> DataSourceErrorCode | None:
    """Map message heuristics onto error codes."""
    lowered = message.lower()
    checks: list[tuple[bool, DataSourceErrorCode]] = [
        ("abort" in lowered, DataSourceErrorCode.ABORTED),
        ("timeout" in lowered or "timed out" in lowered, DataSourceErrorCode.TIMEOUT),
        (
            "circuit breaker is open" in lowered or "CB_OPEN" in message,
            DataSourceErrorCode.CB_OPEN,
        ),
        ("ssrf" in lowered or "not allowed" in lowered, DataSourceErrorCode.SSRF_BLOCKED),
        ("https required" in lowered, DataSourceErrorCode.HTTPS_REQUIRED),
        ("privacy" in lowered, DataSourceErrorCode.PRIVACY_BLOCKED),
        (bool(_HTTP_4XX_PATTERN.search(message)), DataSourceErrorCode.HTTP_4XX),
        (bool(_HTTP_5XX_PATTERN.search(message)), DataSourceErrorCode.HTTP_5XX),
        ("network" in lowered or "fetch" in lowered, DataSourceErrorCode.NETWORK),
    ]
    for matched, code in checks:
        if matched:
            return code
    return None


def classify_error(raw: object) -> ClassifiedError:
    """Classify a raised value into the stable taxonomy.

    ``DataSourceError`` instances are classified by their code. Other
    exceptions are classified by type first, then by message heuristics.
    Anything that is not an exception (including ``None`` and strings)
    classifies as UNKNOWN.

    Args:
        raw: The raised value.

    Returns:
        ClassifiedError with code, default message, and retryable flag.
    """
    if isinstance(raw, DataSourceError):
        return _classified(raw.code)

    if not isinstance(raw, BaseException):
        return _classified(DataSourceErrorCode.UNKNOWN)

    code = _classify_by_type(raw) or _classify_by_message(str(raw))
    return _classified(code or DataSourceErrorCode.UNKNOWN)


def to_data_source_error(
    raw: object,
    source_id: str | None = None,
) -> DataSourceError:
    """Normalize any raised value into a DataSourceError.

    Args:
        raw: The raised value.
        source_id: Source identifier to attach when creating a new error.

    Returns:
        The original error if already a DataSourceError, otherwise a new one
        chained to the original.
    """
    if isinstance(raw, DataSourceError):
        if raw.source_id is None:
            raw.source_id = source_id
        return raw

    classified = classify_error(raw)
    message = str(raw) if isinstance(raw, BaseException) and str(raw) else None
    error = DataSourceError(
        classified.code,
        message or classified.message,
        details={"error_type": type(raw).__name__},
        source_id=source_id,
    )
    if isinstance(raw, BaseException):
        error.__cause__ = raw
    return error
