"""Response validation against declared schemas.

Prevents "bad shape breaks UI" failures: a payload that does not match the
definition's schema is treated as a hard failure, never passed through.
"""

from functools import lru_cache
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from src.datasources.errors import DataSourceError, DataSourceErrorCode


logger = structlog.get_logger()

REDACTED_PREVIEW_DEPTH = 2


@lru_cache(maxsize=256)
def _adapter_for(schema: Any) -> TypeAdapter[Any]:
    return TypeAdapter(schema)


def _as_adapter(schema: Any) -> TypeAdapter[Any]:
    if isinstance(schema, TypeAdapter):
        return schema
    try:
        return _adapter_for(schema)
    except TypeError:
        # Unhashable schema objects (e.g. parametrized annotations)
        return TypeAdapter(schema)


def _issues(error: ValidationError) -> list[dict[str, str]]:
    return [
        {
            "path": ".".join(str(p) for p in err["loc"]),
            "message": err["msg"],
            "code": err["type"],
        }
        for err in error.errors()
    ]


def validate_response(data: Any, schema: Any, source_id: str | None = None) -> Any:
    """Validate a payload against a schema.

    Args:
        data: Decoded response payload.
        schema: Pydantic model, any type accepted by ``TypeAdapter``, or a
            ``TypeAdapter`` instance.
        source_id: Source identifier for error reporting.

    Returns:
        The validated (and possibly coerced) data.

    Raises:
        DataSourceError: VALIDATION if the payload does not match.
    """
    try:
        return _as_adapter(schema).validate_python(data)
    except ValidationError as e:
        issues = _issues(e)
        logger.warning(
            "response_validation_failed",
            component="response_validator",
            source_id=source_id,
            issues=issues,
            received=get_redacted_preview(data),
        )
        raise DataSourceError(
            DataSourceErrorCode.VALIDATION,
            f"Response validation failed for {source_id or 'source'}",
            details={"issues": issues},
            source_id=source_id,
        ) from e


def is_valid_response(data: Any, schema: Any) -> bool:
    """Check if a payload matches a schema without raising."""
    try:
        _as_adapter(schema).validate_python(data)
    except ValidationError:
        return False
    return True


def get_validation_errors(data: Any, schema: Any) -> list[dict[str, str]] | None:
    """Get validation issues without raising.

    Returns:
        None when valid, otherwise a list of ``{path, message, code}``.
    """
    try:
        _as_adapter(schema).validate_python(data)
    except ValidationError as e:
        return _issues(e)
    return None


def get_redacted_preview(
    data: Any,
    depth: int = REDACTED_PREVIEW_DEPTH,
    current_depth: int = 0,
) -> Any:
    """Build a structure-revealing, value-masking preview for logs.

    Strings are masked (last four characters and length kept), numbers and
    booleans are shown, lists show only their first item, and nesting beyond
    ``depth`` collapses to ``"..."``.
    """
    if current_depth >= depth:
        return "..."
    if data is None or isinstance(data, bool | int | float):
        return data
    if isinstance(data, str):
        if len(data) <= 4:
            return "***"
        return f"***{data[-4:]} ({len(data)} chars)"
    if isinstance(data, list | tuple):
        if not data:
            return []
        return [
            get_redacted_preview(data[0], depth, current_depth + 1),
            f"... {len(data) - 1} more",
        ]
    if isinstance(data, dict):
        return {
            key: get_redacted_preview(value, depth, current_depth + 1)
            for key, value in data.items()
        }
    return type(data).__name__
