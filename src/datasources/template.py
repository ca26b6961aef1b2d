"""Template resolution for data source definitions.

Resolves ``{{expr}}`` placeholders in URLs, headers, and bodies against a
read-only ``EvalContext``. Simple dotted paths (``ctx.user.id``,
``fields.vin.value``, ``data.make``) are looked up directly; any other
expression is delegated to the injected expression evaluator. Missing values
resolve to an empty string so forms can render partial data.
"""

import json
import re
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

import structlog

from src.datasources.constants import TEMPLATE_CLOSE, TEMPLATE_OPEN
from src.datasources.errors import DataSourceError, DataSourceErrorCode
from src.datasources.models import EvalContext


logger = structlog.get_logger()

_PATH_PATTERN = re.compile(r"^[A-Za-z_$][\w$]*(\.[\w$]+)*$")
_PLACEHOLDER_PATTERN = re.compile(r"\{\{[^}]+\}\}")

# Roots addressable by dotted paths; anything else is looked up under ctx
_CONTEXT_ROOTS = frozenset({"ctx", "fields", "flags", "data"})


class ExpressionEvaluator(Protocol):
    """Protocol for the external expression evaluator.

    Receives the raw expression string and the context, returns a value.
    """

    def __call__(self, expression: str, context: EvalContext) -> Any:
        """Evaluate an expression against the context."""
        ...


class _Missing:
    """Sentinel for unresolved paths."""


MISSING = _Missing()


def tokenize(template: str) -> list[tuple[str, bool]]:
    """Split a template into literal and expression segments.

    Args:
        template: Template string.

    Returns:
        List of ``(text, is_expression)`` tuples in order.

    Raises:
        DataSourceError: INVALID_CONFIG if braces are unbalanced or nested.
    """
    segments: list[tuple[str, bool]] = []
    pos = 0
    while pos < len(template):
        start = template.find(TEMPLATE_OPEN, pos)
        stray_close = template.find(TEMPLATE_CLOSE, pos)
        if start == -1:
            if stray_close != -1:
                raise _syntax_error(template, "unexpected '}}'")
            segments.append((template[pos:], False))
            break
        if stray_close != -1 and stray_close < start:
            raise _syntax_error(template, "unexpected '}}'")

        end = template.find(TEMPLATE_CLOSE, start + len(TEMPLATE_OPEN))
        if end == -1:
            raise _syntax_error(template, "unclosed '{{'")
        expression = template[start + len(TEMPLATE_OPEN) : end]
        if TEMPLATE_OPEN in expression:
            raise _syntax_error(template, "nested '{{'")
        if not expression.strip():
            raise _syntax_error(template, "empty placeholder")

        if start > pos:
            segments.append((template[pos:start], False))
        segments.append((expression.strip(), True))
        pos = end + len(TEMPLATE_CLOSE)
    return segments


def _syntax_error(template: str, reason: str) -> DataSourceError:
    return DataSourceError(
        DataSourceErrorCode.INVALID_CONFIG,
        f"Malformed template ({reason}): {template}",
        details={"template": template, "reason": reason},
    )


def validate_template_syntax(template: str) -> None:
    """Check a template for balanced placeholders.

    Raises:
        DataSourceError: INVALID_CONFIG on malformed syntax.
    """
    tokenize(template)


def has_unresolved_placeholders(value: str) -> bool:
    """Check if a string still contains ``{{...}}`` placeholders."""
    return bool(_PLACEHOLDER_PATTERN.search(value))


def is_simple_path(expression: str) -> bool:
    """Check if an expression is a dotted path resolvable by direct lookup."""
    return bool(_PATH_PATTERN.match(expression))


def _lookup(current: Any, part: str) -> Any:
    """Read one path segment without invoking arbitrary code paths."""
    if current is None or part.startswith("_"):
        return MISSING
    if isinstance(current, Mapping):
        return current.get(part, MISSING)
    if isinstance(current, Sequence) and not isinstance(current, str | bytes):
        if part.isdigit() and int(part) < len(current):
            return current[int(part)]
        return MISSING
    return getattr(current, part, MISSING)


def resolve_path(path: str, context: EvalContext, data: Any = None) -> Any:
    """Resolve a dotted path against the context.

    Examples:
        - ``ctx.vehicle.vin`` -> ``context.ctx["vehicle"]["vin"]``
        - ``fields.vin.value`` -> ``context.fields["vin"]["value"]``
        - ``flags.high_mileage`` -> ``context.flags["high_mileage"]``
        - ``data.make`` -> ``data["make"]``
        - ``vehicle.vin`` -> ``context.ctx["vehicle"]["vin"]``

    Returns:
        The value, or ``MISSING`` if any segment is absent.
    """
    parts = path.split(".")
    root = parts[0]

    current: Any
    if root == "ctx":
        current = context.ctx
    elif root == "fields":
        current = context.fields
    elif root == "flags":
        current = context.flags
    elif root == "data":
        current = data if data is not None else (context.data or {})
    else:
        current = context.ctx
    if root in _CONTEXT_ROOTS:
        parts = parts[1:]

    for part in parts:
        current = _lookup(current, part)
        if current is MISSING:
            return MISSING
    return current


def evaluate(
    expression: str,
    context: EvalContext,
    data: Any = None,
    evaluator: ExpressionEvaluator | None = None,
) -> Any:
    """Evaluate one placeholder expression.

    Returns:
        The resolved value, or ``MISSING`` when it cannot be resolved.
    """
    if is_simple_path(expression):
        return resolve_path(expression, context, data)

    if evaluator is None:
        logger.warning(
            "template_expression_unsupported",
            component="template",
            expression=expression,
        )
        return MISSING

    scoped = context if data is None else context.model_copy(update={"data": data})
    try:
        return evaluator(expression, scoped)
    except Exception as e:  # noqa: BLE001
        logger.warning(
            "template_expression_failed",
            component="template",
            expression=expression,
            error=str(e),
        )
        return MISSING


def stringify(value: Any) -> str:
    """Render a resolved value for interpolation into a string."""
    if value is MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Mapping | list | tuple):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def resolve_template(
    template: str,
    context: EvalContext,
    data: Any = None,
    evaluator: ExpressionEvaluator | None = None,
) -> str:
    """Resolve all placeholders in a template string.

    Args:
        template: Template such as ``/api/vin/{{fields.vin.value}}``.
        context: Read-only evaluation context.
        data: Optional response data exposed as the ``data`` root.
        evaluator: Expression evaluator for non-path expressions.

    Returns:
        The interpolated string; unresolved placeholders become ``""``.

    Raises:
        DataSourceError: INVALID_CONFIG on malformed template syntax.
    """
    parts: list[str] = []
    for text, is_expression in tokenize(template):
        if not is_expression:
            parts.append(text)
            continue
        value = evaluate(text, context, data, evaluator)
        if value is MISSING:
            logger.debug("template_path_missing", component="template", path=text)
        parts.append(stringify(value))
    return "".join(parts)


def resolve_value(
    value: Any,
    context: EvalContext,
    data: Any = None,
    evaluator: ExpressionEvaluator | None = None,
) -> Any:
    """Resolve a template value, keeping native types for whole placeholders.

    A string that is exactly one placeholder (``"{{data.year}}"``) resolves to
    the underlying value; other strings are interpolated; mappings and lists
    are resolved recursively; everything else is returned unchanged.
    """
    if isinstance(value, str):
        segments = tokenize(value)
        if len(segments) == 1 and segments[0][1]:
            resolved = evaluate(segments[0][0], context, data, evaluator)
            return None if resolved is MISSING else resolved
        return resolve_template(value, context, data, evaluator)
    if isinstance(value, Mapping):
        return {
            key: resolve_value(item, context, data, evaluator)
            for key, item in value.items()
        }
    if isinstance(value, list | tuple):
        return [resolve_value(item, context, data, evaluator) for item in value]
    return value


def resolve_template_object(
    obj: Mapping[str, Any],
    context: EvalContext,
    data: Any = None,
    evaluator: ExpressionEvaluator | None = None,
) -> dict[str, Any]:
    """Resolve every template value in a headers/body mapping.

    Returns:
        A new dictionary; the input is not modified.
    """
    return {
        key: resolve_value(value, context, data, evaluator)
        for key, value in obj.items()
    }


def deep_assign(target: dict[str, Any], path: str, value: Any) -> None:
    """Assign a value at a dotted path, creating intermediate dictionaries."""
    parts = path.split(".")
    current = target
    for part in parts[:-1]:
        existing = current.get(part)
        if not isinstance(existing, dict):
            existing = {}
            current[part] = existing
        current = existing
    current[parts[-1]] = value


def apply_map_response(
    mapping: Mapping[str, str],
    context: EvalContext,
    data: Any,
    evaluator: ExpressionEvaluator | None = None,
) -> dict[str, Any]:
    """Transform a response into the shape a form expects.

    Example:
        mapping = {"vehicle.make": "{{data.make}}"}
        data = {"make": "Toyota"}
        -> {"vehicle": {"make": "Toyota"}}

    Args:
        mapping: Target path -> template over ``data``.
        context: Read-only evaluation context.
        data: Response payload (never mutated).
        evaluator: Expression evaluator for non-path expressions.

    Returns:
        A newly built nested dictionary of mapped values.
    """
    result: dict[str, Any] = {}
    for target_path, template in mapping.items():
        deep_assign(result, target_path, resolve_value(template, context, data, evaluator))
    return result
