"""Privacy enforcement for data source requests.

Runs before any URL is resolved or request is issued:
- Blocks SENSITIVE data marked ``allow_in_ai`` without recorded consent
- Strips headers that are not explicitly allowlisted
- Produces masked copies of payloads for diagnostic logs
"""

import copy
import json
from collections.abc import Iterable, Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.datasources.constants import DEFAULT_MAX_PAYLOAD_KB
from src.datasources.definitions import (
    PrivacyAnnotation,
    PrivacyClassification,
    SourceDefBase,
)
from src.datasources.models import EvalContext
from src.datasources.redact import REDACTED_VALUE, SENSITIVE_HEADERS


logger = structlog.get_logger()

DEFAULT_ALLOWED_HEADERS = frozenset(
    {
        "accept",
        "content-type",
        "user-agent",
        "idempotency-key",
        "x-trace-id",
        "x-request-id",
        "x-tenant",
        "x-flow-id",
        "x-api-version",
        "x-*",
    }
)

DEFAULT_SENSITIVE_KEYS = frozenset(
    {
        "password",
        "secret",
        "token",
        "access_token",
        "refresh_token",
        "api_key",
        "apikey",
        "ssn",
        "authorization",
        "cookie",
    }
)


class PrivacyPolicy(BaseModel):
    """Runtime privacy policy.

    Attributes:
        strict_mode: Require every definition to declare a privacy block.
        consent_key: Key under ``EvalContext.ctx`` holding consent records.
        allowed_headers: Header allowlist; ``prefix*`` entries match prefixes.
        max_payload_kb: Maximum size of a serialized request body.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    strict_mode: bool = False
    consent_key: str = "consent"
    allowed_headers: frozenset[str] = DEFAULT_ALLOWED_HEADERS
    max_payload_kb: int = Field(default=DEFAULT_MAX_PAYLOAD_KB, ge=1)


class PrivacyViolation(BaseModel):
    """A single privacy rule violation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    field: str
    reason: str
    classification: str
    suggestion: str


class PayloadSize(BaseModel):
    """Result of a payload size check."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    ok: bool
    size_kb: float


def has_consent(context: EvalContext, name: str, policy: PrivacyPolicy) -> bool:
    """Check if the user recorded consent for a source or field.

    Consent records live under ``ctx[consent_key]`` as either a mapping of
    name -> bool or a collection of consented names.
    """
    records = context.ctx.get(policy.consent_key)
    if isinstance(records, Mapping):
        return bool(records.get(name))
    if isinstance(records, list | tuple | set | frozenset):
        return name in records
    return False


def _check_annotation(
    name: str,
    annotation: PrivacyAnnotation,
    context: EvalContext,
    policy: PrivacyPolicy,
) -> PrivacyViolation | None:
    if has_consent(context, name, policy):
        return None

    if (
        annotation.classification == PrivacyClassification.SENSITIVE
        and annotation.allow_in_ai
    ):
        return PrivacyViolation(
            field=name,
            reason="SENSITIVE data with allow_in_ai requires recorded user consent",
            classification=annotation.classification.value,
            suggestion="Record user consent or set allow_in_ai: false",
        )

    if annotation.needs_consent:
        return PrivacyViolation(
            field=name,
            reason="Source requires user consent but none was recorded",
            classification=annotation.classification.value,
            suggestion="Collect consent before fetching this source",
        )
    return None


def check_privacy_violations(
    definition: SourceDefBase,
    context: EvalContext,
    policy: PrivacyPolicy | None = None,
) -> list[PrivacyViolation]:
    """Check a definition's privacy annotations against the context.

    Args:
        definition: Data source definition.
        context: Read-only evaluation context (consent records).
        policy: Privacy policy; defaults to non-strict.

    Returns:
        List of violations, empty when the request may proceed.
    """
    policy = policy or PrivacyPolicy()
    violations: list[PrivacyViolation] = []

    if policy.strict_mode and definition.privacy is None:
        violations.append(
            PrivacyViolation(
                field=definition.name,
                reason="Missing privacy configuration",
                classification="UNKNOWN",
                suggestion="Add a privacy block with classification and allow_in_ai",
            )
        )

    annotations: list[tuple[str, PrivacyAnnotation]] = []
    if definition.privacy is not None:
        annotations.append((definition.name, definition.privacy))
    annotations.extend(definition.field_privacy.items())

    for name, annotation in annotations:
        violation = _check_annotation(name, annotation, context, policy)
        if violation is not None:
            violations.append(violation)

    return violations


def _header_allowed(lower_key: str, allowlist: Iterable[str]) -> bool:
    for entry in allowlist:
        entry = entry.lower()
        if entry == lower_key:
            return True
        if (
            entry.endswith("*")
            and lower_key.startswith(entry[:-1])
            and lower_key not in SENSITIVE_HEADERS
        ):
            return True
    return False


def allowlist_headers(
    headers: Mapping[str, str],
    allowlist: Iterable[str] = DEFAULT_ALLOWED_HEADERS,
) -> dict[str, str]:
    """Strip every header that is not explicitly permitted.

    Wildcard entries (``x-*``) never admit sensitive headers such as
    ``X-Api-Key``; those must be named exactly.

    Args:
        headers: Resolved request headers.
        allowlist: Permitted header names (case-insensitive).

    Returns:
        New dictionary containing only permitted headers.
    """
    allowed = frozenset(allowlist)
    filtered: dict[str, str] = {}
    for key, value in headers.items():
        if _header_allowed(key.lower(), allowed):
            filtered[key] = value
        else:
            logger.debug("header_blocked", component="privacy", header=key)
    return filtered


def sensitive_keys_for(definition: SourceDefBase) -> frozenset[str]:
    """Collect payload keys that must be masked for a definition.

    Includes the default sensitive keys plus the last segment of every
    field annotated SENSITIVE or ``mask_in_logs``.
    """
    keys = set(DEFAULT_SENSITIVE_KEYS)
    for path, annotation in definition.field_privacy.items():
        if (
            annotation.mask_in_logs
            or annotation.classification == PrivacyClassification.SENSITIVE
        ):
            keys.add(path.split(".")[-1].lower())
    return frozenset(keys)


def mask_value(value: str, visible: int = 4) -> str:
    """Mask a string, keeping only the last few characters."""
    if len(value) <= visible:
        return "***"
    return "*" * (len(value) - visible) + value[-visible:]


def mask_for_logs(
    payload: Any,
    sensitive_keys: Iterable[str] = DEFAULT_SENSITIVE_KEYS,
) -> Any:
    """Return a deep copy with sensitive fields replaced by [REDACTED].

    For diagnostic output only; never send the result as a request.

    Args:
        payload: Arbitrary JSON-like payload.
        sensitive_keys: Keys (case-insensitive) whose values are redacted.

    Returns:
        Masked deep copy of the payload.
    """
    keys = frozenset(k.lower() for k in sensitive_keys)

    def _mask(value: Any) -> Any:
        if isinstance(value, Mapping):
            return {
                k: REDACTED_VALUE if str(k).lower() in keys else _mask(v)
                for k, v in value.items()
            }
        if isinstance(value, list | tuple):
            return [_mask(item) for item in value]
        return copy.deepcopy(value)

    return _mask(payload)


def check_payload_size(
    data: Any,
    max_size_kb: int = DEFAULT_MAX_PAYLOAD_KB,
) -> PayloadSize:
    """Check the serialized size of a request payload."""
    size_kb = len(json.dumps(data, default=str).encode("utf-8")) / 1024
    return PayloadSize(ok=size_kb <= max_size_kb, size_kb=size_kb)
