"""Declarative data source definitions.

A ``DataSourceDef`` is a tagged union discriminated by ``kind``. Definitions
are validated once at load time; anything malformed is rejected with
``INVALID_CONFIG`` before it can reach the fetch path.
"""

from collections.abc import Iterator, Mapping
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    model_validator,
)

from src.datasources.constants import (
    DEFAULT_TIMEOUT_MS,
    MAX_CACHE_TTL_MS,
    MAX_RETRIES_LIMIT,
    MAX_TIMEOUT_MS,
    MIN_CACHE_TTL_MS,
    MIN_TIMEOUT_MS,
)
from src.datasources.errors import DataSourceError, DataSourceErrorCode
from src.datasources.template import validate_template_syntax


class DataSourceKind(str, Enum):
    """Kinds of data source."""

    HTTP_GET = "http.get"
    HTTP_POST = "http.post"
    COMPUTED = "computed"
    CHAIN = "chain"


class BackoffKind(str, Enum):
    """Backoff growth strategy between retries."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


class PrivacyClassification(str, Enum):
    """Data sensitivity classification."""

    PUBLIC = "PUBLIC"
    OPERATIONAL = "OPERATIONAL"
    PSEUDONYMIZED = "PSEUDONYMIZED"
    SENSITIVE = "SENSITIVE"


class RetryConfig(BaseModel):
    """Per-definition overrides of the environment retry policy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    retries: Annotated[int, Field(ge=0, le=MAX_RETRIES_LIMIT)] | None = None
    backoff: BackoffKind | None = None
    base_ms: Annotated[int, Field(ge=0, le=60_000)] | None = None
    max_ms: Annotated[int, Field(ge=0, le=300_000)] | None = None


class CacheConfig(BaseModel):
    """Cache policy of a definition.

    Attributes:
        ttl_ms: Entry lifetime; the environment default applies when unset.
        key: Optional key template, e.g. ``vin:{{fields.vin.value}}``.
        key_fields: Header/body keys that participate in the signature;
            all of them when unset.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    ttl_ms: Annotated[int, Field(ge=MIN_CACHE_TTL_MS, le=MAX_CACHE_TTL_MS)] | None = None
    key: str | None = None
    key_fields: list[str] | None = None


class PrivacyAnnotation(BaseModel):
    """Privacy annotation for a source or one of the fields it sends."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    classification: PrivacyClassification = PrivacyClassification.PUBLIC
    allow_in_ai: bool = False
    do_not_train: bool = False
    needs_consent: bool = False
    mask_in_logs: bool = False


class SourceDefBase(BaseModel):
    """Fields shared by every kind of definition."""

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    name: Annotated[str, Field(min_length=1, max_length=200)]
    flow_id: str | None = None
    cache: CacheConfig | Literal["none"] = Field(default_factory=CacheConfig)
    privacy: PrivacyAnnotation | None = None
    field_privacy: dict[str, PrivacyAnnotation] = Field(default_factory=dict)
    map_response: dict[str, str] = Field(default_factory=dict)

    @property
    def cache_enabled(self) -> bool:
        """Whether successful results are stored in the cache."""
        return self.cache != "none"

    @property
    def cache_config(self) -> CacheConfig:
        """Cache policy, empty when caching is disabled."""
        return self.cache if isinstance(self.cache, CacheConfig) else CacheConfig()

    def templates(self) -> Iterator[str]:
        """Yield every template string declared by the definition."""
        if isinstance(self.cache, CacheConfig) and self.cache.key:
            yield self.cache.key
        yield from self.map_response.values()

    @model_validator(mode="after")
    def validate_templates(self) -> "SourceDefBase":
        """Reject definitions containing malformed templates."""
        for template in self.templates():
            try:
                validate_template_syntax(template)
            except DataSourceError as e:
                raise ValueError(e.message) from e
        return self


class _HttpSourceDef(SourceDefBase):
    """Fields shared by HTTP definitions."""

    url: Annotated[str, Field(min_length=1)]
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_ms: Annotated[int, Field(ge=MIN_TIMEOUT_MS, le=MAX_TIMEOUT_MS)] = (
        DEFAULT_TIMEOUT_MS
    )
    retry: RetryConfig | None = None
    response_schema: Any = None

    method: ClassVar[str]

    @property
    def retry_safe(self) -> bool:
        """Whether the request may be repeated without side effects."""
        return True

    def templates(self) -> Iterator[str]:
        """Yield every template string declared by the definition."""
        yield from super().templates()
        yield self.url
        yield from self.headers.values()


def _iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, list | tuple):
        for item in value:
            yield from _iter_strings(item)


class HttpGetDef(_HttpSourceDef):
    """HTTP GET data source."""

    kind: Literal["http.get"] = "http.get"
    method: ClassVar[str] = "GET"


class HttpPostDef(_HttpSourceDef):
    """HTTP POST data source.

    POSTs are only retried when the server guarantees idempotency or a
    ``dedupe_key`` is sent as ``Idempotency-Key``.
    """

    kind: Literal["http.post"] = "http.post"
    body: dict[str, Any] = Field(default_factory=dict)
    idempotent: bool = False
    dedupe_key: str | None = None

    method: ClassVar[str] = "POST"

    @property
    def retry_safe(self) -> bool:
        """Whether the request may be repeated without side effects."""
        return self.idempotent or self.dedupe_key is not None

    def templates(self) -> Iterator[str]:
        """Yield every template string declared by the definition."""
        yield from super().templates()
        yield from _iter_strings(self.body)
        if self.dedupe_key:
            yield self.dedupe_key


class ComputedDef(SourceDefBase):
    """Source whose value is an expression over the context."""

    kind: Literal["computed"] = "computed"
    compute: Annotated[str, Field(min_length=1)]


class ChainDef(SourceDefBase):
    """Source that fetches other sources of the same flow in order."""

    kind: Literal["chain"] = "chain"
    steps: Annotated[list[str], Field(min_length=1)]

    @model_validator(mode="after")
    def validate_steps(self) -> "ChainDef":
        """Reject chains that reference themselves."""
        if self.name in self.steps:
            msg = f"Chain '{self.name}' cannot include itself as a step"
            raise ValueError(msg)
        return self


HttpSourceDef = HttpGetDef | HttpPostDef

DataSourceDef = Annotated[
    HttpGetDef | HttpPostDef | ComputedDef | ChainDef,
    Field(discriminator="kind"),
]

_DEF_ADAPTER: TypeAdapter[HttpGetDef | HttpPostDef | ComputedDef | ChainDef] = (
    TypeAdapter(DataSourceDef)
)


def load_data_source_def(
    raw: Mapping[str, Any] | BaseModel,
    *,
    name: str | None = None,
    flow_id: str | None = None,
) -> HttpGetDef | HttpPostDef | ComputedDef | ChainDef:
    """Validate a raw definition.

    Accepts the legacy ``type`` key as an alias of ``kind``.

    Args:
        raw: Mapping (e.g. parsed YAML/JSON) or an existing definition.
        name: Name to assign, overriding any name in ``raw``.
        flow_id: Flow the definition belongs to.

    Returns:
        The validated, immutable definition.

    Raises:
        DataSourceError: INVALID_CONFIG if the definition is malformed.
    """
    if isinstance(raw, BaseModel):
        data = raw.model_dump()
    else:
        data = dict(raw)
    if "kind" not in data and "type" in data:
        data["kind"] = data.pop("type")
    if name is not None:
        data["name"] = name
    if flow_id is not None:
        data["flow_id"] = flow_id

    try:
        return _DEF_ADAPTER.validate_python(data)
    except ValidationError as e:
        issues = [
            {
                "path": ".".join(str(p) for p in err["loc"]),
                "message": err["msg"],
                "type": err["type"],
            }
            for err in e.errors()
        ]
        raise DataSourceError(
            DataSourceErrorCode.INVALID_CONFIG,
            f"Invalid data source definition '{data.get('name', '?')}'",
            details={"issues": issues},
            source_id=data.get("name"),
        ) from e
