from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

QueryProtocol = Literal["sql", "jql", "rest"]
HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
AuthType = Literal["none", "basic", "bearer", "api_key"]
RateLimitScope = Literal["instance", "widget", "none"]
WidgetScope = Literal["global", "entity"]
TransformFilterOp = Literal[
    "eq",
    "neq",
    "gt",
    "lt",
    "gte",
    "lte",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "in",
    "not_in",
    "is_null",
    "not_null",
]
TransformMetricFn = Literal["count", "count_distinct", "sum", "avg", "min", "max", "median", "concat"]
SortDirection = Literal["asc", "desc"]

ExecutionContext = dict[str, Any]


class StaticParameter(BaseModel):
    name: str
    source: Literal["static"] = "static"
    value: Any


class ContextParameter(BaseModel):
    name: str
    source: Literal["context"] = "context"
    context_var: str


class DatabaseParameter(BaseModel):
    name: str
    source: Literal["database"] = "database"
    table: str
    column: str
    key_column: str = "id"
    entity_key: str = "entityId"


ParameterDeclaration = Annotated[
    StaticParameter | ContextParameter | DatabaseParameter,
    Field(discriminator="source"),
]


class PluginDescriptor(BaseModel):
    plugin_name: str
    instance_id: str
    protocol: QueryProtocol


class TransformFilter(BaseModel):
    field: str
    op: TransformFilterOp
    value: Any | None = None


class TransformMetric(BaseModel):
    field: str | None = None
    fn: TransformMetricFn
    alias: str | None = None
    separator: str = ", "

    @property
    def output_name(self) -> str:
        return self.alias or f"{self.fn}_{self.field or 'all'}"


class TransformSort(BaseModel):
    field: str
    direction: SortDirection = "asc"


class ResultTransform(BaseModel):
    root: str | None = None
    select: dict[str, str] = Field(default_factory=dict)
    filters: list[TransformFilter] = Field(default_factory=list)
    group_by: list[str] = Field(default_factory=list)
    metrics: list[TransformMetric] = Field(default_factory=list)
    sort: list[TransformSort] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=1)


class WidgetDefinition(BaseModel):
    id: str
    name: str = ""
    template: str
    parameters: list[ParameterDeclaration] = Field(default_factory=list)
    plugin: PluginDescriptor
    display_config: dict[str, Any] = Field(default_factory=dict)
    refresh_interval_seconds: int = Field(default=300, ge=0)
    filters: list[dict[str, Any]] = Field(default_factory=list)
    scope: WidgetScope = "global"
    rate_limit_scope: RateLimitScope = "instance"
    cache_enabled: bool = False
    timeout_seconds: float | None = Field(default=None, gt=0)
    transform: ResultTransform | None = None

    @field_validator("parameters")
    @classmethod
    def _unique_parameter_names(cls, value: list[Any]) -> list[Any]:
        seen: set[str] = set()
        for item in value:
            if item.name in seen:
                raise ValueError(f"Duplicate parameter declaration '{item.name}'")
            seen.add(item.name)
        return value


class SqlQuery(BaseModel):
    sql: str
    params: list[Any] = Field(default_factory=list)


class TicketQuery(BaseModel):
    jql: str
    method: HttpMethod = "POST"
    endpoint: str = "/rest/api/2/search"
    max_results: int = Field(default=100, ge=0)
    issue_fields: list[str] = Field(default_factory=lambda: ["key", "summary", "status", "assignee", "priority", "created", "updated"])
    start_at: int = Field(default=0, ge=0)


class RestQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    method: HttpMethod = "GET"
    endpoint: str
    query_params: dict[str, Any] = Field(default_factory=dict, alias="queryParams")
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any | None = None
    verify_ssl: bool | None = Field(default=None, alias="verifySsl")

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


QueryPayload = SqlQuery | TicketQuery | RestQuery


class AuthConfig(BaseModel):
    type: AuthType = "none"
    username: str | None = None
    password: str | None = None
    token: str | None = None
    key: str | None = None
    header: str | None = None
    extra_headers: dict[str, str] = Field(default_factory=dict)


class PluginInstanceConfig(BaseModel):
    plugin_name: str
    instance_id: str
    name: str = ""
    base_url: str
    auth: AuthConfig = Field(default_factory=AuthConfig)
    is_active: bool = True
    verify_ssl: bool = True
    timeout_seconds: float | None = Field(default=None, gt=0)
    tags: list[str] = Field(default_factory=list)


class ResultMetadata(BaseModel):
    execution_time_ms: int = 0
    status_code: int | None = None
    response_size_bytes: int = 0
    record_count: int = 0
    widget_id: str | None = None
    plugin_name: str | None = None
    instance_id: str | None = None
    cache_hit: bool = False
    executed_at: datetime | None = None


class EnvelopeError(BaseModel):
    code: str
    message: str
    retryable: bool = False
    stage: str | None = None
    parameter: str | None = None
    status_code: int | None = None
    retry_after_ms: int | None = None
    error_id: str | None = None


class ResultEnvelope(BaseModel):
    success: bool
    data: Any | None = None
    error: EnvelopeError | None = None
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)

    @model_validator(mode="after")
    def _check_outcome(self) -> "ResultEnvelope":
        if self.success and self.error is not None:
            raise ValueError("Successful envelope cannot carry an error")
        if not self.success and (self.error is None or self.data is not None):
            raise ValueError("Failed envelope requires an error and no data")
        return self


class ExecuteWidgetRequest(BaseModel):
    context: ExecutionContext = Field(default_factory=dict)
    force_refresh: bool = False
    timeout_seconds: float | None = Field(default=None, gt=0)


class PreviewWidgetRequest(BaseModel):
    widget: WidgetDefinition
    context: ExecutionContext = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, gt=0)


class RateLimitStatus(BaseModel):
    key: str
    can_request: bool
    time_until_next_request_ms: int


class DefaultQuery(BaseModel):
    id: str
    description: str
    payload: dict[str, Any]


class PluginInstanceSummary(BaseModel):
    instance_id: str
    name: str
    base_url: str
    auth_type: AuthType
    is_active: bool
    tags: list[str] = Field(default_factory=list)


class PluginSummary(BaseModel):
    plugin_name: str
    protocol: QueryProtocol
    instances: list[PluginInstanceSummary] = Field(default_factory=list)
    default_queries: list[DefaultQuery] = Field(default_factory=list)


class PluginCatalog(BaseModel):
    items: list[PluginSummary] = Field(default_factory=list)


class ConnectionTestResult(BaseModel):
    plugin_name: str
    instance_id: str
    success: bool
    status: Literal["healthy", "error", "inactive"]
    message: str
    response_time_ms: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


class CacheInvalidationResult(BaseModel):
    widget_id: str
    invalidated: int
