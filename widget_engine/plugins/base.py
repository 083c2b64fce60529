from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from widget_engine.schemas import DefaultQuery, PluginInstanceConfig, QueryPayload, QueryProtocol
from widget_engine.services.template_engine import Dialect, RenderedQuery


@dataclass(slots=True)
class RawResult:
    data: Any
    status_code: int | None = None
    # Response headers, already redacted.
    headers: dict[str, str] = field(default_factory=dict)


class QueryExecutor(Protocol):
    protocol: QueryProtocol
    dialect: Dialect
    default_queries: list[DefaultQuery]

    def build_payload(self, rendered: RenderedQuery) -> QueryPayload: ...

    async def execute_query(
        self,
        payload: QueryPayload,
        instance: PluginInstanceConfig,
        *,
        timeout_seconds: float,
    ) -> RawResult: ...

    async def health_check(self, instance: PluginInstanceConfig, *, timeout_seconds: float) -> dict[str, Any]: ...
