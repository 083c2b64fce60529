from __future__ import annotations

import json
from typing import Any

import httpx
from pydantic import ValidationError

from widget_engine.errors import InvalidQueryError, TransportError
from widget_engine.observability import log_external_query, redact_headers
from widget_engine.plugins.base import RawResult
from widget_engine.plugins.http import body_preview, send_request
from widget_engine.schemas import DefaultQuery, PluginInstanceConfig, QueryPayload, RestQuery
from widget_engine.services.template_engine import RenderedQuery


def parse_rest_query(text: str) -> RestQuery:
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidQueryError(
            message=f"REST query must be a JSON object with method, endpoint and optional headers/body ({exc.msg})"
        ) from exc
    if not isinstance(document, dict):
        raise InvalidQueryError(message="REST query must be a JSON object")
    try:
        return RestQuery.model_validate(document)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in exc.errors())
        raise InvalidQueryError(message=f"REST query is invalid: {fields}") from exc


class RestExecutor:
    protocol = "rest"
    dialect = "json"

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self.default_queries = [
            DefaultQuery(id="health-check", description="API health check", payload={"method": "GET", "endpoint": "/health"}),
        ]

    def build_payload(self, rendered: RenderedQuery) -> QueryPayload:
        return parse_rest_query(rendered.text)

    async def execute_query(
        self,
        payload: QueryPayload,
        instance: PluginInstanceConfig,
        *,
        timeout_seconds: float,
    ) -> RawResult:
        if not isinstance(payload, RestQuery):
            raise InvalidQueryError(message="REST executor expects a REST query payload")
        log_external_query(
            query=f"{payload.method} {payload.endpoint}",
            dialect="rest",
            params=payload.query_params,
            context="widget.rest",
            instance_id=instance.instance_id,
        )
        response = await send_request(
            instance,
            method=payload.method,
            endpoint=payload.endpoint,
            timeout_seconds=timeout_seconds,
            params=payload.query_params,
            headers=payload.headers,
            body=payload.body,
            verify_ssl=payload.verify_ssl,
            transport=self._transport,
        )
        if response.status_code >= 400:
            raise TransportError(
                message=f"API error {response.status_code}: {response.reason_phrase} - {body_preview(response)}",
                status_code=response.status_code,
            )
        return RawResult(
            data=self._decode(response),
            status_code=response.status_code,
            headers=redact_headers(response.headers),
        )

    async def health_check(self, instance: PluginInstanceConfig, *, timeout_seconds: float) -> dict[str, Any]:
        query = RestQuery.model_validate(self.default_queries[0].payload)
        result = await self.execute_query(query, instance, timeout_seconds=timeout_seconds)
        return {"status_code": result.status_code}

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text
