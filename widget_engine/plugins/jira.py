from __future__ import annotations

import re
from typing import Any

import httpx

from widget_engine.errors import InvalidQueryError, MalformedResponseError, TransportError
from widget_engine.observability import log_external_query
from widget_engine.plugins.base import RawResult
from widget_engine.plugins.http import body_preview, send_request
from widget_engine.schemas import DefaultQuery, PluginInstanceConfig, QueryPayload, TicketQuery
from widget_engine.services.template_engine import RenderedQuery, unclosed_quote

_DANGLING_OPERATOR = re.compile(r"(=|!=|~|!~|>|<|>=|<=|\b(and|or|not|in|is)\b)\s*$", re.IGNORECASE)


def validate_jql(jql: str) -> str:
    trimmed = jql.strip()
    if not trimmed:
        raise InvalidQueryError(message="JQL query cannot be empty")
    if _DANGLING_OPERATOR.search(trimmed):
        raise InvalidQueryError(message="Invalid JQL syntax: query ends with an incomplete operator")
    if unclosed_quote(trimmed) is not None:
        raise InvalidQueryError(message="Invalid JQL syntax: unmatched quotes")
    return trimmed


def _looks_like_html(response: httpx.Response) -> bool:
    content_type = response.headers.get("content-type", "")
    if "text/html" in content_type:
        return True
    return "<html" in (response.text or "")[:500].lower()


def _raise_for_response(response: httpx.Response, *, instance_id: str) -> None:
    if _looks_like_html(response):
        # Jira answers failed logins with its web login page instead of JSON.
        if response.status_code == 401:
            message = f"Jira '{instance_id}' requires authentication (401): check the configured credentials"
        elif response.status_code == 403:
            message = f"Jira '{instance_id}' rejected the credentials (403): the API token may be invalid"
        else:
            message = f"Jira '{instance_id}' returned a web page instead of an API response ({response.status_code})"
        raise TransportError(message=message, status_code=response.status_code)
    if response.status_code >= 400:
        raise TransportError(
            message=f"Jira API {response.status_code}: {response.reason_phrase} - {body_preview(response)}",
            status_code=response.status_code,
        )


def _decode(response: httpx.Response, *, instance_id: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise MalformedResponseError(
            message=f"Jira '{instance_id}' returned invalid JSON: {body_preview(response)}",
            upstream_status_code=response.status_code,
        ) from exc


class JiraExecutor:
    protocol = "jql"
    dialect = "jql"

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self.default_queries = [
            DefaultQuery(id="recentIssues", description="Issues created in the last week", payload={"jql": "created >= -1w ORDER BY created DESC"}),
            DefaultQuery(id="openBugs", description="Open bug tickets", payload={"jql": "type = Bug AND resolution = Unresolved"}),
            DefaultQuery(id="recentlyUpdated", description="Recently updated issues", payload={"jql": "updated >= -3d ORDER BY updated DESC"}),
        ]

    def build_payload(self, rendered: RenderedQuery) -> QueryPayload:
        return TicketQuery(jql=validate_jql(rendered.text))

    async def execute_query(
        self,
        payload: QueryPayload,
        instance: PluginInstanceConfig,
        *,
        timeout_seconds: float,
    ) -> RawResult:
        if not isinstance(payload, TicketQuery):
            raise InvalidQueryError(message="Jira executor expects a ticket query payload")
        jql = validate_jql(payload.jql)
        search = {
            "jql": jql,
            "startAt": payload.start_at,
            "maxResults": payload.max_results,
        }
        if payload.method == "GET":
            params: dict[str, Any] | None = {**search, "fields": ",".join(payload.issue_fields)}
            body = None
        else:
            params = None
            body = {**search, "fields": list(payload.issue_fields)}

        log_external_query(query=jql, dialect="jql", context="widget.jql", instance_id=instance.instance_id)
        response = await send_request(
            instance,
            method=payload.method,
            endpoint=payload.endpoint,
            timeout_seconds=timeout_seconds,
            params=params,
            body=body,
            transport=self._transport,
        )
        _raise_for_response(response, instance_id=instance.instance_id)
        decoded = _decode(response, instance_id=instance.instance_id)
        if not isinstance(decoded, dict) or not isinstance(decoded.get("issues"), list):
            raise MalformedResponseError(
                message=f"Jira '{instance.instance_id}' search response has no issue list",
                upstream_status_code=response.status_code,
            )
        issues = decoded["issues"]
        total = decoded.get("total")
        return RawResult(
            data={"issues": issues, "total": int(total) if isinstance(total, int) else len(issues)},
            status_code=response.status_code,
        )

    async def health_check(self, instance: PluginInstanceConfig, *, timeout_seconds: float) -> dict[str, Any]:
        response = await send_request(
            instance,
            method="GET",
            endpoint="/rest/api/2/serverInfo",
            timeout_seconds=timeout_seconds,
            transport=self._transport,
        )
        _raise_for_response(response, instance_id=instance.instance_id)
        info = _decode(response, instance_id=instance.instance_id)
        if not isinstance(info, dict):
            raise MalformedResponseError(message=f"Jira '{instance.instance_id}' returned an unexpected server info payload")
        return {
            "version": info.get("version"),
            "title": info.get("serverTitle"),
            "deployment_type": info.get("deploymentType"),
        }
