from __future__ import annotations

import logging
from typing import Any

import httpx

from widget_engine.errors import QueryTimeout, TransportError
from widget_engine.observability import sanitize_error_message
from widget_engine.plugins.auth import describe_request, merge_request_headers
from widget_engine.schemas import PluginInstanceConfig

logger = logging.getLogger("uvicorn.error")

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def body_preview(response: httpx.Response, limit: int = 200) -> str:
    text = response.text or ""
    if len(text) > limit:
        text = text[:limit] + "...(truncated)"
    return sanitize_error_message(text)


async def send_request(
    instance: PluginInstanceConfig,
    *,
    method: str,
    endpoint: str,
    timeout_seconds: float,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    body: Any | None = None,
    verify_ssl: bool | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.Response:
    request_headers = merge_request_headers(headers or {}, instance.auth)
    query_params = {key: value for key, value in (params or {}).items() if value is not None}
    json_payload: Any | None = None
    content: str | bytes | None = None
    if body is not None and method.upper() in _BODY_METHODS:
        if isinstance(body, (str, bytes)):
            content = body
        else:
            json_payload = body
            request_headers.setdefault("Content-Type", "application/json")

    verify = instance.verify_ssl if verify_ssl is None else verify_ssl
    timeout = instance.timeout_seconds or timeout_seconds
    logger.info(
        "plugin.request | %s",
        {
            "plugin_name": instance.plugin_name,
            "instance_id": instance.instance_id,
            **describe_request(method.upper(), f"{instance.base_url.rstrip('/')}/{endpoint.lstrip('/')}", request_headers, instance.auth),
        },
    )

    try:
        async with httpx.AsyncClient(
            base_url=instance.base_url,
            timeout=timeout,
            verify=verify,
            transport=transport,
        ) as client:
            return await client.request(
                method=method.upper(),
                url=endpoint,
                params=query_params or None,
                headers=request_headers,
                json=json_payload,
                content=content,
            )
    except httpx.TimeoutException as exc:
        raise QueryTimeout(message=f"Request to '{instance.instance_id}' timed out after {timeout}s") from exc
    except (httpx.ConnectError, httpx.UnsupportedProtocol, httpx.InvalidURL) as exc:
        raise TransportError(
            message=f"Cannot reach '{instance.instance_id}': {sanitize_error_message(str(exc))}",
            sent=False,
        ) from exc
    except httpx.HTTPError as exc:
        raise TransportError(message=f"Request to '{instance.instance_id}' failed: {sanitize_error_message(str(exc))}") from exc
