import asyncio
import json

import httpx
import pytest

from widget_engine.errors import InvalidQueryError, TransportError
from widget_engine.plugins.rest import RestExecutor, parse_rest_query
from widget_engine.schemas import AuthConfig, RestQuery
from widget_engine.services.template_engine import RenderedQuery


def _executor(handler, seen: list[httpx.Request]) -> RestExecutor:
    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    return RestExecutor(transport=httpx.MockTransport(_record))


def test_parse_rest_query_accepts_camel_case_keys() -> None:
    query = parse_rest_query('{"method": "get", "endpoint": "/assets", "queryParams": {"site": "north"}, "verifySsl": false}')

    assert query.method == "GET"
    assert query.query_params == {"site": "north"}
    assert query.verify_ssl is False


@pytest.mark.parametrize("text", ["not json", "[1, 2]", '{"method": "GET"}', '{"endpoint": "/x", "method": "FETCH"}'])
def test_parse_rest_query_rejects_invalid_documents(text: str) -> None:
    with pytest.raises(InvalidQueryError):
        parse_rest_query(text)


def test_get_with_params_and_bearer_auth(rest_instance) -> None:
    seen: list[httpx.Request] = []
    executor = _executor(
        lambda request: httpx.Response(200, json=[{"id": 1}, {"id": 2}], headers={"Set-Cookie": "session=abc", "X-Trace": "t1"}),
        seen,
    )
    payload = executor.build_payload(RenderedQuery(text='{"endpoint": "/assets", "queryParams": {"client": "SITE", "page": null}}'))

    result = asyncio.run(executor.execute_query(payload, rest_instance, timeout_seconds=5))

    assert result.data == [{"id": 1}, {"id": 2}]
    assert result.status_code == 200
    assert result.headers["set-cookie"] == "***"
    assert result.headers["x-trace"] == "t1"
    request = seen[0]
    assert request.url.path == "/api/assets"
    assert request.url.params["client"] == "SITE"
    assert "page" not in request.url.params
    assert request.headers["Authorization"] == "Bearer rest-secret-token"


def test_post_sends_json_body_and_template_headers(rest_instance) -> None:
    seen: list[httpx.Request] = []
    executor = _executor(lambda request: httpx.Response(201, json={"ok": True}), seen)
    payload = RestQuery(method="POST", endpoint="/search", headers={"X-Tenant": "acme"}, body={"q": "vpn"})

    result = asyncio.run(executor.execute_query(payload, rest_instance, timeout_seconds=5))

    assert result.data == {"ok": True}
    assert result.status_code == 201
    assert json.loads(seen[0].content) == {"q": "vpn"}
    assert seen[0].headers["X-Tenant"] == "acme"


def test_instance_credentials_override_template_headers(rest_instance) -> None:
    seen: list[httpx.Request] = []
    executor = _executor(lambda request: httpx.Response(200, json={}), seen)
    payload = RestQuery(endpoint="/x", headers={"Authorization": "Bearer forged"})

    asyncio.run(executor.execute_query(payload, rest_instance, timeout_seconds=5))

    assert seen[0].headers["Authorization"] == "Bearer rest-secret-token"


def test_api_key_header_is_applied(rest_instance) -> None:
    seen: list[httpx.Request] = []
    executor = _executor(lambda request: httpx.Response(200, json={}), seen)
    instance = rest_instance.model_copy(update={"auth": AuthConfig(type="api_key", key="k-123", header="X-Api-Key")})

    asyncio.run(executor.execute_query(RestQuery(endpoint="/x"), instance, timeout_seconds=5))

    assert seen[0].headers["X-Api-Key"] == "k-123"


def test_unauthorized_response_keeps_status_code(rest_instance) -> None:
    seen: list[httpx.Request] = []
    executor = _executor(lambda request: httpx.Response(401, json={"detail": "invalid token"}), seen)

    with pytest.raises(TransportError) as exc_info:
        asyncio.run(executor.execute_query(RestQuery(endpoint="/assets"), rest_instance, timeout_seconds=5))

    assert exc_info.value.status_code == 401
    assert exc_info.value.upstream_status_code == 401
    assert "401" in exc_info.value.message
    assert "rest-secret-token" not in exc_info.value.message


def test_non_json_body_is_returned_as_text(rest_instance) -> None:
    seen: list[httpx.Request] = []
    executor = _executor(lambda request: httpx.Response(200, text="pong"), seen)

    result = asyncio.run(executor.execute_query(RestQuery(endpoint="/ping"), rest_instance, timeout_seconds=5))

    assert result.data == "pong"


def test_empty_body_is_none(rest_instance) -> None:
    seen: list[httpx.Request] = []
    executor = _executor(lambda request: httpx.Response(204), seen)

    result = asyncio.run(executor.execute_query(RestQuery(endpoint="/ping"), rest_instance, timeout_seconds=5))

    assert result.data is None
    assert result.status_code == 204
