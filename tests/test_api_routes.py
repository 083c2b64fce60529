import logging

from fastapi.testclient import TestClient

from widget_engine.api import routes
from widget_engine.errors import TransportError
from widget_engine.main import app
from widget_engine.plugins.base import RawResult
from widget_engine.plugins.registry import PluginRegistry
from widget_engine.plugins.rest import parse_rest_query
from widget_engine.schemas import AuthConfig, DefaultQuery, PluginInstanceConfig, WidgetDefinition
from widget_engine.services.orchestrator import QueryOrchestrator
from widget_engine.services.parameter_resolver import ParameterResolver
from widget_engine.services.rate_limiter import MinimumIntervalRateLimiter
from widget_engine.services.result_cache import ResultCache
from widget_engine.services.widget_store import InMemoryWidgetStore
from widget_engine.settings import Settings

WIDGET = {
    "id": "client-assets",
    "template": '{"endpoint": "/assets", "queryParams": {"client": "${client}"}}',
    "parameters": [{"name": "client", "source": "context", "context_var": "clientShortName"}],
    "plugin": {"plugin_name": "inventory", "instance_id": "main", "protocol": "rest"},
    "display_config": {"chart": "table"},
}


class _FakeInventoryExecutor:
    protocol = "rest"
    dialect = "json"
    default_queries = [DefaultQuery(id="health-check", description="API health check", payload={"endpoint": "/health"})]

    def __init__(self) -> None:
        self.payloads = []
        self.healthy = True

    def build_payload(self, rendered):
        return parse_rest_query(rendered.text)

    async def execute_query(self, payload, instance, *, timeout_seconds):
        self.payloads.append(payload)
        return RawResult(data=[{"client": payload.query_params["client"], "asset": "fw-01"}], status_code=200)

    async def health_check(self, instance, *, timeout_seconds):
        if not self.healthy:
            raise TransportError(message="API error 503: Service Unavailable", status_code=503)
        return {"status_code": 200}


def _install(monkeypatch, *, interval_seconds: float = 0, cache: ResultCache | None = None) -> _FakeInventoryExecutor:
    executor = _FakeInventoryExecutor()
    registry = PluginRegistry({"inventory": executor})
    registry.register_instance(
        PluginInstanceConfig(
            plugin_name="inventory",
            instance_id="main",
            base_url="https://inventory.example.com",
            auth=AuthConfig(type="api_key", key="inventory-secret-key", header="X-Api-Key"),
        )
    )
    registry.register_instance(
        PluginInstanceConfig(plugin_name="inventory", instance_id="legacy", base_url="https://old.example.com", is_active=False)
    )
    orchestrator = QueryOrchestrator(
        resolver=ParameterResolver(),
        registry=registry,
        rate_limiter=MinimumIntervalRateLimiter(default_interval_seconds=interval_seconds),
        store=InMemoryWidgetStore([WidgetDefinition.model_validate(WIDGET)]),
        cache=cache,
        settings=Settings(dispatch_timeout_seconds=5),
    )
    monkeypatch.setattr(routes, "_registry", registry)
    monkeypatch.setattr(routes, "_orchestrator", orchestrator)
    return executor


def test_health() -> None:
    client = TestClient(app)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "widget-engine"}


def test_execute_returns_success_envelope(monkeypatch) -> None:
    executor = _install(monkeypatch)
    client = TestClient(app)

    response = client.post("/widgets/client-assets/execute", json={"context": {"clientShortName": "SITE"}})

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert body["data"] == [{"client": "SITE", "asset": "fw-01"}]
    assert body["metadata"]["record_count"] == 1
    assert body["metadata"]["status_code"] == 200
    assert executor.payloads[0].endpoint == "/assets"


def test_execute_failure_stays_in_envelope(monkeypatch) -> None:
    executor = _install(monkeypatch)
    client = TestClient(app)

    response = client.post("/widgets/client-assets/execute", json={"context": {}})

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is False
    assert body["data"] is None
    assert body["error"]["code"] == "missing_context_value"
    assert body["error"]["parameter"] == "client"
    assert executor.payloads == []


def test_execute_unknown_widget_is_not_found(monkeypatch) -> None:
    _install(monkeypatch)
    client = TestClient(app)

    response = client.post("/widgets/nope/execute", json={"context": {}})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "widget_not_found"


def test_preview_runs_unsaved_definition(monkeypatch) -> None:
    _install(monkeypatch)
    client = TestClient(app)
    widget = {**WIDGET, "id": "draft", "parameters": [{"name": "client", "source": "static", "value": "ACME"}]}

    response = client.post("/widgets/preview", json={"widget": widget, "context": {}})

    assert response.status_code == 200, response.text
    assert response.json()["data"] == [{"client": "ACME", "asset": "fw-01"}]


def test_rate_limit_status_and_limited_execution(monkeypatch) -> None:
    _install(monkeypatch, interval_seconds=60)
    client = TestClient(app)

    before = client.get("/widgets/client-assets/rate-limit").json()
    client.post("/widgets/client-assets/execute", json={"context": {"clientShortName": "SITE"}})
    after = client.get("/widgets/client-assets/rate-limit").json()
    limited = client.post("/widgets/client-assets/execute", json={"context": {"clientShortName": "SITE"}}).json()

    assert before == {"key": "inventory:main", "can_request": True, "time_until_next_request_ms": 0}
    assert after["can_request"] is False
    assert after["time_until_next_request_ms"] > 0
    assert limited["success"] is False
    assert limited["error"]["code"] == "rate_limited"
    assert limited["error"]["retry_after_ms"] > 0


def test_plugin_catalog_hides_credentials(monkeypatch) -> None:
    _install(monkeypatch)
    client = TestClient(app)

    response = client.get("/plugins")

    assert response.status_code == 200
    assert "inventory-secret-key" not in response.text
    plugin = response.json()["items"][0]
    assert plugin["plugin_name"] == "inventory"
    assert [item["instance_id"] for item in plugin["instances"]] == ["legacy", "main"]
    assert plugin["default_queries"][0]["id"] == "health-check"


def test_connection_test_reports_health(monkeypatch) -> None:
    executor = _install(monkeypatch)
    client = TestClient(app)

    healthy = client.post("/plugins/inventory/instances/main/test-connection").json()
    executor.healthy = False
    failing = client.post("/plugins/inventory/instances/main/test-connection").json()
    inactive = client.post("/plugins/inventory/instances/legacy/test-connection").json()
    missing = client.post("/plugins/inventory/instances/ghost/test-connection")

    assert healthy["success"] is True
    assert healthy["status"] == "healthy"
    assert healthy["details"] == {"status_code": 200}
    assert failing["success"] is False
    assert failing["status"] == "error"
    assert "503" in failing["message"]
    assert inactive["status"] == "inactive"
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "unknown_plugin"


def test_startup_logs_runtime_summary(monkeypatch, caplog) -> None:
    _install(monkeypatch)
    caplog.set_level(logging.INFO, logger="uvicorn.error")

    with TestClient(app) as client:
        client.get("/health")

    summary = routes.runtime_summary()
    assert summary["plugins"] == ["inventory"]
    assert summary["instances"] == 2
    assert "engine.startup" in caplog.text
    assert "engine.shutdown" in caplog.text


def test_cache_invalidation_route_forces_fresh_dispatch(monkeypatch) -> None:
    monkeypatch.setitem(WIDGET, "cache_enabled", True)
    executor = _install(monkeypatch, cache=ResultCache())
    client = TestClient(app)
    body = {"context": {"clientShortName": "SITE"}}

    client.post("/widgets/client-assets/execute", json=body)
    cached = client.post("/widgets/client-assets/execute", json=body).json()
    invalidated = client.delete("/widgets/client-assets/cache")
    fresh = client.post("/widgets/client-assets/execute", json=body).json()
    missing = client.delete("/widgets/nope/cache")

    assert cached["metadata"]["cache_hit"] is True
    assert invalidated.status_code == 200
    assert invalidated.json() == {"widget_id": "client-assets", "invalidated": 1}
    assert fresh["metadata"]["cache_hit"] is False
    assert len(executor.payloads) == 2
    assert missing.status_code == 404
