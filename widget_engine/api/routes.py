from __future__ import annotations

import logging
from time import perf_counter

from fastapi import APIRouter

from widget_engine.errors import EngineError
from widget_engine.plugins.registry import PluginRegistry
from widget_engine.schemas import (
    CacheInvalidationResult,
    ConnectionTestResult,
    ExecuteWidgetRequest,
    PluginCatalog,
    PreviewWidgetRequest,
    RateLimitStatus,
    ResultEnvelope,
)
from widget_engine.services.orchestrator import QueryOrchestrator
from widget_engine.services.parameter_resolver import ParameterResolver
from widget_engine.services.rate_limiter import MinimumIntervalRateLimiter
from widget_engine.services.result_cache import ResultCache
from widget_engine.services.scalar_lookup import PostgresScalarLookup
from widget_engine.services.widget_store import InMemoryWidgetStore
from widget_engine.settings import get_settings

router = APIRouter()
_settings = get_settings()
_registry = PluginRegistry.from_settings(_settings)
_rate_limiter = MinimumIntervalRateLimiter(
    default_interval_seconds=_settings.rate_limit_default_interval_seconds,
    intervals_by_class=_settings.rate_limit_intervals,
)
_store = (
    InMemoryWidgetStore.from_json_file(_settings.widget_definitions_path)
    if _settings.widget_definitions_path
    else InMemoryWidgetStore()
)
_lookup = PostgresScalarLookup(_settings.lookup_database_url) if _settings.lookup_database_url else None
_orchestrator = QueryOrchestrator(
    resolver=ParameterResolver(_lookup),
    registry=_registry,
    rate_limiter=_rate_limiter,
    store=_store,
    cache=ResultCache(max_entries=_settings.result_cache_max_entries),
    settings=_settings,
)
logger = logging.getLogger("uvicorn.error")


def runtime_summary() -> dict[str, object]:
    catalog = _registry.catalog()
    return {
        "plugins": [item.plugin_name for item in catalog.items],
        "instances": sum(len(item.instances) for item in catalog.items),
        "lookup_configured": _lookup is not None,
        "widget_definitions_path": _settings.widget_definitions_path,
    }


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "service": "widget-engine"}


@router.post("/widgets/preview", response_model=ResultEnvelope)
async def widget_preview(payload: PreviewWidgetRequest) -> ResultEnvelope:
    return await _orchestrator.run(
        payload.widget,
        payload.context,
        timeout_seconds=payload.timeout_seconds,
        force_refresh=True,
    )


@router.post("/widgets/{widget_id}/execute", response_model=ResultEnvelope)
async def widget_execute(widget_id: str, payload: ExecuteWidgetRequest) -> ResultEnvelope:
    return await _orchestrator.execute_widget_query(
        widget_id,
        payload.context,
        timeout_seconds=payload.timeout_seconds,
        force_refresh=payload.force_refresh,
    )


@router.delete("/widgets/{widget_id}/cache", response_model=CacheInvalidationResult)
async def widget_cache_invalidate(widget_id: str) -> CacheInvalidationResult:
    await _orchestrator.load_widget(widget_id)
    removed = await _orchestrator.invalidate_cache(widget_id)
    return CacheInvalidationResult(widget_id=widget_id, invalidated=removed)


@router.get("/widgets/{widget_id}/rate-limit", response_model=RateLimitStatus)
async def widget_rate_limit(widget_id: str) -> RateLimitStatus:
    widget = await _orchestrator.load_widget(widget_id)
    return _orchestrator.rate_limit_status(widget)


@router.get("/plugins", response_model=PluginCatalog)
async def plugins_catalog() -> PluginCatalog:
    return _registry.catalog()


@router.post("/plugins/{plugin_name}/instances/{instance_id}/test-connection", response_model=ConnectionTestResult)
async def plugin_test_connection(plugin_name: str, instance_id: str) -> ConnectionTestResult:
    bound = _registry.resolve(plugin_name, instance_id, include_inactive=True)
    if not bound.instance.is_active:
        return ConnectionTestResult(
            plugin_name=bound.plugin_name,
            instance_id=instance_id,
            success=False,
            status="inactive",
            message="Instance is not active",
        )

    started = perf_counter()
    try:
        details = await bound.health_check(timeout_seconds=_settings.dispatch_timeout_seconds)
    except EngineError as exc:
        logger.warning(
            "plugin.test_connection_failed | %s",
            {"plugin_name": bound.plugin_name, "instance_id": instance_id, "code": exc.code, "error_id": exc.error_id},
        )
        return ConnectionTestResult(
            plugin_name=bound.plugin_name,
            instance_id=instance_id,
            success=False,
            status="error",
            message=exc.message,
            response_time_ms=max(0, int((perf_counter() - started) * 1000)),
        )
    return ConnectionTestResult(
        plugin_name=bound.plugin_name,
        instance_id=instance_id,
        success=True,
        status="healthy",
        message="Connection successful",
        response_time_ms=max(0, int((perf_counter() - started) * 1000)),
        details=details,
    )
