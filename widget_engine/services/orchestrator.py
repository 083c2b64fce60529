from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from time import perf_counter
from typing import Any

from widget_engine.errors import EngineError, QueryCancelled, QueryTimeout, RateLimited, TransportError, WidgetNotFoundError
from widget_engine.observability import sanitize_error_message
from widget_engine.plugins.base import RawResult
from widget_engine.plugins.registry import BoundExecutor, PluginRegistry
from widget_engine.schemas import (
    EnvelopeError,
    ExecutionContext,
    QueryPayload,
    RateLimitStatus,
    ResultEnvelope,
    ResultMetadata,
    WidgetDefinition,
)
from widget_engine.services.parameter_resolver import ParameterResolver
from widget_engine.services.rate_limiter import MinimumIntervalRateLimiter, RateLimitReservation
from widget_engine.services.result_cache import ResultCache, payload_cache_key
from widget_engine.services.template_engine import render
from widget_engine.services.transforms import apply_transform
from widget_engine.services.widget_store import WidgetStore
from widget_engine.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")


class ExecutionStage(str, Enum):
    RESOLVING = "resolving"
    SUBSTITUTING = "substituting"
    RATE_GATE = "rate_gate"
    DISPATCHING = "dispatching"
    NORMALIZING = "normalizing"
    DONE = "done"
    FAILED = "failed"


def gate_key_for(widget: WidgetDefinition) -> str | None:
    if widget.rate_limit_scope == "none":
        return None
    if widget.rate_limit_scope == "widget":
        return f"widget:{widget.id}"
    return f"{widget.plugin.plugin_name.lower()}:{widget.plugin.instance_id}"


def count_records(data: Any) -> int:
    if isinstance(data, list):
        return len(data)
    return 1


def payload_size_bytes(data: Any) -> int:
    if data is None:
        return 0
    return len(json.dumps(data, default=str, ensure_ascii=False).encode("utf-8"))


def _elapsed_ms(started: float | None) -> int:
    if started is None:
        return 0
    return max(0, int((perf_counter() - started) * 1000))


class QueryOrchestrator:
    """Runs one widget query from execution context to result envelope.

    Stages: resolving, substituting, rate_gate, dispatching, normalizing. Any
    failure ends the run in ``failed`` and is reported inside the envelope; the
    orchestrator never retries.
    """

    def __init__(
        self,
        *,
        resolver: ParameterResolver,
        registry: PluginRegistry,
        rate_limiter: MinimumIntervalRateLimiter,
        store: WidgetStore | None = None,
        cache: ResultCache | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._resolver = resolver
        self._registry = registry
        self._rate_limiter = rate_limiter
        self._store = store
        self._cache = cache
        self._settings = settings or get_settings()

    async def execute_widget_query(
        self,
        widget_id: str,
        ctx: ExecutionContext,
        *,
        timeout_seconds: float | None = None,
        cancel_event: asyncio.Event | None = None,
        force_refresh: bool = False,
    ) -> ResultEnvelope:
        widget = await self.load_widget(widget_id)
        return await self.run(
            widget,
            ctx,
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
            force_refresh=force_refresh,
        )

    async def load_widget(self, widget_id: str) -> WidgetDefinition:
        if self._store is None:
            raise EngineError(status_code=500, code="widget_store_unavailable", message="No widget store configured")
        widget = await self._store.get_widget_definition(widget_id)
        if widget is None:
            raise WidgetNotFoundError(widget_id)
        return widget

    async def invalidate_cache(self, widget_id: str | None = None) -> int:
        if self._cache is None:
            return 0
        removed = await self._cache.invalidate(widget_id)
        logger.info("widget_query.cache_invalidated | %s", {"widget_id": widget_id, "removed": removed})
        return removed

    def rate_limit_status(self, widget: WidgetDefinition) -> RateLimitStatus:
        key = gate_key_for(widget)
        if key is None:
            return RateLimitStatus(key="", can_request=True, time_until_next_request_ms=0)
        wait_seconds = self._rate_limiter.time_until_next_request(key, widget.plugin.plugin_name)
        return RateLimitStatus(
            key=key,
            can_request=wait_seconds <= 0,
            time_until_next_request_ms=int(wait_seconds * 1000),
        )

    async def run(
        self,
        widget: WidgetDefinition,
        ctx: ExecutionContext,
        *,
        timeout_seconds: float | None = None,
        cancel_event: asyncio.Event | None = None,
        force_refresh: bool = False,
    ) -> ResultEnvelope:
        stage = ExecutionStage.RESOLVING
        dispatch_started: float | None = None
        try:
            self._log_stage(widget, stage)
            bound = self._registry.resolve(
                widget.plugin.plugin_name,
                widget.plugin.instance_id,
                protocol=widget.plugin.protocol,
            )
            values = await self._resolver.resolve_all(widget.parameters, ctx)

            stage = ExecutionStage.SUBSTITUTING
            self._log_stage(widget, stage)
            rendered = render(widget.template, values, dialect=bound.dialect)
            payload = bound.build_payload(rendered)

            cache_key: str | None = None
            if widget.cache_enabled and self._cache is not None:
                cache_key = payload_cache_key(widget.id, payload)
                if not force_refresh:
                    cached = await self._cache.get(cache_key)
                    if cached is not None:
                        cached.metadata.cache_hit = True
                        self._log_completed(widget, cached)
                        return cached

            stage = ExecutionStage.RATE_GATE
            self._log_stage(widget, stage)
            if cancel_event is not None and cancel_event.is_set():
                raise QueryCancelled(message="Widget query was cancelled before dispatch")
            reservation = await self._acquire_gate(widget, bound)

            stage = ExecutionStage.DISPATCHING
            self._log_stage(widget, stage)
            timeout = timeout_seconds or widget.timeout_seconds or self._settings.dispatch_timeout_seconds
            dispatch_started = perf_counter()
            try:
                raw = await self._dispatch(bound, payload, timeout_seconds=timeout, cancel_event=cancel_event)
            except TransportError as exc:
                if not exc.sent and reservation is not None:
                    await self._rate_limiter.release(reservation)
                raise
            execution_time_ms = _elapsed_ms(dispatch_started)

            stage = ExecutionStage.NORMALIZING
            self._log_stage(widget, stage)
            envelope = self._success(widget, bound, raw, execution_time_ms)
            if cache_key is not None and self._cache is not None:
                await self._cache.set(cache_key, envelope, ttl_seconds=widget.refresh_interval_seconds)
            self._log_completed(widget, envelope)
            return envelope
        except EngineError as exc:
            return self._failure(widget, stage, exc, execution_time_ms=_elapsed_ms(dispatch_started))
        except Exception as exc:
            wrapped = EngineError(status_code=500, code="internal_error", message=sanitize_error_message(str(exc)))
            logger.exception(
                "widget_query.unhandled_error | %s",
                {"widget_id": widget.id, "stage": stage.value, "error_id": wrapped.error_id},
            )
            return self._failure(widget, stage, wrapped, execution_time_ms=_elapsed_ms(dispatch_started))

    async def _acquire_gate(self, widget: WidgetDefinition, bound: BoundExecutor) -> RateLimitReservation | None:
        key = gate_key_for(widget)
        if key is None:
            return None
        return await self._rate_limiter.acquire(key, bound.plugin_name)

    async def _dispatch(
        self,
        bound: BoundExecutor,
        payload: QueryPayload,
        *,
        timeout_seconds: float,
        cancel_event: asyncio.Event | None,
    ) -> RawResult:
        call = asyncio.ensure_future(bound.execute(payload, timeout_seconds=timeout_seconds))
        waiters: set[asyncio.Future[Any]] = {call}
        cancel_waiter: asyncio.Future[Any] | None = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)
        try:
            done, _pending = await asyncio.wait(waiters, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
            if call in done:
                return call.result()
            if cancel_waiter is not None and cancel_waiter in done:
                raise QueryCancelled(message="Widget query was cancelled by the caller")
            raise QueryTimeout(message=f"Query dispatch timed out after {timeout_seconds:g}s")
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

    def _success(
        self,
        widget: WidgetDefinition,
        bound: BoundExecutor,
        raw: RawResult,
        execution_time_ms: int,
    ) -> ResultEnvelope:
        data = raw.data
        if widget.transform is not None:
            data = apply_transform(data, widget.transform)
        return ResultEnvelope(
            success=True,
            data=data,
            metadata=ResultMetadata(
                execution_time_ms=execution_time_ms,
                status_code=raw.status_code,
                response_size_bytes=payload_size_bytes(data),
                record_count=count_records(data),
                widget_id=widget.id,
                plugin_name=bound.plugin_name,
                instance_id=bound.instance.instance_id,
                executed_at=datetime.now(timezone.utc),
            ),
        )

    def _failure(
        self,
        widget: WidgetDefinition,
        stage: ExecutionStage,
        exc: EngineError,
        *,
        execution_time_ms: int,
    ) -> ResultEnvelope:
        error = EnvelopeError(
            code=exc.code,
            message=exc.message,
            retryable=exc.retryable,
            stage=stage.value,
            parameter=getattr(exc, "parameter", None),
            status_code=exc.status_code,
            retry_after_ms=exc.retry_after_ms if isinstance(exc, RateLimited) else None,
            error_id=exc.error_id,
        )
        logger.warning(
            "widget_query.failed | %s",
            {
                "widget_id": widget.id,
                "plugin_name": widget.plugin.plugin_name,
                "instance_id": widget.plugin.instance_id,
                "stage": stage.value,
                "code": exc.code,
                "error_id": exc.error_id,
            },
        )
        self._log_stage(widget, ExecutionStage.FAILED)
        return ResultEnvelope(
            success=False,
            error=error,
            metadata=ResultMetadata(
                execution_time_ms=execution_time_ms,
                status_code=exc.upstream_status_code,
                widget_id=widget.id,
                plugin_name=widget.plugin.plugin_name.lower(),
                instance_id=widget.plugin.instance_id,
                executed_at=datetime.now(timezone.utc),
            ),
        )

    def _log_stage(self, widget: WidgetDefinition, stage: ExecutionStage) -> None:
        logger.debug("widget_query.stage | %s", {"widget_id": widget.id, "stage": stage.value})

    def _log_completed(self, widget: WidgetDefinition, envelope: ResultEnvelope) -> None:
        self._log_stage(widget, ExecutionStage.DONE)
        logger.info(
            "widget_query.completed | %s",
            {
                "widget_id": widget.id,
                "plugin_name": envelope.metadata.plugin_name,
                "instance_id": envelope.metadata.instance_id,
                "record_count": envelope.metadata.record_count,
                "execution_time_ms": envelope.metadata.execution_time_ms,
                "cache_hit": envelope.metadata.cache_hit,
            },
        )
