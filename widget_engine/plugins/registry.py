from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from widget_engine.errors import UnknownPluginError
from widget_engine.observability import redact_url
from widget_engine.plugins.base import QueryExecutor, RawResult
from widget_engine.plugins.jira import JiraExecutor
from widget_engine.plugins.rest import RestExecutor
from widget_engine.plugins.sql import SqlExecutor
from widget_engine.schemas import (
    PluginCatalog,
    PluginInstanceConfig,
    PluginInstanceSummary,
    PluginSummary,
    QueryPayload,
)
from widget_engine.secrets import FernetSecretsVault, SecretsVault, reveal_secret
from widget_engine.services.template_engine import Dialect, RenderedQuery
from widget_engine.settings import Settings

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class BoundExecutor:
    plugin_name: str
    instance: PluginInstanceConfig
    executor: QueryExecutor

    @property
    def dialect(self) -> Dialect:
        return self.executor.dialect

    def build_payload(self, rendered: RenderedQuery) -> QueryPayload:
        return self.executor.build_payload(rendered)

    async def execute(self, payload: QueryPayload, *, timeout_seconds: float) -> RawResult:
        return await self.executor.execute_query(payload, self.instance, timeout_seconds=timeout_seconds)

    async def health_check(self, *, timeout_seconds: float) -> dict[str, Any]:
        return await self.executor.health_check(self.instance, timeout_seconds=timeout_seconds)


def default_executors(
    *,
    max_result_rows: int = 1000,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, QueryExecutor]:
    rest = RestExecutor(transport=transport)
    return {
        "sql": SqlExecutor(max_result_rows=max_result_rows),
        "jira": JiraExecutor(transport=transport),
        "rest": rest,
        "generic-api": rest,
    }


class PluginRegistry:
    def __init__(
        self,
        executors: Mapping[str, QueryExecutor] | None = None,
        *,
        vault: SecretsVault | None = None,
    ) -> None:
        self._executors: dict[str, QueryExecutor] = {}
        self._instances: dict[tuple[str, str], PluginInstanceConfig] = {}
        self._vault = vault
        for name, executor in (executors if executors is not None else default_executors()).items():
            self.register_executor(name, executor)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "PluginRegistry":
        vault = FernetSecretsVault(settings.encryption_key) if settings.encryption_key else None
        registry = cls(
            default_executors(max_result_rows=settings.query_result_rows_max, transport=transport),
            vault=vault,
        )
        for raw in settings.plugin_instances:
            registry.register_instance(PluginInstanceConfig.model_validate(raw))
        return registry

    def register_executor(self, plugin_name: str, executor: QueryExecutor) -> None:
        self._executors[plugin_name.lower()] = executor

    def register_instance(self, config: PluginInstanceConfig) -> None:
        plugin_name = config.plugin_name.lower()
        if plugin_name not in self._executors:
            raise UnknownPluginError(message=f"Plugin '{config.plugin_name}' is not registered")
        auth = config.auth.model_copy(
            update={
                "password": reveal_secret(config.auth.password, self._vault, field_name=f"{config.instance_id}.password"),
                "token": reveal_secret(config.auth.token, self._vault, field_name=f"{config.instance_id}.token"),
                "key": reveal_secret(config.auth.key, self._vault, field_name=f"{config.instance_id}.key"),
            }
        )
        self._instances[(plugin_name, config.instance_id)] = config.model_copy(update={"plugin_name": plugin_name, "auth": auth})
        logger.info(
            "plugin.instance_registered | %s",
            {"plugin_name": plugin_name, "instance_id": config.instance_id, "active": config.is_active},
        )

    def resolve(
        self,
        plugin_name: str,
        instance_id: str,
        *,
        protocol: str | None = None,
        include_inactive: bool = False,
    ) -> BoundExecutor:
        key = plugin_name.lower()
        executor = self._executors.get(key)
        if executor is None:
            raise UnknownPluginError(message=f"Plugin '{plugin_name}' not found")
        if protocol is not None and executor.protocol != protocol:
            raise UnknownPluginError(
                message=f"Plugin '{plugin_name}' speaks '{executor.protocol}', widget expects '{protocol}'"
            )
        instance = self._instances.get((key, instance_id))
        if instance is None:
            raise UnknownPluginError(message=f"Instance '{instance_id}' not found in plugin '{plugin_name}'")
        if not instance.is_active and not include_inactive:
            raise UnknownPluginError(message=f"Instance '{instance_id}' of plugin '{plugin_name}' is not active")
        return BoundExecutor(plugin_name=key, instance=instance, executor=executor)

    def catalog(self) -> PluginCatalog:
        items: list[PluginSummary] = []
        for plugin_name, executor in sorted(self._executors.items()):
            instances = [
                PluginInstanceSummary(
                    instance_id=instance.instance_id,
                    name=instance.name or instance.instance_id,
                    base_url=redact_url(instance.base_url),
                    auth_type=instance.auth.type,
                    is_active=instance.is_active,
                    tags=list(instance.tags),
                )
                for (name, _), instance in sorted(self._instances.items())
                if name == plugin_name
            ]
            items.append(
                PluginSummary(
                    plugin_name=plugin_name,
                    protocol=executor.protocol,
                    instances=instances,
                    default_queries=list(executor.default_queries),
                )
            )
        return PluginCatalog(items=items)


