from __future__ import annotations

import asyncio
import re
from typing import Any, Awaitable, Callable

import psycopg
from psycopg import AsyncConnection

from widget_engine.errors import EngineError, InvalidQueryError, QueryTimeout, TransportError
from widget_engine.observability import log_external_query, sanitize_error_message
from widget_engine.plugins.base import RawResult
from widget_engine.schemas import DefaultQuery, PluginInstanceConfig, QueryPayload, SqlQuery
from widget_engine.services.template_engine import RenderedQuery

_DANGEROUS_PATTERN = re.compile(
    r"\b(insert|update|delete|drop|alter|truncate|create|grant|revoke|merge|call|execute|exec|copy|vacuum|analyze|refresh|reindex)\b",
    re.IGNORECASE,
)


def validate_read_only_sql(sql: str) -> None:
    normalized = " ".join(sql.strip().split())
    lowered = normalized.lower().strip("; ").strip()
    if not lowered:
        raise InvalidQueryError(message="Empty query")
    if ";" in lowered:
        raise InvalidQueryError(message="Multiple statements are not allowed")
    if not (lowered.startswith("select ") or lowered.startswith("with ")):
        raise InvalidQueryError(message="Only read-only SELECT statements are allowed")
    if _DANGEROUS_PATTERN.search(lowered):
        raise InvalidQueryError(message="Dangerous SQL operation blocked")


class SqlExecutor:
    protocol = "sql"
    dialect = "sql"

    def __init__(
        self,
        *,
        max_result_rows: int = 1000,
        connection_factory: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        self._max_result_rows = max_result_rows
        self._connection_factory = connection_factory or AsyncConnection.connect
        self.default_queries = [
            DefaultQuery(id="ping", description="Connectivity check", payload={"sql": "SELECT 1 AS ok"}),
        ]

    def build_payload(self, rendered: RenderedQuery) -> QueryPayload:
        validate_read_only_sql(rendered.text)
        return SqlQuery(sql=rendered.text, params=list(rendered.params))

    async def execute_query(
        self,
        payload: QueryPayload,
        instance: PluginInstanceConfig,
        *,
        timeout_seconds: float,
    ) -> RawResult:
        if not isinstance(payload, SqlQuery):
            raise InvalidQueryError(message="SQL executor expects a SQL query payload")
        validate_read_only_sql(payload.sql)

        connect_kwargs: dict[str, Any] = {}
        if instance.auth.type == "basic":
            connect_kwargs = {"user": instance.auth.username, "password": instance.auth.password}

        conn: Any | None = None
        try:
            try:
                conn = await self._connection_factory(instance.base_url, **connect_kwargs)
            except psycopg.Error as exc:
                raise TransportError(
                    message=f"Cannot connect to '{instance.instance_id}': {sanitize_error_message(str(exc))}",
                    sent=False,
                ) from exc

            log_external_query(
                query=payload.sql,
                dialect="sql",
                params=payload.params,
                context="widget.sql",
                instance_id=instance.instance_id,
            )
            result = await asyncio.wait_for(conn.execute(payload.sql, payload.params), timeout=timeout_seconds)
            rows = await result.fetchall()
            columns = [desc[0] for desc in result.description or []]
            dict_rows: list[dict[str, Any]] = []
            for row in rows[: self._max_result_rows]:
                dict_rows.append({column: row[idx] for idx, column in enumerate(columns)})
            return RawResult(data=dict_rows)
        except asyncio.TimeoutError as exc:
            raise QueryTimeout(message="Query execution timed out") from exc
        except EngineError:
            raise
        except psycopg.Error as exc:
            raise TransportError(message=f"SQL execution failed: {sanitize_error_message(str(exc))}") from exc
        finally:
            if conn:
                await conn.close()

    async def health_check(self, instance: PluginInstanceConfig, *, timeout_seconds: float) -> dict[str, Any]:
        query = SqlQuery.model_validate(self.default_queries[0].payload)
        result = await self.execute_query(query, instance, timeout_seconds=timeout_seconds)
        return {"rows": len(result.data)}
