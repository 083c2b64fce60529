from __future__ import annotations

import asyncio
import re
from typing import Any, Awaitable, Callable, Protocol

from psycopg import AsyncConnection

from widget_engine.errors import EngineError, InvalidQueryError
from widget_engine.observability import log_external_query

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ScalarLookup(Protocol):
    async def lookup_scalar(self, *, table: str, column: str, entity_id: Any, key_column: str = "id") -> list[Any]: ...


def _quote_ident(identifier: str) -> str:
    if not _IDENTIFIER_PATTERN.match(identifier):
        raise InvalidQueryError(message=f"Invalid lookup identifier '{identifier}'")
    return '"' + identifier.replace('"', '""') + '"'


def _qualified_name(name: str) -> str:
    parts = [part for part in name.split(".") if part]
    if not parts:
        raise InvalidQueryError(message="Lookup table name is empty")
    return ".".join(_quote_ident(part) for part in parts)


class PostgresScalarLookup:
    def __init__(
        self,
        database_url: str,
        *,
        connection_factory: Callable[[str], Awaitable[Any]] | None = None,
        timeout_seconds: float = 10,
    ) -> None:
        self._database_url = database_url
        self._connection_factory = connection_factory or AsyncConnection.connect
        self._timeout_seconds = timeout_seconds

    async def lookup_scalar(self, *, table: str, column: str, entity_id: Any, key_column: str = "id") -> list[Any]:
        # LIMIT 2 is enough to tell "exactly one" from "ambiguous".
        sql = (
            f"SELECT {_quote_ident(column)} FROM {_qualified_name(table)} "
            f"WHERE {_quote_ident(key_column)} = %s LIMIT 2"
        )
        log_external_query(query=sql, dialect="sql", params=[entity_id], context="parameter.lookup")
        conn = None
        try:
            conn = await self._connection_factory(self._database_url)
            result = await asyncio.wait_for(conn.execute(sql, [entity_id]), timeout=self._timeout_seconds)
            rows = await result.fetchall()
            return [row[0] for row in rows]
        except asyncio.TimeoutError as exc:
            raise EngineError(status_code=504, code="lookup_timeout", message="Parameter lookup timed out") from exc
        except EngineError:
            raise
        except Exception as exc:
            raise EngineError(status_code=500, code="lookup_failed", message="Parameter lookup failed") from exc
        finally:
            if conn:
                await conn.close()
