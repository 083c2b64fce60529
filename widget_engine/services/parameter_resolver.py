from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from widget_engine.errors import (
    AmbiguousLookupError,
    EngineError,
    LookupNotFoundError,
    MissingContextValueError,
)
from widget_engine.schemas import (
    ContextParameter,
    DatabaseParameter,
    ExecutionContext,
    ParameterDeclaration,
    StaticParameter,
)
from widget_engine.services.scalar_lookup import ScalarLookup

logger = logging.getLogger("uvicorn.error")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value if isinstance(value, str) else str(value)


class ParameterResolver:
    def __init__(self, lookup: ScalarLookup | None = None) -> None:
        self._lookup = lookup

    async def resolve(self, decl: ParameterDeclaration, ctx: ExecutionContext) -> str:
        if isinstance(decl, StaticParameter):
            return _stringify(decl.value)
        if isinstance(decl, ContextParameter):
            value = ctx.get(decl.context_var)
            if value is None:
                raise MissingContextValueError(decl.name, decl.context_var)
            return _stringify(value)
        if isinstance(decl, DatabaseParameter):
            return await self._resolve_database(decl, ctx)
        raise TypeError(f"Unsupported parameter declaration: {type(decl).__name__}")

    async def resolve_all(self, decls: Sequence[ParameterDeclaration], ctx: ExecutionContext) -> dict[str, str]:
        outcomes = await asyncio.gather(
            *[self.resolve(decl, ctx) for decl in decls],
            return_exceptions=True,
        )
        resolved: dict[str, str] = {}
        for decl, outcome in zip(decls, outcomes):
            if isinstance(outcome, BaseException):
                # First failure in declaration order wins, whichever finished first.
                raise outcome
            resolved[decl.name] = outcome
        return resolved

    async def _resolve_database(self, decl: DatabaseParameter, ctx: ExecutionContext) -> str:
        entity_id = ctx.get(decl.entity_key)
        if entity_id is None:
            raise MissingContextValueError(decl.name, decl.entity_key)
        if self._lookup is None:
            raise EngineError(
                status_code=500,
                code="lookup_unavailable",
                message=f"Parameter '{decl.name}' needs a database lookup but none is configured",
            )

        values = await self._lookup.lookup_scalar(
            table=decl.table,
            column=decl.column,
            entity_id=entity_id,
            key_column=decl.key_column,
        )
        if not values:
            raise LookupNotFoundError(decl.name, table=decl.table, column=decl.column, entity_id=entity_id)
        if len(values) > 1:
            logger.warning(
                "parameter.ambiguous_lookup | %s",
                {"parameter": decl.name, "table": decl.table, "column": decl.column, "entity_id": entity_id},
            )
            raise AmbiguousLookupError(decl.name, table=decl.table, column=decl.column, entity_id=entity_id)
        value = values[0]
        if value is None:
            raise LookupNotFoundError(decl.name, table=decl.table, column=decl.column, entity_id=entity_id)
        return _stringify(value)
