from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter

from widget_engine.schemas import WidgetDefinition

logger = logging.getLogger("uvicorn.error")

_DEFINITIONS_ADAPTER = TypeAdapter(list[WidgetDefinition])


class WidgetStore(Protocol):
    async def get_widget_definition(self, widget_id: str) -> WidgetDefinition | None:
        raise NotImplementedError


class InMemoryWidgetStore:
    def __init__(self, definitions: Iterable[WidgetDefinition] = ()) -> None:
        self._definitions: dict[str, WidgetDefinition] = {}
        for definition in definitions:
            self.put(definition)

    @classmethod
    def from_json_file(cls, path: str | Path) -> "InMemoryWidgetStore":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(raw, dict):
            raw = raw.get("widgets", [])
        definitions = _DEFINITIONS_ADAPTER.validate_python(raw)
        logger.info("widget_store.loaded | %s", {"path": str(path), "count": len(definitions)})
        return cls(definitions)

    def put(self, definition: WidgetDefinition) -> None:
        self._definitions[definition.id] = definition

    async def get_widget_definition(self, widget_id: str) -> WidgetDefinition | None:
        return self._definitions.get(widget_id)
