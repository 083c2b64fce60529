import asyncio
import json

import pytest
from pydantic import ValidationError

from widget_engine.schemas import DatabaseParameter, WidgetDefinition
from widget_engine.services.widget_store import InMemoryWidgetStore

WIDGET = {
    "id": "open-tickets",
    "name": "Open tickets",
    "template": 'project = "DEP" AND labels ~ ${clientLabel}',
    "parameters": [
        {"name": "clientLabel", "source": "context", "context_var": "clientShortName"},
        {"name": "domain", "source": "database", "table": "clients", "column": "domain"},
    ],
    "plugin": {"plugin_name": "jira", "instance_id": "main", "protocol": "jql"},
    "display_config": {"chart": "table"},
    "refresh_interval_seconds": 120,
}


def test_store_loads_definitions_from_json_file(tmp_path) -> None:
    path = tmp_path / "widgets.json"
    path.write_text(json.dumps({"widgets": [WIDGET]}), encoding="utf-8")

    store = InMemoryWidgetStore.from_json_file(path)
    widget = asyncio.run(store.get_widget_definition("open-tickets"))

    assert widget is not None
    assert widget.refresh_interval_seconds == 120
    assert isinstance(widget.parameters[1], DatabaseParameter)
    assert widget.parameters[1].entity_key == "entityId"
    assert asyncio.run(store.get_widget_definition("missing")) is None


def test_put_replaces_definition() -> None:
    store = InMemoryWidgetStore([WidgetDefinition.model_validate(WIDGET)])
    store.put(WidgetDefinition.model_validate({**WIDGET, "name": "Renamed"}))

    assert asyncio.run(store.get_widget_definition("open-tickets")).name == "Renamed"


def test_duplicate_parameter_names_are_rejected() -> None:
    parameters = [
        {"name": "x", "source": "static", "value": 1},
        {"name": "x", "source": "static", "value": 2},
    ]

    with pytest.raises(ValidationError):
        WidgetDefinition.model_validate({**WIDGET, "parameters": parameters})


def test_unknown_parameter_source_is_rejected() -> None:
    with pytest.raises(ValidationError):
        WidgetDefinition.model_validate({**WIDGET, "parameters": [{"name": "x", "source": "ldap"}]})
