import pytest

from widget_engine.schemas import AuthConfig, PluginInstanceConfig


@pytest.fixture
def jira_instance() -> PluginInstanceConfig:
    return PluginInstanceConfig(
        plugin_name="jira",
        instance_id="main",
        name="Service desk",
        base_url="https://jira.example.com",
        auth=AuthConfig(type="basic", username="svc-widgets", password="jira-secret-pw"),
    )


@pytest.fixture
def rest_instance() -> PluginInstanceConfig:
    return PluginInstanceConfig(
        plugin_name="rest",
        instance_id="cmdb",
        name="CMDB",
        base_url="https://cmdb.example.com/api",
        auth=AuthConfig(type="bearer", token="rest-secret-token"),
    )


@pytest.fixture
def sql_instance() -> PluginInstanceConfig:
    return PluginInstanceConfig(
        plugin_name="sql",
        instance_id="warehouse",
        base_url="postgresql://warehouse.internal:5432/reporting",
        auth=AuthConfig(type="basic", username="reader", password="sql-secret-pw"),
    )
