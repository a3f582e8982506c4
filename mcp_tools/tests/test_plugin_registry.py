"""Tests for the plugin registry and tool discovery."""

import pytest
from unittest.mock import patch

from mcp_tools.interfaces import ToolInterface
from mcp_tools.plugin import registry, register_tool


class MockTool(ToolInterface):
    """Mock tool for registry tests."""

    @property
    def name(self) -> str:
        return "mock_tool"

    @property
    def description(self) -> str:
        return "A mock tool for testing"

    @property
    def input_schema(self) -> dict:
        return {"type": "object", "properties": {}}

    async def execute_tool(self, arguments: dict):
        return {"success": True, "message": "executed"}


class AbstractTool(ToolInterface):
    """Tool without an implementation of execute_tool."""

    @property
    def name(self) -> str:
        return "abstract_tool"


class BrokenTool(MockTool):
    def __init__(self):
        raise RuntimeError("cannot build")


@pytest.fixture
def clean_registry():
    """Fixture to provide a clean registry for each test."""
    original_tools = registry.tools.copy()
    original_instances = registry.instances.copy()
    original_paths = registry.discovered_paths.copy()

    registry.clear()

    yield registry

    registry.tools = original_tools
    registry.instances = original_instances
    registry.discovered_paths = original_paths


def test_register_tool(clean_registry):
    result = clean_registry.register_tool(MockTool)

    assert result is MockTool
    assert clean_registry.tools["mock_tool"] is MockTool


def test_register_tool_rejects_non_tools(clean_registry):
    with pytest.raises(TypeError):
        clean_registry.register_tool(object)

    with pytest.raises(TypeError):
        clean_registry.register_tool(MockTool())


def test_abstract_and_broken_tools_are_skipped(clean_registry):
    assert clean_registry.register_tool(AbstractTool) is None
    assert clean_registry.register_tool(BrokenTool) is None
    assert clean_registry.tools == {}


def test_register_tool_decorator(clean_registry):
    """Test registering tools using the decorator."""

    @register_tool
    class DecoratedTool(MockTool):
        @property
        def name(self) -> str:
            return "decorated_tool"

    assert clean_registry.tools["decorated_tool"] is DecoratedTool


def test_excluded_tool_names(clean_registry):
    with patch.dict("os.environ", {"MCP_EXCLUDED_TOOL_NAMES": "other, mock_tool"}):
        assert clean_registry.register_tool(MockTool) is None

    assert "mock_tool" not in clean_registry.tools


def test_get_tool_instance_is_cached_and_case_insensitive(clean_registry):
    clean_registry.register_tool(MockTool)

    first = clean_registry.get_tool_instance("mock_tool")
    second = clean_registry.get_tool_instance("MOCK_TOOL")

    assert isinstance(first, MockTool)
    assert first is second
    assert clean_registry.get_tool_instance("missing") is None


def test_get_all_instances(clean_registry):
    clean_registry.register_tool(MockTool)

    instances = clean_registry.get_all_instances()

    assert len(instances) == 1
    assert instances[0].name == "mock_tool"


def test_discover_tools_finds_adt_tools(clean_registry):
    clean_registry.discover_tools("plugins")

    assert "adt_object" in clean_registry.tools
    assert "adt_object_low" in clean_registry.tools


def test_discover_tools_unknown_package(clean_registry):
    clean_registry.discover_tools("no_such_package_anywhere")
    assert clean_registry.tools == {}
