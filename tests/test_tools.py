import json
from pathlib import Path

import pytest

from colloquy.cancellation import CancellationToken
from colloquy.config import ToolConfig
from colloquy.entities import ToolDescription
from colloquy.errors import ToolNotFoundError
from colloquy.tools import (
    ClientToolCatalog,
    ClientToolDefinition,
    FunctionTool,
    ToolRegistry,
    load_tools,
    map_python_type_to_json,
    normalize_tool_name,
    tool,
)
from colloquy.utils import load_module_from_path, module_name_for_path

from conftest import add, echo, make_call

TOOL_TEST_FILES = Path(__file__).parent / "test_files" / "tool_test_files"


def test_tool_decorator_reads_docstring():
    @tool
    def search(query: str, limit: int, conversation=None) -> list:
        """
        Searches the knowledge base.

        :param query: What to look for.
        :param limit: Maximum number of hits,
            counted after filtering.
        :param conversation: Injected, never shown.
        :return: Matching documents.
        """
        return []

    assert search.name == "search"
    assert search.description == "Searches the knowledge base.\nReturns: Matching documents."
    assert search.args == {
        "query": {"title": "query", "type": "str", "description": "What to look for."},
        "limit": {"title": "limit", "type": "int", "description": "Maximum number of hits, counted after filtering."},
    }


def test_tool_description_from_function():
    description = ToolDescription.from_function(add)

    assert description.name == "add"
    assert set(description.arguments) == {"a", "b"}


@pytest.mark.parametrize(
    "python_type, json_type",
    [("str", "string"), ("int", "integer"), ("float", "number"), ("bool", "boolean"), ("Foo", "string")],
)
def test_map_python_type_to_json(python_type, json_type):
    assert map_python_type_to_json(python_type) == json_type


@pytest.mark.parametrize("name", ["get_weather", "get-weather", "Get Weather", "GETWEATHER"])
def test_normalize_tool_name(name):
    assert normalize_tool_name(name) == "getweather"


@pytest.mark.asyncio
async def test_function_tool_executes_sync_and_async():
    assert await FunctionTool(add).execute(json.dumps({"a": 2, "b": 3}), conversation=None) == 5
    assert await FunctionTool(echo).execute(json.dumps({"text": "hi"}), conversation=None) == "hi"


@pytest.mark.asyncio
async def test_function_tool_injects_conversation_and_token(conversation):
    seen = {}

    async def inspect_context(note: str, conversation, cancellation_token):
        seen.update(note=note, conversation=conversation, token=cancellation_token)
        return "ok"

    token = CancellationToken()
    await FunctionTool(inspect_context).execute('{"note": "x"}', conversation, token)

    assert seen == {"note": "x", "conversation": conversation, "token": token}


@pytest.mark.asyncio
async def test_function_tool_rejects_non_object_arguments():
    with pytest.raises(TypeError):
        await FunctionTool(add).execute("[1, 2]", conversation=None)


@pytest.mark.asyncio
async def test_function_tool_empty_arguments():
    def ping() -> str:
        return "pong"

    assert await FunctionTool(ping).execute("", conversation=None) == "pong"


def test_registry_looks_up_by_normalized_name(tool_registry):
    assert tool_registry.find("ADD") is tool_registry.get("add")
    assert "e-c-h-o" in tool_registry
    assert tool_registry.find("missing") is None


def test_registry_get_missing_raises(tool_registry):
    with pytest.raises(ToolNotFoundError) as excinfo:
        tool_registry.get("missing")

    assert isinstance(excinfo.value, LookupError)
    assert str(excinfo.value) == "Tool 'missing' not found"


def test_registry_overwrites_with_warning(caplog):
    registry = ToolRegistry([add])
    registry.register_tools(FunctionTool(echo, name="add"))

    assert len(registry) == 1
    assert registry.get("add").func is echo
    assert "already exists" in caplog.text


@pytest.mark.asyncio
async def test_call_tool(tool_registry):
    assert await tool_registry.call_tool("add", {"a": 1, "b": 1}) == 2


def test_client_tool_definition_validation():
    with pytest.raises(ValueError):
        ClientToolDefinition(name=" ")
    with pytest.raises(ValueError):
        ClientToolDefinition(name="confirm", timeout_seconds=0)


def test_client_catalog_creates_request(client_catalog):
    request = client_catalog.create_request_if_client_tool(make_call("c2", "confirm-action", message="Sure?"))

    assert request.tool_name == "confirm_action"
    assert request.tool_call_id == "c2"
    assert request.arguments == {"message": "Sure?"}
    assert request.timeout_seconds == 60
    assert request.interaction_id


def test_client_catalog_ignores_server_tools(client_catalog):
    assert client_catalog.create_request_if_client_tool(make_call("c1", "add", a=1)) is None


def test_client_catalog_interaction_ids_are_unique(client_catalog):
    call = make_call("c2", "confirm_action")
    first = client_catalog.create_request_if_client_tool(call)
    second = client_catalog.create_request_if_client_tool(call)

    assert first.interaction_id != second.interaction_id


def test_client_catalog_accepts_names():
    catalog = ClientToolCatalog(["open_file"])
    assert "open_file" in catalog
    assert catalog.descriptions()[0].name == "open_file"


@pytest.mark.asyncio
async def test_load_tools_from_module():
    configs = [
        ToolConfig(name="", function_name="get_weather", module_path=TOOL_TEST_FILES / "weather_tools.py"),
        ToolConfig(name="forecast", function_name="get_forecast", module_path=Path("weather_tools.py")),
    ]

    tools = load_tools(configs, base_path=TOOL_TEST_FILES)

    assert [t.name for t in tools] == ["get_weather", "forecast"]
    assert await tools[0].execute('{"city": "Rome"}', conversation=None) == "Sunny in Rome"
    assert (await tools[1].execute('{"city": "Rome", "days": 2}', conversation=None))["days"] == [
        "day 1: sunny",
        "day 2: sunny",
    ]


def test_load_tools_missing_function():
    configs = [ToolConfig(function_name="does_not_exist", module_path=TOOL_TEST_FILES / "weather_tools.py")]

    with pytest.raises(ImportError):
        load_tools(configs)


def test_tool_modules_are_loaded_once():
    module_path = TOOL_TEST_FILES / "weather_tools.py"

    first = load_module_from_path(module_path)
    second = load_module_from_path(module_path)

    assert first is second
    assert first.__name__ == module_name_for_path(module_path.resolve())


def test_load_module_from_missing_path():
    with pytest.raises(FileNotFoundError):
        load_module_from_path(TOOL_TEST_FILES / "missing.py")
