import inspect
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from functools import wraps
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from colloquy.cancellation import CancellationToken
from colloquy.entities import ClientInteractionRequest, ToolCall, ToolDescription
from colloquy.errors import ToolNotFoundError
from colloquy.utils import load_callable

if TYPE_CHECKING:
    from colloquy.config import ClientToolConfig, ToolConfig
    from colloquy.conversation import Conversation

logger = logging.getLogger(__name__)

INJECTED_PARAMETERS = frozenset({"conversation", "cancellation_token"})


def normalize_tool_name(name: str) -> str:
    """
    Normalizes a tool name for lookup, so that ``get-weather``, ``get_weather`` and ``Get Weather`` all resolve to
    the same tool.
    """
    return re.sub(r"[-_\s]", "", name or "").lower()


def map_python_type_to_json(python_type: str) -> str:
    type_mapping = {
        "str": "string",
        "int": "integer",
        "float": "number",
        "bool": "boolean",
        "list": "array",
        "dict": "object",
    }
    return type_mapping.get(python_type, "string")


def _annotation_name(annotation: Any) -> str:
    if isinstance(annotation, str):
        return annotation.split("[")[0]
    origin = getattr(annotation, "__origin__", None)
    if origin is not None:
        return getattr(origin, "__name__", "str")
    return getattr(annotation, "__name__", "str")


def tool(func):
    """
    Turns a plain (sync or async) function into a server tool with a description the LLM can read.

    The description and the argument descriptions are taken from the docstring, using ``:param name:`` lines.
    Parameters called ``conversation`` or ``cancellation_token`` are injected at execution time and never
    shown to the LLM.
    """
    docstring = inspect.getdoc(func) or ""

    param_descriptions = {}
    current_param = None

    param_regex = re.compile(r":param\s+(\w+):\s*(.+)")
    return_regex = re.compile(r":return:\s*(.+)")
    description_lines = []
    return_description = None

    for line in map(str.strip, docstring.splitlines()):
        if param_match := param_regex.match(line):
            current_param, param_description = param_match.groups()
            param_descriptions[current_param] = param_description
        elif return_match := return_regex.match(line):
            return_description = return_match.group(1)
            current_param = None
        elif current_param and line:
            param_descriptions[current_param] += f" {line}"
        elif line:
            description_lines.append(line)

    description = " ".join(description_lines)
    if return_description:
        description += f"\nReturns: {return_description}"

    args = {}
    for param_name, param_description in param_descriptions.items():
        if param_name in INJECTED_PARAMETERS:
            continue
        annotation = func.__annotations__.get(param_name, "str")
        args[param_name] = {
            "title": param_name,
            "type": _annotation_name(annotation),
            "description": param_description.strip(),
        }

    @wraps(func)
    def wrapper(*args, **kwargs):
        return func(*args, **kwargs)

    wrapper.name = func.__name__
    wrapper.description = description
    wrapper.args = args

    return wrapper


class FunctionTool:
    """
    Adapts a python callable to the uniform server tool contract: JSON arguments in, result out.

    :param func: The callable, usually decorated with :func:`tool`. Coroutine functions are awaited.
    :param name: Overrides the tool name, defaults to the function name.
    :param description: Overrides the description taken from the decorator.
    """

    def __init__(self, func: Callable, name: Optional[str] = None, description: Optional[str] = None):
        self.func = func
        self.name = name or getattr(func, "name", func.__name__)
        self.description = description if description is not None else getattr(func, "description", "")
        self.args = getattr(func, "args", {})

        parameters = inspect.signature(func).parameters
        self._injected = INJECTED_PARAMETERS.intersection(parameters)

    def to_description(self) -> ToolDescription:
        return ToolDescription(name=self.name, description=self.description, arguments=self.args)

    async def execute(
        self,
        arguments_json: str,
        conversation: "Conversation",
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Any:
        arguments = json.loads(arguments_json) if arguments_json else {}
        if not isinstance(arguments, dict):
            raise TypeError(f"Arguments for tool '{self.name}' must be a JSON object")

        if "conversation" in self._injected:
            arguments["conversation"] = conversation
        if "cancellation_token" in self._injected:
            arguments["cancellation_token"] = cancellation_token

        result = self.func(**arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionTool(name={self.name!r})"


class ToolRegistry:
    """
    Server tools available to a conversation, looked up by normalized name.
    """

    def __init__(self, tools: Optional[Iterable[Any]] = None):
        self.tools: dict[str, Any] = {}
        if tools:
            self.register_tools(list(tools))

    def register_tools(self, tools: list[Any] | Any) -> None:
        if not isinstance(tools, list):
            tools = [tools]
        for server_tool in tools:
            if not hasattr(server_tool, "execute"):
                server_tool = FunctionTool(server_tool)
            key = normalize_tool_name(server_tool.name)
            if key in self.tools:
                logger.warning(f"Tool '{server_tool.name}' already exists and will be overwritten.")
            self.tools[key] = server_tool

    def find(self, name: str) -> Optional[Any]:
        return self.tools.get(normalize_tool_name(name))

    def get(self, name: str) -> Any:
        if (server_tool := self.find(name)) is not None:
            return server_tool
        raise ToolNotFoundError(name)

    def __contains__(self, name: str) -> bool:
        return normalize_tool_name(name) in self.tools

    def __len__(self) -> int:
        return len(self.tools)

    def descriptions(self) -> list[ToolDescription]:
        return [server_tool.to_description() for server_tool in self.tools.values()]

    async def call_tool(
        self, function_name: str, arguments: dict[str, Any], conversation: Optional["Conversation"] = None
    ) -> Any:
        """
        Can be used to call a tool directly by providing the function name and arguments.
        This can be handy, when one wants to manually call a tool, without calling an LLM.

        :param function_name: The name of the function to call.
        :param arguments: The arguments to pass to the function.
        :param conversation: Conversation handed to tools that ask for it.
        :return: The result of the function call.
        :raises ToolNotFoundError: If no tool with that name is registered.
        """
        return await self.get(function_name).execute(json.dumps(arguments), conversation, CancellationToken())


@dataclass
class ClientToolDefinition:
    """A tool that is executed by the caller instead of the server."""

    name: str
    description: str = ""
    arguments: dict[str, dict[str, Any]] = field(default_factory=dict)
    timeout_seconds: int = 30

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Client tool name must not be empty")
        if self.timeout_seconds <= 0:
            raise ValueError(f"Timeout for client tool '{self.name}' must be positive")

    def to_description(self) -> ToolDescription:
        return ToolDescription(name=self.name, description=self.description, arguments=self.arguments)


class ClientToolCatalog:
    """
    Names of the tools the caller executes itself. A call to one of them suspends the current tool batch.
    """

    def __init__(self, tools: Optional[Iterable[ClientToolDefinition | str]] = None):
        self.tools: dict[str, ClientToolDefinition] = {}
        for client_tool in tools or []:
            self.add(client_tool)

    def add(self, client_tool: ClientToolDefinition | str) -> None:
        if isinstance(client_tool, str):
            client_tool = ClientToolDefinition(name=client_tool)
        self.tools[normalize_tool_name(client_tool.name)] = client_tool

    @classmethod
    def from_config(cls, configs: list["ClientToolConfig"]) -> "ClientToolCatalog":
        return cls(
            ClientToolDefinition(
                name=config.name,
                description=config.description,
                arguments=config.arguments or {},
                timeout_seconds=config.timeout_seconds,
            )
            for config in configs
        )

    def find(self, name: str) -> Optional[ClientToolDefinition]:
        return self.tools.get(normalize_tool_name(name))

    def __contains__(self, name: str) -> bool:
        return normalize_tool_name(name) in self.tools

    def __len__(self) -> int:
        return len(self.tools)

    def descriptions(self) -> list[ToolDescription]:
        return [client_tool.to_description() for client_tool in self.tools.values()]

    def create_request_if_client_tool(self, call: ToolCall) -> Optional[ClientInteractionRequest]:
        """
        Builds the request to hand to the caller if ``call`` targets a client tool.

        :param call: The tool call emitted by the model.
        :return: The request with a fresh interaction id, or None for server tools.
        """
        client_tool = self.find(call.function_name)
        if client_tool is None:
            return None
        return ClientInteractionRequest(
            interaction_id=str(uuid.uuid4()),
            tool_name=client_tool.name,
            arguments=dict(call.arguments or {}),
            description=client_tool.description,
            timeout_seconds=client_tool.timeout_seconds,
            tool_call_id=call.tool_call_id,
        )


def load_tools(tool_configs: list["ToolConfig"], base_path: Optional[Path] = None) -> list[FunctionTool]:
    """
    Loads server tools from python modules on disk.

    :param tool_configs: Tool configurations naming a function and the module file it lives in.
    :param base_path: Directory relative module paths are resolved against.
    :return: One :class:`FunctionTool` per configuration, in configuration order.
    """
    tools = []
    for config in tool_configs:
        module_path = Path(config.module_path)
        if not module_path.is_absolute() and base_path is not None:
            module_path = base_path / module_path
        tools.append(FunctionTool(load_callable(module_path, config.function_name), name=config.name or None))
    return tools
