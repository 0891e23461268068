from __future__ import annotations

import types
from dataclasses import dataclass, field, fields, is_dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union, get_args, get_origin, get_type_hints


@dataclass
class JsonSerializable:
    def to_dict(self) -> dict[str, Any]:
        def serialize(obj):
            if is_dataclass(obj):
                return {f.name: serialize(getattr(obj, f.name)) for f in fields(obj)}
            elif isinstance(obj, Enum):
                return obj.value
            elif isinstance(obj, list):
                return [serialize(item) for item in obj]
            elif isinstance(obj, dict):
                return {key: serialize(value) for key, value in obj.items()}
            else:
                return obj

        return serialize(self)

    @classmethod
    def from_dict(cls, data):
        if data is None:
            return None

        def deserialize(cls_or_type, data):
            if data is None:
                return None
            if is_dataclass(cls_or_type):
                hints = get_type_hints(cls_or_type)
                kwargs = {}
                for f in fields(cls_or_type):
                    # discriminators and other derived fields are not constructor arguments
                    if not f.init:
                        continue
                    value = data.get(f.name)
                    if value is not None:
                        kwargs[f.name] = deserialize_field(hints.get(f.name, Any), value)
                return cls_or_type(**kwargs)
            elif isinstance(cls_or_type, type) and issubclass(cls_or_type, Enum):
                return cls_or_type(data)
            else:
                return data

        def deserialize_field(field_type, value):
            origin = get_origin(field_type)
            args = get_args(field_type)

            if origin is list:
                item_type = args[0] if args else Any
                return [deserialize_field(item_type, item) for item in value]
            elif origin is dict:
                key_type, val_type = args if args else (Any, Any)
                return {deserialize_field(key_type, k): deserialize_field(val_type, v) for k, v in value.items()}
            elif origin is Union or origin is types.UnionType:
                if isinstance(value, dict) and "type" in value:
                    for arg in args:
                        if is_dataclass(arg) and _discriminator(arg) == value["type"]:
                            return deserialize(arg, value)
                for arg in args:
                    if arg is type(None):
                        continue
                    try:
                        return deserialize_field(arg, value)
                    except (ValueError, TypeError):
                        continue
                return value
            elif is_dataclass(field_type):
                if isinstance(value, field_type):
                    return value
                return deserialize(field_type, value)
            elif isinstance(field_type, type) and issubclass(field_type, Enum):
                return field_type(value)
            else:
                return value

        return deserialize(cls, data)


def _discriminator(content_cls) -> Optional[str]:
    for f in fields(content_cls):
        if f.name == "type" and not f.init:
            return f.default
    return None


class Role(Enum):
    """
    Enumeration of roles in the conversation.
    """

    SYSTEM = "system"
    ASSISTANT = "assistant"
    TOOL = "tool"
    USER = "user"

    def __str__(self):
        """Return the value of the enum member."""
        return self.value


class ExecutionPhase(Enum):
    """
    Where a conversation currently stands with respect to tool execution.

    ``EXECUTING_SCENE`` is the normal state. ``AWAITING_CLIENT`` is entered when a client tool has been requested
    and left again once the client result has been folded back in.
    """

    EXECUTING_SCENE = "executing_scene"
    AWAITING_CLIENT = "awaiting_client"

    def __str__(self):
        return self.value


@dataclass
class TextContent(JsonSerializable):
    text: str = ""
    type: str = field(default="text", init=False)


@dataclass
class ToolCall(JsonSerializable):
    tool_call_id: str
    function_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="tool_call", init=False)


@dataclass
class ToolCallResult(JsonSerializable):
    tool_call_id: str
    function_name: str
    result: Any = None
    is_error: bool = False
    type: str = field(default="tool_result", init=False)


@dataclass
class DataContent(JsonSerializable):
    """Binary payload, base64 encoded."""

    data: str = ""
    media_type: str = "application/octet-stream"
    type: str = field(default="data", init=False)


@dataclass
class UriContent(JsonSerializable):
    uri: str = ""
    media_type: str = ""
    type: str = field(default="uri", init=False)


Content = Union[TextContent, ToolCall, ToolCallResult, DataContent, UriContent]

CONTENT_TYPES: dict[str, type] = {
    "text": TextContent,
    "tool_call": ToolCall,
    "tool_result": ToolCallResult,
    "data": DataContent,
    "uri": UriContent,
}


def content_from_dict(data: dict[str, Any]) -> Content:
    """
    Builds a content item from its serialized form, using the ``type`` discriminator.

    :param data: The serialized content item.
    :return: The matching content dataclass.
    :raises ValueError: If the discriminator is missing or unknown.
    """
    content_cls = CONTENT_TYPES.get(data.get("type", ""))
    if content_cls is None:
        raise ValueError(f"Unknown content type: {data.get('type')!r}")
    return content_cls.from_dict(data)


@dataclass
class ChatMessage(JsonSerializable):
    role: Role
    contents: list[Content] = field(default_factory=list)
    name: Optional[str] = ""
    is_active: bool = True

    def __post_init__(self):
        if isinstance(self.role, str):
            self.role = Role(self.role)

        self.contents = [content_from_dict(c) if isinstance(c, dict) else c for c in self.contents or []]

    @property
    def text(self) -> str:
        return "".join(c.text for c in self.contents if isinstance(c, TextContent))

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [c for c in self.contents if isinstance(c, ToolCall)]

    @property
    def tool_results(self) -> list[ToolCallResult]:
        return [c for c in self.contents if isinstance(c, ToolCallResult)]

    @property
    def other_contents(self) -> list[Content]:
        """Every content item that is neither a tool call nor a tool result."""
        return [c for c in self.contents if not isinstance(c, (ToolCall, ToolCallResult))]

    def with_contents(self, contents: list[Content]) -> ChatMessage:
        return replace(self, contents=list(contents))

    @classmethod
    def system(cls, text: str) -> ChatMessage:
        return cls(role=Role.SYSTEM, contents=[TextContent(text)])

    @classmethod
    def user(cls, text: str, name: str = "") -> ChatMessage:
        return cls(role=Role.USER, contents=[TextContent(text)], name=name)

    @classmethod
    def assistant(
        cls, text: str = "", tool_calls: Optional[list[ToolCall]] = None, name: str = ""
    ) -> ChatMessage:
        contents: list[Content] = [TextContent(text)] if text else []
        contents.extend(tool_calls or [])
        return cls(role=Role.ASSISTANT, contents=contents, name=name)

    @classmethod
    def tool(cls, results: list[ToolCallResult] | ToolCallResult) -> ChatMessage:
        if isinstance(results, ToolCallResult):
            results = [results]
        return cls(role=Role.TOOL, contents=list(results))


class ToolExecutionStatus(Enum):
    STARTED = "started"
    COMPLETED = "completed"
    AWAITING_CLIENT = "awaiting_client"
    ERROR = "error"

    def __str__(self):
        return self.value


@dataclass
class ClientInteractionRequest(JsonSerializable):
    """
    Request sent to the caller when a tool has to be executed on the client side.

    The caller answers with a :class:`ClientInteractionResult` carrying the same ``interaction_id``.
    """

    interaction_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    timeout_seconds: int = 30
    tool_call_id: str = ""


@dataclass
class ClientContent(JsonSerializable):
    type: str = "text"
    text: Optional[str] = None
    data: Optional[str] = None
    media_type: Optional[str] = None


@dataclass
class ClientInteractionResult(JsonSerializable):
    interaction_id: str
    error: Optional[str] = None
    contents: list[ClientContent] = field(default_factory=list)
    executed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self):
        self.contents = [ClientContent.from_dict(c) if isinstance(c, dict) else c for c in self.contents or []]


@dataclass
class ToolExecutionStep(JsonSerializable):
    """
    One observable step of a tool batch.

    Exactly one of ``result``, ``error`` or ``client_request`` is meaningful, depending on ``status``.
    """

    status: ToolExecutionStatus
    tool_name: str
    tool_call_id: str = ""
    message: str = ""
    result: Any = None
    error: Optional[str] = None
    client_request: Optional[ClientInteractionRequest] = None

    @classmethod
    def started(cls, call: ToolCall) -> ToolExecutionStep:
        return cls(
            status=ToolExecutionStatus.STARTED,
            tool_name=call.function_name,
            tool_call_id=call.tool_call_id,
            message=f"Executing tool: {call.function_name}",
        )

    @classmethod
    def completed(cls, call: ToolCall, result: Any) -> ToolExecutionStep:
        return cls(
            status=ToolExecutionStatus.COMPLETED,
            tool_name=call.function_name,
            tool_call_id=call.tool_call_id,
            message=f"Tool {call.function_name} completed",
            result=result,
        )

    @classmethod
    def failed(cls, call: ToolCall, error: str) -> ToolExecutionStep:
        return cls(
            status=ToolExecutionStatus.ERROR,
            tool_name=call.function_name,
            tool_call_id=call.tool_call_id,
            message=f"Tool {call.function_name} failed",
            error=error,
        )

    @classmethod
    def awaiting_client(cls, call: ToolCall, request: ClientInteractionRequest) -> ToolExecutionStep:
        return cls(
            status=ToolExecutionStatus.AWAITING_CLIENT,
            tool_name=call.function_name,
            tool_call_id=call.tool_call_id,
            message=f"Awaiting client execution of {call.function_name}",
            client_request=request,
        )


@dataclass
class StreamChunk:
    """
    A single frame received from a streaming transport.

    ``pending_tool_call_id`` announces a tool call whose arguments are still streaming. The complete call follows
    later in ``tool_calls``.
    """

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    pending_tool_call_id: Optional[str] = None
    contents: list[Content] = field(default_factory=list)
    finish_reason: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    cost: float = 0.0


@dataclass
class StreamingFrame:
    """A frame handed to the caller while a streamed response is being accumulated."""

    text_delta: str = ""
    accumulated_text: str = ""
    final_message: Optional[ChatMessage] = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    streamed_to_user: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    cost: float = 0.0

    @property
    def is_final(self) -> bool:
        return self.final_message is not None


@dataclass
class ChatResponse(JsonSerializable):
    messages: list[ChatMessage] = field(default_factory=list)
    finish_reason: Optional[str] = None
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    cost: float = 0.0

    @property
    def message(self) -> Optional[ChatMessage]:
        return self.messages[-1] if self.messages else None

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [call for message in self.messages for call in message.tool_calls]


@dataclass
class ToolDescription:
    name: str
    description: str
    arguments: dict[str, dict[str, Any]]

    @classmethod
    def from_function(cls, function: Callable):
        """
        Create a ToolDescription instance from a decorated function.
        Assumes the function has been annotated with the @tool decorator.
        """
        return cls(
            name=function.name,
            description=function.description,
            arguments=function.args,
        )
