from typing import AsyncIterator
from unittest.mock import AsyncMock, Mock

import pytest

from colloquy import tool
from colloquy.conversation import Conversation
from colloquy.entities import ChatMessage, ChatResponse, StreamChunk, ToolCall, ToolCallResult
from colloquy.protocols import LLMClient
from colloquy.tools import ClientToolCatalog, ClientToolDefinition, ToolRegistry


@tool
def add(a: int, b: int) -> int:
    """
    Adds two numbers.

    :param a: First summand.
    :param b: Second summand.
    """
    return a + b


@tool
async def echo(text: str) -> str:
    """
    Echoes the given text.

    :param text: The text to echo.
    """
    return text


@tool
def explode(reason: str) -> str:
    """
    Always fails.

    :param reason: Message of the raised error.
    """
    raise RuntimeError(reason)


def make_call(call_id: str, name: str, **arguments) -> ToolCall:
    return ToolCall(tool_call_id=call_id, function_name=name, arguments=arguments)


def make_result(call_id: str, name: str = "echo", result="ok") -> ToolCallResult:
    return ToolCallResult(tool_call_id=call_id, function_name=name, result=result)


async def async_iter(items) -> AsyncIterator:
    for item in items:
        yield item


@pytest.fixture
def conversation():
    conversation = Conversation(conversation_id="conv-1")
    conversation.append([ChatMessage.system("You are a helpful assistant."), ChatMessage.user("Hello, world!")])
    return conversation


@pytest.fixture
def tool_registry():
    return ToolRegistry([add, echo, explode])


@pytest.fixture
def client_catalog():
    return ClientToolCatalog(
        [ClientToolDefinition(name="confirm_action", description="Asks the user for confirmation", timeout_seconds=60)]
    )


@pytest.fixture
def llm_client_mock():
    client = Mock(spec=LLMClient)
    client.generate = AsyncMock()
    return client


def response_with(*contents_or_text, cost: float = 0.0) -> ChatResponse:
    """Builds a one-message response from text and tool calls."""
    text = "".join(c for c in contents_or_text if isinstance(c, str))
    calls = [c for c in contents_or_text if isinstance(c, ToolCall)]
    return ChatResponse(messages=[ChatMessage.assistant(text, calls)], finish_reason="stop", cost=cost)


def stream_of(*chunks: StreamChunk):
    """Returns a replacement for LLMClient.stream yielding the given chunks."""

    def stream(messages, tools=None, cancellation_token=None):
        return async_iter(chunks)

    return stream
