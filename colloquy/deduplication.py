import json
import logging
from dataclasses import replace

from colloquy.entities import ChatResponse, ToolCall

logger = logging.getLogger(__name__)


def tool_call_key(call: ToolCall) -> tuple[str, str]:
    """
    Identity of a tool call for deduplication: its name and its arguments as canonical JSON.

    Argument order does not matter, ``{"a": 1, "b": 2}`` and ``{"b": 2, "a": 1}`` yield the same key.
    """
    arguments = json.dumps(call.arguments or {}, sort_keys=True, default=str, separators=(",", ":"))
    return call.function_name, arguments


def deduplicate_tool_calls(tool_calls: list[ToolCall]) -> list[ToolCall]:
    """
    Removes later tool calls that repeat an earlier one.

    :param tool_calls: Tool calls in the order the model emitted them.
    :return: The first occurrence of every distinct call, in original order.
    """
    seen: set[tuple[str, str]] = set()
    unique = []
    for call in tool_calls:
        key = tool_call_key(call)
        if key in seen:
            logger.debug(f"Dropping duplicate tool call {call.tool_call_id} ({call.function_name})")
            continue
        seen.add(key)
        unique.append(call)
    return unique


def deduplicate_response(response: ChatResponse) -> ChatResponse:
    """
    Applies :func:`deduplicate_tool_calls` to every message of a complete response.

    The response is returned as is when no message carried a duplicate.
    """
    changed = False
    messages = []
    for message in response.messages:
        calls = message.tool_calls
        unique = deduplicate_tool_calls(calls)
        if len(unique) == len(calls):
            messages.append(message)
            continue

        changed = True
        kept_ids = {id(call) for call in unique}
        messages.append(
            message.with_contents(
                [c for c in message.contents if not isinstance(c, ToolCall) or id(c) in kept_ids]
            )
        )
        logger.info(f"Removed {len(calls) - len(unique)} duplicate tool call(s) from response")

    return replace(response, messages=messages) if changed else response
