"""
Keeps the tool-call protocol of a conversation history well formed.

Chat-completion backends reject histories where an assistant tool call has no matching tool result, or where
a tool result points at a call that does not exist. The functions in this module repair such histories on the
way out (:func:`build_request_messages`) and report problems without touching anything (:func:`validate`).
"""

import logging
from typing import TYPE_CHECKING

from colloquy.deduplication import deduplicate_tool_calls
from colloquy.entities import ChatMessage, Role, ToolCall, ToolCallResult

if TYPE_CHECKING:
    from colloquy.conversation import Conversation

logger = logging.getLogger(__name__)


def build_request_messages(conversation: "Conversation") -> list[ChatMessage]:
    """
    Returns the list of messages to send to the LLM for the given conversation.

    While the conversation awaits a client result, the active messages are returned unchanged: the pairing
    of calls and results is knowingly incomplete in that phase.

    :param conversation: The conversation to build the request for.
    :return: The request-ready list of messages.
    """
    if conversation.is_awaiting_client:
        return conversation.active_messages
    return sanitize_messages(conversation.active_messages)


def _responded_call_ids(messages: list[ChatMessage]) -> set[str]:
    # A result only counts if its call appeared earlier in the history
    invoked: set[str] = set()
    responded: set[str] = set()
    for message in messages:
        if message.role == Role.ASSISTANT:
            invoked.update(call.tool_call_id for call in message.tool_calls)
        elif message.role == Role.TOOL:
            responded.update(r.tool_call_id for r in message.tool_results if r.tool_call_id in invoked)
    return responded


def sanitize_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    """
    Drops tool calls without a result and tool results without a call.

    Duplicate tool calls inside an assistant message are removed first. Assistant messages keep their other
    content when all their calls are dropped, and disappear when nothing is left. Tool messages survive only
    if at least one of their results matches a kept call. Every kept call ends up with exactly one result.

    :param messages: The messages to sanitize, in order.
    :return: A new list. The input messages are not modified.
    """
    responded = _responded_call_ids(messages)
    kept_call_ids: set[str] = set()
    pending: set[str] = set()
    sanitized = []

    for message in messages:
        if message.role == Role.ASSISTANT and message.tool_calls:
            valid: list[ToolCall] = []
            for call in deduplicate_tool_calls(message.tool_calls):
                if call.tool_call_id in responded and call.tool_call_id not in kept_call_ids:
                    valid.append(call)
                    kept_call_ids.add(call.tool_call_id)
                else:
                    logger.debug(f"Removing unanswered tool call {call.tool_call_id} ({call.function_name})")
            pending.update(call.tool_call_id for call in valid)

            valid_ids = {id(call) for call in valid}
            contents = [c for c in message.contents if not isinstance(c, ToolCall) or id(c) in valid_ids]
            if contents:
                sanitized.append(message.with_contents(contents))

        elif message.role == Role.TOOL:
            matched: list[ToolCallResult] = []
            for result in message.tool_results:
                if result.tool_call_id in pending:
                    pending.discard(result.tool_call_id)
                    matched.append(result)
                else:
                    logger.debug(f"Removing orphaned tool result for {result.tool_call_id}")
            if not matched:
                continue

            matched_ids = {id(result) for result in matched}
            sanitized.append(
                message.with_contents(
                    [c for c in message.contents if not isinstance(c, ToolCallResult) or id(c) in matched_ids]
                )
            )

        else:
            sanitized.append(message)

    return sanitized


def validate(conversation: "Conversation") -> list[str]:
    """
    Reports tool-call protocol violations in the active history without modifying it.

    Nothing is reported while the conversation awaits a client result.

    :param conversation: The conversation to inspect.
    :return: Human readable violations, in order of discovery. Empty if the history is well formed.
    """
    if conversation.is_awaiting_client:
        return []

    errors = []
    pending: dict[str, None] = {}

    for index, message in enumerate(conversation.active_messages):
        if message.role == Role.ASSISTANT:
            for call in message.tool_calls:
                if call.tool_call_id:
                    pending[call.tool_call_id] = None
        elif message.role == Role.TOOL:
            for result in message.tool_results:
                if not result.tool_call_id:
                    continue
                if result.tool_call_id not in pending:
                    errors.append(
                        f"Tool response at index {index} references unknown tool_call_id: {result.tool_call_id}"
                    )
                pending.pop(result.tool_call_id, None)

    for call_id in pending:
        errors.append(f"Tool call '{call_id}' has no corresponding tool response")

    if errors:
        logger.warning(f"Conversation {conversation.conversation_id} has {len(errors)} tool protocol violation(s)")
    return errors


def get_pending_tool_call_ids(conversation: "Conversation") -> list[str]:
    """
    Returns the ids of tool calls that have not been answered yet, in invocation order.
    """
    pending: dict[str, None] = {}
    for message in conversation.active_messages:
        if message.role == Role.ASSISTANT:
            for call in message.tool_calls:
                pending[call.tool_call_id] = None
        elif message.role == Role.TOOL:
            for result in message.tool_results:
                pending.pop(result.tool_call_id, None)
    return list(pending)
