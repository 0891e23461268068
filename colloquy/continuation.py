import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from colloquy.entities import ToolCall
from colloquy.errors import ContinuationStateError

CALL_ID_KEY = "continuation.callId"
TOOL_NAME_KEY = "continuation.toolName"
INTERACTION_ID_KEY = "continuation.interactionId"
SCOPE_KEY = "continuation.scope"
PENDING_TOOLS_KEY = "pendingTools"

CONTINUATION_KEYS = (CALL_ID_KEY, TOOL_NAME_KEY, INTERACTION_ID_KEY, SCOPE_KEY, PENDING_TOOLS_KEY)


@dataclass
class ContinuationState:
    """
    Everything needed to pick a suspended tool batch back up.

    The state is persisted inside the conversation's property bag under the ``continuation.*`` and
    ``pendingTools`` keys, so that a conversation can be suspended in one process and resumed in another.

    :param call_id: Id of the tool call handed to the client.
    :param tool_name: Name of the client tool.
    :param interaction_id: Correlation id sent to the client with the request.
    :param scope: Scope the batch was executed in, used for the executed-tools log.
    :param pending_tools: Tool calls of the same batch that were not reached yet, in order.
    """

    call_id: Optional[str] = None
    tool_name: Optional[str] = None
    interaction_id: Optional[str] = None
    scope: str = "default"
    pending_tools: list[ToolCall] = field(default_factory=list)

    def to_properties(self) -> dict[str, str]:
        properties = {}
        if self.call_id is not None:
            properties[CALL_ID_KEY] = self.call_id
        if self.tool_name is not None:
            properties[TOOL_NAME_KEY] = self.tool_name
        if self.interaction_id is not None:
            properties[INTERACTION_ID_KEY] = self.interaction_id
        properties[SCOPE_KEY] = self.scope
        if self.pending_tools:
            properties[PENDING_TOOLS_KEY] = json.dumps(
                [
                    {"callId": call.tool_call_id, "name": call.function_name, "arguments": call.arguments}
                    for call in self.pending_tools
                ]
            )
        return properties

    @classmethod
    def from_properties(cls, properties: Mapping[str, Any]) -> Optional["ContinuationState"]:
        """
        Reads a continuation back from a property bag.

        :param properties: The conversation's property bag.
        :return: The continuation, or None if the bag holds no continuation keys.
        :raises ContinuationStateError: If any continuation entry is malformed.
        """
        if not any(key in properties for key in CONTINUATION_KEYS):
            return None

        for key in (CALL_ID_KEY, TOOL_NAME_KEY, INTERACTION_ID_KEY, SCOPE_KEY):
            value = properties.get(key)
            if value is not None and not isinstance(value, str):
                raise ContinuationStateError(f"Continuation entry '{key}' must be a string, got {type(value).__name__}")

        return cls(
            call_id=properties.get(CALL_ID_KEY),
            tool_name=properties.get(TOOL_NAME_KEY),
            interaction_id=properties.get(INTERACTION_ID_KEY),
            scope=properties.get(SCOPE_KEY) or "default",
            pending_tools=_parse_pending_tools(properties.get(PENDING_TOOLS_KEY)),
        )


def _parse_pending_tools(raw: Any) -> list[ToolCall]:
    if raw is None:
        return []
    if not isinstance(raw, str):
        raise ContinuationStateError("Pending tools must be stored as a JSON array string")

    try:
        entries = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ContinuationStateError(f"Pending tools are not valid JSON: {e}") from e

    if not isinstance(entries, list):
        raise ContinuationStateError("Pending tools must be a JSON array")

    pending = []
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict) or not entry.get("callId") or not entry.get("name"):
            raise ContinuationStateError(f"Pending tool at position {position} is missing 'callId' or 'name'")
        arguments = entry.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise ContinuationStateError(f"Pending tool '{entry['callId']}' has non-object arguments")
        pending.append(ToolCall(tool_call_id=entry["callId"], function_name=entry["name"], arguments=arguments))
    return pending
