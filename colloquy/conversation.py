from __future__ import annotations

import uuid
from typing import Any, Optional

from colloquy.continuation import CONTINUATION_KEYS, ContinuationState
from colloquy.entities import ChatMessage, ExecutionPhase, Role, ToolCallResult


class Conversation:
    """
    Ordered, append-only history of a single conversation plus its execution bookkeeping.

    Messages are never removed or rewritten once appended. The only mutation allowed on an appended
    message is flipping its ``is_active`` flag, which hides it from requests without deleting it.
    The continuation of a suspended tool batch is kept in ``properties`` under a fixed set of keys,
    so that the persisted form survives a process boundary unchanged.
    """

    def __init__(
        self,
        conversation_id: Optional[str] = None,
        messages: Optional[list[ChatMessage]] = None,
        total_cost: float = 0.0,
        executed_tools: Optional[list[str]] = None,
        execution_phase: ExecutionPhase = ExecutionPhase.EXECUTING_SCENE,
        properties: Optional[dict[str, Any]] = None,
    ):
        self.conversation_id = conversation_id or str(uuid.uuid4())
        self._messages: list[ChatMessage] = list(messages or [])
        self.total_cost = total_cost
        self.executed_tools: list[str] = list(executed_tools or [])
        self.execution_phase = execution_phase
        self.properties: dict[str, Any] = dict(properties or {})

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def active_messages(self) -> list[ChatMessage]:
        return [message for message in self._messages if message.is_active]

    @property
    def last_message(self) -> Optional[ChatMessage]:
        return self._messages[-1] if self._messages else None

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, message: ChatMessage | list[ChatMessage]) -> None:
        """
        Appends one or more messages to the history.

        :param message: A message or a list of messages.
        :raises TypeError: If anything other than a ChatMessage is passed.
        """
        new_messages = message if isinstance(message, list) else [message]
        for item in new_messages:
            if not isinstance(item, ChatMessage):
                raise TypeError(f"Only ChatMessage instances can be appended, got {type(item).__name__}")
        self._messages.extend(new_messages)

    def add_tool_message(self, message: ChatMessage) -> None:
        if message.role != Role.TOOL:
            raise ValueError(f"Expected a tool message, got role '{message.role}'")
        self.append(message)

    def add_tool_result(self, result: ToolCallResult) -> None:
        self.add_tool_message(ChatMessage.tool(result))

    def deactivate(self, index: int) -> None:
        self._messages[index].is_active = False

    def add_cost(self, cost: float) -> float:
        self.total_cost += cost or 0.0
        return self.total_cost

    def mark_tool_executed(self, scope: str, tool_name: str) -> None:
        self.executed_tools.append(f"{scope}.{tool_name}")

    def has_tool_result(self, tool_call_id: str) -> bool:
        return any(
            result.tool_call_id == tool_call_id
            for message in self._messages
            if message.role == Role.TOOL
            for result in message.tool_results
        )

    @property
    def continuation(self) -> Optional[ContinuationState]:
        """
        The continuation of a suspended tool batch, parsed from the property bag.

        :raises ContinuationStateError: If the stored continuation is malformed.
        """
        return ContinuationState.from_properties(self.properties)

    @continuation.setter
    def continuation(self, state: Optional[ContinuationState]) -> None:
        for key in CONTINUATION_KEYS:
            self.properties.pop(key, None)
        if state is not None:
            self.properties.update(state.to_properties())

    def has_continuation(self) -> bool:
        return any(key in self.properties for key in CONTINUATION_KEYS)

    @property
    def is_awaiting_client(self) -> bool:
        return self.execution_phase == ExecutionPhase.AWAITING_CLIENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "messages": [message.to_dict() for message in self._messages],
            "total_cost": self.total_cost,
            "executed_tools": list(self.executed_tools),
            "execution_phase": self.execution_phase.value,
            "properties": dict(self.properties),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Conversation:
        return cls(
            conversation_id=data.get("conversation_id"),
            messages=[ChatMessage.from_dict(message) for message in data.get("messages", [])],
            total_cost=data.get("total_cost", 0.0),
            executed_tools=data.get("executed_tools", []),
            execution_phase=ExecutionPhase(data.get("execution_phase", ExecutionPhase.EXECUTING_SCENE.value)),
            properties=data.get("properties", {}),
        )
