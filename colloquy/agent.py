from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Optional, Self

from colloquy.cancellation import CancellationToken, ensure_token
from colloquy.conversation import Conversation
from colloquy.deduplication import deduplicate_response
from colloquy.entities import (
    ChatMessage,
    ClientInteractionRequest,
    ClientInteractionResult,
    ExecutionPhase,
    ToolDescription,
    ToolExecutionStatus,
    ToolExecutionStep,
)
from colloquy.errors import ColloquyError
from colloquy.execution import ToolExecutionManager
from colloquy.logger_setup import get_logger
from colloquy.protocols import ConversationStore, LLMClient
from colloquy.sanitizer import build_request_messages
from colloquy.streaming import StreamingAccumulator
from colloquy.tools import ClientToolCatalog, ToolRegistry


class AgentEventType(Enum):
    TEXT_DELTA = "text_delta"
    ASSISTANT_MESSAGE = "assistant_message"
    TOOL_STEP = "tool_step"
    AWAITING_CLIENT = "awaiting_client"
    BUDGET_EXCEEDED = "budget_exceeded"
    COMPLETED = "completed"

    def __str__(self):
        return self.value


@dataclass
class AgentEvent:
    type: AgentEventType
    text: str = ""
    message: Optional[ChatMessage] = None
    step: Optional[ToolExecutionStep] = None
    client_request: Optional[ClientInteractionRequest] = None
    cost: float = 0.0
    total_cost: float = 0.0
    reason: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class ToolCallingAgent:
    """
    Drives a conversation through model turns and tool batches until the model answers without calling tools.

    Every model request is built from the sanitized history. A batch that hits a client tool suspends the turn, the
    caller hands the client result to :meth:`resume` to carry on.

    :param llm_client: Transport used to talk to the model.
    :param tool_registry: Server tools offered to the model.
    :param client_catalog: Tools executed by the caller.
    :param max_iterations: Maximum number of model requests per turn.
    :param streaming: Whether to stream responses through the accumulator.
    :param max_budget: Stop the turn once the conversation's total cost exceeds this value.
    :param scope: Prefix used for the executed-tools log.
    :param conversation_store: If given, the conversation is persisted at the end of every turn and on suspension.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        tool_registry: Optional[ToolRegistry] = None,
        client_catalog: Optional[ClientToolCatalog] = None,
        max_iterations: int = 5,
        streaming: bool = False,
        max_budget: Optional[float] = None,
        scope: str = "default",
        conversation_store: Optional[ConversationStore] = None,
    ):
        self.llm_client = llm_client
        self.tool_registry = tool_registry if tool_registry is not None else ToolRegistry()
        self.client_catalog = client_catalog if client_catalog is not None else ClientToolCatalog()
        self.max_iterations = max_iterations
        self.streaming = streaming
        self.max_budget = max_budget
        self.scope = scope
        self.conversation_store = conversation_store
        self.execution_manager = ToolExecutionManager(self.tool_registry, self.client_catalog)
        self.accumulator = StreamingAccumulator()
        self.logger = get_logger(f"colloquy.agent.{scope}")

    @classmethod
    def create(cls, llm_client: LLMClient, **kwargs) -> Self:
        return cls(llm_client=llm_client, **kwargs)

    def tool_descriptions(self) -> list[ToolDescription]:
        return self.tool_registry.descriptions() + self.client_catalog.descriptions()

    async def run_turn(
        self,
        conversation: Conversation,
        user_input: str | ChatMessage,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[AgentEvent]:
        """
        Processes one user turn.

        :param conversation: The conversation to continue.
        :param user_input: The user's message.
        :param cancellation_token: Token to observe for cooperative cancellation.
        :return: An async iterator over the events of the turn.
        :raises ColloquyError: If the conversation is still waiting for a client result.
        """
        if conversation.is_awaiting_client:
            raise ColloquyError(
                f"Conversation {conversation.conversation_id} is awaiting a client result, resume it first"
            )

        message = user_input if isinstance(user_input, ChatMessage) else ChatMessage.user(user_input)
        conversation.append(message)

        async for event in self._run_loop(conversation, ensure_token(cancellation_token)):
            yield event
        await self._persist(conversation)

    async def resume(
        self,
        conversation: Conversation,
        client_results: list[ClientInteractionResult],
        cancellation_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[AgentEvent]:
        """
        Continues a turn that was suspended on a client tool.

        :param conversation: The suspended conversation.
        :param client_results: Results reported by the client.
        :param cancellation_token: Token to observe for cooperative cancellation.
        :return: An async iterator over the events of the rest of the turn.
        :raises ContinuationStateError: If the stored continuation cannot be read.
        """
        token = ensure_token(cancellation_token)

        if conversation.continuation is None:
            self.logger.info(f"Conversation {conversation.conversation_id} has nothing to resume")
            conversation.execution_phase = ExecutionPhase.EXECUTING_SCENE
            yield AgentEvent(type=AgentEventType.COMPLETED, reason="nothing_to_resume")
            return

        async for step in self.execution_manager.resume_after_client_response(
            conversation, client_results, cancellation_token=token
        ):
            if step.status == ToolExecutionStatus.AWAITING_CLIENT:
                await self._persist(conversation)
                yield self._awaiting_client_event(step)
                return
            yield AgentEvent(type=AgentEventType.TOOL_STEP, step=step)

        async for event in self._run_loop(conversation, token):
            yield event
        await self._persist(conversation)

    async def _generate(
        self, conversation: Conversation, token: CancellationToken
    ) -> AsyncIterator[tuple[Optional[str], Optional[ChatMessage], float]]:
        messages = build_request_messages(conversation)
        tools = self.tool_descriptions()

        if self.streaming:
            async for frame in self.accumulator.process(self.llm_client.stream(messages, tools, token)):
                if frame.is_final:
                    yield None, frame.final_message, frame.cost
                else:
                    yield frame.text_delta, None, 0.0
        else:
            response = deduplicate_response(await self.llm_client.generate(messages, tools, token))
            yield None, response.message or ChatMessage.assistant(), response.cost

    async def _run_loop(self, conversation: Conversation, token: CancellationToken) -> AsyncIterator[AgentEvent]:
        for iteration in range(self.max_iterations):
            token.raise_if_cancelled()
            self.logger.debug(f"Model request {iteration + 1}/{self.max_iterations}")

            assistant_message = None
            cost = 0.0
            async for text_delta, message, message_cost in self._generate(conversation, token):
                if message is None:
                    yield AgentEvent(type=AgentEventType.TEXT_DELTA, text=text_delta)
                else:
                    assistant_message, cost = message, message_cost

            conversation.append(assistant_message)
            total_cost = conversation.add_cost(cost)
            yield AgentEvent(
                type=AgentEventType.ASSISTANT_MESSAGE, message=assistant_message, cost=cost, total_cost=total_cost
            )

            if self.max_budget is not None and total_cost > self.max_budget:
                self.logger.warning(f"Budget of {self.max_budget} exceeded ({total_cost}), stopping turn")
                yield AgentEvent(type=AgentEventType.BUDGET_EXCEEDED, total_cost=total_cost, reason="budget_exceeded")
                return

            tool_calls = assistant_message.tool_calls
            if not tool_calls:
                yield AgentEvent(
                    type=AgentEventType.COMPLETED,
                    message=assistant_message,
                    total_cost=total_cost,
                    reason="completed",
                )
                return

            async for step in self.execution_manager.execute_tool_calls(
                conversation, tool_calls, scope=self.scope, cancellation_token=token
            ):
                if step.status == ToolExecutionStatus.AWAITING_CLIENT:
                    await self._persist(conversation)
                    yield self._awaiting_client_event(step)
                    return
                yield AgentEvent(type=AgentEventType.TOOL_STEP, step=step)

        self.logger.warning(f"Reached the maximum of {self.max_iterations} model requests")
        yield AgentEvent(type=AgentEventType.COMPLETED, total_cost=conversation.total_cost, reason="max_iterations")

    @staticmethod
    def _awaiting_client_event(step: ToolExecutionStep) -> AgentEvent:
        return AgentEvent(type=AgentEventType.AWAITING_CLIENT, step=step, client_request=step.client_request)

    async def _persist(self, conversation: Conversation) -> None:
        if self.conversation_store is not None:
            await self.conversation_store.persist(conversation)
