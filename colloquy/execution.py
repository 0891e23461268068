import json
from typing import Any, AsyncIterator, Optional

from colloquy.cancellation import CancellationToken, ensure_token
from colloquy.continuation import ContinuationState
from colloquy.conversation import Conversation
from colloquy.deduplication import deduplicate_tool_calls
from colloquy.entities import (
    ClientInteractionResult,
    ExecutionPhase,
    ToolCall,
    ToolCallResult,
    ToolExecutionStatus,
    ToolExecutionStep,
)
from colloquy.errors import OperationCancelledError
from colloquy.logger_setup import get_logger
from colloquy.tools import ClientToolCatalog, ToolRegistry

NO_CLIENT_DATA_TEXT = "Client tool executed successfully (no data returned)"


def build_client_result_text(client_result: ClientInteractionResult) -> str:
    """
    Renders what a client sent back as the text of a tool result.

    :param client_result: The result reported by the client.
    :return: The error text, the joined content texts, or a fixed text when the client returned nothing.
    """
    if client_result.error:
        return f"Client tool error: {client_result.error}"

    if not client_result.contents:
        return NO_CLIENT_DATA_TEXT

    parts = []
    for content in client_result.contents:
        kind = (content.type or "").lower()
        if kind == "text":
            parts.append(content.text or "")
        elif kind == "data":
            parts.append(f"[Binary data: {content.media_type or 'unknown'}]")
        else:
            parts.append(f"[Content: {content.type}]")
    return "\n".join(parts)


def to_storable_result(output: Any) -> Any:
    """Makes a tool output safe to persist as JSON."""
    if output is None or isinstance(output, (str, int, float, bool)):
        return output
    if hasattr(output, "to_dict"):
        return output.to_dict()
    try:
        json.dumps(output)
        return output
    except (TypeError, ValueError):
        return str(output)


class ToolExecutionManager:
    """
    Executes the tool calls of one model turn and handles suspension on client tools.

    Server tools run one after the other, in the order the model emitted them. The first client tool suspends the
    batch: the calls not reached yet are stored as the conversation's continuation, and the batch is picked up
    again by :meth:`resume_after_client_response` once the client has answered.

    :param registry: Server tools used when a call does not pass its own.
    :param client_catalog: Client tools used when a call does not pass its own.
    """

    def __init__(
        self, registry: Optional[ToolRegistry] = None, client_catalog: Optional[ClientToolCatalog] = None
    ):
        self.registry = registry if registry is not None else ToolRegistry()
        self.client_catalog = client_catalog if client_catalog is not None else ClientToolCatalog()
        self.logger = get_logger(__name__)

    async def execute_tool_calls(
        self,
        conversation: Conversation,
        tool_calls: list[ToolCall],
        server_tools: Optional[ToolRegistry] = None,
        client_tools: Optional[ClientToolCatalog] = None,
        scope: str = "default",
        cancellation_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[ToolExecutionStep]:
        """
        Executes a batch of tool calls, yielding one step per state change.

        Consumers must stop pulling steps once an ``AWAITING_CLIENT`` step was yielded, the generator ends there.

        :param conversation: The conversation results are appended to.
        :param tool_calls: Tool calls of one model turn, in emission order.
        :param server_tools: Server tools to execute against.
        :param client_tools: Client tools that suspend the batch.
        :param scope: Prefix for the executed-tools log.
        :param cancellation_token: Token to observe for cooperative cancellation.
        :raises OperationCancelledError: If cancellation is requested while the batch runs.
        """
        server_tools = server_tools if server_tools is not None else self.registry
        client_tools = client_tools if client_tools is not None else self.client_catalog
        token = ensure_token(cancellation_token)

        unique_calls = deduplicate_tool_calls(tool_calls)
        if len(unique_calls) < len(tool_calls):
            self.logger.info(f"Removed {len(tool_calls) - len(unique_calls)} duplicate tool call(s)")

        for position, call in enumerate(unique_calls):
            token.raise_if_cancelled()

            request = client_tools.create_request_if_client_tool(call)
            if request is not None:
                remaining = unique_calls[position + 1 :]
                conversation.continuation = ContinuationState(
                    call_id=call.tool_call_id,
                    tool_name=call.function_name,
                    interaction_id=request.interaction_id,
                    scope=scope,
                    pending_tools=remaining,
                )
                conversation.execution_phase = ExecutionPhase.AWAITING_CLIENT
                self.logger.info(
                    f"Suspending on client tool '{call.function_name}' ({call.tool_call_id}), "
                    f"{len(remaining)} tool call(s) pending"
                )
                yield ToolExecutionStep.awaiting_client(call, request)
                return

            async for step in self._execute_server_tool(conversation, call, server_tools, scope, token):
                yield step

    async def _execute_server_tool(
        self,
        conversation: Conversation,
        call: ToolCall,
        server_tools: ToolRegistry,
        scope: str,
        token: CancellationToken,
    ) -> AsyncIterator[ToolExecutionStep]:
        self.logger.debug(f"Executing tool '{call.function_name}' ({call.tool_call_id})")
        yield ToolExecutionStep.started(call)
        conversation.mark_tool_executed(scope, call.function_name)

        server_tool = server_tools.find(call.function_name)
        if server_tool is None:
            error_text = f"Tool '{call.function_name}' not found"
            self.logger.warning(error_text)
            conversation.add_tool_result(
                ToolCallResult(
                    tool_call_id=call.tool_call_id,
                    function_name=call.function_name,
                    result=error_text,
                    is_error=True,
                )
            )
            yield ToolExecutionStep.failed(call, error_text)
            return

        token.raise_if_cancelled()
        try:
            output = await server_tool.execute(json.dumps(call.arguments or {}), conversation, token)
        except OperationCancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Error executing tool '{call.function_name}': {e}", exc_info=True)
            error_text = f"Error executing tool: {e}"
            conversation.add_tool_result(
                ToolCallResult(
                    tool_call_id=call.tool_call_id,
                    function_name=call.function_name,
                    result=error_text,
                    is_error=True,
                )
            )
            yield ToolExecutionStep.failed(call, error_text)
            return

        result = to_storable_result(output)
        conversation.add_tool_result(
            ToolCallResult(tool_call_id=call.tool_call_id, function_name=call.function_name, result=result)
        )
        yield ToolExecutionStep.completed(call, result)

    async def resume_after_client_response(
        self,
        conversation: Conversation,
        client_results: list[ClientInteractionResult],
        server_tools: Optional[ToolRegistry] = None,
        client_tools: Optional[ClientToolCatalog] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[ToolExecutionStep]:
        """
        Folds client results into the conversation and continues the suspended batch.

        Resuming twice is harmless: a result is only injected once per tool call, and without a stored
        continuation nothing happens at all. The continuation is only cleared once every pending call has run.
        Until then it holds the calls still left, so a resume that is cancelled halfway can be picked up again
        by resuming once more.

        :param conversation: The suspended conversation.
        :param client_results: What the client reported back.
        :param server_tools: Server tools for the pending calls.
        :param client_tools: Client tools, a pending call to one of them suspends again.
        :param cancellation_token: Token to observe for cooperative cancellation.
        :raises ContinuationStateError: If the stored continuation cannot be read.
        :raises OperationCancelledError: If cancellation is requested while pending calls run.
        """
        state = conversation.continuation
        if state is None:
            if conversation.is_awaiting_client:
                self.logger.warning(
                    f"Conversation {conversation.conversation_id} awaits a client result but holds no "
                    f"continuation, resetting its execution phase"
                )
                conversation.execution_phase = ExecutionPhase.EXECUTING_SCENE
            else:
                self.logger.info(f"Nothing to resume for conversation {conversation.conversation_id}")
            return

        if state.call_id is None and state.tool_name is None:
            if client_results:
                self.logger.warning(
                    f"No client call outstanding for conversation {conversation.conversation_id}, "
                    f"ignoring {len(client_results)} client result(s)"
                )
        else:
            self._inject_client_results(conversation, state, client_results)

        remaining = deduplicate_tool_calls(state.pending_tools)
        conversation.continuation = ContinuationState(scope=state.scope, pending_tools=remaining)

        if remaining:
            self.logger.info(f"Executing {len(remaining)} pending tool call(s) after client response")
            async for step in self.execute_tool_calls(
                conversation,
                remaining,
                server_tools=server_tools,
                client_tools=client_tools,
                scope=state.scope,
                cancellation_token=cancellation_token,
            ):
                if step.status == ToolExecutionStatus.AWAITING_CLIENT:
                    yield step
                    return
                if step.status != ToolExecutionStatus.STARTED:
                    remaining = [call for call in remaining if call.tool_call_id != step.tool_call_id]
                    conversation.continuation = ContinuationState(scope=state.scope, pending_tools=remaining)
                yield step

        conversation.continuation = None
        conversation.execution_phase = ExecutionPhase.EXECUTING_SCENE

    def _inject_client_results(
        self,
        conversation: Conversation,
        state: ContinuationState,
        client_results: list[ClientInteractionResult],
    ) -> None:
        for client_result in client_results:
            if state.interaction_id and client_result.interaction_id != state.interaction_id:
                self.logger.warning(
                    f"Client result '{client_result.interaction_id}' does not match the pending interaction "
                    f"'{state.interaction_id}'"
                )

            call_id = state.call_id or client_result.interaction_id
            if conversation.has_tool_result(call_id):
                self.logger.info(f"Result for tool call {call_id} already present, skipping")
                continue

            conversation.add_tool_result(
                ToolCallResult(
                    tool_call_id=call_id,
                    function_name=state.tool_name or client_result.interaction_id,
                    result=build_client_result_text(client_result),
                    is_error=bool(client_result.error),
                )
            )
            self.logger.info(f"Injected client result for '{client_result.interaction_id}' into conversation")
