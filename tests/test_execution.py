import asyncio

import pytest

from colloquy.cancellation import CancellationToken
from colloquy.continuation import PENDING_TOOLS_KEY
from colloquy.entities import (
    ChatMessage,
    ClientContent,
    ClientInteractionResult,
    ExecutionPhase,
    Role,
    ToolExecutionStatus,
)
from colloquy.errors import ContinuationStateError, OperationCancelledError
from colloquy.execution import NO_CLIENT_DATA_TEXT, ToolExecutionManager, build_client_result_text
from colloquy.sanitizer import validate
from colloquy.tools import FunctionTool, ToolRegistry

from conftest import make_call

STARTED = ToolExecutionStatus.STARTED
COMPLETED = ToolExecutionStatus.COMPLETED
AWAITING = ToolExecutionStatus.AWAITING_CLIENT
ERROR = ToolExecutionStatus.ERROR


@pytest.fixture
def manager(tool_registry, client_catalog):
    return ToolExecutionManager(tool_registry, client_catalog)


async def collect(steps):
    return [step async for step in steps]


def suspend_batch():
    return [
        make_call("c1", "add", a=1, b=2),
        make_call("c2", "confirm_action", message="Proceed?"),
        make_call("c3", "echo", text="done"),
    ]


def append_assistant(conversation, calls):
    conversation.append(ChatMessage.assistant("", calls))
    return calls


@pytest.mark.asyncio
async def test_server_tools_complete_in_order(manager, conversation):
    calls = append_assistant(conversation, [make_call("c1", "add", a=1, b=2), make_call("c2", "echo", text="hi")])

    steps = await collect(manager.execute_tool_calls(conversation, calls))

    assert [(s.status, s.tool_call_id) for s in steps] == [
        (STARTED, "c1"),
        (COMPLETED, "c1"),
        (STARTED, "c2"),
        (COMPLETED, "c2"),
    ]
    assert [m.tool_results[0].result for m in conversation.messages[-2:]] == [3, "hi"]
    assert conversation.executed_tools == ["default.add", "default.echo"]
    assert conversation.execution_phase == ExecutionPhase.EXECUTING_SCENE
    assert validate(conversation) == []


@pytest.mark.asyncio
async def test_duplicates_are_executed_once(manager, conversation):
    calls = append_assistant(conversation, [make_call("c1", "add", a=1, b=2), make_call("c2", "add", b=2, a=1)])

    steps = await collect(manager.execute_tool_calls(conversation, calls))

    assert [s.tool_call_id for s in steps] == ["c1", "c1"]
    assert conversation.has_tool_result("c1")
    assert not conversation.has_tool_result("c2")


@pytest.mark.asyncio
async def test_missing_tool_yields_error_and_continues(manager, conversation):
    calls = append_assistant(conversation, [make_call("c1", "teleport"), make_call("c2", "echo", text="still here")])

    steps = await collect(manager.execute_tool_calls(conversation, calls, scope="lab"))

    assert [s.status for s in steps] == [STARTED, ERROR, STARTED, COMPLETED]
    assert steps[1].error == "Tool 'teleport' not found"
    failed = conversation.messages[-2].tool_results[0]
    assert failed.result == "Tool 'teleport' not found"
    assert failed.is_error
    assert conversation.executed_tools == ["lab.teleport", "lab.echo"]


@pytest.mark.asyncio
async def test_failing_tool_yields_error_and_continues(manager, conversation):
    calls = append_assistant(conversation, [make_call("c1", "explode", reason="kaboom"), make_call("c2", "add", a=1, b=1)])

    steps = await collect(manager.execute_tool_calls(conversation, calls))

    assert [s.status for s in steps] == [STARTED, ERROR, STARTED, COMPLETED]
    assert steps[1].error == "Error executing tool: kaboom"
    assert conversation.messages[-2].tool_results[0].is_error
    assert conversation.messages[-1].tool_results[0].result == 2


@pytest.mark.asyncio
async def test_client_tool_suspends_batch(manager, conversation):
    calls = append_assistant(conversation, suspend_batch())

    steps = await collect(manager.execute_tool_calls(conversation, calls, scope="checkout"))

    assert [(s.status, s.tool_call_id) for s in steps] == [(STARTED, "c1"), (COMPLETED, "c1"), (AWAITING, "c2")]
    request = steps[-1].client_request
    assert request.tool_name == "confirm_action"
    assert request.arguments == {"message": "Proceed?"}

    assert conversation.execution_phase == ExecutionPhase.AWAITING_CLIENT
    state = conversation.continuation
    assert state.call_id == "c2"
    assert state.tool_name == "confirm_action"
    assert state.interaction_id == request.interaction_id
    assert state.scope == "checkout"
    assert [c.tool_call_id for c in state.pending_tools] == ["c3"]
    assert not conversation.has_tool_result("c3")


@pytest.mark.asyncio
async def test_suspend_and_resume_round_trip(manager, conversation):
    calls = append_assistant(conversation, suspend_batch())
    steps = await collect(manager.execute_tool_calls(conversation, calls))
    request = steps[-1].client_request

    resumed = await collect(
        manager.resume_after_client_response(
            conversation,
            [ClientInteractionResult(interaction_id=request.interaction_id, contents=[ClientContent(text="yes")])],
        )
    )

    assert [(s.status, s.tool_call_id) for s in resumed] == [(STARTED, "c3"), (COMPLETED, "c3")]
    client_result = conversation.messages[-2].tool_results[0]
    assert (client_result.tool_call_id, client_result.function_name, client_result.result) == (
        "c2",
        "confirm_action",
        "yes",
    )
    assert conversation.continuation is None
    assert not conversation.has_continuation()
    assert conversation.execution_phase == ExecutionPhase.EXECUTING_SCENE
    assert validate(conversation) == []


@pytest.mark.asyncio
async def test_resume_is_idempotent(manager, conversation):
    calls = append_assistant(conversation, suspend_batch())
    steps = await collect(manager.execute_tool_calls(conversation, calls))
    result = ClientInteractionResult(interaction_id=steps[-1].client_request.interaction_id)

    await collect(manager.resume_after_client_response(conversation, [result, result]))
    length = len(conversation)
    again = await collect(manager.resume_after_client_response(conversation, [result]))

    assert again == []
    assert len(conversation) == length
    tool_results = [r.tool_call_id for m in conversation.messages if m.role == Role.TOOL for r in m.tool_results]
    assert tool_results.count("c2") == 1


@pytest.mark.asyncio
async def test_resume_without_continuation_is_noop(manager, conversation):
    steps = await collect(
        manager.resume_after_client_response(conversation, [ClientInteractionResult(interaction_id="i")])
    )

    assert steps == []
    assert len(conversation) == 2


@pytest.mark.asyncio
async def test_resume_with_malformed_continuation_raises_before_appending(manager, conversation):
    calls = append_assistant(conversation, suspend_batch())
    await collect(manager.execute_tool_calls(conversation, calls))
    conversation.properties[PENDING_TOOLS_KEY] = "[{not json"
    length = len(conversation)

    with pytest.raises(ContinuationStateError):
        await collect(manager.resume_after_client_response(conversation, [ClientInteractionResult(interaction_id="i")]))

    assert len(conversation) == length


@pytest.mark.asyncio
async def test_resume_can_suspend_again(manager, conversation):
    calls = append_assistant(
        conversation,
        [
            make_call("c1", "confirm_action", message="first"),
            make_call("c2", "add", a=2, b=2),
            make_call("c3", "confirm_action", message="second"),
        ],
    )
    first = await collect(manager.execute_tool_calls(conversation, calls))

    resumed = await collect(
        manager.resume_after_client_response(
            conversation, [ClientInteractionResult(interaction_id=first[-1].client_request.interaction_id)]
        )
    )

    assert [(s.status, s.tool_call_id) for s in resumed] == [(STARTED, "c2"), (COMPLETED, "c2"), (AWAITING, "c3")]
    assert conversation.execution_phase == ExecutionPhase.AWAITING_CLIENT
    state = conversation.continuation
    assert state.call_id == "c3"
    assert state.interaction_id == resumed[-1].client_request.interaction_id
    assert state.pending_tools == []


@pytest.mark.asyncio
async def test_client_error_is_recorded_as_error_result(manager, conversation):
    calls = append_assistant(conversation, [make_call("c1", "confirm_action")])
    steps = await collect(manager.execute_tool_calls(conversation, calls))

    await collect(
        manager.resume_after_client_response(
            conversation,
            [ClientInteractionResult(interaction_id=steps[-1].client_request.interaction_id, error="user declined")],
        )
    )

    result = conversation.last_message.tool_results[0]
    assert result.result == "Client tool error: user declined"
    assert result.is_error


@pytest.mark.asyncio
async def test_cancelled_token_stops_before_next_call(manager, conversation):
    calls = append_assistant(conversation, [make_call("c1", "add", a=1, b=2), make_call("c2", "echo", text="x")])
    token = CancellationToken()

    with pytest.raises(OperationCancelledError):
        async for step in manager.execute_tool_calls(conversation, calls, cancellation_token=token):
            if step.status == COMPLETED:
                token.cancel("user left")

    assert conversation.has_tool_result("c1")
    assert not conversation.has_tool_result("c2")


@pytest.mark.asyncio
async def test_cancellation_raised_inside_tool_propagates(conversation, client_catalog):
    async def slow(cancellation_token):
        cancellation_token.cancel()
        await asyncio.sleep(0)
        cancellation_token.raise_if_cancelled()

    manager = ToolExecutionManager(ToolRegistry([FunctionTool(slow)]), client_catalog)
    calls = append_assistant(conversation, [make_call("c1", "slow")])

    with pytest.raises(OperationCancelledError):
        await collect(manager.execute_tool_calls(conversation, calls))

    assert not conversation.has_tool_result("c1")


@pytest.mark.asyncio
async def test_cancelled_resume_keeps_remaining_calls(manager, conversation):
    calls = append_assistant(
        conversation,
        [
            make_call("c1", "confirm_action", message="Proceed?"),
            make_call("c2", "add", a=1, b=2),
            make_call("c3", "echo", text="done"),
        ],
    )
    first = await collect(manager.execute_tool_calls(conversation, calls))
    result = ClientInteractionResult(interaction_id=first[-1].client_request.interaction_id)
    token = CancellationToken()

    with pytest.raises(OperationCancelledError):
        async for step in manager.resume_after_client_response(conversation, [result], cancellation_token=token):
            if step.status == COMPLETED:
                token.cancel("user left")

    assert conversation.has_tool_result("c1")
    assert conversation.has_tool_result("c2")
    assert not conversation.has_tool_result("c3")
    assert conversation.execution_phase == ExecutionPhase.AWAITING_CLIENT
    state = conversation.continuation
    assert state.call_id is None
    assert [c.tool_call_id for c in state.pending_tools] == ["c3"]

    resumed = await collect(manager.resume_after_client_response(conversation, []))

    assert [(s.status, s.tool_call_id) for s in resumed] == [(STARTED, "c3"), (COMPLETED, "c3")]
    assert conversation.continuation is None
    assert conversation.execution_phase == ExecutionPhase.EXECUTING_SCENE
    assert validate(conversation) == []


@pytest.mark.asyncio
async def test_awaiting_phase_without_continuation_is_reset(manager, conversation):
    conversation.execution_phase = ExecutionPhase.AWAITING_CLIENT

    steps = await collect(
        manager.resume_after_client_response(conversation, [ClientInteractionResult(interaction_id="i")])
    )

    assert steps == []
    assert conversation.execution_phase == ExecutionPhase.EXECUTING_SCENE
    assert len(conversation) == 2


def test_logger_is_named_after_module(manager):
    assert manager.logger.name == "colloquy.execution"


@pytest.mark.parametrize(
    "client_result, expected",
    [
        (ClientInteractionResult(interaction_id="i", error="denied"), "Client tool error: denied"),
        (ClientInteractionResult(interaction_id="i"), NO_CLIENT_DATA_TEXT),
        (
            ClientInteractionResult(
                interaction_id="i",
                contents=[
                    ClientContent(type="text", text="first"),
                    ClientContent(type="data", data="AAAA", media_type="image/png"),
                    ClientContent(type="data", data="AAAA"),
                    ClientContent(type="uri"),
                ],
            ),
            "first\n[Binary data: image/png]\n[Binary data: unknown]\n[Content: uri]",
        ),
        (
            ClientInteractionResult(
                interaction_id="i",
                contents=[ClientContent(type="Text", text="hi"), ClientContent(type="DATA", media_type="audio/wav")],
            ),
            "hi\n[Binary data: audio/wav]",
        ),
        (ClientInteractionResult(interaction_id="i", contents=[ClientContent(type="text")]), ""),
    ],
)
def test_build_client_result_text(client_result, expected):
    assert build_client_result_text(client_result) == expected
