import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from colloquy.cli import cli, create_client_tool_config
from colloquy.continuation import PENDING_TOOLS_KEY, ContinuationState
from colloquy.entities import ChatMessage, ExecutionPhase

from conftest import make_call, make_result


@pytest.fixture
def runner():
    return CliRunner()


def write_conversation(tmp_path, conversation, name="conversation.json"):
    path = tmp_path / name
    path.write_text(json.dumps(conversation.to_dict()))
    return path


def test_validate_reports_violations(runner, tmp_path, conversation):
    conversation.append(ChatMessage.assistant("", [make_call("c1", "add", a=1, b=2)]))
    path = write_conversation(tmp_path, conversation)

    result = runner.invoke(cli, ["validate", str(path)])

    assert result.exit_code == 1
    assert "Tool call 'c1' has no corresponding tool response" in result.output


def test_validate_clean_conversation(runner, tmp_path, conversation):
    conversation.append(ChatMessage.assistant("", [make_call("c1", "add", a=1, b=2)]))
    conversation.add_tool_result(make_result("c1", "add", 3))
    path = write_conversation(tmp_path, conversation)

    result = runner.invoke(cli, ["validate", str(path)])

    assert result.exit_code == 0
    assert "No violations found." in result.output


def test_sanitize_writes_request_messages(runner, tmp_path, conversation):
    conversation.append(ChatMessage.assistant("", [make_call("c1", "add", a=1, b=2), make_call("c2", "echo")]))
    conversation.add_tool_result(make_result("c1", "add", 3))
    path = write_conversation(tmp_path, conversation)
    output = tmp_path / "sanitized.json"

    result = runner.invoke(cli, ["sanitize", str(path), "--output", str(output)])

    assert result.exit_code == 0
    messages = json.loads(output.read_text())
    assistant = messages[2]
    assert [content["tool_call_id"] for content in assistant["contents"]] == ["c1"]


def test_pending_shows_continuation(runner, tmp_path, conversation):
    conversation.append(ChatMessage.assistant("", [make_call("c1", "confirm"), make_call("c2", "add")]))
    conversation.continuation = ContinuationState(
        call_id="c1", tool_name="confirm", interaction_id="i-1", pending_tools=[make_call("c2", "add")]
    )
    conversation.execution_phase = ExecutionPhase.AWAITING_CLIENT
    path = write_conversation(tmp_path, conversation)

    result = runner.invoke(cli, ["pending", str(path)])

    assert result.exit_code == 0
    assert "Execution phase: awaiting_client" in result.output
    assert "Pending tool call: c1" in result.output
    assert "Awaiting client tool 'confirm' for call c1 (interaction i-1)" in result.output
    assert "Queued after resume: add (c2)" in result.output


def test_pending_rejects_malformed_continuation(runner, tmp_path, conversation):
    conversation.properties[PENDING_TOOLS_KEY] = "not json"
    path = write_conversation(tmp_path, conversation)

    result = runner.invoke(cli, ["pending", str(path)])

    assert result.exit_code != 0
    assert "Stored continuation is malformed" in result.output


@patch("colloquy.cli.inquirer.prompt")
def test_add_client_tool(mock_prompt, runner, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("llm:\n  type: openai\n  modelName: gpt-4o\n")
    mock_prompt.return_value = {"description": "Asks the user to confirm", "timeout_seconds": "45"}

    result = runner.invoke(cli, ["add-client-tool", "confirm_action", "--config", str(config_path)])

    assert result.exit_code == 0
    config = yaml.safe_load(config_path.read_text())
    assert config["llm"]["modelName"] == "gpt-4o"
    assert config["clientTools"] == [
        {"name": "confirm_action", "description": "Asks the user to confirm", "timeoutSeconds": 45}
    ]


@patch("colloquy.cli.inquirer.prompt")
def test_add_existing_client_tool_is_skipped(mock_prompt, runner, tmp_path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("clientTools:\n  - name: confirm_action\n")

    result = runner.invoke(cli, ["add-client-tool", "confirm_action", "--config", str(config_path)])

    assert "already exists" in result.output
    mock_prompt.assert_not_called()


def test_create_client_tool_config_validates():
    with pytest.raises(ValueError):
        create_client_tool_config("confirm", "", 0)
