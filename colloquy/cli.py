import json
from pathlib import Path

import click
import inquirer
import yaml

from colloquy.config import ClientToolConfig
from colloquy.conversation import Conversation
from colloquy.errors import ContinuationStateError
from colloquy.sanitizer import build_request_messages, get_pending_tool_call_ids, validate


def load_conversation(path: Path) -> Conversation:
    """Load a persisted conversation from its JSON file."""
    return Conversation.from_dict(json.loads(path.read_text()))


def create_client_tool_config(name: str, description: str, timeout_seconds: int) -> dict:
    """Create the camelCase config entry of a client tool, validating it on the way."""
    config = ClientToolConfig(name=name, description=description, timeout_seconds=timeout_seconds)
    return {"name": config.name, "description": config.description, "timeoutSeconds": config.timeout_seconds}


@click.group()
def cli():
    """Colloquy CLI tool."""
    pass


@cli.command(name="validate")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate_command(path: Path):
    """Report tool-call protocol violations of a persisted conversation."""
    conversation = load_conversation(path)
    errors = validate(conversation)

    if conversation.is_awaiting_client:
        click.echo("Conversation is awaiting a client result, pairing is not checked.")

    for error in errors:
        click.echo(error)

    if errors:
        raise SystemExit(1)
    click.echo("No violations found.")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write to a file instead.")
def sanitize(path: Path, output: Path | None):
    """Print the request-ready message list of a persisted conversation."""
    conversation = load_conversation(path)
    messages = [message.to_dict() for message in build_request_messages(conversation)]
    data = json.dumps(messages, indent=2)

    if output:
        output.write_text(data)
        click.echo(f"Wrote {len(messages)} message(s) to {output}")
    else:
        click.echo(data)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def pending(path: Path):
    """Show unanswered tool calls and the stored continuation of a persisted conversation."""
    conversation = load_conversation(path)

    click.echo(f"Execution phase: {conversation.execution_phase}")
    for call_id in get_pending_tool_call_ids(conversation):
        click.echo(f"Pending tool call: {call_id}")

    try:
        state = conversation.continuation
    except ContinuationStateError as e:
        raise click.ClickException(f"Stored continuation is malformed: {e}")

    if state is None:
        click.echo("No continuation stored.")
        return

    click.echo(f"Awaiting client tool '{state.tool_name}' for call {state.call_id} (interaction {state.interaction_id})")
    for call in state.pending_tools:
        click.echo(f"Queued after resume: {call.function_name} ({call.tool_call_id})")


@cli.command()
@click.argument("name")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default="config.yaml")
def add_client_tool(name: str, config_path: Path):
    """Add a client tool with the given name to the config file."""
    if config_path.exists():
        config = yaml.safe_load(config_path.read_text()) or {}
    else:
        config = {}

    client_tools = config.setdefault("clientTools", [])
    if any(entry.get("name") == name for entry in client_tools):
        click.echo(f"Client tool {name} already exists.")
        return

    questions = [
        inquirer.Text("description", message="Describe what the client does with this tool", default=""),
        inquirer.Text(
            "timeout_seconds",
            message="Timeout in seconds",
            default="30",
            validate=lambda _, value: value.isdigit() and int(value) > 0,
        ),
    ]
    answers = inquirer.prompt(questions)

    client_tools.append(create_client_tool_config(name, answers["description"], int(answers["timeout_seconds"])))
    config_path.write_text(yaml.dump(config, default_flow_style=False))

    click.echo(f"Client tool {name} added to {config_path}")


if __name__ == "__main__":
    cli()
