from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Optional

from colloquy.agent import ToolCallingAgent
from colloquy.config import EngineConfig, load_config_from_yaml
from colloquy.logger_setup import get_logger
from colloquy.registry import CONVERSATION_STORE_REGISTRY, LLM_REGISTRY
from colloquy.tools import ClientToolCatalog, ToolRegistry, load_tools

logger = get_logger(__name__)


def create_agent_from_config(
    config: EngineConfig | Path | str,
    base_path: Optional[Path] = None,
    tools: Optional[list[Callable | Any]] = None,
) -> ToolCallingAgent:
    """
    Builds a fully wired agent from a configuration.

    :param config: A loaded config, the path of a YAML file, or YAML content.
    :param base_path: Directory relative tool module paths are resolved against.
    :param tools: Additional server tools registered next to the configured ones.
    :return: The agent with its LLM client, tools and conversation store.
    """
    if not isinstance(config, EngineConfig):
        config = load_config_from_yaml(config, base_path=base_path)

    llm_cls = LLM_REGISTRY.get(config.llm.type)
    if llm_cls is None:
        raise ValueError(f"Unknown LLM type: {config.llm.type}")
    llm_client = llm_cls.create(**asdict(config.llm))

    registry = ToolRegistry(load_tools(config.tools, base_path=base_path))
    if tools:
        registry.register_tools(list(tools))

    store_cls = CONVERSATION_STORE_REGISTRY.get(config.conversation_store.type)
    if store_cls is None:
        raise ValueError(f"Unknown conversation store type: {config.conversation_store.type}")
    conversation_store = store_cls.create(**asdict(config.conversation_store))

    logger.info(
        f"Created agent with {len(registry)} server tool(s) and {len(config.client_tools)} client tool(s)"
    )

    return ToolCallingAgent.create(
        llm_client=llm_client,
        tool_registry=registry,
        client_catalog=ClientToolCatalog.from_config(config.client_tools),
        max_iterations=config.max_iterations,
        streaming=config.streaming,
        max_budget=config.max_budget,
        scope=config.scope,
        conversation_store=conversation_store,
    )
