from typing import Type

LLM_REGISTRY: dict[str, Type] = {}
CONVERSATION_STORE_REGISTRY: dict[str, Type] = {}


def register_llm(name: str):
    """Decorator to register an LLM client class."""

    def decorator(cls):
        LLM_REGISTRY[name] = cls
        return cls

    return decorator


def register_conversation_store(name: str):
    """Decorator to register a ConversationStore class."""

    def decorator(cls):
        CONVERSATION_STORE_REGISTRY[name] = cls
        return cls

    return decorator
