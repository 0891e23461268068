from importlib.metadata import PackageNotFoundError, version

from .agent import AgentEvent, AgentEventType, ToolCallingAgent
from .azure_llm_client import AzureOpenAIClient
from .cancellation import CancellationToken
from .config import EngineConfig, load_config_from_yaml
from .continuation import ContinuationState
from .conversation import Conversation
from .conversation_store import InMemoryConversationStore
from .deduplication import deduplicate_response, deduplicate_tool_calls
from .engine import create_agent_from_config
from .entities import (
    ChatMessage,
    ChatResponse,
    ClientContent,
    ClientInteractionRequest,
    ClientInteractionResult,
    DataContent,
    ExecutionPhase,
    Role,
    StreamChunk,
    StreamingFrame,
    TextContent,
    ToolCall,
    ToolCallResult,
    ToolDescription,
    ToolExecutionStatus,
    ToolExecutionStep,
    UriContent,
)
from .errors import (
    ColloquyError,
    ContinuationStateError,
    ConversationNotFoundError,
    OperationCancelledError,
    ToolNotFoundError,
    TransportError,
)
from .execution import ToolExecutionManager
from .filesystem_conversation_store import AsyncFilesystemConversationStore
from .llm_client import OpenAILLMClient, TokenPricing
from .protocols import ConversationStore, LLMClient, ServerTool
from .registry import register_conversation_store, register_llm
from .sanitizer import build_request_messages, get_pending_tool_call_ids, sanitize_messages, validate
from .streaming import StreamingAccumulator
from .tools import ClientToolCatalog, ClientToolDefinition, FunctionTool, ToolRegistry, tool

try:
    __version__ = version("colloquy")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "__version__",
    "AgentEvent",
    "AgentEventType",
    "ToolCallingAgent",
    "create_agent_from_config",
    "AzureOpenAIClient",
    "OpenAILLMClient",
    "TokenPricing",
    "CancellationToken",
    "EngineConfig",
    "load_config_from_yaml",
    "ContinuationState",
    "Conversation",
    "ConversationStore",
    "InMemoryConversationStore",
    "AsyncFilesystemConversationStore",
    "deduplicate_tool_calls",
    "deduplicate_response",
    "ChatMessage",
    "ChatResponse",
    "ClientContent",
    "ClientInteractionRequest",
    "ClientInteractionResult",
    "DataContent",
    "ExecutionPhase",
    "Role",
    "StreamChunk",
    "StreamingFrame",
    "TextContent",
    "ToolCall",
    "ToolCallResult",
    "ToolDescription",
    "ToolExecutionStatus",
    "ToolExecutionStep",
    "UriContent",
    "ColloquyError",
    "ContinuationStateError",
    "ConversationNotFoundError",
    "OperationCancelledError",
    "ToolNotFoundError",
    "TransportError",
    "ToolExecutionManager",
    "LLMClient",
    "ServerTool",
    "register_conversation_store",
    "register_llm",
    "build_request_messages",
    "sanitize_messages",
    "validate",
    "get_pending_tool_call_ids",
    "StreamingAccumulator",
    "ClientToolCatalog",
    "ClientToolDefinition",
    "FunctionTool",
    "ToolRegistry",
    "tool",
]
