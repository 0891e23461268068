class ColloquyError(Exception):
    """Base class for all errors raised by colloquy."""


class ContinuationStateError(ColloquyError):
    """
    Raised when the continuation persisted on a conversation cannot be read back.

    A suspended batch of tool calls only lives in the conversation's property bag, so a corrupt
    entry means the pending work is lost. Resuming must fail loudly in that case.
    """


class OperationCancelledError(ColloquyError):
    """Raised when a cancellation token is triggered while a step is in flight."""


class ToolNotFoundError(ColloquyError, LookupError):
    """Raised when a server tool is requested by name but has not been registered."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' not found")


class TransportError(ColloquyError):
    """Raised when the LLM transport could not produce a response after all retries."""


class ConversationNotFoundError(ColloquyError, LookupError):
    """Raised when a conversation store holds no conversation with the requested id."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' not found")
