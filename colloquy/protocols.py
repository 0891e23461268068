from typing import TYPE_CHECKING, Any, AsyncIterator, Optional, Protocol, runtime_checkable

from colloquy.cancellation import CancellationToken
from colloquy.entities import ChatMessage, ChatResponse, StreamChunk, ToolDescription

if TYPE_CHECKING:
    from colloquy.conversation import Conversation


@runtime_checkable
class ServerTool(Protocol):
    """
    Uniform contract for tools executed on the server.

    Tools receive their arguments as a JSON object string together with the conversation they are executed in.
    How a tool is authored behind this contract is up to the tool.
    """

    name: str
    description: str

    def to_description(self) -> ToolDescription:
        """
        Describes the tool so that it can be offered to the LLM.

        :return: The tool description.
        """
        ...

    async def execute(
        self,
        arguments_json: str,
        conversation: "Conversation",
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Any:
        """
        Executes the tool.

        :param arguments_json: The arguments emitted by the model, as a JSON object string.
        :param conversation: The conversation the call belongs to.
        :param cancellation_token: Token to observe for cooperative cancellation.
        :return: The tool result. Non-string results are serialized before they are sent back to the model.
        """
        ...


class LLMClient(Protocol):
    """
    Protocol for LLM transports.

    The engine never talks to a model provider directly, it only hands request-ready messages and a tool catalog
    to an implementation of this protocol.
    """

    @classmethod
    def create(cls, **kwargs) -> "LLMClient": ...

    async def generate(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[ToolDescription]] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> ChatResponse:
        """
        Produces a complete, non-streamed response.

        :param messages: Request-ready messages, already sanitized.
        :param tools: Descriptions of all tools the model may call.
        :param cancellation_token: Token to observe for cooperative cancellation.
        :return: The response including token usage and cost.
        """
        ...

    def stream(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[ToolDescription]] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Produces the response as a stream of chunks.

        Tool call fragments are only emitted once their arguments are complete. The last chunk carries the
        finish reason.

        :param messages: Request-ready messages, already sanitized.
        :param tools: Descriptions of all tools the model may call.
        :param cancellation_token: Token to observe for cooperative cancellation.
        :return: An async iterator over the chunks.
        """
        ...


class ConversationStore(Protocol):
    """
    Protocol for managing the persistence of conversations.

    Implementations must round-trip the property bag verbatim, since it carries the continuation of a
    suspended tool batch across process boundaries.
    """

    is_persistent: bool

    @classmethod
    def create(cls, **kwargs) -> "ConversationStore": ...

    async def persist(self, conversation: "Conversation") -> None:
        """
        Persists the given conversation.

        :param conversation: The conversation to store, replacing any stored version.
        """
        ...

    async def fetch(self, conversation_id: str) -> "Conversation":
        """
        Fetches a conversation by its unique identifier.

        :param conversation_id: The unique identifier of the conversation to be fetched.
        :return: The fetched conversation.
        """
        ...

    async def delete(self, conversation_id: str) -> None:
        """
        Deletes a conversation by its unique identifier.

        :param conversation_id: The unique identifier of the conversation to be deleted.
        """
        ...

    async def exists(self, conversation_id: str) -> bool:
        """
        Checks if a conversation with the given unique identifier exists in the store.

        :param conversation_id: The unique identifier of the conversation to check.
        :return: True if the conversation exists, False otherwise.
        """
        ...
