import copy
from typing import Self

from colloquy.conversation import Conversation
from colloquy.errors import ConversationNotFoundError
from colloquy.logger_setup import get_logger
from colloquy.protocols import ConversationStore
from colloquy.registry import register_conversation_store


@register_conversation_store("memory")
class InMemoryConversationStore(ConversationStore):
    """
    Keeps serialized conversations in a dictionary.

    Conversations are stored in their serialized form, so a fetched conversation never shares state with the
    instance that was persisted.
    """

    is_persistent = False

    def __init__(self):
        self.conversations: dict[str, dict] = {}
        self.logger = get_logger(__name__)

    @classmethod
    def create(cls, **kwargs) -> Self:
        return cls()

    async def persist(self, conversation: Conversation) -> None:
        self.logger.debug(f"Persisting conversation {conversation.conversation_id}")
        self.conversations[conversation.conversation_id] = copy.deepcopy(conversation.to_dict())

    async def fetch(self, conversation_id: str) -> Conversation:
        if conversation_id not in self.conversations:
            raise ConversationNotFoundError(conversation_id)
        return Conversation.from_dict(copy.deepcopy(self.conversations[conversation_id]))

    async def delete(self, conversation_id: str) -> None:
        self.conversations.pop(conversation_id, None)

    async def exists(self, conversation_id: str) -> bool:
        return conversation_id in self.conversations
