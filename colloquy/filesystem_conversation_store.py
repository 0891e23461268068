import asyncio
import json
import os
from pathlib import Path
from typing import Self

import aiofiles

from colloquy.conversation import Conversation
from colloquy.errors import ConversationNotFoundError
from colloquy.logger_setup import get_logger
from colloquy.protocols import ConversationStore
from colloquy.registry import register_conversation_store


@register_conversation_store("filesystem")
class AsyncFilesystemConversationStore(ConversationStore):
    is_persistent = True

    def __init__(self, directory: Path):
        self.directory: Path = Path(directory)
        self.logger = get_logger(__name__)

        self.logger.info(f"Initializing async conversation store with directory {directory}")

    def _get_file_path(self, conversation_id: str) -> Path:
        return self.directory / f"{conversation_id}.json"

    @classmethod
    def create(cls, **kwargs) -> Self:
        directory = Path(kwargs.get("directory") or ".")
        directory.mkdir(parents=True, exist_ok=True)
        return cls(directory=directory)

    async def persist(self, conversation: Conversation) -> None:
        if not conversation.conversation_id:
            raise ValueError("Conversation ID must be set before persisting")

        self.logger.info(f"Persisting conversation {conversation.conversation_id}")

        file_path = self._get_file_path(conversation.conversation_id)
        data = json.dumps(conversation.to_dict())

        async with aiofiles.open(file_path, "w") as f:
            await f.write(data)

    async def fetch(self, conversation_id: str) -> Conversation:
        self.logger.info(f"Fetching conversation {conversation_id}")

        file_path = self._get_file_path(conversation_id)
        if not file_path.exists():
            raise ConversationNotFoundError(conversation_id)

        async with aiofiles.open(file_path, "r") as f:
            data_str = await f.read()

        return Conversation.from_dict(json.loads(data_str))

    async def delete(self, conversation_id: str) -> None:
        self.logger.info(f"Deleting conversation {conversation_id}")

        file_path = self._get_file_path(conversation_id)
        if file_path.exists():
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, os.remove, file_path)

    async def exists(self, conversation_id: str) -> bool:
        return self._get_file_path(conversation_id).exists()
