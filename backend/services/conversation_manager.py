"""Conversation manager for per-chat conversation history."""
import asyncio
import logging
from typing import Dict, Optional

from models.conversation import Conversation
from config import HISTORY_MAX_TURNS

logger = logging.getLogger(__name__)


class ConversationManager:
    """Keeps one in-memory Conversation per chat for the life of the process."""

    def __init__(self, max_turns: Optional[int] = None):
        """
        Initialize an empty conversation registry.

        Args:
            max_turns: Cap on turns kept per chat (defaults to HISTORY_MAX_TURNS,
                0 or None means unbounded)
        """
        if max_turns is None:
            max_turns = HISTORY_MAX_TURNS
        self.max_turns = max_turns or None
        self._conversations: Dict[int, Conversation] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        logger.info(
            f"ConversationManager initialized (max_turns={self.max_turns or 'unbounded'})"
        )

    def get_or_create_conversation(self, chat_id: int) -> Conversation:
        """
        Get the chat's conversation, creating an empty one on first use.

        Args:
            chat_id: Telegram chat identifier

        Returns:
            Conversation owned by this chat
        """
        conversation = self._conversations.get(chat_id)
        if conversation is None:
            conversation = Conversation(chat_id=chat_id, max_turns=self.max_turns)
            self._conversations[chat_id] = conversation
            logger.info(f"Created new conversation for chat {chat_id}")
        return conversation

    def get_conversation(self, chat_id: int) -> Optional[Conversation]:
        return self._conversations.get(chat_id)

    def lock_for(self, chat_id: int) -> asyncio.Lock:
        """
        Lock serializing pipeline runs of one chat.

        Runs for different chats use different locks and never wait on each other.
        """
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[chat_id] = lock
        return lock

    def discard(self, chat_id: int) -> bool:
        """
        End a chat's session and drop its history.

        The chat's lock is kept so runs still queued on it stay serialized
        with later messages.

        Args:
            chat_id: Telegram chat identifier

        Returns:
            True if a conversation existed
        """
        conversation = self._conversations.pop(chat_id, None)

        if conversation is None:
            return False

        logger.info(
            f"Discarded conversation for chat {chat_id} with {len(conversation.turns)} turns"
        )
        return True

    def clear(self) -> None:
        """Drop every conversation, keeping the per-chat locks."""
        count = len(self._conversations)
        self._conversations.clear()
        logger.info(f"Cleared {count} conversations")

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._conversations
