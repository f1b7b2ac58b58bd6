"""Turn pipeline: one user message in, one reply (or error notice) out."""
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from messages import ERROR_TEXT, PLACEHOLDER_TEXT
from models.conversation import Role, Turn
from services.completion_client import CompletionClient, CompletionFailure, CompletionResponse
from services.conversation_manager import ConversationManager

logger = logging.getLogger(__name__)


class PlatformDeliveryError(Exception):
    """A chat message could not be sent or deleted."""


class ChatGateway(Protocol):
    """Outbound side of the chat platform."""

    async def send_message(self, chat_id: int, text: str) -> int:
        """Send text to a chat and return the message id."""
        ...

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        """Delete a previously sent message."""
        ...


@dataclass
class TurnResult:
    """Outcome of one pipeline run."""
    success: bool
    reply_text: str
    completion: Optional[CompletionResponse] = None


class TurnPipeline:
    """Runs the request/response cycle for incoming chat messages."""

    def __init__(
        self,
        conversation_manager: ConversationManager,
        completion_client: CompletionClient,
        gateway: ChatGateway,
        placeholder_text: str = PLACEHOLDER_TEXT,
        error_text: str = ERROR_TEXT
    ):
        self.conversation_manager = conversation_manager
        self.completion_client = completion_client
        self.gateway = gateway
        self.placeholder_text = placeholder_text
        self.error_text = error_text

    async def run(self, chat_id: int, user_message: str) -> TurnResult:
        """
        Process one user message for a chat.

        Sends a placeholder, appends the user turn, asks the completion API for
        a reply over the whole history, then replaces the placeholder with the
        reply. Completion and delivery failures are turned into the fixed error
        notice; the user turn stays in history either way. Runs for the same
        chat are serialized.

        Args:
            chat_id: Chat the message came from
            user_message: Message text, must not be empty

        Returns:
            TurnResult describing what the user was shown

        Raises:
            ValueError: If user_message is empty
            PlatformDeliveryError: If the placeholder or the error notice
                cannot be sent
        """
        if not user_message or not user_message.strip():
            raise ValueError("User message cannot be empty")

        async with self.conversation_manager.lock_for(chat_id):
            conversation = self.conversation_manager.get_or_create_conversation(chat_id)

            placeholder_id = await self.gateway.send_message(chat_id, self.placeholder_text)
            placeholder_pending = True

            try:
                conversation.append(Turn(role=Role.USER, content=user_message))

                completion = await self.completion_client.complete(conversation.to_messages())

                conversation.append(Turn(role=Role.ASSISTANT, content=completion.text))

                placeholder_pending = False
                await self._delete_placeholder(chat_id, placeholder_id)

                await self.gateway.send_message(chat_id, completion.text)

            except (CompletionFailure, PlatformDeliveryError) as e:
                logger.error(
                    f"Error processing message for chat {chat_id}: {e}",
                    extra={"context": {"chat_id": chat_id, "error_type": type(e).__name__}}
                )
                return await self._fail(chat_id, placeholder_id, placeholder_pending)

            except Exception as e:
                logger.error(
                    f"Unexpected error processing message for chat {chat_id}: {e}",
                    exc_info=True,
                    extra={"context": {"chat_id": chat_id, "error_type": type(e).__name__}}
                )
                return await self._fail(chat_id, placeholder_id, placeholder_pending)

            logger.info(
                f"Replied to chat {chat_id}: {len(completion.text)} chars, "
                f"history={len(conversation.turns)} turns"
            )
            return TurnResult(success=True, reply_text=completion.text, completion=completion)

    async def _fail(self, chat_id: int, placeholder_id: int, placeholder_pending: bool) -> TurnResult:
        if placeholder_pending:
            await self._delete_placeholder(chat_id, placeholder_id)
        await self.gateway.send_message(chat_id, self.error_text)
        return TurnResult(success=False, reply_text=self.error_text)

    async def _delete_placeholder(self, chat_id: int, placeholder_id: int) -> None:
        # Best-effort, delete failures are logged and ignored
        try:
            await self.gateway.delete_message(chat_id, placeholder_id)
        except PlatformDeliveryError as e:
            logger.warning(f"Could not delete placeholder {placeholder_id} in chat {chat_id}: {e}")
