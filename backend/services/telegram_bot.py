"""Telegram adapter built on python-telegram-bot."""
import logging
from typing import List, Optional

from telegram import Bot, BotCommand, ChatMember, Update
from telegram.constants import MessageLimit
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    ChatMemberHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from config import TELEGRAM_BOT_TOKEN, ConfigurationError
from messages import GREETING_TEXT, START_COMMAND_DESCRIPTION
from services.completion_client import CompletionClient
from services.conversation_manager import ConversationManager
from services.turn_pipeline import PlatformDeliveryError, TurnPipeline

logger = logging.getLogger(__name__)

BOT_COMMANDS = [BotCommand("start", START_COMMAND_DESCRIPTION)]


def _fit_within(text: str, max_len: int) -> int:
    """Length of the longest prefix of text that fits in max_len UTF-16 code units."""
    units = 0
    for index, char in enumerate(text):
        units += 2 if ord(char) > 0xFFFF else 1
        if units > max_len:
            return index
    return len(text)


def split_message(text: str, max_len: int = MessageLimit.MAX_TEXT_LENGTH) -> List[str]:
    """
    Split text into pieces that fit Telegram's message length limit.

    Length is counted in UTF-16 code units, as the Bot API counts it. Splits
    at the last newline within the limit, or hard at the limit when a piece
    has no newline. Whitespace-only pieces are dropped.
    """
    chunks = []
    remaining = text
    while remaining:
        fit = _fit_within(remaining, max_len)
        if fit == len(remaining):
            piece, remaining = remaining, ""
        else:
            split_at = remaining.rfind("\n", 0, fit)
            if split_at <= 0:
                split_at = max(fit, 1)
            piece = remaining[:split_at]
            remaining = remaining[split_at:].lstrip("\n")

        if piece.strip():
            chunks.append(piece)

    return chunks or [text]


class TelegramGateway:
    """Sends and deletes chat messages through the Bot API."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_message(self, chat_id: int, text: str) -> int:
        """
        Send text, split across several messages if it is too long.

        Returns:
            Message id of the last message sent

        Raises:
            PlatformDeliveryError: If the Bot API rejects a message
        """
        message = None
        try:
            for chunk in split_message(text):
                message = await self.bot.send_message(chat_id=chat_id, text=chunk)
        except TelegramError as e:
            raise PlatformDeliveryError(f"Failed to send message to chat {chat_id}: {e}") from e
        return message.message_id

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        try:
            await self.bot.delete_message(chat_id=chat_id, message_id=message_id)
        except TelegramError as e:
            raise PlatformDeliveryError(
                f"Failed to delete message {message_id} in chat {chat_id}: {e}"
            ) from e


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Reply to /start with the greeting."""
    await update.effective_message.reply_text(GREETING_TEXT)


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Relay a text message through the turn pipeline."""
    message = update.effective_message
    if message is None or not message.text or not message.text.strip():
        return

    pipeline: TurnPipeline = context.bot_data["pipeline"]
    await pipeline.run(update.effective_chat.id, message.text)


async def handle_membership(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Forget a chat's history once the bot is blocked or removed from it."""
    member_update = update.my_chat_member
    if member_update is None:
        return

    if member_update.new_chat_member.status in (ChatMember.BANNED, ChatMember.LEFT):
        conversation_manager: ConversationManager = context.bot_data["conversation_manager"]
        conversation_manager.discard(member_update.chat.id)


async def handle_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Log errors that escaped a handler."""
    chat_id = None
    if isinstance(update, Update) and update.effective_chat:
        chat_id = update.effective_chat.id

    logger.error(
        f"Unhandled error for chat {chat_id}: {context.error}",
        exc_info=context.error,
        extra={"context": {"chat_id": chat_id}}
    )


async def register_commands(application: Application) -> None:
    """Publish the command menu."""
    await application.bot.set_my_commands(BOT_COMMANDS)
    logger.info(f"Registered bot commands: {[c.command for c in BOT_COMMANDS]}")


def build_application(
    token: Optional[str] = None,
    completion_client: Optional[CompletionClient] = None,
    conversation_manager: Optional[ConversationManager] = None
) -> Application:
    """
    Build the Telegram application with handlers and shared services.

    Args:
        token: Bot token (defaults to TELEGRAM_BOT_TOKEN from environment)
        completion_client: Client for the completion API (created if omitted)
        conversation_manager: Conversation registry (created if omitted)

    Returns:
        Configured, not yet initialized Application
    """
    token = token or TELEGRAM_BOT_TOKEN
    if not token:
        raise ConfigurationError("TELEGRAM_BOT_TOKEN must be provided or set in environment")

    if completion_client is None:
        completion_client = CompletionClient()
    if conversation_manager is None:
        conversation_manager = ConversationManager()

    application = (
        ApplicationBuilder()
        .token(token)
        .concurrent_updates(True)
        .post_init(register_commands)
        .build()
    )

    application.bot_data["conversation_manager"] = conversation_manager
    application.bot_data["pipeline"] = TurnPipeline(
        conversation_manager=conversation_manager,
        completion_client=completion_client,
        gateway=TelegramGateway(application.bot)
    )

    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(
        MessageHandler(filters.UpdateType.MESSAGE & filters.TEXT, handle_text)
    )
    application.add_handler(
        ChatMemberHandler(handle_membership, ChatMemberHandler.MY_CHAT_MEMBER)
    )
    application.add_error_handler(handle_error)

    logger.info("Telegram application built")
    return application
