"""Services for the Telegram completion relay bot."""
from .completion_client import (
    CompletionClient,
    CompletionResponse,
    CompletionError,
    CompletionFailure,
    TransportError,
    CompletionAPIError,
    MalformedResponseError,
)
from .conversation_manager import ConversationManager
from .turn_pipeline import TurnPipeline, TurnResult, ChatGateway, PlatformDeliveryError
from .telegram_bot import TelegramGateway, build_application

__all__ = ['CompletionClient', 'CompletionResponse', 'CompletionError', 'CompletionFailure', 'TransportError', 'CompletionAPIError', 'MalformedResponseError', 'ConversationManager', 'TurnPipeline', 'TurnResult', 'ChatGateway', 'PlatformDeliveryError', 'TelegramGateway', 'build_application']
