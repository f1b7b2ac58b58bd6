"""Data models for the Telegram completion relay bot."""
from .conversation import Conversation, Role, Turn

__all__ = [
    "Conversation",
    "Role",
    "Turn",
]
