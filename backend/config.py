"""Configuration management for the Telegram completion relay bot."""
import os
from typing import List
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class ConfigurationError(Exception):
    """Raised when a required setting is missing at startup."""


# API Keys
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
CHUTES_API_TOKEN = os.getenv("CHUTES_API_TOKEN")

# Completion API Configuration
COMPLETION_API_URL = os.getenv(
    "COMPLETION_API_URL",
    "https://llm.chutes.ai/v1/chat/completions"
)
COMPLETION_MODEL = os.getenv("COMPLETION_MODEL", "deepseek-ai/DeepSeek-V3-0324")
COMPLETION_MAX_TOKENS = int(os.getenv("COMPLETION_MAX_TOKENS", "1024"))
COMPLETION_TEMPERATURE = float(os.getenv("COMPLETION_TEMPERATURE", "0.7"))
COMPLETION_TIMEOUT = float(os.getenv("COMPLETION_TIMEOUT", "120"))  # seconds

# Conversation Configuration
HISTORY_MAX_TURNS = int(os.getenv("HISTORY_MAX_TURNS", "0"))  # 0 = unbounded

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
TELEGRAM_WEBHOOK_URL = os.getenv("TELEGRAM_WEBHOOK_URL")
TELEGRAM_WEBHOOK_SECRET = os.getenv("TELEGRAM_WEBHOOK_SECRET")
WEBHOOK_PATH = "/telegram/webhook"

# Logging Configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")


def validate_config() -> None:
    """
    Check that every required credential is present.

    Raises:
        ConfigurationError: Listing all missing variables
    """
    missing: List[str] = []
    if not TELEGRAM_BOT_TOKEN:
        missing.append("TELEGRAM_BOT_TOKEN")
    if not CHUTES_API_TOKEN:
        missing.append("CHUTES_API_TOKEN")

    if missing:
        raise ConfigurationError(
            f"{', '.join(missing)} is not defined in environment variables"
        )
