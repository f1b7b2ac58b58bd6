"""Main entry point for the Telegram completion relay bot.

Runs with long polling by default. When TELEGRAM_WEBHOOK_URL is set, serves a
FastAPI app that receives Telegram updates on WEBHOOK_PATH instead.
"""
import logging
import secrets
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from telegram import Update
from telegram.ext import Application

from config import (
    LOG_FORMAT,
    LOG_LEVEL,
    PORT,
    TELEGRAM_WEBHOOK_SECRET,
    TELEGRAM_WEBHOOK_URL,
    WEBHOOK_PATH,
    ConfigurationError,
    validate_config,
)
from logger import setup_logging
from services.telegram_bot import build_application, register_commands

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Telegram Completion Relay",
    description="Relays Telegram messages to a chat-completion API",
    version="1.0.0"
)

# Built on startup
telegram_application: Optional[Application] = None


@app.on_event("startup")
async def startup_event():
    """Build the Telegram application and register the webhook."""
    global telegram_application

    logger.info("Initializing Telegram completion relay (webhook mode)...")

    try:
        validate_config()
        if not TELEGRAM_WEBHOOK_URL:
            raise ConfigurationError("TELEGRAM_WEBHOOK_URL must be set to run the webhook server")
        telegram_application = build_application()
        await telegram_application.initialize()
        await register_commands(telegram_application)
        await telegram_application.bot.set_webhook(
            url=TELEGRAM_WEBHOOK_URL.rstrip("/") + WEBHOOK_PATH,
            secret_token=TELEGRAM_WEBHOOK_SECRET,
            allowed_updates=Update.ALL_TYPES
        )
        await telegram_application.start()
        logger.info("Webhook registered, bot started")
    except Exception as e:
        logger.error(f"Failed to initialize bot: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the Telegram application."""
    if telegram_application is None:
        return
    await telegram_application.stop()
    await telegram_application.shutdown()
    logger.info("Bot stopped")


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Telegram Completion Relay"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "telegram-completion-relay",
        "version": "1.0.0",
        "bot_ready": telegram_application is not None
    }


@app.post(WEBHOOK_PATH)
async def telegram_webhook(request: Request):
    """
    Receive one Telegram update and queue it for processing.

    Requests must carry the configured secret token when one is set.
    """
    if TELEGRAM_WEBHOOK_SECRET:
        received = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
        if not secrets.compare_digest(received, TELEGRAM_WEBHOOK_SECRET):
            logger.warning("Rejected webhook call with invalid secret token")
            raise HTTPException(status_code=403, detail="Invalid secret token")

    if telegram_application is None:
        raise HTTPException(status_code=503, detail="Bot is not ready")

    data = await request.json()
    update = Update.de_json(data, telegram_application.bot)
    await telegram_application.update_queue.put(update)
    return {"ok": True}


def run() -> None:
    """Start the bot in polling or webhook mode."""
    setup_logging(LOG_LEVEL, LOG_FORMAT)
    validate_config()

    if TELEGRAM_WEBHOOK_URL:
        import uvicorn
        logger.info(f"Starting Telegram completion relay webhook server on port {PORT}")
        uvicorn.run(app, host="0.0.0.0", port=PORT)
        return

    application = build_application()
    logger.info("Telegram bot started (polling)")
    application.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    run()
