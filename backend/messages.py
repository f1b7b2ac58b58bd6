"""User-facing texts sent by the bot."""

GREETING_TEXT = (
    "Привет! Я бот, который использует DeepSeek AI для ответов на ваши вопросы. "
    "Просто напишите мне сообщение, и я отвечу."
)

PLACEHOLDER_TEXT = "Пишу ответ на Ваш запрос..."

ERROR_TEXT = (
    "Произошла ошибка при обработке вашего запроса. "
    "Пожалуйста, попробуйте еще раз."
)

START_COMMAND_DESCRIPTION = "Начать общение с ботом"
