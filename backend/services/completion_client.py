"""Completion client for an OpenAI-compatible chat-completions API."""
import time
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import httpx

from config import (
    CHUTES_API_TOKEN,
    COMPLETION_API_URL,
    COMPLETION_MODEL,
    COMPLETION_MAX_TOKENS,
    COMPLETION_TEMPERATURE,
    COMPLETION_TIMEOUT,
    ConfigurationError,
)

logger = logging.getLogger(__name__)

# Longest slice of an error body kept in logs and error details
MAX_ERROR_BODY_CHARS = 1000


@dataclass
class CompletionResponse:
    """Reply produced by the completion API."""
    text: str
    tokens_input: int
    tokens_output: int
    latency_ms: int
    model_used: str


@dataclass
class CompletionError:
    """Structured error information for a failed completion request."""
    code: str
    message: str
    details: Dict[str, Any]


class CompletionFailure(Exception):
    """Base exception for every way a completion request can fail."""

    def __init__(self, error: CompletionError):
        self.error = error
        super().__init__(error.message)


class TransportError(CompletionFailure):
    """The API could not be reached (timeout, DNS, connection reset)."""


class CompletionAPIError(CompletionFailure):
    """The API answered with a non-2xx status."""


class MalformedResponseError(CompletionFailure):
    """A 2xx answer without an extractable completion string."""


class CompletionClient:
    """Client for the chat-completions endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: str = COMPLETION_API_URL,
        model: str = COMPLETION_MODEL,
        max_tokens: int = COMPLETION_MAX_TOKENS,
        temperature: float = COMPLETION_TEMPERATURE,
        timeout: float = COMPLETION_TIMEOUT
    ):
        """
        Initialize the completion client.

        Args:
            api_key: Bearer token (defaults to CHUTES_API_TOKEN from environment)
            api_url: Chat-completions endpoint URL
            model: Model identifier sent with every request
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature
            timeout: Request timeout in seconds
        """
        self.api_key = api_key or CHUTES_API_TOKEN
        if not self.api_key:
            raise ConfigurationError("CHUTES_API_TOKEN must be provided or set in environment")

        self.api_url = api_url
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout

        logger.info(f"CompletionClient initialized with model: {model}")

    def build_payload(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        """
        Build the JSON request body.

        Args:
            messages: Role/content pairs in chronological order

        Returns:
            Request body dictionary
        """
        return {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature
        }

    async def complete(self, messages: List[Dict[str, str]]) -> CompletionResponse:
        """
        Request a completion for the given message history.

        Args:
            messages: Role/content pairs in chronological order

        Returns:
            CompletionResponse with text, token counts, and latency

        Raises:
            TransportError: Network-level failure or timeout
            CompletionAPIError: Non-2xx status
            MalformedResponseError: 2xx without choices[0].message.content
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        payload = self.build_payload(messages)

        start_time = time.time()

        try:
            logger.debug(
                f"Requesting completion: model={self.model}, messages={len(messages)}"
            )
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.api_url,
                    headers=headers,
                    json=payload
                )

        except httpx.TimeoutException as e:
            raise self._failure(
                TransportError,
                code="TIMEOUT_ERROR",
                message=f"Request timed out after {self.timeout}s",
                start_time=start_time,
                original_error=e
            ) from e

        except httpx.HTTPError as e:
            raise self._failure(
                TransportError,
                code="TRANSPORT_ERROR",
                message=f"Network error: {str(e)}",
                start_time=start_time,
                original_error=e
            ) from e

        latency_ms = int((time.time() - start_time) * 1000)

        if not 200 <= response.status_code < 300:
            body = (response.text or "")[:MAX_ERROR_BODY_CHARS]
            raise self._failure(
                CompletionAPIError,
                code="API_ERROR",
                message=f"API request failed: {response.status_code}",
                start_time=start_time,
                status_code=response.status_code,
                body=body
            )

        try:
            data = response.json()
            text = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise self._failure(
                MalformedResponseError,
                code="MALFORMED_RESPONSE",
                message="Response did not contain a completion",
                start_time=start_time,
                original_error=e
            ) from e

        if not isinstance(text, str) or not text.strip():
            raise self._failure(
                MalformedResponseError,
                code="MALFORMED_RESPONSE",
                message="Completion content is empty",
                start_time=start_time
            )

        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        tokens_input = usage.get("prompt_tokens") or 0
        tokens_output = usage.get("completion_tokens") or 0

        logger.info(
            f"Generated response: model={self.model}, "
            f"input_tokens={tokens_input}, output_tokens={tokens_output}, "
            f"latency={latency_ms}ms"
        )

        return CompletionResponse(
            text=text,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            latency_ms=latency_ms,
            model_used=data.get("model") or self.model
        )

    def _failure(
        self,
        error_class: type,
        code: str,
        message: str,
        start_time: float,
        original_error: Optional[Exception] = None,
        **details: Any
    ) -> CompletionFailure:
        """Build and log a structured completion failure."""
        latency_ms = int((time.time() - start_time) * 1000)
        details.update({"model": self.model, "latency_ms": latency_ms})
        if original_error is not None:
            details["original_error"] = str(original_error)
            details["error_type"] = type(original_error).__name__

        error = CompletionError(code=code, message=message, details=details)
        logger.error(
            f"Completion failed: code={code}, model={self.model}, "
            f"latency={latency_ms}ms, error={message}"
            + (f", body={details['body']}" if "body" in details else ""),
            extra={"context": {"error_code": code, "error_details": details}}
        )
        return error_class(error)
