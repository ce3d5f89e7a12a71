"""OpenAI-compatible chat and JSON completion with timeout and retry logic."""

import asyncio
import json
from typing import Any, Optional

import structlog
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ..graph.errors import CompletionError
from .providers import LLMProviderAdapter

logger = structlog.get_logger(__name__)

DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 1000

TRANSIENT_ERRORS = (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    RateLimitError,
    asyncio.TimeoutError,
)


class OpenAICompletionClient:
    """
    Completion client for OpenAI-compatible chat APIs.

    Features:
    - Per-call timeout via asyncio.wait_for
    - Exponential backoff retry for rate limits, timeouts and 5xx responses
    - JSON mode with strict parsing (malformed output raises CompletionError)
    """

    def __init__(
        self,
        adapter: LLMProviderAdapter,
        timeout_seconds: float = 30.0,
        retry_attempts: int = 3,
        retry_initial_wait: float = 1.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = adapter.model
        self.timeout_seconds = timeout_seconds
        self.retry_attempts = retry_attempts
        self.retry_initial_wait = retry_initial_wait
        self.client = client or AsyncOpenAI(**adapter.openai_kwargs())
        logger.info(
            "completion_client_initialized",
            provider=adapter.provider,
            model=self.model,
            timeout=timeout_seconds,
        )

    async def _complete(
        self,
        messages: list[dict[str, str]],
        max_tokens: Optional[int],
        temperature: Optional[float],
        json_mode: bool,
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": DEFAULT_TEMPERATURE if temperature is None else temperature,
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential_jitter(
                    initial=self.retry_initial_wait, max=30, jitter=self.retry_initial_wait
                ),
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                before_sleep=lambda retry_state: logger.warning(
                    "completion_retry",
                    attempt=retry_state.attempt_number,
                    error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
                ),
                reraise=True,
            ):
                with attempt:
                    response = await asyncio.wait_for(
                        self.client.chat.completions.create(**kwargs),
                        timeout=self.timeout_seconds,
                    )
        except Exception as e:
            logger.warning("completion_failed", model=self.model, error=str(e))
            raise CompletionError(str(e) or type(e).__name__, self.model) from e

        if not response.choices:
            raise CompletionError("response contained no choices", self.model)
        content = response.choices[0].message.content
        if content is None:
            raise CompletionError("response contained no content", self.model)
        return content

    async def get_chat_completion(
        self,
        messages: list[dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Run a chat completion and return the text content.

        Raises:
            CompletionError: If the call fails after retries
        """
        return await self._complete(messages, max_tokens, temperature, json_mode=False)

    async def get_json_completion(
        self,
        messages: list[dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> dict[str, Any]:
        """
        Run a JSON-mode completion and return the parsed object.

        Raises:
            CompletionError: If the call fails or the content is not a JSON object
        """
        content = await self._complete(messages, max_tokens, temperature, json_mode=True)
        try:
            parsed = json.loads(_strip_code_fence(content))
        except json.JSONDecodeError as e:
            raise CompletionError(f"malformed JSON response: {e}", self.model) from e
        if not isinstance(parsed, dict):
            raise CompletionError("JSON response is not an object", self.model)
        return parsed


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()
