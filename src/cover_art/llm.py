"""
OpenAI JSON-mode client for theme extraction and convergence.

Every call asks for a JSON object and returns the parsed object together
with the prompt/completion token counts used for cost tracking.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import openai
import tiktoken
from openai import AsyncOpenAI

from src.util.retry import LLM_RETRY_ATTEMPTS, with_retry

from .exceptions import LLMError
from .pricing import LLM_MODEL

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2000


@dataclass
class LLMResponse:
    parsed: Dict[str, Any]
    input_tokens: int
    output_tokens: int


class LLMClient:
    """Async OpenAI client returning parsed JSON objects."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = LLM_MODEL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        retry_attempts: int = LLM_RETRY_ATTEMPTS,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: OpenAI API key (the SDK reads OPENAI_API_KEY when omitted)
            model: Chat model name
            timeout: Per-request timeout in seconds
            retry_attempts: Attempts per call on transient failures
            client: Pre-built AsyncOpenAI instance

        Raises:
            ValueError: If timeout is not positive
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")

        # Retries are handled by with_retry so that every service shares one policy
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.retry_attempts = retry_attempts
        self._encoding = None

    @property
    def encoding(self):
        """tiktoken encoding for the model, loaded on first use."""
        if self._encoding is None:
            try:
                self._encoding = tiktoken.encoding_for_model(self.model)
            except KeyError:
                logger.warning(f"Model '{self.model}' not found in tiktoken, using o200k_base encoding")
                self._encoding = tiktoken.get_encoding("o200k_base")
        return self._encoding

    def estimate_tokens(self, text: str) -> int:
        return len(self.encoding.encode(text))

    async def _create(self, messages, temperature: float, max_tokens: int):
        try:
            return await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                response_format={"type": "json_object"},
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.APIStatusError as e:
            raise LLMError(f"OpenAI API error ({e.status_code}): {e.message}") from e
        except openai.APITimeoutError as e:
            raise LLMError("OpenAI request timed out") from e
        except openai.APIConnectionError as e:
            raise ConnectionError(f"OpenAI connection failed: {e}") from e

    async def chat_json(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> LLMResponse:
        """
        Run one JSON-mode chat completion.

        Args:
            system_prompt: System message
            user_prompt: User message
            temperature: Sampling temperature
            max_tokens: Completion token cap

        Returns:
            LLMResponse with the parsed JSON object and token usage

        Raises:
            LLMError: On API errors, empty output, or output that is not a JSON object
        """
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        response = await with_retry(
            lambda: self._create(messages, temperature, max_tokens),
            max_attempts=self.retry_attempts,
            label="OpenAI chat completion",
        )

        content = response.choices[0].message.content if response.choices else None

        # Usage is counted before the content is checked; rejected output is still billed
        if response.usage:
            input_tokens = response.usage.prompt_tokens
            output_tokens = response.usage.completion_tokens
        else:
            logger.warning("OpenAI response carried no usage, estimating tokens")
            input_tokens = self.estimate_tokens(system_prompt + user_prompt)
            output_tokens = self.estimate_tokens(content) if content else 0
        logger.debug(f"LLM call used {input_tokens}+{output_tokens} tokens")

        if not content:
            raise LLMError("OpenAI returned empty response", input_tokens, output_tokens)

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise LLMError(f"OpenAI returned invalid JSON: {content[:200]}",
                           input_tokens, output_tokens) from e
        if not isinstance(parsed, dict):
            raise LLMError(f"OpenAI returned invalid JSON: {content[:200]}", input_tokens, output_tokens)

        return LLMResponse(parsed=parsed, input_tokens=input_tokens, output_tokens=output_tokens)
