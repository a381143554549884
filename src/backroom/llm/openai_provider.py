"""OpenAI LLM provider implementation."""

import logging
import time
from typing import Any

from openai import OpenAI

from backroom.llm.base import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)


# Pricing per 1M tokens; longer keys are matched first for dated model names
OPENAI_PRICING = {
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    "gpt-4.1": {"input": 2.00, "output": 8.00},
    "default": {"input": 0.15, "output": 0.60},
}

# Model families that accept a JSON schema in response_format
STRUCTURED_OUTPUT_PREFIXES = ("gpt-4o", "gpt-4.1")

SCHEMA_NAME = "oracle_response"


class OpenAIProvider(LLMProvider):
    """OpenAI LLM provider using the OpenAI Python SDK.

    Oracle schemas are sent as structured outputs to models that support
    them; older models fall back to plain JSON mode and the caller's parser.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        timeout: float | None = None,
    ):
        """Initialize the OpenAI provider.

        Args:
            api_key: OpenAI API key
            model: Model to use (default: gpt-4o-mini)
            timeout: Per-request timeout in seconds (SDK default if None)
        """
        if not api_key:
            raise ValueError("OpenAI API key is required")

        client_kwargs: dict[str, Any] = {"api_key": api_key}
        if timeout is not None:
            client_kwargs["timeout"] = timeout
        self.client = OpenAI(**client_kwargs)
        self._model = model
        self._supports_schema = model.startswith(STRUCTURED_OUTPUT_PREFIXES)
        logger.info(
            f"Initialized OpenAI provider with model: {model} "
            f"(timeout: {timeout}, structured outputs: {self._supports_schema})"
        )

    @property
    def provider_name(self) -> str:
        """Return 'openai' as the provider identifier."""
        return "openai"

    @property
    def model_name(self) -> str:
        """Return the model identifier."""
        return self._model

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 500,
        temperature: float = 0.3,
        json_schema: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """Generate a completion using OpenAI's chat completions API.

        Args:
            system_prompt: System message setting the context
            user_prompt: User message with the request
            max_tokens: Maximum tokens in response
            temperature: Sampling temperature (0.0-1.0)
            json_schema: Optional JSON schema the reply must follow

        Returns:
            LLMResponse with completion and metadata

        Raises:
            Exception: OpenAI API errors, including request timeouts
        """
        start_time = time.time()

        request_params: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_schema is not None:
            request_params["response_format"] = self._response_format(json_schema)

        response = self.client.chat.completions.create(**request_params)
        duration_ms = (time.time() - start_time) * 1000

        return self._build_response(response, duration_ms)

    def _response_format(self, json_schema: dict[str, Any]) -> dict[str, Any]:
        if not self._supports_schema:
            return {"type": "json_object"}
        # Non-strict: oracle schemas leave optional fields out of "required"
        return {
            "type": "json_schema",
            "json_schema": {"name": SCHEMA_NAME, "schema": json_schema, "strict": False},
        }

    def _build_response(self, response: Any, duration_ms: float) -> LLMResponse:
        choice = response.choices[0]
        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0

        return LLMResponse(
            content=choice.message.content or "",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=usage.total_tokens if usage else 0,
            finish_reason=choice.finish_reason or "unknown",
            model=response.model,
            duration_ms=duration_ms,
            raw_response=response,
        )

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Calculate cost in USD based on token usage.

        Dated model names such as ``gpt-4o-mini-2024-07-18`` use the price of
        the longest matching family.
        """
        pricing = OPENAI_PRICING["default"]
        families = sorted((k for k in OPENAI_PRICING if k != "default"), key=len, reverse=True)
        for family in families:
            if self._model.startswith(family):
                pricing = OPENAI_PRICING[family]
                break

        input_cost = prompt_tokens * (pricing["input"] / 1_000_000)
        output_cost = completion_tokens * (pricing["output"] / 1_000_000)
        return input_cost + output_cost
