"""Anthropic LLM provider implementation."""

import json
import logging
import time
from typing import Any

from anthropic import Anthropic

from backroom.llm.base import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)


# Pricing per 1M tokens
ANTHROPIC_PRICING = {
    "claude-sonnet-4-5-20250514": {"input": 3.00, "output": 15.00},
    "claude-opus-4-1-20250410": {"input": 15.00, "output": 75.00},
    "claude-3-5-haiku-20241022": {"input": 0.80, "output": 4.00},
    "claude-3-5-sonnet-20241022": {"input": 3.00, "output": 15.00},
    "default": {"input": 3.00, "output": 15.00},
}

JSON_INSTRUCTION = (
    "\n\nIMPORTANT: You must respond with valid JSON only. "
    "No markdown code blocks, no explanations, no additional text. "
    "Return ONLY the raw JSON object."
)


class AnthropicProvider(LLMProvider):
    """Anthropic LLM provider using the Anthropic Python SDK.

    JSON output is enforced through the system prompt, with the expected
    schema appended for the model's reference.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-5-20250514",
        timeout: float | None = None,
    ):
        """Initialize the Anthropic provider.

        Args:
            api_key: Anthropic API key
            model: Model to use
            timeout: Per-request timeout in seconds (SDK default if None)
        """
        if not api_key:
            raise ValueError("Anthropic API key is required")

        client_kwargs: dict[str, Any] = {"api_key": api_key}
        if timeout is not None:
            client_kwargs["timeout"] = timeout
        self.client = Anthropic(**client_kwargs)
        self._model = model
        logger.info(f"Initialized Anthropic provider with model: {model} (timeout: {timeout})")

    @property
    def provider_name(self) -> str:
        return "anthropic"

    @property
    def model_name(self) -> str:
        return self._model

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 500,
        temperature: float = 0.3,
        json_schema: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """Generate a completion using Anthropic's messages API."""
        start_time = time.time()

        system = system_prompt
        if json_schema is not None:
            system = (
                system_prompt
                + JSON_INSTRUCTION
                + f"\nThe object must match this JSON schema: {json.dumps(json_schema)}"
            )

        response = self.client.messages.create(
            model=self._model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=[{"role": "user", "content": user_prompt}],
        )
        duration_ms = (time.time() - start_time) * 1000

        return self._build_response(response, duration_ms)

    def _build_response(self, response: Any, duration_ms: float) -> LLMResponse:
        """Build LLMResponse from an Anthropic API response."""
        content = ""
        for block in response.content:
            if hasattr(block, "text"):
                content += block.text

        usage = response.usage
        prompt_tokens = usage.input_tokens if usage else 0
        completion_tokens = usage.output_tokens if usage else 0

        return LLMResponse(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            finish_reason=response.stop_reason or "unknown",
            model=response.model,
            duration_ms=duration_ms,
            raw_response=response,
        )

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        pricing = ANTHROPIC_PRICING.get(self._model)

        # Prefix match for versioned model names
        if pricing is None:
            for model_key, model_pricing in ANTHROPIC_PRICING.items():
                if model_key != "default" and self._model.startswith(
                    model_key.rsplit("-", 1)[0]
                ):
                    pricing = model_pricing
                    break

        if pricing is None:
            pricing = ANTHROPIC_PRICING["default"]

        input_cost = prompt_tokens * (pricing["input"] / 1_000_000)
        output_cost = completion_tokens * (pricing["output"] / 1_000_000)
        return input_cost + output_cost
