"""Base protocol and types for LLM oracles."""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from backroom.exceptions import OracleResponseError

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


@dataclass
class LLMResponse:
    """Standardized response from LLM providers.

    Attributes:
        content: The generated text content (a JSON object for every oracle here)
        prompt_tokens: Number of tokens in the prompt
        completion_tokens: Number of tokens in the completion
        total_tokens: Total tokens used
        finish_reason: Why generation stopped (stop, length, error, etc.)
        model: The actual model used (may differ from requested)
        duration_ms: Time taken for the API call in milliseconds
        raw_response: Provider-specific raw response for debugging
    """

    content: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    finish_reason: str
    model: str
    duration_ms: float
    raw_response: Any = None


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    Implementations must handle:
    - API client initialization with a request timeout
    - Structured JSON output (using provider-specific mechanisms)
    - Token counting and cost calculation
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier (e.g., 'openai', 'anthropic')."""
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model identifier being used."""
        ...

    @abstractmethod
    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 500,
        temperature: float = 0.3,
        json_schema: dict[str, Any] | None = None,
    ) -> LLMResponse:
        """Generate a completion from the LLM.

        Args:
            system_prompt: System message setting the context
            user_prompt: User message with the actual request
            max_tokens: Maximum tokens in the response
            temperature: Sampling temperature (0.0-1.0)
            json_schema: Optional JSON schema for structured output

        Returns:
            LLMResponse with the completion and metadata
        """
        ...

    @abstractmethod
    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Calculate the cost in USD for the given token usage."""
        ...


def parse_json_content(content: str) -> dict[str, Any]:
    """Parse the JSON object out of a completion.

    Accepts a bare object, a fenced ```json block, or an object embedded in
    surrounding prose.

    Raises:
        OracleResponseError: If no JSON object can be decoded
    """
    text = (content or "").strip()
    if not text:
        raise OracleResponseError("Empty oracle response", raw_content=content)

    candidates = [text]
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise OracleResponseError("Oracle response is not a JSON object", raw_content=content)
