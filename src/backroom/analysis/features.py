"""
Feature extraction for backroom conversations.

Asks the LLM for technical terms, entities and claims, and falls back to a
capitalized-phrase heuristic when the call fails or the reply is unusable.
"""

import logging
import re
from typing import Any, Iterable, Optional, Sequence

from backroom.analysis.prompts import (
    FEATURE_SCHEMA,
    FEATURE_SYSTEM_PROMPT,
    FEATURE_USER_PROMPT,
)
from backroom.exceptions import OracleResponseError
from backroom.llm.base import LLMProvider, parse_json_content
from backroom.llm.llm_logger import LLMLogger
from backroom.models.records import ContentFeatures, ConversationRecord

logger = logging.getLogger(__name__)

DEFAULT_FEATURE_CAP = 7

# Capitalized word runs, e.g. "Quantum Error Correction"
CAPITALIZED_PHRASE = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")

_RESPONSE_KEYS = {
    "technicalTerms": "technical_terms",
    "entities": "entities",
    "claims": "claims",
}


def _clean_list(values: Iterable[Any], cap: int) -> list[str]:
    """Strip, drop empties and exact duplicates, keep order, cap length."""
    cleaned: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        item = value.strip()
        if item and item not in cleaned:
            cleaned.append(item)
        if len(cleaned) >= cap:
            break
    return cleaned


def fallback_features(text: str, cap: int = DEFAULT_FEATURE_CAP) -> ContentFeatures:
    """
    Heuristic features used when the LLM is unavailable.

    Capitalized phrases become technical terms; entities and claims are empty.
    """
    return ContentFeatures(
        technical_terms=_clean_list(CAPITALIZED_PHRASE.findall(text or ""), cap),
        entities=[],
        claims=[],
    )


def conversation_text(conversation: ConversationRecord) -> str:
    """Text sent for extraction: the title followed by the transcript."""
    return f"Title: {conversation.title}\n{conversation.transcript()}"


class FeatureExtractor:
    """Extracts ContentFeatures from conversation or article text."""

    def __init__(
        self,
        provider: LLMProvider,
        cap: int = DEFAULT_FEATURE_CAP,
        max_tokens: int = 1000,
        llm_logger: Optional[LLMLogger] = None,
    ):
        self.provider = provider
        self.cap = cap
        self.max_tokens = max_tokens
        self.llm_logger = llm_logger

    def extract(self, text: str, participants: Sequence[str] = ()) -> ContentFeatures:
        """
        Extract features from free text.

        Never raises for oracle problems: any failure falls back to the
        capitalized-phrase heuristic.

        Args:
            text: Content to analyze
            participants: Speaker names to exclude from entities

        Returns:
            ContentFeatures with at most ``cap`` entries per list
        """
        try:
            return self._extract_with_llm(text, participants)
        except Exception as e:
            logger.warning(f"Feature extraction failed, using fallback: {e}")
            return fallback_features(text, self.cap)

    def extract_for_conversation(self, conversation: ConversationRecord) -> ContentFeatures:
        """Extract features for a stored conversation."""
        features = self.extract(conversation_text(conversation), conversation.participants)
        logger.info(
            f"Extracted features for conversation {conversation.id}: "
            f"{len(features.technical_terms)} terms, {len(features.entities)} entities, "
            f"{len(features.claims)} claims"
        )
        return features

    def _extract_with_llm(self, text: str, participants: Sequence[str]) -> ContentFeatures:
        user_prompt = FEATURE_USER_PROMPT.format(
            content=text,
            cap=self.cap,
            participants=", ".join(participants) or "none",
        )

        request_id = ""
        if self.llm_logger:
            request_id = self.llm_logger.log_request(
                "feature_extraction", self.provider.model_name, user_prompt, self.max_tokens
            )

        try:
            response = self.provider.complete(
                system_prompt=FEATURE_SYSTEM_PROMPT,
                user_prompt=user_prompt,
                max_tokens=self.max_tokens,
                temperature=0.2,
                json_schema=FEATURE_SCHEMA,
            )
        except Exception as e:
            if self.llm_logger:
                self.llm_logger.log_error(request_id, e)
            raise

        if self.llm_logger:
            self.llm_logger.log_response(request_id, response)

        data = parse_json_content(response.content)
        values: dict[str, list[str]] = {}
        for key, field_name in _RESPONSE_KEYS.items():
            raw = data.get(key)
            if not isinstance(raw, list):
                raise OracleResponseError(
                    f"Feature response missing list field '{key}'",
                    raw_content=response.content,
                )
            values[field_name] = _clean_list(raw, self.cap)

        excluded = {name.lower() for name in participants}
        values["entities"] = [e for e in values["entities"] if e.lower() not in excluded]

        return ContentFeatures(**values)
