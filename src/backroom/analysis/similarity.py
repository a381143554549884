"""
LLM-backed similarity oracles.

Two non-interchangeable comparisons:

* ``SimilarityOracle`` scores two conversations from their extracted
  features. Malformed replies, provider errors and timeouts are retried a
  bounded number of times; after that the caller gets an ``Err`` and must
  treat the comparison as absent.
* ``EnrichmentOracle`` scores how much a cluster's conversations would add
  to an existing article. Any failure, timeouts included, yields the neutral
  fallback score instead of an error.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from backroom.analysis.prompts import (
    ENRICHMENT_SYSTEM_PROMPT,
    ENRICHMENT_USER_PROMPT,
    PAIR_SIMILARITY_SYSTEM_PROMPT,
    PAIR_SIMILARITY_USER_PROMPT,
    SIMILARITY_SCHEMA,
)
from backroom.exceptions import OracleResponseError
from backroom.llm.base import LLMProvider, parse_json_content
from backroom.llm.llm_logger import LLMLogger
from backroom.models.records import ArticleRecord, ContentFeatures, ConversationRecord
from backroom.retry import Result, retry_call

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_ENRICHMENT_FALLBACK = 0.5


def coerce_score(value: Any, raw_content: Optional[str] = None) -> float:
    """
    Convert an oracle-provided value into a score in [0, 1].

    Raises:
        OracleResponseError: If the value is missing, non-numeric, NaN or out of range
    """
    if value is None or isinstance(value, bool):
        raise OracleResponseError("No similarity score in response", raw_content)
    try:
        score = float(value)
    except (TypeError, ValueError):
        raise OracleResponseError(f"Non-numeric similarity score: {value!r}", raw_content)
    if math.isnan(score) or score < 0.0 or score > 1.0:
        raise OracleResponseError(f"Similarity score out of range: {value!r}", raw_content)
    return score


def _format_list(values: Sequence[str]) -> str:
    return ", ".join(values) if values else "(none)"


def cluster_content(conversations: Sequence[ConversationRecord]) -> str:
    """Render conversations as titled transcripts separated by rules."""
    return "\n\n---\n\n".join(
        f"Title: {conversation.title}\n{conversation.transcript()}"
        for conversation in conversations
    )


class _OracleBase:
    operation = "oracle"

    def __init__(
        self,
        provider: LLMProvider,
        max_tokens: int = 500,
        llm_logger: Optional[LLMLogger] = None,
    ):
        self.provider = provider
        self.max_tokens = max_tokens
        self.llm_logger = llm_logger

    def _ask_for_score(self, system_prompt: str, user_prompt: str, subject: str) -> float:
        request_id = ""
        if self.llm_logger:
            request_id = self.llm_logger.log_request(
                self.operation, self.provider.model_name, user_prompt, self.max_tokens, subject
            )
        try:
            response = self.provider.complete(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                max_tokens=self.max_tokens,
                temperature=0.1,
                json_schema=SIMILARITY_SCHEMA,
            )
        except Exception as e:
            if self.llm_logger:
                self.llm_logger.log_error(request_id, e)
            raise

        if self.llm_logger:
            self.llm_logger.log_response(request_id, response)

        data = parse_json_content(response.content)
        return coerce_score(data.get("similarity"), response.content)


class SimilarityOracle(_OracleBase):
    """Scores the semantic similarity of two conversations from their features."""

    operation = "pair_similarity"

    def __init__(
        self,
        provider: LLMProvider,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        max_tokens: int = 500,
        llm_logger: Optional[LLMLogger] = None,
    ):
        super().__init__(provider, max_tokens, llm_logger)
        self.max_attempts = max_attempts

    def score_pair(
        self,
        features_a: ContentFeatures,
        title_a: str,
        features_b: ContentFeatures,
        title_b: str,
        topic: str,
    ) -> Result[float]:
        """
        Score two conversations.

        Returns:
            Ok(score) or Err(RetryExhaustedError) once every attempt failed
        """
        user_prompt = PAIR_SIMILARITY_USER_PROMPT.format(
            topic=topic,
            title_a=title_a,
            entities_a=_format_list(features_a.entities),
            claims_a=_format_list(features_a.claims),
            terms_a=_format_list(features_a.technical_terms),
            title_b=title_b,
            entities_b=_format_list(features_b.entities),
            claims_b=_format_list(features_b.claims),
            terms_b=_format_list(features_b.technical_terms),
        )
        subject = f"{title_a!r} vs {title_b!r}"
        return retry_call(
            lambda: self._ask_for_score(PAIR_SIMILARITY_SYSTEM_PROMPT, user_prompt, subject),
            max_attempts=self.max_attempts,
            retry_on=(Exception,),
            label=f"pair similarity {subject}",
        )


@dataclass
class EnrichmentScore:
    """Enrichment score for one article, with the failure that forced a fallback."""

    score: float
    error: Optional[str] = None

    @property
    def is_fallback(self) -> bool:
        return self.error is not None


class EnrichmentOracle(_OracleBase):
    """Scores how much a set of conversations would enhance an existing article."""

    operation = "article_enrichment"

    def __init__(
        self,
        provider: LLMProvider,
        fallback_score: float = DEFAULT_ENRICHMENT_FALLBACK,
        max_tokens: int = 500,
        llm_logger: Optional[LLMLogger] = None,
    ):
        super().__init__(provider, max_tokens, llm_logger)
        self.fallback_score = fallback_score

    def score_enrichment(
        self, article: ArticleRecord, conversations: Sequence[ConversationRecord]
    ) -> EnrichmentScore:
        """Score an article against cluster conversations, falling back on any error."""
        user_prompt = ENRICHMENT_USER_PROMPT.format(
            article_title=article.title,
            article_body=article.body,
            cluster_content=cluster_content(conversations),
        )
        try:
            score = self._ask_for_score(
                ENRICHMENT_SYSTEM_PROMPT, user_prompt, f"article {article.id}"
            )
        except Exception as e:
            logger.error(
                f"Enrichment scoring failed for article {article.id}, "
                f"using fallback {self.fallback_score}: {e}"
            )
            return EnrichmentScore(score=self.fallback_score, error=str(e))

        logger.info(f"Enrichment score for article {article.id}: {score}")
        return EnrichmentScore(score=score)
