"""
Article synthesis.

Turns a cluster's conversations and features into an article title and
markdown body, or rewrites an existing article with new material.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from backroom.analysis.features import FeatureExtractor
from backroom.analysis.prompts import (
    ARTICLE_SCHEMA,
    ARTICLE_SYSTEM_PROMPT,
    CREATE_ARTICLE_USER_PROMPT,
    UPDATE_ARTICLE_USER_PROMPT,
)
from backroom.exceptions import OracleResponseError, SynthesisError
from backroom.llm.base import LLMProvider, parse_json_content
from backroom.llm.llm_logger import LLMLogger
from backroom.models.records import ArticleRecord, ContentFeatures, ConversationRecord

logger = logging.getLogger(__name__)


@dataclass
class GeneratedArticle:
    """Title and markdown content produced by the generation oracle."""

    title: str
    content: str


def _join(values: Sequence[str]) -> str:
    return ", ".join(values) if values else "(none)"


def render_conversations(conversations: Sequence[ConversationRecord]) -> str:
    return "\n\n---\n\n".join(
        f"Backroom Title: {c.title}\nBackroom Content:\n{c.transcript()}"
        for c in conversations
    )


def new_features_only(
    cluster_features: ContentFeatures, existing: ContentFeatures
) -> ContentFeatures:
    """Cluster features that the existing article does not already contain (exact match)."""
    return ContentFeatures(
        technical_terms=[
            t for t in cluster_features.technical_terms if t not in existing.technical_terms
        ],
        entities=[e for e in cluster_features.entities if e not in existing.entities],
        claims=[c for c in cluster_features.claims if c not in existing.claims],
    )


class ArticleSynthesizer:
    """Generates and updates articles through the LLM."""

    def __init__(
        self,
        provider: LLMProvider,
        feature_extractor: FeatureExtractor,
        max_tokens: int = 4000,
        llm_logger: Optional[LLMLogger] = None,
    ):
        self.provider = provider
        self.feature_extractor = feature_extractor
        self.max_tokens = max_tokens
        self.llm_logger = llm_logger

    def synthesize_article(
        self,
        conversations: Sequence[ConversationRecord],
        features: ContentFeatures,
    ) -> GeneratedArticle:
        """Write a new article from cluster conversations and merged features."""
        user_prompt = CREATE_ARTICLE_USER_PROMPT.format(
            conversations=render_conversations(conversations),
            entities=_join(features.entities),
            claims=_join(features.claims),
            technical_terms=_join(features.technical_terms),
        )
        return self._generate("article_create", user_prompt)

    def synthesize_updated_article(
        self,
        existing: ArticleRecord,
        conversations: Sequence[ConversationRecord],
        new_features: ContentFeatures,
    ) -> GeneratedArticle:
        """Rewrite an existing article to fold in new conversations."""
        user_prompt = UPDATE_ARTICLE_USER_PROMPT.format(
            article_title=existing.title,
            article_body=existing.body,
            conversations=render_conversations(conversations),
            technical_terms=_join(new_features.technical_terms),
            entities=_join(new_features.entities),
            claims=_join(new_features.claims),
        )
        return self._generate("article_update", user_prompt)

    def features_new_to(
        self, existing: ArticleRecord, cluster_features: ContentFeatures
    ) -> ContentFeatures:
        """Extract the article's own features and keep only what the cluster adds."""
        article_features = self.feature_extractor.extract(existing.body)
        return new_features_only(cluster_features, article_features)

    def _generate(self, operation: str, user_prompt: str) -> GeneratedArticle:
        request_id = ""
        if self.llm_logger:
            request_id = self.llm_logger.log_request(
                operation, self.provider.model_name, user_prompt, self.max_tokens
            )
        try:
            response = self.provider.complete(
                system_prompt=ARTICLE_SYSTEM_PROMPT,
                user_prompt=user_prompt,
                max_tokens=self.max_tokens,
                temperature=0.7,
                json_schema=ARTICLE_SCHEMA,
            )
            data = parse_json_content(response.content)
        except OracleResponseError as e:
            raise SynthesisError(f"Unreadable article response: {e}") from e
        except Exception as e:
            if self.llm_logger:
                self.llm_logger.log_error(request_id, e)
            raise SynthesisError(f"Article generation failed: {e}") from e

        if self.llm_logger:
            self.llm_logger.log_response(request_id, response)

        title = data.get("title")
        content = data.get("content")
        if not isinstance(title, str) or not isinstance(content, str):
            raise SynthesisError("No title or content from article generation")
        if not title.strip() or not content.strip():
            raise SynthesisError("Empty title or content from article generation")

        logger.info(f"Generated article '{title.strip()}' ({len(content)} chars)")
        return GeneratedArticle(title=title.strip(), content=content.strip())
