"""
Article lifecycle decisions.

Given a cluster (new, or existing with new members), decide exactly one of:
no-op, update an existing article, create an article linked to related ones,
create a standalone article, or report insufficient content. Article
similarity scores (the enrichment oracle) are the disambiguating signal.
"""

import enum
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from backroom.analysis.similarity import EnrichmentOracle
from backroom.db.store import BackroomStore
from backroom.models.records import (
    ArticleRecord,
    ArticleRelationRecord,
    ContentFeatures,
    ConversationRecord,
    RelationType,
)

logger = logging.getLogger(__name__)

UPDATE_THRESHOLD = 0.7
REFERENCE_THRESHOLD = 0.3
CONTINUATION_THRESHOLD = 0.2

MIN_MEMBERS = 2
MIN_CLAIMS = 3
MIN_ENTITIES = 2


def band_relation(score: float) -> RelationType:
    """
    Map a similarity score to a relation type.

    >= 0.7 update, [0.3, 0.7) reference, [0.2, 0.3) continuation, below 0.2 unrelated.
    """
    if score >= UPDATE_THRESHOLD:
        return RelationType.UPDATE
    if score >= REFERENCE_THRESHOLD:
        return RelationType.REFERENCE
    if score >= CONTINUATION_THRESHOLD:
        return RelationType.CONTINUATION
    return RelationType.UNRELATED


class ArticleAction(str, enum.Enum):
    """Terminal lifecycle decisions."""

    NOOP = "noop"
    UPDATE = "update"
    CREATE_WITH_REFERENCE = "create_with_reference"
    CREATE_WITH_CONTINUATION = "create_with_continuation"
    CREATE = "create"
    INSUFFICIENT_CONTENT = "insufficient_content"


@dataclass
class ScoredArticle:
    """An existing article scored against a cluster."""

    article: ArticleRecord
    score: Optional[float]
    relation: RelationType
    missing_source_ids: List[uuid.UUID] = field(default_factory=list)
    error: Optional[str] = None

    def to_relation(self) -> ArticleRelationRecord:
        """Relation edge from a new article to this one (source ID set by the store)."""
        return ArticleRelationRecord(
            source_article_id=0,
            related_article_id=self.article.id,
            relation_type=self.relation,
            score=self.score,
            error=self.error,
        )


@dataclass
class ArticleDecision:
    """Lifecycle decision with its operator-facing reason."""

    action: ArticleAction
    reason: str
    targets: List[ScoredArticle] = field(default_factory=list)
    candidates: List[ScoredArticle] = field(default_factory=list)
    related: List[ScoredArticle] = field(default_factory=list)
    failed: List[ScoredArticle] = field(default_factory=list)

    @property
    def target(self) -> Optional[ScoredArticle]:
        return self.targets[0] if self.targets else None

    @property
    def creates_article(self) -> bool:
        return self.action in (
            ArticleAction.CREATE,
            ArticleAction.CREATE_WITH_REFERENCE,
            ArticleAction.CREATE_WITH_CONTINUATION,
        )


class ArticleLifecycleManager:
    """Chooses between no-op, update and create for a cluster."""

    def __init__(
        self,
        store: BackroomStore,
        enrichment_oracle: EnrichmentOracle,
        min_members: int = MIN_MEMBERS,
        min_claims: int = MIN_CLAIMS,
        min_entities: int = MIN_ENTITIES,
        max_workers: int = 4,
    ):
        self.store = store
        self.enrichment_oracle = enrichment_oracle
        self.min_members = min_members
        self.min_claims = min_claims
        self.min_entities = min_entities
        self.max_workers = max(1, max_workers)

    def decide(
        self,
        topic: str,
        members: Sequence[ConversationRecord],
        features: ContentFeatures,
        standalone: bool = False,
    ) -> ArticleDecision:
        """
        Decide what to do with a cluster's content.

        Args:
            topic: Topic of the cluster
            members: Every member conversation of the cluster
            features: The cluster's merged features
            standalone: True for a single substantial conversation, which
                bypasses the member-count gate

        Returns:
            ArticleDecision
        """
        member_ids = [member.id for member in members]
        sourced = self.store.get_articles_by_source_conversation_ids(member_ids)

        # 1. Already fully represented
        for article in sourced:
            if set(member_ids) <= set(article.source_ids):
                reason = f"All conversations are already sources of article {article.id}"
                logger.info(reason)
                return ArticleDecision(
                    action=ArticleAction.NOOP,
                    reason=reason,
                    targets=[
                        ScoredArticle(article=article, score=None, relation=RelationType.UPDATE)
                    ],
                )

        # 2. Partial overlap: update
        if sourced:
            candidates = self._score_articles(sourced, members)
            for candidate in candidates:
                candidate.missing_source_ids = [
                    member_id
                    for member_id in member_ids
                    if member_id not in candidate.article.source_ids
                ]
            # Every sourced article gets a version; unscored ones go last
            targets = self._rank(candidates) + [c for c in candidates if c.score is None]
            new_ids = {m for target in targets for m in target.missing_source_ids}
            ids = ", ".join(str(target.article.id) for target in targets)
            reason = f"Updating article(s) {ids} with {len(new_ids)} new source conversation(s)"
            logger.info(reason)
            return ArticleDecision(
                action=ArticleAction.UPDATE,
                reason=reason,
                targets=targets,
                candidates=targets,
                failed=[c for c in candidates if c.relation == RelationType.ERROR],
            )

        # 3. Content gates
        shortfall = self._content_shortfall(members, features, standalone)
        if shortfall:
            reason = f"Insufficient content for article creation: {shortfall}"
            logger.info(reason)
            return ArticleDecision(action=ArticleAction.INSUFFICIENT_CONTENT, reason=reason)

        # 4. Related articles by topic
        topic_scores = self._score_articles(self.store.get_articles_by_topic(topic), members)
        failed = [s for s in topic_scores if s.relation == RelationType.ERROR]
        scored = self._rank(topic_scores)
        references = [s for s in scored if s.relation == RelationType.REFERENCE]
        continuations = [s for s in scored if s.relation == RelationType.CONTINUATION]

        if references:
            ids = ", ".join(str(s.article.id) for s in references)
            return ArticleDecision(
                action=ArticleAction.CREATE_WITH_REFERENCE,
                reason=f"Creating new article referencing related article(s) {ids}",
                candidates=scored,
                related=references,
                failed=failed,
            )
        if continuations:
            ids = ", ".join(str(s.article.id) for s in continuations)
            return ArticleDecision(
                action=ArticleAction.CREATE_WITH_CONTINUATION,
                reason=f"Creating new article continuing article(s) {ids}",
                candidates=scored,
                related=continuations,
                failed=failed,
            )
        return ArticleDecision(
            action=ArticleAction.CREATE,
            reason="Creating new article from unique backroom sources",
            candidates=scored,
            failed=failed,
        )

    def _content_shortfall(
        self,
        members: Sequence[ConversationRecord],
        features: ContentFeatures,
        standalone: bool,
    ) -> str:
        problems = []
        if not standalone and len(members) < self.min_members:
            problems.append(f"{len(members)} conversation(s), need {self.min_members}")
        if len(features.claims) < self.min_claims:
            problems.append(f"{len(features.claims)} claim(s), need {self.min_claims}")
        if len(features.entities) < self.min_entities:
            problems.append(f"{len(features.entities)} entities, need {self.min_entities}")
        return "; ".join(problems)

    def _score_articles(
        self, articles: Sequence[ArticleRecord], members: Sequence[ConversationRecord]
    ) -> List[ScoredArticle]:
        if not articles:
            return []

        def score(article: ArticleRecord) -> ScoredArticle:
            try:
                result = self.enrichment_oracle.score_enrichment(article, members)
            except Exception as e:
                logger.error(f"Could not score article {article.id}: {e}")
                return ScoredArticle(
                    article=article, score=None, relation=RelationType.ERROR, error=str(e)
                )
            return ScoredArticle(
                article=article,
                score=result.score,
                relation=band_relation(result.score),
                error=result.error,
            )

        workers = min(self.max_workers, len(articles))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="enrichment") as pool:
            return list(pool.map(score, articles))

    @staticmethod
    def _rank(scored: Sequence[ScoredArticle]) -> List[ScoredArticle]:
        """Valid scores descending (stable), errored candidates dropped."""
        valid = [s for s in scored if s.score is not None]
        return sorted(valid, key=lambda s: s.score, reverse=True)
