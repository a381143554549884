"""
Persistence facade used by the clustering and article lifecycle engine.

``BackroomStore`` wraps the repositories behind the narrow set of operations
the engine needs and returns plain records instead of ORM objects. Every
multi-row write runs in a single transaction: it commits as a whole or rolls
back and raises ``PersistenceError``. Writes issued inside
``BackroomStore.transaction()`` join that outer transaction instead.
"""

import logging
import uuid
from contextlib import contextmanager
from typing import Callable, Generator, Iterable, List, Optional, TypeVar

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from backroom.db.repositories import (
    ArticleRepository,
    ClusterRepository,
    ConversationRepository,
    SimilarityRepository,
    UnclusterableRepository,
)
from backroom.exceptions import (
    ArticleNotFoundError,
    ClusterNotFoundError,
    ConversationNotFoundError,
    PersistenceError,
)
from backroom.models.db import Article, ArticleVersion, Cluster, Conversation
from backroom.models.records import (
    ArticleRecord,
    ArticleRelationRecord,
    ArticleVersionRecord,
    ClusterRecord,
    ContentFeatures,
    ConversationRecord,
    RelationType,
    Turn,
    UnclusterableRecord,
)
from backroom.retry import RetryConfig, with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_WRITE_RETRY = RetryConfig(max_retries=2, initial_delay=0.2, max_delay=2.0)


def to_conversation_record(row: Conversation) -> ConversationRecord:
    """Convert a Conversation row into a record."""
    return ConversationRecord(
        id=row.id,
        topic=row.topic,
        title=row.title,
        created_at=row.created_at,
        turns=[Turn.from_dict(turn) for turn in (row.turns or [])],
        question=row.question,
        participants=list(row.participants or []),
        features=ContentFeatures.from_dict(row.features),
    )


def to_version_record(row: ArticleVersion) -> ArticleVersionRecord:
    """Convert an ArticleVersion row into a record."""
    return ArticleVersionRecord(
        id=row.id,
        article_id=row.article_id,
        version=row.version,
        title=row.title,
        body=row.body,
        updated_by=row.updated_by,
        update_reason=row.update_reason,
        child_article_id=row.child_article_id,
        ledger_tx_hash=row.ledger_tx_hash,
        created_at=row.created_at,
    )


class BackroomStore:
    """Narrow persistence interface over a SQLAlchemy session."""

    def __init__(self, session: Session, retry_config: Optional[RetryConfig] = None):
        self.session = session
        self.conversations = ConversationRepository(session)
        self.similarities = SimilarityRepository(session)
        self.clusters = ClusterRepository(session)
        self.unclusterable = UnclusterableRepository(session)
        self.articles = ArticleRepository(session)
        self._retry_config = retry_config or DEFAULT_WRITE_RETRY
        self._depth = 0

    # ----- transactions -----

    @contextmanager
    def transaction(self, operation: str = "write") -> Generator["BackroomStore", None, None]:
        """
        Group several store writes into one transaction.

        Nested calls join the outermost transaction.
        """
        if self._depth:
            yield self
            return

        self._depth += 1
        try:
            yield self
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Rolled back {operation}: {e}")
            raise PersistenceError(operation, e) from e
        except Exception:
            self.session.rollback()
            raise
        finally:
            self._depth -= 1

    def _atomic(self, operation: str, work: Callable[[], T]) -> T:
        if self._depth:
            return work()

        @with_retry(self._retry_config, retry_on=(OperationalError,))
        def attempt() -> T:
            try:
                result = work()
                self.session.commit()
                return result
            except Exception:
                self.session.rollback()
                raise

        try:
            return attempt()
        except SQLAlchemyError as e:
            logger.error(f"Rolled back {operation}: {e}")
            raise PersistenceError(operation, e) from e

    # ----- conversations -----

    def get_conversation(self, conversation_id: uuid.UUID) -> Optional[ConversationRecord]:
        row = self.conversations.get(conversation_id)
        return to_conversation_record(row) if row is not None else None

    def require_conversation(self, conversation_id: uuid.UUID) -> ConversationRecord:
        """Get a conversation or raise ``ConversationNotFoundError``."""
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def get_conversations(self, conversation_ids: Iterable[uuid.UUID]) -> List[ConversationRecord]:
        return [
            to_conversation_record(row)
            for row in self.conversations.get_many(list(conversation_ids))
        ]

    def get_conversations_by_topic(self, topic: str) -> List[ConversationRecord]:
        return [to_conversation_record(row) for row in self.conversations.get_by_topic(topic)]

    def add_conversation(self, conversation: ConversationRecord) -> uuid.UUID:
        """Persist a new conversation record."""

        def work() -> uuid.UUID:
            row = self.conversations.create(
                id=conversation.id,
                topic=conversation.topic,
                title=conversation.title,
                question=conversation.question,
                participants=list(conversation.participants),
                turns=[turn.to_dict() for turn in conversation.turns],
                features=(
                    conversation.features.to_dict()
                    if conversation.features is not None
                    else None
                ),
                created_at=conversation.created_at,
            )
            return row.id

        return self._atomic("add conversation", work)

    def save_features(
        self, conversation_id: uuid.UUID, features: ContentFeatures
    ) -> ConversationRecord:
        """Replace a conversation's extracted features."""

        def work() -> ConversationRecord:
            row = self.conversations.set_features(conversation_id, features.to_dict())
            if row is None:
                raise ConversationNotFoundError(conversation_id)
            return to_conversation_record(row)

        return self._atomic("save features", work)

    # ----- similarity cache -----

    def get_cached_similarity(self, a: uuid.UUID, b: uuid.UUID) -> Optional[float]:
        """Get the cached score for a pair in either ordering, or None if absent."""
        relation = self.similarities.get_pair(a, b)
        return relation.score if relation is not None else None

    def put_cached_similarity(self, a: uuid.UUID, b: uuid.UUID, score: float) -> None:
        """Upsert the cached score for a pair."""
        self._atomic("cache similarity", lambda: self.similarities.upsert(a, b, score))

    def get_similarity_scores(
        self, conversation_id: uuid.UUID, others: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, float]:
        """Get cached scores between one conversation and many others."""
        return self.similarities.get_scores_for(conversation_id, list(others))

    def invalidate_similarity(self, conversation_id: uuid.UUID) -> int:
        """Drop every cached score involving a conversation."""
        return self._atomic(
            "invalidate similarity",
            lambda: self.similarities.delete_for_conversation(conversation_id),
        )

    # ----- clusters -----

    def _to_cluster_record(self, row: Cluster) -> ClusterRecord:
        return ClusterRecord(
            id=row.id,
            topic=row.topic,
            name=row.name,
            member_ids=[member.conversation_id for member in row.members],
            features=ContentFeatures.from_dict(row.features) or ContentFeatures(),
            article_id=row.article_id,
            article=self._to_article_record(row.article) if row.article else None,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def get_clusters_by_topic(self, topic: str) -> List[ClusterRecord]:
        """Get clusters for a topic in creation order, each with its resolved article."""
        return [self._to_cluster_record(row) for row in self.clusters.get_by_topic(topic)]

    def get_cluster(self, cluster_id: uuid.UUID) -> Optional[ClusterRecord]:
        row = self.clusters.get(cluster_id)
        return self._to_cluster_record(row) if row is not None else None

    def get_cluster_by_article_id(self, article_id: int) -> Optional[ClusterRecord]:
        row = self.clusters.get_by_article_id(article_id)
        return self._to_cluster_record(row) if row is not None else None

    def create_cluster(
        self,
        topic: str,
        member_ids: List[uuid.UUID],
        name: str,
        features: ContentFeatures,
        article_id: Optional[int] = None,
    ) -> uuid.UUID:
        """Create a cluster together with its membership rows."""

        def work() -> uuid.UUID:
            cluster = self.clusters.create_with_members(
                topic=topic,
                name=name,
                features=features.to_dict(),
                member_ids=member_ids,
                article_id=article_id,
            )
            return cluster.id

        cluster_id = self._atomic("create cluster", work)
        logger.info(f"Created cluster {cluster_id} '{name}' with {len(member_ids)} member(s)")
        return cluster_id

    def add_cluster_member(
        self,
        cluster_id: uuid.UUID,
        conversation_id: uuid.UUID,
        features: ContentFeatures,
        name: Optional[str] = None,
    ) -> None:
        """Append a member and store the cluster's new merged features."""

        def work() -> None:
            if self.clusters.get(cluster_id) is None:
                raise ClusterNotFoundError(cluster_id)
            self.clusters.add_member(cluster_id, conversation_id)
            self.clusters.update_summary(cluster_id, features.to_dict(), name=name)

        self._atomic("add cluster member", work)

    def link_cluster_article(self, cluster_id: uuid.UUID, article_id: int) -> None:
        def work() -> None:
            cluster = self.clusters.get(cluster_id)
            if cluster is None:
                raise ClusterNotFoundError(cluster_id)
            cluster.article_id = article_id
            self.session.flush()

        self._atomic("link cluster article", work)

    # ----- unclusterable backlog -----

    def get_unclusterable_by_topic(self, topic: str) -> List[ConversationRecord]:
        """Get backlog conversations for a topic, oldest first."""
        return [
            to_conversation_record(row)
            for row in self.unclusterable.get_conversations_by_topic(topic)
        ]

    def get_unclusterable_entries(self, topic: str) -> List[UnclusterableRecord]:
        return [
            UnclusterableRecord(
                conversation_id=entry.conversation_id,
                topic=entry.topic,
                reason=entry.reason,
                marked_at=entry.marked_at,
            )
            for entry in self.unclusterable.get_entries_by_topic(topic)
        ]

    def get_unclusterable_entry(self, conversation_id: uuid.UUID) -> Optional[UnclusterableRecord]:
        entry = self.unclusterable.get(conversation_id)
        if entry is None:
            return None
        return UnclusterableRecord(
            conversation_id=entry.conversation_id,
            topic=entry.topic,
            reason=entry.reason,
            marked_at=entry.marked_at,
        )

    def mark_unclusterable(self, conversation_id: uuid.UUID, topic: str, reason: str) -> None:
        """Insert or refresh a backlog entry."""
        self._atomic(
            "mark unclusterable",
            lambda: self.unclusterable.mark(conversation_id, topic, reason),
        )

    def remove_unclusterable(self, conversation_id: uuid.UUID) -> None:
        self._atomic(
            "remove unclusterable", lambda: self.unclusterable.delete(conversation_id)
        )

    # ----- articles -----

    def _to_article_record(self, row: Article) -> ArticleRecord:
        return ArticleRecord(
            id=row.id,
            title=row.title,
            body=row.body,
            topic=row.topic,
            current_version=row.current_version,
            image_url=row.image_url,
            ledger_tx_hash=row.ledger_tx_hash,
            room_id=row.room_id,
            created_at=row.created_at,
            source_ids=self.articles.get_source_ids(row.id),
        )

    def get_article(self, article_id: int) -> Optional[ArticleRecord]:
        row = self.articles.get(article_id)
        return self._to_article_record(row) if row is not None else None

    def require_article(self, article_id: int) -> ArticleRecord:
        article = self.get_article(article_id)
        if article is None:
            raise ArticleNotFoundError(article_id)
        return article

    def get_articles_by_topic(self, topic: str) -> List[ArticleRecord]:
        return [self._to_article_record(row) for row in self.articles.get_by_topic(topic)]

    def get_articles_by_source_conversation_ids(
        self, conversation_ids: Iterable[uuid.UUID]
    ) -> List[ArticleRecord]:
        """Get articles sourced from any of the given conversations."""
        return [
            self._to_article_record(row)
            for row in self.articles.get_by_source_conversation_ids(list(conversation_ids))
        ]

    def get_source_conversations_for_article(self, article_id: int) -> List[ConversationRecord]:
        if self.articles.get(article_id) is None:
            raise ArticleNotFoundError(article_id)
        return self.get_conversations(self.articles.get_source_ids(article_id))

    def create_article(
        self,
        body: str,
        title: str,
        topic: str,
        source_ids: List[uuid.UUID],
        parent_article_id: Optional[int] = None,
        relations: Optional[List[ArticleRelationRecord]] = None,
        updated_by: Optional[str] = None,
        update_reason: Optional[str] = None,
        image_url: Optional[str] = None,
        ledger_tx_hash: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> int:
        """
        Create an article with its first version, sources and relations.

        With ``parent_article_id`` the parent also gets a new version row that
        points at the new article, and its version counter is bumped.

        Returns:
            The new article ID
        """

        def work() -> int:
            parent = None
            if parent_article_id is not None:
                parent = self.articles.get_for_update(parent_article_id)
                if parent is None:
                    raise ArticleNotFoundError(parent_article_id)

            article = self.articles.create(
                title=title,
                body=body,
                topic=topic,
                current_version=1,
                image_url=image_url,
                ledger_tx_hash=ledger_tx_hash,
                room_id=room_id,
            )
            self.articles.add_version(
                article_id=article.id,
                version=1,
                title=title,
                body=body,
                updated_by=updated_by,
                update_reason=update_reason or "Initial version",
                ledger_tx_hash=ledger_tx_hash,
            )

            if parent is not None:
                next_version = parent.current_version + 1
                self.articles.add_version(
                    article_id=parent.id,
                    version=next_version,
                    title=title,
                    body=body,
                    updated_by=updated_by,
                    update_reason=update_reason,
                    ledger_tx_hash=ledger_tx_hash,
                    child_article_id=article.id,
                )
                parent.current_version = next_version

            self.articles.add_sources(article.id, source_ids, version=1)

            for relation in relations or []:
                self.articles.add_relation(
                    source_article_id=article.id,
                    related_article_id=relation.related_article_id,
                    relation_type=RelationType(relation.relation_type).value,
                    score=relation.score,
                    error=relation.error,
                )
            self.session.flush()
            return article.id

        article_id = self._atomic("create article", work)
        logger.info(
            f"Created article {article_id} '{title}' from {len(source_ids)} source(s)"
            + (f" as child of {parent_article_id}" if parent_article_id else "")
        )
        return article_id

    def create_article_version(
        self,
        article_id: int,
        body: str,
        title: str,
        source_ids: List[uuid.UUID],
        updated_by: Optional[str] = None,
        update_reason: Optional[str] = None,
        ledger_tx_hash: Optional[str] = None,
    ) -> ArticleVersionRecord:
        """
        Write a new version of an article.

        The version row, the counter bump, the content update and any new
        source links commit together.
        """

        def work() -> ArticleVersionRecord:
            article = self.articles.get_for_update(article_id)
            if article is None:
                raise ArticleNotFoundError(article_id)

            next_version = article.current_version + 1
            version = self.articles.add_version(
                article_id=article.id,
                version=next_version,
                title=title,
                body=body,
                updated_by=updated_by,
                update_reason=update_reason,
                ledger_tx_hash=ledger_tx_hash,
            )
            article.current_version = next_version
            article.title = title
            article.body = body
            if ledger_tx_hash:
                article.ledger_tx_hash = ledger_tx_hash
            self.articles.add_sources(article.id, source_ids, version=next_version)
            self.session.flush()
            return to_version_record(version)

        record = self._atomic("create article version", work)
        logger.info(f"Article {article_id} advanced to version {record.version}")
        return record

    def add_article_relation(
        self,
        source_article_id: int,
        target_article_id: int,
        relation_type: RelationType,
        score: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record a typed edge between two articles."""
        self._atomic(
            "add article relation",
            lambda: self.articles.add_relation(
                source_article_id=source_article_id,
                related_article_id=target_article_id,
                relation_type=RelationType(relation_type).value,
                score=score,
                error=error,
            ),
        )

    def get_article_relations(self, article_id: int) -> List[ArticleRelationRecord]:
        return [
            ArticleRelationRecord(
                source_article_id=row.source_article_id,
                related_article_id=row.related_article_id,
                relation_type=RelationType(row.relation_type),
                score=row.score,
                error=row.error,
            )
            for row in self.articles.get_relations(article_id)
        ]

    def get_article_versions(self, article_id: int) -> List[ArticleVersionRecord]:
        """List version snapshots, newest first."""
        return [to_version_record(row) for row in self.articles.get_versions(article_id)]

    def count_article_versions(self, article_id: int) -> int:
        return self.articles.count_versions(article_id)
