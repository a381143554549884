"""
Article repository.

Covers articles, their version snapshots, source links and relations.
"""

import uuid
from typing import List, Optional

from sqlalchemy.orm import Session

from backroom.db.repositories.base import BaseRepository
from backroom.models.db import Article, ArticleRelation, ArticleSource, ArticleVersion


class ArticleRepository(BaseRepository[Article]):
    """Repository for Article and its dependent models."""

    def __init__(self, session: Session):
        super().__init__(Article, session)

    def get_for_update(self, article_id: int) -> Optional[Article]:
        """Get an article, locking the row on databases that support it."""
        return (
            self.session.query(Article)
            .filter(Article.id == article_id)
            .with_for_update()
            .first()
        )

    def get_by_topic(self, topic: str) -> List[Article]:
        """Get all articles for a topic, oldest first."""
        return (
            self.session.query(Article)
            .filter(Article.topic == topic)
            .order_by(Article.id.asc())
            .all()
        )

    def get_by_source_conversation_ids(
        self, conversation_ids: List[uuid.UUID]
    ) -> List[Article]:
        """
        Get articles sourced from any of the given conversations.

        Args:
            conversation_ids: Conversation UUIDs

        Returns:
            Distinct articles, oldest first
        """
        if not conversation_ids:
            return []
        return (
            self.session.query(Article)
            .join(ArticleSource, ArticleSource.article_id == Article.id)
            .filter(ArticleSource.conversation_id.in_(conversation_ids))
            .distinct()
            .order_by(Article.id.asc())
            .all()
        )

    def get_source_ids(self, article_id: int) -> List[uuid.UUID]:
        """Get source conversation IDs for an article, in the order they were added."""
        rows = (
            self.session.query(ArticleSource.conversation_id)
            .filter(ArticleSource.article_id == article_id)
            .order_by(ArticleSource.id.asc())
            .all()
        )
        return [row[0] for row in rows]

    def add_sources(
        self, article_id: int, conversation_ids: List[uuid.UUID], version: int
    ) -> int:
        """
        Link conversations to an article, skipping ones already linked.

        Returns:
            Number of new source rows
        """
        existing = set(self.get_source_ids(article_id))
        added = 0
        for conversation_id in dict.fromkeys(conversation_ids):
            if conversation_id in existing:
                continue
            self.session.add(
                ArticleSource(
                    article_id=article_id,
                    conversation_id=conversation_id,
                    added_in_version=version,
                )
            )
            added += 1
        self.session.flush()
        return added

    def add_version(self, **kwargs) -> ArticleVersion:
        """Insert a version snapshot row."""
        version = ArticleVersion(**kwargs)
        self.session.add(version)
        self.session.flush()
        return version

    def get_versions(self, article_id: int) -> List[ArticleVersion]:
        """Get all version snapshots for an article, newest first."""
        return (
            self.session.query(ArticleVersion)
            .filter(ArticleVersion.article_id == article_id)
            .order_by(ArticleVersion.version.desc())
            .all()
        )

    def count_versions(self, article_id: int) -> int:
        """Count version snapshots for an article."""
        return (
            self.session.query(ArticleVersion)
            .filter(ArticleVersion.article_id == article_id)
            .count()
        )

    def add_relation(self, **kwargs) -> ArticleRelation:
        """Insert an article relation row."""
        relation = ArticleRelation(**kwargs)
        self.session.add(relation)
        self.session.flush()
        return relation

    def get_relations(self, article_id: int) -> List[ArticleRelation]:
        """Get outgoing relations from an article."""
        return (
            self.session.query(ArticleRelation)
            .filter(ArticleRelation.source_article_id == article_id)
            .order_by(ArticleRelation.id.asc())
            .all()
        )
