"""
SQLAlchemy database models for Backroom Press.

These models represent the database schema for storing backroom
conversations, their similarity cache, clusters, the unclusterable backlog,
and versioned articles.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Conversation(Base):
    """A finished multi-agent backroom dialogue."""

    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    topic: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    question: Mapped[Optional[str]] = mapped_column(Text)

    # Dialogue content
    participants: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    turns: Mapped[list] = mapped_column(
        JSONB, nullable=False, default=list
    )  # [{speaker, message, timestamp, citations}]

    # Extracted features; NULL until extraction has run
    features: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    features_extracted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True)
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, topic={self.topic!r}, title={self.title!r})>"


class SimilarityRelation(Base):
    """Cached similarity score for an unordered pair of conversations."""

    __tablename__ = "similarity_relations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    related_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    score: Mapped[float] = mapped_column(Float, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("source_id", "related_id", name="uq_similarity_pair"),
        Index("ix_similarity_related", "related_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<SimilarityRelation(source={self.source_id}, related={self.related_id}, "
            f"score={self.score})>"
        )


class Article(Base):
    """A synthesized article built from one or more conversations."""

    __tablename__ = "articles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    topic: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    image_url: Mapped[Optional[str]] = mapped_column(Text)
    ledger_tx_hash: Mapped[Optional[str]] = mapped_column(String(255))
    room_id: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    versions: Mapped[list["ArticleVersion"]] = relationship(
        back_populates="article",
        cascade="all, delete-orphan",
        foreign_keys="ArticleVersion.article_id",
        order_by="ArticleVersion.version",
    )
    sources: Mapped[list["ArticleSource"]] = relationship(
        back_populates="article", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<Article(id={self.id}, title={self.title!r}, "
            f"version={self.current_version})>"
        )


class ArticleVersion(Base):
    """Full snapshot of an article at one version."""

    __tablename__ = "article_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    article_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    updated_by: Mapped[Optional[str]] = mapped_column(String(255))
    update_reason: Mapped[Optional[str]] = mapped_column(Text)
    ledger_tx_hash: Mapped[Optional[str]] = mapped_column(String(255))

    # Set when this version was produced by spinning off a child article
    child_article_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("articles.id", ondelete="SET NULL")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    article: Mapped["Article"] = relationship(
        back_populates="versions", foreign_keys=[article_id]
    )

    __table_args__ = (
        UniqueConstraint("article_id", "version", name="uq_article_version"),
    )

    def __repr__(self) -> str:
        return f"<ArticleVersion(article_id={self.article_id}, version={self.version})>"


class ArticleSource(Base):
    """Link between an article and a conversation it was built from."""

    __tablename__ = "article_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    article_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    added_in_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    article: Mapped["Article"] = relationship(back_populates="sources")

    __table_args__ = (
        UniqueConstraint("article_id", "conversation_id", name="uq_article_source"),
    )


class ArticleRelation(Base):
    """Typed edge between two articles."""

    __tablename__ = "article_relations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_article_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    related_article_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("articles.id", ondelete="CASCADE"), nullable=False
    )
    relation_type: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # update, reference, continuation, unrelated, error
    score: Mapped[Optional[float]] = mapped_column(Float)
    error: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Cluster(Base):
    """A group of conversations about one research thread within a topic."""

    __tablename__ = "clusters"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    topic: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    features: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    article_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("articles.id", ondelete="SET NULL"), index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    members: Mapped[list["ClusterMember"]] = relationship(
        back_populates="cluster",
        cascade="all, delete-orphan",
        order_by="ClusterMember.position",
    )
    article: Mapped[Optional["Article"]] = relationship()

    def __repr__(self) -> str:
        return f"<Cluster(id={self.id}, topic={self.topic!r}, name={self.name!r})>"


class ClusterMember(Base):
    """Membership of a conversation in a cluster."""

    __tablename__ = "cluster_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cluster_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("clusters.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    cluster: Mapped["Cluster"] = relationship(back_populates="members")

    __table_args__ = (
        UniqueConstraint("cluster_id", "conversation_id", name="uq_cluster_member"),
    )


class UnclusterableConversation(Base):
    """Backlog entry for a conversation that found no cluster."""

    __tablename__ = "unclusterable_conversations"

    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        primary_key=True,
    )
    topic: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    marked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<UnclusterableConversation(conversation_id={self.conversation_id}, "
            f"topic={self.topic!r})>"
        )
