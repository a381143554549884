"""
Cluster repository.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload, selectinload

from backroom.db.repositories.base import BaseRepository
from backroom.models.db import Cluster, ClusterMember


class ClusterRepository(BaseRepository[Cluster]):
    """Repository for Cluster and ClusterMember models."""

    def __init__(self, session: Session):
        super().__init__(Cluster, session)

    def get_by_topic(self, topic: str) -> List[Cluster]:
        """
        Get all clusters for a topic in creation order, with members and article.

        Args:
            topic: Topic label

        Returns:
            List of clusters, oldest first
        """
        return (
            self.session.query(Cluster)
            .options(selectinload(Cluster.members), joinedload(Cluster.article))
            .filter(Cluster.topic == topic)
            .order_by(Cluster.created_at.asc(), Cluster.name.asc())
            .all()
        )

    def get_by_article_id(self, article_id: int) -> Optional[Cluster]:
        """Get the cluster linked to an article, if any."""
        return (
            self.session.query(Cluster)
            .options(selectinload(Cluster.members), joinedload(Cluster.article))
            .filter(Cluster.article_id == article_id)
            .order_by(Cluster.created_at.asc())
            .first()
        )

    def create_with_members(
        self,
        topic: str,
        name: str,
        features: dict,
        member_ids: List[uuid.UUID],
        article_id: Optional[int] = None,
    ) -> Cluster:
        """
        Create a cluster and its membership rows.

        The caller owns the transaction boundary.

        Args:
            topic: Topic inherited from the founding conversation
            name: Derived cluster name
            features: Serialized merged features
            member_ids: Ordered member conversation IDs
            article_id: Optional linked article

        Returns:
            The created cluster
        """
        cluster = Cluster(
            topic=topic,
            name=name,
            features=features,
            article_id=article_id,
            created_at=datetime.now(timezone.utc),
        )
        self.session.add(cluster)
        self.session.flush()

        for position, conversation_id in enumerate(dict.fromkeys(member_ids)):
            self.session.add(
                ClusterMember(
                    cluster_id=cluster.id,
                    conversation_id=conversation_id,
                    position=position,
                )
            )
        self.session.flush()
        self.session.refresh(cluster)
        return cluster

    def add_member(self, cluster_id: uuid.UUID, conversation_id: uuid.UUID) -> bool:
        """
        Append a conversation to a cluster.

        Returns:
            True if added, False if it was already a member
        """
        existing = (
            self.session.query(ClusterMember)
            .filter(
                ClusterMember.cluster_id == cluster_id,
                ClusterMember.conversation_id == conversation_id,
            )
            .first()
        )
        if existing is not None:
            return False

        last_position = (
            self.session.query(func.max(ClusterMember.position))
            .filter(ClusterMember.cluster_id == cluster_id)
            .scalar()
        )
        self.session.add(
            ClusterMember(
                cluster_id=cluster_id,
                conversation_id=conversation_id,
                position=(last_position + 1) if last_position is not None else 0,
            )
        )
        self.session.flush()
        return True

    def update_summary(
        self,
        cluster_id: uuid.UUID,
        features: dict,
        name: Optional[str] = None,
        article_id: Optional[int] = None,
    ) -> Optional[Cluster]:
        """Update merged features, and optionally name and linked article."""
        cluster = self.get(cluster_id)
        if cluster is None:
            return None
        cluster.features = features
        if name is not None:
            cluster.name = name
        if article_id is not None:
            cluster.article_id = article_id
        cluster.updated_at = datetime.now(timezone.utc)
        self.session.flush()
        return cluster
