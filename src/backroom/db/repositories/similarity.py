"""
Similarity relation repository.

Stores one score per unordered conversation pair. Lookups check both
orderings; writes update whichever ordering already exists.
"""

import uuid
from typing import Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from backroom.db.repositories.base import BaseRepository
from backroom.models.db import SimilarityRelation


class SimilarityRepository(BaseRepository[SimilarityRelation]):
    """Repository for SimilarityRelation model."""

    def __init__(self, session: Session):
        super().__init__(SimilarityRelation, session)

    def _pair_filter(self, a: uuid.UUID, b: uuid.UUID):
        return or_(
            and_(SimilarityRelation.source_id == a, SimilarityRelation.related_id == b),
            and_(SimilarityRelation.source_id == b, SimilarityRelation.related_id == a),
        )

    def get_pair(self, a: uuid.UUID, b: uuid.UUID) -> Optional[SimilarityRelation]:
        """Get the stored relation for a pair in either ordering."""
        return (
            self.session.query(SimilarityRelation)
            .filter(self._pair_filter(a, b))
            .order_by(SimilarityRelation.id.asc())
            .first()
        )

    def upsert(self, a: uuid.UUID, b: uuid.UUID, score: float) -> SimilarityRelation:
        """
        Insert or update the score for a pair.

        Args:
            a: First conversation UUID
            b: Second conversation UUID
            score: Similarity in [0, 1]

        Returns:
            The single stored relation for the pair
        """
        relation = self.get_pair(a, b)
        if relation is not None:
            relation.score = score
            self.session.flush()
            return relation
        return self.create(source_id=a, related_id=b, score=score)

    def get_scores_for(
        self, conversation_id: uuid.UUID, others: List[uuid.UUID]
    ) -> Dict[uuid.UUID, float]:
        """
        Get cached scores between one conversation and many others.

        Returns:
            Mapping of other conversation ID to score, for pairs that are cached
        """
        if not others:
            return {}
        relations = (
            self.session.query(SimilarityRelation)
            .filter(
                or_(
                    and_(
                        SimilarityRelation.source_id == conversation_id,
                        SimilarityRelation.related_id.in_(others),
                    ),
                    and_(
                        SimilarityRelation.related_id == conversation_id,
                        SimilarityRelation.source_id.in_(others),
                    ),
                )
            )
            .all()
        )
        scores: Dict[uuid.UUID, float] = {}
        for relation in relations:
            other = (
                relation.related_id
                if relation.source_id == conversation_id
                else relation.source_id
            )
            scores[other] = relation.score
        return scores

    def delete_for_conversation(self, conversation_id: uuid.UUID) -> int:
        """
        Delete every cached relation involving a conversation.

        Returns:
            Number of deleted relations
        """
        deleted = (
            self.session.query(SimilarityRelation)
            .filter(
                or_(
                    SimilarityRelation.source_id == conversation_id,
                    SimilarityRelation.related_id == conversation_id,
                )
            )
            .delete(synchronize_session=False)
        )
        self.session.flush()
        return deleted
