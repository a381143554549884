"""
Conversation repository.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from backroom.db.repositories.base import BaseRepository
from backroom.models.db import Conversation


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for Conversation model."""

    def __init__(self, session: Session):
        super().__init__(Conversation, session)

    def get_by_topic(self, topic: str) -> List[Conversation]:
        """
        Get all conversations for a topic, oldest first.

        Args:
            topic: Topic label

        Returns:
            List of conversations in creation order
        """
        return (
            self.session.query(Conversation)
            .filter(Conversation.topic == topic)
            .order_by(Conversation.created_at.asc(), Conversation.id.asc())
            .all()
        )

    def get_many(self, ids: List[uuid.UUID]) -> List[Conversation]:
        """
        Get conversations by ID, oldest first.

        Missing IDs are skipped.
        """
        if not ids:
            return []
        return (
            self.session.query(Conversation)
            .filter(Conversation.id.in_(ids))
            .order_by(Conversation.created_at.asc(), Conversation.id.asc())
            .all()
        )

    def set_features(
        self, conversation_id: uuid.UUID, features: dict
    ) -> Optional[Conversation]:
        """
        Replace the stored features of a conversation.

        Args:
            conversation_id: Conversation UUID
            features: Serialized features (replaces any previous value)

        Returns:
            Updated conversation or None if it does not exist
        """
        conversation = self.get(conversation_id)
        if conversation is None:
            return None
        conversation.features = features
        conversation.features_extracted_at = datetime.now(timezone.utc)
        self.session.flush()
        return conversation
