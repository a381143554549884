"""
Unclusterable backlog repository.
"""

import uuid
from datetime import datetime, timezone
from typing import List

from sqlalchemy.orm import Session

from backroom.db.repositories.base import BaseRepository
from backroom.models.db import Conversation, UnclusterableConversation


class UnclusterableRepository(BaseRepository[UnclusterableConversation]):
    """Repository for UnclusterableConversation model."""

    def __init__(self, session: Session):
        super().__init__(UnclusterableConversation, session)

    def mark(
        self, conversation_id: uuid.UUID, topic: str, reason: str
    ) -> UnclusterableConversation:
        """
        Insert or refresh a backlog entry.

        Re-marking overwrites the reason and refreshes the marked-at time.
        """
        entry = self.get(conversation_id)
        now = datetime.now(timezone.utc)
        if entry is None:
            return self.create(
                conversation_id=conversation_id,
                topic=topic,
                reason=reason,
                marked_at=now,
            )
        entry.topic = topic
        entry.reason = reason
        entry.marked_at = now
        self.session.flush()
        return entry

    def get_conversations_by_topic(self, topic: str) -> List[Conversation]:
        """
        Get backlog conversations for a topic, oldest conversation first.

        Args:
            topic: Topic label

        Returns:
            Conversations currently marked unclusterable for the topic
        """
        return (
            self.session.query(Conversation)
            .join(
                UnclusterableConversation,
                UnclusterableConversation.conversation_id == Conversation.id,
            )
            .filter(UnclusterableConversation.topic == topic)
            .order_by(Conversation.created_at.asc(), Conversation.id.asc())
            .all()
        )

    def get_entries_by_topic(self, topic: str) -> List[UnclusterableConversation]:
        """Get raw backlog entries for a topic, most recently marked first."""
        return (
            self.session.query(UnclusterableConversation)
            .filter(UnclusterableConversation.topic == topic)
            .order_by(UnclusterableConversation.marked_at.desc())
            .all()
        )
