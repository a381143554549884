"""
Domain records for the clustering and article lifecycle engine.

These are plain Python dataclasses handed between the store, the oracles and
the decision engines. They never carry SQLAlchemy state.
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class RelationType(str, enum.Enum):
    """Categorical relation between two articles."""

    UPDATE = "update"
    REFERENCE = "reference"
    CONTINUATION = "continuation"
    UNRELATED = "unrelated"
    ERROR = "error"


@dataclass
class Turn:
    """One message in a backroom dialogue."""

    speaker: str
    message: str
    timestamp: Optional[datetime] = None
    citations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSONB storage."""
        return {
            "speaker": self.speaker,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "citations": list(self.citations),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Turn":
        timestamp = data.get("timestamp")
        return cls(
            speaker=data.get("speaker", ""),
            message=data.get("message", ""),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
            citations=list(data.get("citations") or []),
        )


@dataclass
class ContentFeatures:
    """Technical terms, entities and claims extracted from a conversation.

    Lists keep the oracle's literal wording and order. Cluster merges are a
    case-sensitive ordered union; only the Jaccard helper folds case.
    """

    technical_terms: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    claims: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSONB storage."""
        return {
            "technical_terms": list(self.technical_terms),
            "entities": list(self.entities),
            "claims": list(self.claims),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ContentFeatures"]:
        """Build from stored JSON; ``None`` means features were never extracted."""
        if data is None:
            return None
        return cls(
            technical_terms=list(data.get("technical_terms") or []),
            entities=list(data.get("entities") or []),
            claims=list(data.get("claims") or []),
        )


@dataclass
class ConversationRecord:
    """A backroom conversation as seen by the engine."""

    id: uuid.UUID
    topic: str
    title: str
    created_at: datetime
    turns: list[Turn] = field(default_factory=list)
    question: Optional[str] = None
    participants: list[str] = field(default_factory=list)
    features: Optional[ContentFeatures] = None

    @property
    def has_features(self) -> bool:
        """Only conversations with extracted features are eligible for clustering."""
        return self.features is not None

    def transcript(self) -> str:
        """Render turns as ``[speaker]: message`` lines."""
        return "\n".join(f"[{turn.speaker}]: {turn.message}" for turn in self.turns)


@dataclass
class ArticleRecord:
    """A stored article at its current version."""

    id: int
    title: str
    body: str
    topic: str
    current_version: int = 1
    image_url: Optional[str] = None
    ledger_tx_hash: Optional[str] = None
    room_id: Optional[str] = None
    created_at: Optional[datetime] = None
    source_ids: list[uuid.UUID] = field(default_factory=list)


@dataclass
class ArticleVersionRecord:
    """Snapshot of an article at a given version."""

    id: int
    article_id: int
    version: int
    title: str
    body: str
    updated_by: Optional[str] = None
    update_reason: Optional[str] = None
    child_article_id: Optional[int] = None
    ledger_tx_hash: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class ClusterRecord:
    """A cluster with its ordered member list and merged features."""

    id: uuid.UUID
    topic: str
    name: str
    member_ids: list[uuid.UUID] = field(default_factory=list)
    features: ContentFeatures = field(default_factory=ContentFeatures)
    article_id: Optional[int] = None
    article: Optional[ArticleRecord] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class UnclusterableRecord:
    """Backlog entry for a conversation that has no cluster yet."""

    conversation_id: uuid.UUID
    topic: str
    reason: str
    marked_at: Optional[datetime] = None


@dataclass
class ArticleRelationRecord:
    """Typed edge from one article to another."""

    source_article_id: int
    related_article_id: int
    relation_type: RelationType
    score: Optional[float] = None
    error: Optional[str] = None
