"""
Repository layer for database operations.

Provides a clean API for CRUD operations on database models.
"""

from backroom.db.repositories.article import ArticleRepository
from backroom.db.repositories.base import BaseRepository
from backroom.db.repositories.cluster import ClusterRepository
from backroom.db.repositories.conversation import ConversationRepository
from backroom.db.repositories.similarity import SimilarityRepository
from backroom.db.repositories.unclusterable import UnclusterableRepository

__all__ = [
    "ArticleRepository",
    "BaseRepository",
    "ClusterRepository",
    "ConversationRepository",
    "SimilarityRepository",
    "UnclusterableRepository",
]
