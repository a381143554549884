"""
Similarity cache.

Read-through and write-through memoization of pair scores on top of the
persistent store, plus the pass-local memo that keeps one clustering pass
from asking about the same pair twice.
"""

import logging
import uuid
from typing import Dict, FrozenSet, Iterable, Optional

from backroom.db.store import BackroomStore

logger = logging.getLogger(__name__)

PairKey = FrozenSet[uuid.UUID]


def pair_key(a: uuid.UUID, b: uuid.UUID) -> PairKey:
    """Unordered key for a conversation pair."""
    return frozenset((a, b))


class SimilarityCache:
    """Persistent pair-score cache.

    Stored scores are authoritative: there is no TTL. ``invalidate`` only runs
    when explicitly enabled, for feature re-extraction.
    """

    def __init__(self, store: BackroomStore, invalidate_on_reextract: bool = False):
        self.store = store
        self.invalidate_on_reextract = invalidate_on_reextract
        self.hits = 0
        self.misses = 0

    def get(self, a: uuid.UUID, b: uuid.UUID) -> Optional[float]:
        """Get a cached score; ``None`` means absent, never a computed zero."""
        score = self.store.get_cached_similarity(a, b)
        if score is None:
            self.misses += 1
        else:
            self.hits += 1
        return score

    def put(self, a: uuid.UUID, b: uuid.UUID, score: float) -> None:
        """Write a score through to the store (idempotent upsert)."""
        self.store.put_cached_similarity(a, b, score)

    def get_many(
        self, conversation_id: uuid.UUID, others: Iterable[uuid.UUID]
    ) -> Dict[uuid.UUID, float]:
        """Cached scores for one conversation against many."""
        return self.store.get_similarity_scores(conversation_id, others)

    def on_features_replaced(self, conversation_id: uuid.UUID) -> int:
        """
        Hook for feature re-extraction.

        Drops cached scores for the conversation when invalidation is enabled.

        Returns:
            Number of dropped relations (0 when disabled)
        """
        if not self.invalidate_on_reextract:
            return 0
        dropped = self.store.invalidate_similarity(conversation_id)
        logger.info(f"Invalidated {dropped} cached similarity score(s) for {conversation_id}")
        return dropped

    def get_stats(self) -> dict[str, int]:
        """Hit/miss counters since construction."""
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate_percent": round(self.hits / total * 100) if total else 0,
        }
