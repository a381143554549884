"""
Incremental clustering of backroom conversations.

A clustering pass places conversations one at a time:

Phase A tries to absorb the conversation into an existing cluster. Every
member is scored against it (pass memo, then cache, then oracle) and the
cluster's cohesion is the mean of the valid scores. The best cluster joins
if its cohesion reaches the join threshold; ties keep the earlier cluster.

Phase B runs only when Phase A finds nothing. The conversation is scored
against every unprocessed candidate and every partner at or above the
new-cluster threshold joins it in a new cluster. A conversation that is
substantial on its own may found a cluster alone. Otherwise it stays pending.

Pass state (processed set and pair memo) belongs to one pass only; callers
must serialize passes per topic.
"""

import enum
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from backroom.analysis.cache import PairKey, SimilarityCache, pair_key
from backroom.analysis.similarity import SimilarityOracle
from backroom.models.records import (
    ArticleRecord,
    ClusterRecord,
    ContentFeatures,
    ConversationRecord,
)
from backroom.pipeline.events import EventEmitter, EventType

logger = logging.getLogger(__name__)

JOIN_THRESHOLD = 0.6
NEW_CLUSTER_THRESHOLD = 0.7

# Standalone-substantial test
STANDALONE_MIN_CLAIMS = 4
STANDALONE_MIN_ENTITIES = 3
STANDALONE_MIN_TECHNICAL_TERMS = 3
STANDALONE_MIN_TURNS = 5

CLUSTER_NAME_MAX_ENTITIES = 3

PENDING_REASON = (
    "Insufficient similarity with other backrooms and not substantial enough "
    "to form a standalone cluster"
)


def merge_features(*features: Optional[ContentFeatures]) -> ContentFeatures:
    """
    Ordered, case-sensitive union of feature lists.

    "Quantum" and "quantum" both survive; only exact duplicates collapse.
    """
    merged = ContentFeatures()
    for item in features:
        if item is None:
            continue
        for target, source in (
            (merged.technical_terms, item.technical_terms),
            (merged.entities, item.entities),
            (merged.claims, item.claims),
        ):
            for value in source:
                if value not in target:
                    target.append(value)
    return merged


# Case-insensitive, unlike merge_features
def _jaccard_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """Case-insensitive Jaccard index of two string collections (0.0 when both empty)."""
    left = {value.lower() for value in a}
    right = {value.lower() for value in b}
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def is_substantial_standalone(conversation: ConversationRecord) -> bool:
    """Whether a conversation carries enough content to found a cluster alone."""
    features = conversation.features
    if features is None:
        return False
    return (
        len(features.claims) >= STANDALONE_MIN_CLAIMS
        and len(features.entities) >= STANDALONE_MIN_ENTITIES
        and len(features.technical_terms) >= STANDALONE_MIN_TECHNICAL_TERMS
        and len(conversation.turns) >= STANDALONE_MIN_TURNS
    )


def derive_cluster_name(members: Sequence[ConversationRecord]) -> str:
    """
    Name a cluster after entities shared by every member.

    Up to three common entities joined with " - ", in the founding member's
    order; the founding member's title when nothing is shared.
    """
    if not members:
        return ""
    founder = members[0]
    founder_entities = founder.features.entities if founder.features else []
    common = [
        entity
        for entity in dict.fromkeys(founder_entities)
        if all(m.features is not None and entity in m.features.entities for m in members)
    ]
    return " - ".join(common[:CLUSTER_NAME_MAX_ENTITIES]) or founder.title


class ClusterOutcome(str, enum.Enum):
    """Fate of one conversation within a pass."""

    JOINED = "joined"
    FORMED = "formed"
    PENDING = "pending"
    ALREADY_CLUSTERED = "already_clustered"


@dataclass
class WorkingCluster:
    """A cluster as it stands during a pass; ``id`` is None until persisted."""

    topic: str
    name: str
    members: List[ConversationRecord]
    features: ContentFeatures
    id: Optional[uuid.UUID] = None
    article: Optional[ArticleRecord] = None
    added_ids: List[uuid.UUID] = field(default_factory=list)
    standalone: bool = False

    @property
    def is_new(self) -> bool:
        return self.id is None

    @property
    def member_ids(self) -> List[uuid.UUID]:
        return [member.id for member in self.members]

    @property
    def changed(self) -> bool:
        return bool(self.added_ids)

    def add(self, conversation: ConversationRecord) -> None:
        self.members.append(conversation)
        self.features = merge_features(self.features, conversation.features)
        self.added_ids.append(conversation.id)


@dataclass
class ClusterDecision:
    """Outcome for one conversation, with the reason shown to operators."""

    conversation_id: uuid.UUID
    outcome: ClusterOutcome
    reason: str
    cluster: Optional[WorkingCluster] = None
    score: Optional[float] = None
    partner_scores: Dict[uuid.UUID, float] = field(default_factory=dict)


@dataclass
class ClusteringPass:
    """State owned by a single clustering pass."""

    topic: str
    clusters: List[WorkingCluster]
    processed: set[uuid.UUID] = field(default_factory=set)
    scores: Dict[PairKey, Optional[float]] = field(default_factory=dict)
    decisions: List[ClusterDecision] = field(default_factory=list)

    @property
    def changed_clusters(self) -> List[WorkingCluster]:
        """Clusters that gained members this pass, in creation order."""
        return [cluster for cluster in self.clusters if cluster.changed]

    def decision_for(self, conversation_id: uuid.UUID) -> Optional[ClusterDecision]:
        for decision in self.decisions:
            if decision.conversation_id == conversation_id:
                return decision
        return None


class ClusteringEngine:
    """Decides cluster membership for arriving conversations."""

    def __init__(
        self,
        cache: SimilarityCache,
        oracle: SimilarityOracle,
        join_threshold: float = JOIN_THRESHOLD,
        new_cluster_threshold: float = NEW_CLUSTER_THRESHOLD,
        max_workers: int = 4,
        events: Optional[EventEmitter] = None,
    ):
        self.cache = cache
        self.oracle = oracle
        self.join_threshold = join_threshold
        self.new_cluster_threshold = new_cluster_threshold
        self.max_workers = max(1, max_workers)
        self.events = events or EventEmitter()

    def start_pass(
        self,
        topic: str,
        clusters: Sequence[ClusterRecord],
        members: Mapping[uuid.UUID, ConversationRecord],
    ) -> ClusteringPass:
        """
        Build pass state from stored clusters.

        Args:
            topic: Topic being processed
            clusters: Stored clusters in creation order
            members: Records for every member of those clusters

        Returns:
            Fresh pass state
        """
        working = [
            WorkingCluster(
                id=cluster.id,
                topic=cluster.topic,
                name=cluster.name,
                members=[members[m] for m in cluster.member_ids if m in members],
                features=cluster.features,
                article=cluster.article,
            )
            for cluster in clusters
        ]
        return ClusteringPass(topic=topic, clusters=working)

    def run_pass(
        self,
        topic: str,
        arrivals: Sequence[ConversationRecord],
        clusters: Sequence[ClusterRecord],
        members: Mapping[uuid.UUID, ConversationRecord],
    ) -> ClusteringPass:
        """
        Place each arrival in order; every arrival is also a Phase B candidate.

        Returns:
            The finished pass with one decision per placed conversation
        """
        state = self.start_pass(topic, clusters, members)
        for conversation in arrivals:
            if conversation.id in state.processed:
                continue
            state.decisions.append(self.place(conversation, arrivals, state))
        return state

    def place(
        self,
        conversation: ConversationRecord,
        candidates: Sequence[ConversationRecord],
        state: ClusteringPass,
    ) -> ClusterDecision:
        """Run Phase A then Phase B for one conversation."""
        if not conversation.has_features:
            state.processed.add(conversation.id)
            return ClusterDecision(
                conversation_id=conversation.id,
                outcome=ClusterOutcome.PENDING,
                reason="Conversation has no extracted features yet",
            )

        for cluster in state.clusters:
            if conversation.id in cluster.member_ids:
                state.processed.add(conversation.id)
                return ClusterDecision(
                    conversation_id=conversation.id,
                    outcome=ClusterOutcome.ALREADY_CLUSTERED,
                    reason=f"Already a member of cluster '{cluster.name}'",
                    cluster=cluster,
                )

        joined = self._absorb(conversation, state)
        if joined is not None:
            return joined
        return self._form(conversation, candidates, state)

    # ----- Phase A -----

    def _absorb(
        self, conversation: ConversationRecord, state: ClusteringPass
    ) -> Optional[ClusterDecision]:
        partners: Dict[uuid.UUID, ConversationRecord] = {}
        for cluster in state.clusters:
            for member in cluster.members:
                if member.has_features:
                    partners[member.id] = member
        scores = self._score_against(conversation, list(partners.values()), state)

        best_cluster: Optional[WorkingCluster] = None
        best_score: Optional[float] = None
        for cluster in state.clusters:
            valid = [
                scores[member.id]
                for member in cluster.members
                if scores.get(member.id) is not None
            ]
            if not valid:
                continue
            cohesion = sum(valid) / len(valid)
            logger.debug(f"Cohesion of '{cluster.name}' for {conversation.id}: {cohesion:.3f}")
            if best_score is None or cohesion > best_score:
                best_cluster, best_score = cluster, cohesion

        if best_cluster is None or best_score is None or best_score < self.join_threshold:
            return None

        best_cluster.add(conversation)
        state.processed.add(conversation.id)
        reason = (
            f"Joined cluster '{best_cluster.name}' with cohesion {best_score:.2f} "
            f"(threshold {self.join_threshold})"
        )
        logger.info(f"Conversation {conversation.id}: {reason}")
        self.events.emit(
            EventType.CLUSTER_JOINED,
            reason,
            conversation_id=str(conversation.id),
            cluster_id=str(best_cluster.id) if best_cluster.id else None,
            cohesion=best_score,
        )
        return ClusterDecision(
            conversation_id=conversation.id,
            outcome=ClusterOutcome.JOINED,
            reason=reason,
            cluster=best_cluster,
            score=best_score,
            partner_scores={
                m.id: scores[m.id]
                for m in best_cluster.members
                if scores.get(m.id) is not None
            },
        )

    # ----- Phase B -----

    def _form(
        self,
        conversation: ConversationRecord,
        candidates: Sequence[ConversationRecord],
        state: ClusteringPass,
    ) -> ClusterDecision:
        unprocessed = [
            candidate
            for candidate in candidates
            if candidate.id != conversation.id
            and candidate.id not in state.processed
            and candidate.has_features
        ]
        scores = self._score_against(conversation, unprocessed, state)
        partners = [
            candidate
            for candidate in unprocessed
            if scores.get(candidate.id) is not None
            and scores[candidate.id] >= self.new_cluster_threshold
        ]
        standalone = not partners and is_substantial_standalone(conversation)

        state.processed.add(conversation.id)

        if not partners and not standalone:
            logger.info(f"Conversation {conversation.id} left pending: {PENDING_REASON}")
            return ClusterDecision(
                conversation_id=conversation.id,
                outcome=ClusterOutcome.PENDING,
                reason=PENDING_REASON,
                partner_scores={k: v for k, v in scores.items() if v is not None},
            )

        members = [conversation, *partners]
        cluster = WorkingCluster(
            topic=conversation.topic,
            name=derive_cluster_name(members),
            members=members,
            features=merge_features(*(m.features for m in members)),
            added_ids=[m.id for m in members],
            standalone=standalone,
        )
        state.clusters.append(cluster)
        state.processed.update(cluster.member_ids)

        if standalone:
            reason = "Formed standalone cluster from a substantial conversation"
        else:
            reason = (
                f"Formed new cluster '{cluster.name}' with {len(partners)} partner(s) "
                f"scoring >= {self.new_cluster_threshold}"
            )
        logger.info(f"Conversation {conversation.id}: {reason}")
        return ClusterDecision(
            conversation_id=conversation.id,
            outcome=ClusterOutcome.FORMED,
            reason=reason,
            cluster=cluster,
            partner_scores={p.id: scores[p.id] for p in partners},
        )

    # ----- scoring -----

    def _score_against(
        self,
        conversation: ConversationRecord,
        partners: Sequence[ConversationRecord],
        state: ClusteringPass,
    ) -> Dict[uuid.UUID, Optional[float]]:
        """
        Score a conversation against partners.

        Lookups go pass memo, then cache, then oracle. Oracle calls run with
        bounded concurrency; cache writes happen on the calling thread once
        each result is in. Failed comparisons map to None.
        """
        scores: Dict[uuid.UUID, Optional[float]] = {}
        missing: List[ConversationRecord] = []

        for partner in partners:
            if partner.id == conversation.id or partner.id in scores:
                continue
            key = pair_key(conversation.id, partner.id)
            if key in state.scores:
                scores[partner.id] = state.scores[key]
                continue
            cached = self.cache.get(conversation.id, partner.id)
            if cached is not None:
                state.scores[key] = cached
                scores[partner.id] = cached
                self.events.emit(
                    EventType.CACHE_HIT,
                    f"Using cached similarity {cached:.2f}",
                    conversation_id=str(conversation.id),
                    partner_id=str(partner.id),
                    score=cached,
                )
                continue
            missing.append(partner)
            scores[partner.id] = None

        if not missing:
            return scores

        workers = min(self.max_workers, len(missing))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="similarity") as pool:
            futures = [
                (
                    partner,
                    pool.submit(
                        self.oracle.score_pair,
                        conversation.features,
                        conversation.title,
                        partner.features,
                        partner.title,
                        conversation.topic,
                    ),
                )
                for partner in missing
            ]
            for partner, future in futures:
                result = future.result()
                key = pair_key(conversation.id, partner.id)
                if result.is_ok:
                    score = result.value
                    self.cache.put(conversation.id, partner.id, score)
                    state.scores[key] = score
                    scores[partner.id] = score
                    self.events.emit(
                        EventType.SIMILARITY_SCORED,
                        f"Similarity {score:.2f} between '{conversation.title}' "
                        f"and '{partner.title}'",
                        conversation_id=str(conversation.id),
                        partner_id=str(partner.id),
                        score=score,
                    )
                else:
                    state.scores[key] = None
                    logger.warning(
                        f"No similarity for {conversation.id} vs {partner.id}: {result.error}"
                    )
                    self.events.emit(
                        EventType.SIMILARITY_ERROR,
                        f"Similarity unavailable: {result.error}",
                        conversation_id=str(conversation.id),
                        partner_id=str(partner.id),
                    )
        return scores
