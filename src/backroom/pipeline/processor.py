"""
Backroom processing orchestrator.

Runs one clustering pass for a newly arrived conversation, settles every
cluster that changed (article no-op, update or creation), and keeps the
unclusterable backlog in step. Every conversation touched by the pass ends
with an outcome and a human-readable reason.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from backroom.analysis.cache import SimilarityCache
from backroom.analysis.clustering import (
    PENDING_REASON,
    ClusterDecision,
    ClusteringEngine,
    ClusterOutcome,
    WorkingCluster,
)
from backroom.analysis.features import FeatureExtractor
from backroom.analysis.lifecycle import (
    ArticleAction,
    ArticleDecision,
    ArticleLifecycleManager,
)
from backroom.analysis.synthesis import ArticleSynthesizer, GeneratedArticle
from backroom.db.store import BackroomStore
from backroom.exceptions import BackroomError
from backroom.models.records import ConversationRecord
from backroom.pipeline.events import EventEmitter, EventType
from backroom.pipeline.locks import TopicLockRegistry

logger = logging.getLogger(__name__)

BACKLOG_REMARK_REASON = "Insufficient similarity with other backrooms for clustering"

# Optional external ledger: (title, content) -> transaction hash
LedgerRecorder = Callable[[str, str], Optional[str]]


class ConversationStatus:
    """Final status values for a conversation after a pass."""

    CLUSTERED = "clustered"
    ALREADY_CLUSTERED = "already_clustered"
    UNCLUSTERABLE = "unclusterable"


@dataclass
class ConversationOutcome:
    """What happened to one conversation, and why."""

    conversation_id: uuid.UUID
    status: str
    reason: str
    cluster_id: Optional[uuid.UUID] = None
    article_id: Optional[int] = None


@dataclass
class ClusterResult:
    """How a changed cluster was settled."""

    member_ids: List[uuid.UUID]
    added_ids: List[uuid.UUID]
    is_new: bool
    action: ArticleAction
    reason: str
    cluster_id: Optional[uuid.UUID] = None
    article_id: Optional[int] = None
    article_version: Optional[int] = None
    # Article ID to new version number, for every updated article
    article_versions: Dict[int, int] = field(default_factory=dict)
    persisted: bool = False
    error: Optional[str] = None


@dataclass
class ProcessingResult:
    """Summary of one processing run."""

    conversation_id: uuid.UUID
    topic: str
    outcomes: Dict[uuid.UUID, ConversationOutcome] = field(default_factory=dict)
    clusters: List[ClusterResult] = field(default_factory=list)

    @property
    def outcome(self) -> ConversationOutcome:
        """Outcome for the conversation that triggered the run."""
        return self.outcomes[self.conversation_id]


class BackroomProcessor:
    """Processes arriving conversations into clusters and articles."""

    def __init__(
        self,
        store: BackroomStore,
        feature_extractor: FeatureExtractor,
        cache: SimilarityCache,
        engine: ClusteringEngine,
        lifecycle: ArticleLifecycleManager,
        synthesizer: ArticleSynthesizer,
        locks: Optional[TopicLockRegistry] = None,
        events: Optional[EventEmitter] = None,
        ledger_recorder: Optional[LedgerRecorder] = None,
        updated_by: str = "backroom-processor",
    ):
        self.store = store
        self.feature_extractor = feature_extractor
        self.cache = cache
        self.engine = engine
        self.lifecycle = lifecycle
        self.synthesizer = synthesizer
        self.locks = locks or TopicLockRegistry()
        self.events = events or EventEmitter()
        self.ledger_recorder = ledger_recorder
        self.updated_by = updated_by

    # ----- public operations -----

    def process_conversation(
        self, conversation_id: uuid.UUID, topic: Optional[str] = None
    ) -> ProcessingResult:
        """
        Cluster a newly arrived conversation and settle the resulting articles.

        Args:
            conversation_id: The arriving conversation
            topic: Topic to process under (defaults to the conversation's own)

        Returns:
            ProcessingResult with an outcome for every conversation in the pass

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """
        conversation = self.store.require_conversation(conversation_id)
        topic = topic or conversation.topic
        with self.locks.hold(topic):
            return self._process(conversation, topic)

    def refresh_features(self, conversation_id: uuid.UUID) -> ConversationRecord:
        """
        Re-extract and replace a conversation's features.

        Cached similarities are dropped only when invalidation is enabled.
        """
        conversation = self.store.require_conversation(conversation_id)
        had_features = conversation.has_features
        features = self.feature_extractor.extract_for_conversation(conversation)
        updated = self.store.save_features(conversation.id, features)
        if had_features:
            self.cache.on_features_replaced(conversation.id)
        return updated

    # ----- internals -----

    def _process(self, conversation: ConversationRecord, topic: str) -> ProcessingResult:
        self.events.emit(
            EventType.CLUSTER_PROCESSING_START,
            f"Processing clusters for topic: {topic}",
            conversation_id=str(conversation.id),
            topic=topic,
        )
        conversation = self._ensure_features(conversation)

        clusters = self.store.get_clusters_by_topic(topic)
        member_ids = [m for cluster in clusters for m in cluster.member_ids]
        members = {c.id: c for c in self.store.get_conversations(member_ids)}
        backlog = [
            c for c in self.store.get_unclusterable_by_topic(topic) if c.id != conversation.id
        ]
        logger.info(
            f"Processing {conversation.id} in topic '{topic}': "
            f"{len(clusters)} cluster(s), {len(backlog)} backlog conversation(s)"
        )

        arrivals = [conversation, *backlog]
        state = self.engine.run_pass(topic, arrivals, clusters, members)

        result = ProcessingResult(conversation_id=conversation.id, topic=topic)
        failures: Dict[uuid.UUID, str] = {}

        for cluster in state.changed_clusters:
            settled = self._settle_cluster(cluster, topic)
            result.clusters.append(settled)
            for added_id in cluster.added_ids:
                if settled.persisted:
                    result.outcomes[added_id] = ConversationOutcome(
                        conversation_id=added_id,
                        status=ConversationStatus.CLUSTERED,
                        reason=self._decision_reason(state.decision_for(added_id), settled),
                        cluster_id=settled.cluster_id,
                        article_id=settled.article_id,
                    )
                else:
                    failures[added_id] = settled.error or settled.reason

        for candidate in arrivals:
            if candidate.id in result.outcomes:
                continue
            decision = state.decision_for(candidate.id)
            if decision is not None and decision.outcome == ClusterOutcome.ALREADY_CLUSTERED:
                self.store.remove_unclusterable(candidate.id)
                result.outcomes[candidate.id] = ConversationOutcome(
                    conversation_id=candidate.id,
                    status=ConversationStatus.ALREADY_CLUSTERED,
                    reason=decision.reason,
                    cluster_id=decision.cluster.id if decision.cluster else None,
                )
                continue

            reason = failures.get(candidate.id) or self._pending_reason(
                candidate, conversation, decision
            )
            self.store.mark_unclusterable(candidate.id, topic, reason)
            self.events.emit(
                EventType.UNCLUSTERABLE_MARKED,
                reason,
                conversation_id=str(candidate.id),
            )
            result.outcomes[candidate.id] = ConversationOutcome(
                conversation_id=candidate.id,
                status=ConversationStatus.UNCLUSTERABLE,
                reason=reason,
            )

        outcome = result.outcome
        self.events.emit(
            EventType.COMPLETE,
            f"Conversation {conversation.id} {outcome.status}: {outcome.reason}",
            conversation_id=str(conversation.id),
            status=outcome.status,
            cache=self.cache.get_stats(),
        )
        logger.info(f"Finished {conversation.id}: {outcome.status} ({outcome.reason})")
        return result

    def _ensure_features(self, conversation: ConversationRecord) -> ConversationRecord:
        if conversation.has_features:
            return conversation
        features = self.feature_extractor.extract_for_conversation(conversation)
        updated = self.store.save_features(conversation.id, features)
        self.events.emit(
            EventType.FEATURES_EXTRACTED,
            f"Extracted features for '{conversation.title}'",
            conversation_id=str(conversation.id),
            features=features.to_dict(),
        )
        return updated

    @staticmethod
    def _decision_reason(decision: Optional[ClusterDecision], settled: ClusterResult) -> str:
        if decision is not None:
            return f"{decision.reason}. {settled.reason}"
        return f"Included in a new cluster as a similar partner. {settled.reason}"

    @staticmethod
    def _pending_reason(
        candidate: ConversationRecord,
        arrival: ConversationRecord,
        decision: Optional[ClusterDecision],
    ) -> str:
        if decision is None:
            return BACKLOG_REMARK_REASON
        if decision.reason == PENDING_REASON and candidate.id != arrival.id:
            return BACKLOG_REMARK_REASON
        return decision.reason

    def _settle_cluster(self, cluster: WorkingCluster, topic: str) -> ClusterResult:
        """Decide and persist the article outcome for one changed cluster."""
        decision = self.lifecycle.decide(
            topic, cluster.members, cluster.features, standalone=cluster.standalone
        )
        result = ClusterResult(
            member_ids=cluster.member_ids,
            added_ids=list(cluster.added_ids),
            is_new=cluster.is_new,
            action=decision.action,
            reason=decision.reason,
            cluster_id=cluster.id,
            article_id=cluster.article.id if cluster.article else None,
        )

        try:
            if decision.action == ArticleAction.INSUFFICIENT_CONTENT:
                if cluster.is_new:
                    return result
                with self.store.transaction("add cluster members"):
                    self._persist_membership(cluster, topic, article_id=None)
                self.events.emit(
                    EventType.ARTICLE_SKIPPED,
                    decision.reason,
                    cluster_id=str(cluster.id),
                )
            elif decision.action == ArticleAction.NOOP:
                article_id = decision.target.article.id if decision.target else None
                with self.store.transaction("record represented cluster"):
                    result.cluster_id = self._persist_membership(cluster, topic, article_id)
                result.article_id = article_id
                self.events.emit(
                    EventType.ARTICLE_SKIPPED,
                    decision.reason,
                    cluster_id=str(result.cluster_id),
                    article_id=article_id,
                )
            elif decision.action == ArticleAction.UPDATE:
                self._apply_update(cluster, topic, decision, result)
            else:
                self._apply_create(cluster, topic, decision, result)
        except BackroomError as e:
            logger.error(f"Failed to settle cluster '{cluster.name}': {e}")
            self.events.emit(
                EventType.ERROR,
                f"Failed to settle cluster '{cluster.name}': {e}",
                member_ids=[str(m) for m in cluster.member_ids],
            )
            result.error = f"Article processing failed: {e}"
            result.cluster_id = cluster.id
            return result

        result.persisted = True
        if cluster.is_new and result.cluster_id is not None:
            cluster.id = result.cluster_id
            self.events.emit(
                EventType.NEW_CLUSTER_CREATED,
                f"Created cluster '{cluster.name}'",
                cluster_id=str(result.cluster_id),
                article_id=result.article_id,
                member_ids=[str(m) for m in cluster.member_ids],
            )
        return result

    def _apply_update(
        self,
        cluster: WorkingCluster,
        topic: str,
        decision: ArticleDecision,
        result: ClusterResult,
    ) -> None:
        # All drafts exist before the first write
        drafts = []
        for target in decision.targets:
            article = target.article
            new_features = self.synthesizer.features_new_to(article, cluster.features)
            generated = self.synthesizer.synthesize_updated_article(
                article, cluster.members, new_features
            )
            drafts.append((article, generated, self._record_on_ledger(generated)))

        versions: Dict[int, int] = {}
        with self.store.transaction("update articles"):
            for article, generated, tx_hash in drafts:
                version = self.store.create_article_version(
                    article.id,
                    body=generated.content,
                    title=generated.title,
                    source_ids=cluster.member_ids,
                    updated_by=self.updated_by,
                    update_reason=decision.reason,
                    ledger_tx_hash=tx_hash,
                )
                versions[article.id] = version.version
            lead = decision.target.article
            result.cluster_id = self._persist_membership(cluster, topic, lead.id)

        result.article_id = lead.id
        result.article_version = versions[lead.id]
        result.article_versions = versions
        for article, generated, _ in drafts:
            self.events.emit(
                EventType.ARTICLE_UPDATED,
                f"New version of article created: {generated.title}",
                article_id=article.id,
                version=versions[article.id],
                cluster_id=str(result.cluster_id),
            )

    def _apply_create(
        self,
        cluster: WorkingCluster,
        topic: str,
        decision: ArticleDecision,
        result: ClusterResult,
    ) -> None:
        generated = self.synthesizer.synthesize_article(cluster.members, cluster.features)
        tx_hash = self._record_on_ledger(generated)

        with self.store.transaction("create article"):
            article_id = self.store.create_article(
                body=generated.content,
                title=generated.title,
                topic=topic,
                source_ids=cluster.member_ids,
                relations=[edge.to_relation() for edge in [*decision.related, *decision.failed]],
                updated_by=self.updated_by,
                update_reason=decision.reason,
                ledger_tx_hash=tx_hash,
            )
            result.cluster_id = self._persist_membership(cluster, topic, article_id)

        result.article_id = article_id
        result.article_version = 1
        self.events.emit(
            EventType.ARTICLE_CREATED,
            f"New article created: {generated.title}",
            article_id=article_id,
            action=decision.action.value,
            related_article_ids=[related.article.id for related in decision.related],
        )

    def _persist_membership(
        self, cluster: WorkingCluster, topic: str, article_id: Optional[int]
    ) -> uuid.UUID:
        """Write cluster membership and clear absorbed backlog entries."""
        if cluster.is_new:
            cluster_id = self.store.create_cluster(
                topic=topic,
                member_ids=cluster.member_ids,
                name=cluster.name,
                features=cluster.features,
                article_id=article_id,
            )
        else:
            cluster_id = cluster.id
            for added_id in cluster.added_ids:
                self.store.add_cluster_member(cluster_id, added_id, cluster.features)
            if article_id is not None and cluster.article is None:
                self.store.link_cluster_article(cluster_id, article_id)

        for added_id in cluster.added_ids:
            self.store.remove_unclusterable(added_id)
        return cluster_id

    def _record_on_ledger(self, generated: GeneratedArticle) -> Optional[str]:
        if self.ledger_recorder is None:
            return None
        try:
            return self.ledger_recorder(generated.title, generated.content)
        except Exception as e:
            # Ledger submission is best effort; the article is stored without a hash
            logger.error(f"Ledger recording failed for '{generated.title}': {e}")
            self.events.emit(EventType.ERROR, f"Ledger recording failed: {e}")
            return None
