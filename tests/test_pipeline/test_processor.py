"""End-to-end tests for the backroom processor against a real store."""

import uuid
from unittest.mock import Mock

import pytest

from backroom.analysis.cache import SimilarityCache
from backroom.analysis.clustering import PENDING_REASON, ClusteringEngine
from backroom.analysis.lifecycle import ArticleAction, ArticleLifecycleManager
from backroom.analysis.similarity import EnrichmentScore
from backroom.analysis.synthesis import GeneratedArticle
from backroom.exceptions import ConversationNotFoundError, SynthesisError
from backroom.models.records import RelationType
from backroom.pipeline.events import EventEmitter, EventType
from backroom.pipeline.processor import (
    BACKLOG_REMARK_REASON,
    BackroomProcessor,
    ConversationStatus,
)


@pytest.fixture
def rich(feature_factory):
    return feature_factory(
        terms=["HBM"], entities=["Nvidia", "TSMC"], claims=["c1", "c2", "c3"]
    )


@pytest.fixture
def thin(feature_factory):
    return feature_factory(terms=["HBM"], entities=["Nvidia"], claims=["c1"])


@pytest.fixture
def received():
    return []


@pytest.fixture
def extractor(feature_factory):
    extractor = Mock()
    extractor.extract_for_conversation.return_value = feature_factory(
        terms=["HBM"], entities=["Nvidia"], claims=["c1"]
    )
    return extractor


@pytest.fixture
def enrichment():
    oracle = Mock()
    oracle.score_enrichment.return_value = EnrichmentScore(score=0.8)
    return oracle


@pytest.fixture
def synthesizer(feature_factory):
    synthesizer = Mock()
    synthesizer.synthesize_article.return_value = GeneratedArticle(
        title="The Chip Crunch", content="## Lede\nSupply is tight."
    )
    synthesizer.synthesize_updated_article.return_value = GeneratedArticle(
        title="The Chip Crunch, Revisited", content="## Lede\nStill tight."
    )
    synthesizer.features_new_to.return_value = feature_factory(claims=["new claim"])
    return synthesizer


@pytest.fixture
def build(store, extractor, pair_oracle, enrichment, synthesizer, received):
    """Build a processor over the real store with scripted oracles."""

    def _build(ledger_recorder=None, invalidate=False):
        events = EventEmitter(received.append)
        cache = SimilarityCache(store, invalidate_on_reextract=invalidate)
        return BackroomProcessor(
            store=store,
            feature_extractor=extractor,
            cache=cache,
            engine=ClusteringEngine(cache, pair_oracle, events=events),
            lifecycle=ArticleLifecycleManager(store, enrichment),
            synthesizer=synthesizer,
            events=events,
            ledger_recorder=ledger_recorder,
        )

    return _build


@pytest.fixture
def processor(build):
    return build()


def event_types(received):
    return [event.type for event in received]


class TestUnclusterable:
    """Conversations that find no home."""

    def test_lone_conversation_is_marked_pending(
        self, processor, store, conversation_factory, thin
    ):
        x = conversation_factory(title="X", features=thin)

        result = processor.process_conversation(x.id)

        assert result.outcome.status == ConversationStatus.UNCLUSTERABLE
        assert result.outcome.reason == PENDING_REASON
        assert store.get_unclusterable_entry(x.id).reason == PENDING_REASON
        assert store.get_clusters_by_topic("ai") == []

    def test_untouched_backlog_gets_remark(
        self, processor, store, conversation_factory, thin, received
    ):
        old = conversation_factory(title="Old", features=thin)
        store.mark_unclusterable(old.id, "ai", PENDING_REASON)
        x = conversation_factory(title="X", features=thin)

        result = processor.process_conversation(x.id)

        assert result.outcomes[old.id].reason == BACKLOG_REMARK_REASON
        assert store.get_unclusterable_entry(old.id).reason == BACKLOG_REMARK_REASON
        assert result.outcome.reason == PENDING_REASON
        assert event_types(received).count(EventType.UNCLUSTERABLE_MARKED) == 2

    def test_events_bracket_the_run(self, processor, conversation_factory, thin, received):
        x = conversation_factory(title="X", features=thin)

        processor.process_conversation(x.id)

        assert received[0].type == EventType.CLUSTER_PROCESSING_START
        assert received[-1].type == EventType.COMPLETE
        assert received[-1].data["status"] == ConversationStatus.UNCLUSTERABLE
        assert set(received[-1].data["cache"]) == {"hits", "misses", "hit_rate_percent"}

    def test_unknown_conversation_raises(self, processor):
        with pytest.raises(ConversationNotFoundError):
            processor.process_conversation(uuid.uuid4())


class TestNewCluster:
    """A new cluster formed with a backlog partner."""

    @pytest.fixture
    def pair(self, store, conversation_factory, pair_oracle, rich):
        y = conversation_factory(title="Y", features=rich)
        store.mark_unclusterable(y.id, "ai", PENDING_REASON)
        x = conversation_factory(title="X", features=rich)
        pair_oracle.set("X", "Y", 0.75)
        return x, y

    def test_forms_cluster_and_creates_article(self, processor, store, pair, received):
        x, y = pair

        result = processor.process_conversation(x.id)

        clusters = store.get_clusters_by_topic("ai")
        assert len(clusters) == 1
        cluster = clusters[0]
        assert cluster.member_ids == [x.id, y.id]
        assert cluster.name == "Nvidia - TSMC"
        assert cluster.features.claims == ["c1", "c2", "c3"]

        article = store.get_article(cluster.article_id)
        assert article.title == "The Chip Crunch"
        assert set(article.source_ids) == {x.id, y.id}
        versions = store.get_article_versions(article.id)
        assert versions[0].update_reason == "Creating new article from unique backroom sources"

        assert store.get_unclusterable_entry(y.id) is None
        assert store.get_unclusterable_entry(x.id) is None
        assert result.outcome.status == ConversationStatus.CLUSTERED
        assert result.outcome.cluster_id == cluster.id
        assert result.outcome.article_id == article.id
        assert result.outcomes[y.id].reason.startswith("Included in a new cluster")
        assert result.clusters[0].action == ArticleAction.CREATE
        assert result.clusters[0].persisted

        types = event_types(received)
        assert EventType.ARTICLE_CREATED in types
        assert EventType.NEW_CLUSTER_CREATED in types

    def test_score_is_cached(self, processor, store, pair):
        x, y = pair

        processor.process_conversation(x.id)

        assert store.get_cached_similarity(y.id, x.id) == 0.75

    def test_ledger_hash_is_stored(self, build, store, pair):
        x, _ = pair
        ledger = Mock(return_value="0xfeed")

        result = build(ledger_recorder=ledger).process_conversation(x.id)

        ledger.assert_called_once_with("The Chip Crunch", "## Lede\nSupply is tight.")
        assert store.get_article(result.outcome.article_id).ledger_tx_hash == "0xfeed"

    def test_ledger_failure_does_not_block_article(self, build, store, pair, received):
        x, _ = pair
        ledger = Mock(side_effect=RuntimeError("node offline"))

        result = build(ledger_recorder=ledger).process_conversation(x.id)

        assert result.outcome.status == ConversationStatus.CLUSTERED
        assert store.get_article(result.outcome.article_id).ledger_tx_hash is None
        assert any(
            e.type == EventType.ERROR and "node offline" in e.message for e in received
        )

    def test_synthesis_failure_persists_nothing(
        self, processor, store, pair, synthesizer, received
    ):
        x, y = pair
        synthesizer.synthesize_article.side_effect = SynthesisError("model refused")

        result = processor.process_conversation(x.id)

        assert store.get_clusters_by_topic("ai") == []
        assert store.get_articles_by_topic("ai") == []
        for conversation_id in (x.id, y.id):
            outcome = result.outcomes[conversation_id]
            assert outcome.status == ConversationStatus.UNCLUSTERABLE
            assert "model refused" in outcome.reason
            assert store.get_unclusterable_entry(conversation_id).reason == outcome.reason
        assert EventType.ERROR in event_types(received)
        assert not result.clusters[0].persisted

    def test_thin_pair_stays_in_backlog(
        self, processor, store, conversation_factory, pair_oracle, thin
    ):
        y = conversation_factory(title="Y", features=thin)
        store.mark_unclusterable(y.id, "ai", PENDING_REASON)
        x = conversation_factory(title="X", features=thin)
        pair_oracle.set("X", "Y", 0.9)

        result = processor.process_conversation(x.id)

        assert store.get_clusters_by_topic("ai") == []
        assert result.clusters[0].action == ArticleAction.INSUFFICIENT_CONTENT
        assert result.outcome.status == ConversationStatus.UNCLUSTERABLE
        assert result.outcome.reason.startswith("Insufficient content for article creation")
        assert store.get_unclusterable_entry(y.id) is not None

    def test_reference_edge_written(
        self, processor, store, pair, conversation_factory, enrichment
    ):
        x, _ = pair
        other = conversation_factory(title="Other")
        related_id = store.create_article("Older", "Older story", "ai", [other.id])
        enrichment.score_enrichment.return_value = EnrichmentScore(score=0.5)

        result = processor.process_conversation(x.id)

        relations = store.get_article_relations(result.outcome.article_id)
        assert [(r.related_article_id, r.relation_type) for r in relations] == [
            (related_id, RelationType.REFERENCE)
        ]
        assert result.clusters[0].action == ArticleAction.CREATE_WITH_REFERENCE


class TestExistingCluster:
    """Arrivals joining a stored cluster."""

    @pytest.fixture
    def seeded(self, store, conversation_factory, rich):
        a = conversation_factory(title="A", features=rich)
        b = conversation_factory(title="B", features=rich)
        article_id = store.create_article("Chips", "The Chip Crunch", "ai", [a.id, b.id])
        cluster_id = store.create_cluster(
            "ai", [a.id, b.id], "Nvidia - TSMC", rich, article_id=article_id
        )
        return a, b, article_id, cluster_id

    def test_join_updates_cluster_article(
        self,
        processor,
        store,
        seeded,
        conversation_factory,
        pair_oracle,
        rich,
        synthesizer,
        received,
    ):
        a, b, article_id, cluster_id = seeded
        z = conversation_factory(title="Z", features=rich)
        pair_oracle.set("Z", "A", 0.65)
        pair_oracle.set("Z", "B", 0.65)

        result = processor.process_conversation(z.id)

        assert result.outcome.status == ConversationStatus.CLUSTERED
        assert result.outcome.cluster_id == cluster_id
        assert result.outcome.reason.startswith("Joined cluster 'Nvidia - TSMC'")
        assert store.get_cluster(cluster_id).member_ids == [a.id, b.id, z.id]

        article = store.get_article(article_id)
        assert article.current_version == 2
        assert article.title == "The Chip Crunch, Revisited"
        assert z.id in article.source_ids
        assert len(store.get_articles_by_topic("ai")) == 1
        assert result.clusters[0].article_version == 2
        synthesizer.features_new_to.assert_called_once()
        assert EventType.ARTICLE_UPDATED in event_types(received)
        assert EventType.NEW_CLUSTER_CREATED not in event_types(received)

    def test_join_updates_every_overlapping_article(
        self,
        processor,
        store,
        conversation_factory,
        pair_oracle,
        rich,
        synthesizer,
        received,
    ):
        a = conversation_factory(title="A", features=rich)
        b = conversation_factory(title="B", features=rich)
        first = store.create_article("Chips", "The Chip Crunch", "ai", [a.id])
        second = store.create_article("Fabs", "Fab Capacity", "ai", [b.id])
        cluster_id = store.create_cluster(
            "ai", [a.id, b.id], "Nvidia - TSMC", rich, article_id=first
        )
        z = conversation_factory(title="Z", features=rich)
        pair_oracle.set("Z", "A", 0.65)
        pair_oracle.set("Z", "B", 0.65)

        result = processor.process_conversation(z.id)

        settled = result.clusters[0]
        assert settled.action == ArticleAction.UPDATE
        assert settled.article_versions == {first: 2, second: 2}
        for article_id in (first, second):
            article = store.get_article(article_id)
            assert article.current_version == 2
            assert z.id in article.source_ids
        assert store.get_cluster(cluster_id).article_id == first
        assert synthesizer.synthesize_updated_article.call_count == 2
        assert event_types(received).count(EventType.ARTICLE_UPDATED) == 2

    def test_join_below_threshold_stays_pending(
        self, processor, store, seeded, conversation_factory, pair_oracle, rich
    ):
        _, _, _, cluster_id = seeded
        z = conversation_factory(title="Z", features=rich)
        pair_oracle.set("Z", "A", 0.59)
        pair_oracle.set("Z", "B", 0.59)

        result = processor.process_conversation(z.id)

        assert result.outcome.status == ConversationStatus.UNCLUSTERABLE
        assert len(store.get_cluster(cluster_id).member_ids) == 2

    def test_already_represented_records_membership(
        self, processor, store, conversation_factory, pair_oracle, rich, received
    ):
        a = conversation_factory(title="A", features=rich)
        b = conversation_factory(title="B", features=rich)
        z = conversation_factory(title="Z", features=rich)
        article_id = store.create_article("Chips", "Body", "ai", [a.id, b.id, z.id])
        cluster_id = store.create_cluster(
            "ai", [a.id, b.id], "Nvidia - TSMC", rich, article_id=article_id
        )
        pair_oracle.set("Z", "A", 0.9)
        pair_oracle.set("Z", "B", 0.9)

        result = processor.process_conversation(z.id)

        assert result.clusters[0].action == ArticleAction.NOOP
        assert result.outcome.article_id == article_id
        assert store.get_cluster(cluster_id).member_ids == [a.id, b.id, z.id]
        assert store.count_article_versions(article_id) == 1
        assert EventType.ARTICLE_SKIPPED in event_types(received)

    def test_thin_join_still_records_membership(
        self, processor, store, conversation_factory, pair_oracle, thin, synthesizer
    ):
        a = conversation_factory(title="A", features=thin)
        b = conversation_factory(title="B", features=thin)
        cluster_id = store.create_cluster("ai", [a.id, b.id], "Nvidia", thin)
        z = conversation_factory(title="Z", features=thin)
        pair_oracle.set("Z", "A", 0.7)
        pair_oracle.set("Z", "B", 0.7)

        result = processor.process_conversation(z.id)

        assert result.outcome.status == ConversationStatus.CLUSTERED
        assert store.get_cluster(cluster_id).member_ids == [a.id, b.id, z.id]
        assert store.get_cluster(cluster_id).article_id is None
        synthesizer.synthesize_article.assert_not_called()

    def test_member_arrival_is_already_clustered(self, processor, store, seeded, pair_oracle):
        a, _, _, cluster_id = seeded
        store.mark_unclusterable(a.id, "ai", PENDING_REASON)

        result = processor.process_conversation(a.id)

        assert result.outcome.status == ConversationStatus.ALREADY_CLUSTERED
        assert result.outcome.cluster_id == cluster_id
        assert store.get_unclusterable_entry(a.id) is None
        assert pair_oracle.calls == []


class TestFeatures:
    """Feature extraction around a pass."""

    def test_missing_features_are_extracted(
        self, processor, store, conversation_factory, extractor, received
    ):
        x = conversation_factory(title="X")

        processor.process_conversation(x.id)

        extractor.extract_for_conversation.assert_called_once()
        assert store.get_conversation(x.id).features.entities == ["Nvidia"]
        assert EventType.FEATURES_EXTRACTED in event_types(received)

    def test_existing_features_are_reused(self, processor, conversation_factory, extractor, thin):
        x = conversation_factory(title="X", features=thin)

        processor.process_conversation(x.id)

        extractor.extract_for_conversation.assert_not_called()

    @pytest.mark.parametrize("invalidate,expected", [(True, None), (False, 0.8)])
    def test_refresh_features_honors_invalidation_flag(
        self, build, store, conversation_factory, thin, invalidate, expected
    ):
        x = conversation_factory(title="X", features=thin)
        y = conversation_factory(title="Y", features=thin)
        store.put_cached_similarity(x.id, y.id, 0.8)

        updated = build(invalidate=invalidate).refresh_features(x.id)

        assert updated.features.entities == ["Nvidia"]
        assert store.get_cached_similarity(x.id, y.id) == expected
