"""Tests for the BackroomStore persistence facade."""

import uuid
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from backroom.exceptions import (
    ArticleNotFoundError,
    ClusterNotFoundError,
    ConversationNotFoundError,
    PersistenceError,
)
from backroom.models.records import ArticleRelationRecord, RelationType


class TestConversations:
    """Tests for conversation reads and feature writes."""

    def test_round_trips_conversation(self, store, conversation_factory, feature_factory):
        features = feature_factory(terms=["Qubit"], entities=["IBM"], claims=["It scales"])
        created = conversation_factory(title="Quantum", features=features, turns=3)

        loaded = store.require_conversation(created.id)

        assert loaded.title == "Quantum"
        assert loaded.features == features
        assert [turn.speaker for turn in loaded.turns] == ["Alice", "Bob", "Alice"]
        assert loaded.participants == ["Alice", "Bob"]

    def test_missing_conversation(self, store):
        missing = uuid.uuid4()
        assert store.get_conversation(missing) is None
        with pytest.raises(ConversationNotFoundError, match=str(missing)):
            store.require_conversation(missing)

    def test_features_absent_until_saved(self, store, conversation_factory, feature_factory):
        created = conversation_factory(features=None)
        assert not store.require_conversation(created.id).has_features

        updated = store.save_features(created.id, feature_factory(entities=["OpenAI"]))

        assert updated.has_features
        assert store.require_conversation(created.id).features.entities == ["OpenAI"]

    def test_save_features_missing_conversation(self, store, feature_factory):
        with pytest.raises(ConversationNotFoundError):
            store.save_features(uuid.uuid4(), feature_factory())

    def test_conversations_by_topic_in_creation_order(self, store, conversation_factory):
        first = conversation_factory(title="First", topic="ai")
        conversation_factory(title="Other", topic="crypto")
        second = conversation_factory(title="Second", topic="ai")

        assert [c.id for c in store.get_conversations_by_topic("ai")] == [first.id, second.id]


class TestSimilarityCache:
    """Tests for cached pair scores."""

    def test_symmetric_lookup(self, store, conversation_factory):
        a, b = conversation_factory(), conversation_factory()

        store.put_cached_similarity(a.id, b.id, 0.8)

        assert store.get_cached_similarity(a.id, b.id) == 0.8
        assert store.get_cached_similarity(b.id, a.id) == 0.8

    def test_absent_pair_is_none(self, store, conversation_factory):
        a, b = conversation_factory(), conversation_factory()
        assert store.get_cached_similarity(a.id, b.id) is None

    def test_upsert_keeps_single_row_with_latest_value(self, store, conversation_factory):
        a, b = conversation_factory(), conversation_factory()

        store.put_cached_similarity(a.id, b.id, 0.3)
        store.put_cached_similarity(b.id, a.id, 0.9)

        assert store.similarities.count() == 1
        assert store.get_cached_similarity(a.id, b.id) == 0.9

    def test_zero_is_a_real_score(self, store, conversation_factory):
        a, b = conversation_factory(), conversation_factory()
        store.put_cached_similarity(a.id, b.id, 0.0)
        assert store.get_cached_similarity(a.id, b.id) == 0.0

    def test_batch_scores(self, store, conversation_factory):
        a, b, c, d = (conversation_factory() for _ in range(4))
        store.put_cached_similarity(a.id, b.id, 0.5)
        store.put_cached_similarity(c.id, a.id, 0.7)

        scores = store.get_similarity_scores(a.id, [b.id, c.id, d.id])

        assert scores == {b.id: 0.5, c.id: 0.7}

    def test_invalidate_drops_every_pair(self, store, conversation_factory):
        a, b, c = (conversation_factory() for _ in range(3))
        store.put_cached_similarity(a.id, b.id, 0.5)
        store.put_cached_similarity(c.id, a.id, 0.7)
        store.put_cached_similarity(b.id, c.id, 0.2)

        assert store.invalidate_similarity(a.id) == 2
        assert store.get_cached_similarity(a.id, b.id) is None
        assert store.get_cached_similarity(b.id, c.id) == 0.2


class TestClusters:
    """Tests for cluster persistence."""

    def test_create_cluster_keeps_member_order(self, store, conversation_factory, feature_factory):
        a, b = conversation_factory(), conversation_factory()
        features = feature_factory(entities=["Nvidia"])

        cluster_id = store.create_cluster("ai", [b.id, a.id], "Nvidia", features)

        cluster = store.get_cluster(cluster_id)
        assert cluster.member_ids == [b.id, a.id]
        assert cluster.features == features
        assert cluster.name == "Nvidia"
        assert cluster.article is None

    def test_add_member_updates_features(self, store, conversation_factory, feature_factory):
        a, b = conversation_factory(), conversation_factory()
        cluster_id = store.create_cluster("ai", [a.id], "A", feature_factory(entities=["X"]))

        store.add_cluster_member(cluster_id, b.id, feature_factory(entities=["X", "Y"]))

        cluster = store.get_cluster(cluster_id)
        assert cluster.member_ids == [a.id, b.id]
        assert cluster.features.entities == ["X", "Y"]

    def test_add_member_to_missing_cluster(self, store, conversation_factory, feature_factory):
        a = conversation_factory()
        with pytest.raises(ClusterNotFoundError):
            store.add_cluster_member(uuid.uuid4(), a.id, feature_factory())

    def test_clusters_by_topic_in_creation_order(
        self, store, conversation_factory, feature_factory
    ):
        a, b, c = (conversation_factory() for _ in range(3))
        first = store.create_cluster("ai", [a.id], "Zeta", feature_factory())
        second = store.create_cluster("ai", [b.id], "Alpha", feature_factory())
        store.create_cluster("crypto", [c.id], "Other", feature_factory())

        assert [cl.id for cl in store.get_clusters_by_topic("ai")] == [first, second]

    def test_cluster_resolves_linked_article(self, store, conversation_factory, feature_factory):
        a = conversation_factory()
        article_id = store.create_article("Body", "Title", "ai", [a.id])
        cluster_id = store.create_cluster("ai", [a.id], "A", feature_factory())

        store.link_cluster_article(cluster_id, article_id)

        cluster = store.get_cluster_by_article_id(article_id)
        assert cluster.id == cluster_id
        assert cluster.article.title == "Title"
        assert cluster.article.source_ids == [a.id]


class TestUnclusterable:
    """Tests for the unclusterable backlog."""

    def test_mark_is_an_upsert(self, store, conversation_factory):
        a = conversation_factory()

        store.mark_unclusterable(a.id, "ai", "first reason")
        first = store.get_unclusterable_entry(a.id)
        store.mark_unclusterable(a.id, "ai", "second reason")
        second = store.get_unclusterable_entry(a.id)

        assert store.unclusterable.count() == 1
        assert second.reason == "second reason"
        assert second.marked_at >= first.marked_at

    def test_backlog_oldest_conversation_first(self, store, conversation_factory):
        old, new = conversation_factory(), conversation_factory()
        store.mark_unclusterable(new.id, "ai", "pending")
        store.mark_unclusterable(old.id, "ai", "pending")

        assert [c.id for c in store.get_unclusterable_by_topic("ai")] == [old.id, new.id]
        assert store.get_unclusterable_by_topic("crypto") == []

    def test_remove(self, store, conversation_factory):
        a = conversation_factory()
        store.mark_unclusterable(a.id, "ai", "pending")

        store.remove_unclusterable(a.id)
        store.remove_unclusterable(a.id)

        assert store.get_unclusterable_entry(a.id) is None


class TestArticles:
    """Tests for article creation, versioning and relations."""

    def test_create_article_writes_first_version(self, store, conversation_factory):
        a, b = conversation_factory(), conversation_factory()

        article_id = store.create_article(
            "Body", "Title", "ai", [a.id, b.id], updated_by="tester", ledger_tx_hash="tx1"
        )

        article = store.require_article(article_id)
        versions = store.get_article_versions(article_id)
        assert article.current_version == 1
        assert article.source_ids == [a.id, b.id]
        assert article.ledger_tx_hash == "tx1"
        assert [v.version for v in versions] == [1]
        assert versions[0].update_reason == "Initial version"

    def test_versions_are_monotonic(self, store, conversation_factory):
        a, b, c = (conversation_factory() for _ in range(3))
        article_id = store.create_article("v1", "Title", "ai", [a.id])

        for index, source in enumerate([b, c], start=2):
            version = store.create_article_version(
                article_id, f"v{index}", "Title", [a.id, source.id], update_reason="new sources"
            )
            assert version.version == index

        article = store.require_article(article_id)
        versions = store.get_article_versions(article_id)
        assert article.current_version == 3
        assert article.body == "v3"
        assert [v.version for v in versions] == [3, 2, 1]
        assert store.count_article_versions(article_id) == article.current_version
        assert article.source_ids == [a.id, b.id, c.id]

    def test_version_of_missing_article(self, store):
        with pytest.raises(ArticleNotFoundError):
            store.create_article_version(999, "body", "title", [])

    def test_child_article_extends_parent_lineage(self, store, conversation_factory):
        a, b = conversation_factory(), conversation_factory()
        parent_id = store.create_article("Parent", "Parent", "ai", [a.id])

        child_id = store.create_article("Child", "Child", "ai", [b.id], parent_article_id=parent_id)

        parent = store.require_article(parent_id)
        parent_versions = store.get_article_versions(parent_id)
        assert parent.current_version == 2
        assert parent_versions[0].child_article_id == child_id
        assert store.require_article(child_id).current_version == 1
        assert store.count_article_versions(child_id) == 1

    def test_child_of_missing_parent_rolls_back(self, store, conversation_factory):
        a = conversation_factory()

        with pytest.raises(ArticleNotFoundError):
            store.create_article("Child", "Child", "ai", [a.id], parent_article_id=404)

        assert store.get_articles_by_topic("ai") == []

    def test_relations_written_with_article(self, store, conversation_factory):
        a, b = conversation_factory(), conversation_factory()
        related_id = store.create_article("Old", "Old", "ai", [a.id])

        article_id = store.create_article(
            "New",
            "New",
            "ai",
            [b.id],
            relations=[
                ArticleRelationRecord(0, related_id, RelationType.REFERENCE, score=0.45),
            ],
        )
        store.add_article_relation(
            article_id, related_id, RelationType.ERROR, error="scoring failed"
        )

        relations = store.get_article_relations(article_id)
        assert [(r.related_article_id, r.relation_type) for r in relations] == [
            (related_id, RelationType.REFERENCE),
            (related_id, RelationType.ERROR),
        ]
        assert relations[0].score == 0.45
        assert relations[1].error == "scoring failed"

    def test_articles_by_source_ids(self, store, conversation_factory):
        a, b, c = (conversation_factory() for _ in range(3))
        first = store.create_article("One", "One", "ai", [a.id, b.id])
        second = store.create_article("Two", "Two", "ai", [c.id])

        found = store.get_articles_by_source_conversation_ids([b.id, c.id, a.id])

        assert [article.id for article in found] == [first, second]
        assert [c.id for c in store.get_source_conversations_for_article(first)] == [a.id, b.id]

    def test_source_conversations_for_missing_article(self, store):
        with pytest.raises(ArticleNotFoundError):
            store.get_source_conversations_for_article(12345)


class TestTransactions:
    """Tests for transactional boundaries."""

    def test_transaction_commits_together(self, store, conversation_factory, feature_factory):
        a = conversation_factory()

        with store.transaction("create article and cluster"):
            article_id = store.create_article("Body", "Title", "ai", [a.id])
            store.create_cluster("ai", [a.id], "A", feature_factory(), article_id=article_id)

        assert store.get_cluster_by_article_id(article_id) is not None

    def test_transaction_rolls_back_on_error(self, store, conversation_factory, feature_factory):
        a = conversation_factory()

        with pytest.raises(ClusterNotFoundError):
            with store.transaction("create article"):
                store.create_article("Body", "Title", "ai", [a.id])
                store.add_cluster_member(uuid.uuid4(), a.id, feature_factory())

        assert store.get_articles_by_topic("ai") == []

    def test_database_error_becomes_persistence_error(self, store, conversation_factory):
        a = conversation_factory()
        failure = IntegrityError("INSERT", {}, Exception("constraint"))

        with patch.object(store.articles, "add_sources", side_effect=failure):
            with pytest.raises(PersistenceError, match="create article"):
                store.create_article("Body", "Title", "ai", [a.id])

        assert store.get_articles_by_topic("ai") == []
        assert store.articles.count_versions(1) == 0

    def test_nested_transactions_join_outer(self, store, conversation_factory):
        a = conversation_factory()

        with pytest.raises(RuntimeError):
            with store.transaction("outer"):
                with store.transaction("inner"):
                    store.mark_unclusterable(a.id, "ai", "pending")
                raise RuntimeError("abort")

        assert store.get_unclusterable_entry(a.id) is None
