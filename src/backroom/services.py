"""
Service wiring.

Builds a ready-to-use BackroomProcessor from settings and a database
session. Callers that need to swap a collaborator (tests, alternative
providers) pass it in explicitly.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from backroom.analysis.cache import SimilarityCache
from backroom.analysis.clustering import ClusteringEngine
from backroom.analysis.features import FeatureExtractor
from backroom.analysis.lifecycle import ArticleLifecycleManager
from backroom.analysis.similarity import EnrichmentOracle, SimilarityOracle
from backroom.analysis.synthesis import ArticleSynthesizer
from backroom.config import Settings, settings
from backroom.db.store import BackroomStore
from backroom.llm import LLMProvider, create_provider
from backroom.llm.llm_logger import LLMLogger
from backroom.pipeline.events import EventCallback, EventEmitter
from backroom.pipeline.locks import TopicLockRegistry
from backroom.pipeline.processor import BackroomProcessor, LedgerRecorder

logger = logging.getLogger(__name__)

# Shared across processors so concurrent passes on one topic serialize
TOPIC_LOCKS = TopicLockRegistry()


def build_provider(config: Optional[Settings] = None) -> LLMProvider:
    """Create the configured LLM provider with the oracle timeout applied."""
    config = config or settings
    return create_provider(
        provider_type=config.llm_provider,
        api_key=config.llm_api_key or "",
        model=config.llm_model,
        timeout=config.oracle_timeout_seconds,
    )


def build_processor(
    session: Session,
    config: Optional[Settings] = None,
    provider: Optional[LLMProvider] = None,
    callback: Optional[EventCallback] = None,
    locks: Optional[TopicLockRegistry] = None,
    ledger_recorder: Optional[LedgerRecorder] = None,
) -> BackroomProcessor:
    """
    Wire a BackroomProcessor for one session.

    Args:
        session: Database session the store writes through
        config: Settings to use (defaults to the process settings)
        provider: LLM provider (built from settings when omitted)
        callback: Optional progress event callback
        locks: Topic lock registry (defaults to the process-wide one)
        ledger_recorder: Optional ledger hook returning a transaction hash

    Returns:
        Configured BackroomProcessor
    """
    config = config or settings
    provider = provider or build_provider(config)
    llm_logger = LLMLogger(config)
    events = EventEmitter(callback)

    store = BackroomStore(session)
    cache = SimilarityCache(
        store, invalidate_on_reextract=config.invalidate_similarity_on_reextract
    )
    feature_extractor = FeatureExtractor(
        provider,
        cap=config.feature_cap,
        max_tokens=config.feature_max_tokens,
        llm_logger=llm_logger,
    )
    engine = ClusteringEngine(
        cache,
        SimilarityOracle(
            provider,
            max_attempts=config.similarity_max_attempts,
            max_tokens=config.similarity_max_tokens,
            llm_logger=llm_logger,
        ),
        join_threshold=config.join_threshold,
        new_cluster_threshold=config.new_cluster_threshold,
        max_workers=config.comparison_concurrency,
        events=events,
    )
    lifecycle = ArticleLifecycleManager(
        store,
        EnrichmentOracle(
            provider,
            fallback_score=config.enrichment_fallback_score,
            max_tokens=config.similarity_max_tokens,
            llm_logger=llm_logger,
        ),
        max_workers=config.comparison_concurrency,
    )
    synthesizer = ArticleSynthesizer(
        provider,
        feature_extractor,
        max_tokens=config.synthesis_max_tokens,
        llm_logger=llm_logger,
    )

    logger.debug(
        f"Built processor with {provider.provider_name}/{provider.model_name}, "
        f"join>={config.join_threshold}, new>={config.new_cluster_threshold}"
    )
    return BackroomProcessor(
        store=store,
        feature_extractor=feature_extractor,
        cache=cache,
        engine=engine,
        lifecycle=lifecycle,
        synthesizer=synthesizer,
        locks=locks or TOPIC_LOCKS,
        events=events,
        ledger_recorder=ledger_recorder,
    )
