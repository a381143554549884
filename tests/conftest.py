"""
Pytest configuration and fixtures for Backroom Press tests.

Every test gets a fresh in-memory SQLite database, a store bound to it, and
factories for conversations with features.
"""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Callable, Dict, Generator, Iterable, Optional
from unittest.mock import Mock

import pytest
from sqlalchemy.orm import Session

from backroom.db.connection import create_db_engine, create_session_factory, init_db
from backroom.db.store import BackroomStore
from backroom.exceptions import RetryExhaustedError
from backroom.llm.base import LLMResponse
from backroom.models.records import ContentFeatures, ConversationRecord, Turn
from backroom.retry import Err, Ok, Result

BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def clear_database_url_env(monkeypatch):
    """Keep a developer's DATABASE_URL_OVERRIDE out of the tests."""
    monkeypatch.delenv("DATABASE_URL_OVERRIDE", raising=False)
    yield


@pytest.fixture(scope="function")
def test_engine():
    """Create a fresh in-memory SQLite engine with all tables."""
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a database session for a test."""
    session = create_session_factory(test_engine)()
    yield session
    session.close()


@pytest.fixture
def store(db_session: Session) -> BackroomStore:
    return BackroomStore(db_session)


def make_features(
    terms: Iterable[str] = (),
    entities: Iterable[str] = (),
    claims: Iterable[str] = (),
) -> ContentFeatures:
    return ContentFeatures(
        technical_terms=list(terms), entities=list(entities), claims=list(claims)
    )


def make_conversation(
    title: str = "Backroom",
    topic: str = "ai",
    features: Optional[ContentFeatures] = None,
    turns: int = 2,
    minutes: int = 0,
    participants: Iterable[str] = ("Alice", "Bob"),
) -> ConversationRecord:
    """Build an unsaved conversation record."""
    speakers = list(participants) or ["Alice"]
    return ConversationRecord(
        id=uuid.uuid4(),
        topic=topic,
        title=title,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        turns=[
            Turn(speaker=speakers[i % len(speakers)], message=f"{title} message {i}")
            for i in range(turns)
        ],
        question=f"What about {title}?",
        participants=list(participants),
        features=features,
    )


@pytest.fixture
def conversation_factory(store: BackroomStore) -> Callable[..., ConversationRecord]:
    """
    Create and persist conversations.

    Each call is one minute later than the previous, so creation order is
    deterministic.
    """
    counter = {"minutes": 0}

    def _create(**kwargs) -> ConversationRecord:
        kwargs.setdefault("minutes", counter["minutes"])
        counter["minutes"] += 1
        conversation = make_conversation(**kwargs)
        store.add_conversation(conversation)
        return conversation

    return _create


def make_llm_response(content: str, model: str = "test-model") -> LLMResponse:
    return LLMResponse(
        content=content,
        prompt_tokens=10,
        completion_tokens=5,
        total_tokens=15,
        finish_reason="stop",
        model=model,
        duration_ms=12.0,
    )


@pytest.fixture
def mock_provider() -> Mock:
    """LLM provider double; set ``complete.return_value`` or ``side_effect`` per test."""
    provider = Mock()
    provider.provider_name = "mock"
    provider.model_name = "mock-model"
    return provider


class ScriptedPairOracle:
    """
    Pair similarity double keyed by conversation titles.

    Unknown pairs score ``default``. Titles listed in ``failing`` always fail.
    """

    def __init__(
        self,
        scores: Optional[Dict[frozenset, float]] = None,
        default: float = 0.0,
        failing: Iterable[str] = (),
    ):
        self.scores = scores or {}
        self.default = default
        self.failing = set(failing)
        self.calls: list[frozenset] = []

    def set(self, a: str, b: str, score: float) -> None:
        self.scores[frozenset((a, b))] = score

    def score_pair(self, features_a, title_a, features_b, title_b, topic) -> Result[float]:
        key = frozenset((title_a, title_b))
        self.calls.append(key)
        if title_a in self.failing or title_b in self.failing:
            return Err(RetryExhaustedError(3, ValueError("no score")))
        return Ok(self.scores.get(key, self.default))


@pytest.fixture
def pair_oracle() -> ScriptedPairOracle:
    return ScriptedPairOracle()


@pytest.fixture
def feature_factory() -> Callable[..., ContentFeatures]:
    return make_features


@pytest.fixture
def record_factory() -> Callable[..., ConversationRecord]:
    """Build conversations without persisting them."""
    return make_conversation


@pytest.fixture
def response_factory() -> Callable[..., LLMResponse]:
    return make_llm_response
