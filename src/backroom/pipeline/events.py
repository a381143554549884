"""
Progress events emitted while processing a conversation.

Consumers (for example an SSE endpoint) subscribe with a callback; the core
never depends on how events are delivered.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    """Kinds of progress events."""

    CLUSTER_PROCESSING_START = "CLUSTER_PROCESSING_START"
    FEATURES_EXTRACTED = "FEATURES_EXTRACTED"
    CACHE_HIT = "CACHE_HIT"
    SIMILARITY_SCORED = "SIMILARITY_SCORED"
    SIMILARITY_ERROR = "SIMILARITY_ERROR"
    CLUSTER_JOINED = "CLUSTER_JOINED"
    NEW_CLUSTER_CREATED = "NEW_CLUSTER_CREATED"
    UNCLUSTERABLE_MARKED = "UNCLUSTERABLE_MARKED"
    ARTICLE_CREATED = "ARTICLE_CREATED"
    ARTICLE_UPDATED = "ARTICLE_UPDATED"
    ARTICLE_SKIPPED = "ARTICLE_SKIPPED"
    ERROR = "ERROR"
    COMPLETE = "COMPLETE"


@dataclass
class ProgressEvent:
    """A single progress update."""

    type: EventType
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventCallback = Callable[[ProgressEvent], None]


class EventEmitter:
    """Forwards progress events to an optional callback."""

    def __init__(self, callback: Optional[EventCallback] = None):
        self.callback = callback

    def emit(self, event_type: EventType, message: str, **data: Any) -> ProgressEvent:
        event = ProgressEvent(type=event_type, message=message, data=data)
        logger.debug(f"{event_type.value}: {message}")
        if self.callback is not None:
            try:
                self.callback(event)
            except Exception as e:
                # A broken subscriber must not abort processing
                logger.warning(f"Progress callback failed for {event_type.value}: {e}")
        return event
