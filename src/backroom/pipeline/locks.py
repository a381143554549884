"""
Per-topic mutual exclusion for clustering passes.

Two passes over the same topic could both pull one backlog conversation
into different new clusters, so a process runs at most one pass per topic
at a time. Share a single registry across every processor in the process.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Generator

logger = logging.getLogger(__name__)


class TopicLockRegistry:
    """Hands out one re-entrant lock per topic."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def lock_for(self, topic: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(topic)
            if lock is None:
                lock = threading.RLock()
                self._locks[topic] = lock
            return lock

    @contextmanager
    def hold(self, topic: str) -> Generator[None, None, None]:
        """Hold the topic's lock for the duration of the block."""
        lock = self.lock_for(topic)
        if not lock.acquire(blocking=False):
            logger.info(f"Waiting for running pass on topic '{topic}'")
            lock.acquire()
        try:
            yield
        finally:
            lock.release()
