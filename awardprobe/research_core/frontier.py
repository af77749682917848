from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from loguru import logger

from awardprobe.research_core.models.interfaces import Topic, TopicQuestion
from awardprobe.tools.web_utils import collapse_whitespace

MIN_PRIORITY = 1
MAX_PRIORITY = 5


def normalize_query(query: str) -> str:
    """Topic key: whitespace-collapsed, case preserved."""
    return collapse_whitespace(query)


def _clamp_priority(priority: Any) -> int:
    try:
        value = int(priority)
    except (TypeError, ValueError):
        value = MIN_PRIORITY
    return max(MIN_PRIORITY, min(value, MAX_PRIORITY))


class TopicFrontier:
    """Bounded, de-duplicated set of investigation queries for one run."""

    def __init__(self, max_topics: int):
        self.max_topics = max(int(max_topics), 0)
        self._topics: dict[str, Topic] = {}

    def __len__(self) -> int:
        return len(self._topics)

    def __contains__(self, query: object) -> bool:
        return isinstance(query, str) and normalize_query(query) in self._topics

    @property
    def is_full(self) -> bool:
        return len(self._topics) >= self.max_topics

    def get(self, query: str) -> Topic | None:
        return self._topics.get(normalize_query(query))

    def topics(self) -> list[Topic]:
        return list(self._topics.values())

    def add_topic(self, query: str, priority: int = MAX_PRIORITY) -> bool:
        key = normalize_query(query)
        if not key or key in self._topics or self.is_full:
            return False
        self._topics[key] = Topic(query=key, priority=_clamp_priority(priority))
        logger.debug(f"Added topic [P{self._topics[key].priority}] {key}")
        return True

    def add_questions(self, questions: Iterable[TopicQuestion | dict[str, Any]]) -> int:
        added = 0
        for item in questions:
            if self.is_full:
                break
            if isinstance(item, TopicQuestion):
                question, priority = item.question, item.priority
            else:
                question, priority = str(item.get("question", "")), item.get("priority", MIN_PRIORITY)
            if self.add_topic(question, priority):
                added += 1
        return added

    def unexplored_topics(self) -> list[Topic]:
        """Snapshot of unexplored topics, highest priority first."""
        pending = [topic for topic in self._topics.values() if not topic.explored]
        # sorted() is stable, so equal priorities keep insertion order.
        return sorted(pending, key=lambda topic: -topic.priority)

    def mark_explored(self, query: str) -> None:
        topic = self._topics.get(normalize_query(query))
        if topic is not None:
            topic.explored = True

    def all_explored(self) -> bool:
        return all(topic.explored for topic in self._topics.values())
