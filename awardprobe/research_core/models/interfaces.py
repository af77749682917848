from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class Topic:
    query: str
    priority: int = 5
    discovered_urls: set[str] = field(default_factory=set)
    explored: bool = False


@dataclass(slots=True)
class TopicQuestion:
    question: str
    priority: int


@dataclass(slots=True)
class Page:
    url: str
    title: str
    content: str
    relevance_score: float
