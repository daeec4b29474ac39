"""
Context ranking: composite scoring followed by Maximal Marginal Relevance
selection under a token budget.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Set

from db.graph_store import KnowledgeGraph
from .models import MemoryFragment, utc_now
from .text import contains_phrase, estimate_tokens, jaccard_similarity

_TEMPORAL_HINT_PATTERN = re.compile(
    r"\b(today|heute|recently|recent|kürzlich|kuerzlich|just|gerade|latest|newest|"
    r"aktuell|current|currently|now|this week|diese woche|yesterday|gestern)\b",
    re.IGNORECASE,
)

DEFAULT_LONG_TERM_SOURCES = ("long-term", "MEMORY.md")
_QUERY_SPLIT_PATTERN = re.compile(r"\b(?:and|und|also|sowie)\b|,", re.IGNORECASE)


@dataclass
class RankOptions:
    relevance_weight: float = 0.40
    recency_weight: float = 0.25
    connections_weight: float = 0.20
    frequency_weight: float = 0.15
    diversity_penalty: float = 0.3
    priority_sources: Sequence[str] = field(default_factory=tuple)
    priority_boost: float = 1.5
    long_term_boost: float = 1.3
    # None: detect temporal language in the query.
    temporal_query: Optional[bool] = None


def has_temporal_hint(query: str) -> bool:
    return _TEMPORAL_HINT_PATTERN.search(query or "") is not None


def decompose_query(query: str) -> List[str]:
    """
    Split a compound question on conjunctions and commas
    ("Alice's role and Bob's deadline" -> two parts). Fragments of three
    characters or fewer are dropped; a query that does not split is
    returned whole.
    """
    parts = [part.strip() for part in _QUERY_SPLIT_PATTERN.split(query or "")]
    parts = [part for part in parts if len(part) > 3]
    return parts if len(parts) > 1 else [query]


class ContextRanker:
    def __init__(
        self,
        graph: Optional[KnowledgeGraph] = None,
        *,
        half_life_hours: float = 24.0,
        long_term_sources: Iterable[str] = DEFAULT_LONG_TERM_SOURCES,
        default_options: Optional[RankOptions] = None,
    ):
        self._graph = graph
        self._half_life_seconds = max(1.0, float(half_life_hours) * 3600.0)
        self._long_term_sources = set(long_term_sources)
        self._default_options = default_options or RankOptions()

    def recency(self, timestamp: datetime, now: datetime) -> float:
        age = max(0.0, (now - timestamp).total_seconds())
        return math.exp(-age * math.log(2) / self._half_life_seconds)

    def _query_entity_names(self, query: str) -> Set[str]:
        if self._graph is None or not query.strip():
            return set()
        matched = self._graph.entities_mentioned_in(query)
        if not matched:
            matched = self._graph.find_entities(query)[:5]
        names: Set[str] = set()
        for entity in matched:
            names.add(entity.name)
            for neighbor in self._graph.get_connected_entities(entity.id, 1):
                names.add(neighbor.name)
        return names

    def _connections(self, content: str, names: Set[str]) -> float:
        if not names:
            return 0.0
        hits = sum(1 for name in names if contains_phrase(content, name))
        return hits / len(names)

    def _frequency(self, content: str) -> float:
        if self._graph is None:
            return 0.0
        mentioned = self._graph.entities_mentioned_in(content)
        if not mentioned:
            return 0.0
        average = sum(entity.mention_count for entity in mentioned) / len(mentioned)
        return min(1.0, average / 100.0)

    def score(
        self,
        fragments: List[MemoryFragment],
        query: str,
        options: Optional[RankOptions] = None,
        now: Optional[datetime] = None,
    ) -> List[MemoryFragment]:
        """Fill signals and composite scores in place."""
        opts = options or self._default_options
        reference = now or utc_now()
        temporal = opts.temporal_query
        if temporal is None:
            temporal = has_temporal_hint(query)
        names = self._query_entity_names(query or "")
        priority = set(opts.priority_sources or ())

        for fragment in fragments:
            if not fragment.tokens:
                fragment.tokens = estimate_tokens(fragment.content)
            signals = fragment.signals
            recency = self.recency(fragment.timestamp, reference)
            signals.recency = math.sqrt(recency) if temporal else recency
            signals.connections = self._connections(fragment.content, names)
            signals.frequency = self._frequency(fragment.content)

            composite = (
                opts.relevance_weight * signals.relevance
                + opts.recency_weight * signals.recency
                + opts.connections_weight * signals.connections
                + opts.frequency_weight * signals.frequency
            )
            boost = 1.0
            if fragment.source in priority:
                boost = max(boost, opts.priority_boost)
            if fragment.source in self._long_term_sources:
                boost = max(boost, opts.long_term_boost)
            fragment.score = composite * boost
        return fragments

    def rank(
        self,
        fragments: List[MemoryFragment],
        query: str,
        token_budget: int,
        options: Optional[RankOptions] = None,
        now: Optional[datetime] = None,
    ) -> List[MemoryFragment]:
        """
        Composite scoring, then MMR selection.

        Each round picks the fragment maximizing
        score - diversity_penalty * max Jaccard similarity to the selection,
        among fragments that still fit the remaining token budget.
        """
        if not fragments or token_budget <= 0:
            return []
        opts = options or self._default_options
        self.score(fragments, query, opts, now)

        remaining = list(fragments)
        selected: List[MemoryFragment] = []
        used_tokens = 0
        while remaining:
            best_index = -1
            best_value = float("-inf")
            best_similarity = 0.0
            for index, candidate in enumerate(remaining):
                if used_tokens + candidate.tokens > token_budget:
                    continue
                similarity = max(
                    (jaccard_similarity(candidate.content, chosen.content) for chosen in selected),
                    default=0.0,
                )
                value = candidate.score - opts.diversity_penalty * similarity
                if value > best_value:
                    best_index, best_value, best_similarity = index, value, similarity
            if best_index < 0:
                break
            chosen = remaining.pop(best_index)
            chosen.signals.diversity_penalty = best_similarity
            chosen.score = best_value
            chosen.rank = len(selected) + 1
            used_tokens += chosen.tokens
            selected.append(chosen)
        return selected
