"""
Memory consolidation: deduplication, contradiction handling and promotion.

Pipeline for `consolidate`:
1) group fragments by their dominant graph entity
2) cluster each group greedily by Jaccard similarity
3) singletons pass through
4) clusters with a high-score fragment keep those verbatim, drop the rest
5) other clusters are merged through the summarization backend

Every decision is appended to an in-memory changelog.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from loguru import logger

from db.graph_store import KnowledgeGraph
from .collaborators import ExtractiveSummarizer, SummarizationBackend
from .models import (
    ChangeLogEntry,
    ConsolidationResult,
    Contradiction,
    ContradictionResolution,
    FragmentSignals,
    MemoryFragment,
    PromotionCandidate,
)
from .text import content_fingerprint, estimate_tokens, jaccard_similarity, snippet

_REMEMBER_PATTERN = re.compile(
    r"\b(remember|note that|don't forget|do not forget|merke dir|speicher|vergiss nicht)\b",
    re.IGNORECASE,
)
REMEMBER_BOOST = 0.5


@dataclass
class ConsolidationOptions:
    similarity_threshold: float = 0.55
    high_score_threshold: float = 0.8


class ContradictionStrategy(Protocol):
    def find_contradiction(self, a: str, b: str) -> Optional[str]:
        """Return a reason when `a` and `b` contradict each other, else None."""
        ...


# (positive, negative); group 1 is the subject in both.
DEFAULT_POLARITY_PATTERNS: Tuple[Tuple[str, str], ...] = (
    (r"(\w+) is (?!not\b)(\w+)", r"(\w+) is not (\w+)"),
    (r"(\w+) can (\w+)", r"(\w+) (?:cannot|can't|can not) (\w+)"),
    (r"(\w+) should (?!not\b)(\w+)", r"(\w+) (?:should not|shouldn't) (\w+)"),
    (r"(\w+) likes (\w+)", r"(\w+) (?:dislikes|hates) (\w+)"),
    (r"(\w+) supports (\w+)", r"(\w+) opposes (\w+)"),
    (r"(\w+) works at (\w+)", r"(\w+) left (\w+)"),
    (r"(\w+) uses (\w+)", r"(\w+) stopped using (\w+)"),
    (r"(\w+) lives in (\w+)", r"(\w+) moved from (\w+)"),
)


class PolarityPatternStrategy:
    """
    Pairs of opposite-polarity phrasings sharing a subject token.

    Narrow by nature: it misses paraphrased contradictions and can flag
    coincidental phrasing.
    """

    def __init__(self, patterns: Optional[Sequence[Tuple[str, str]]] = None):
        self._patterns = [
            (re.compile(positive, re.IGNORECASE), re.compile(negative, re.IGNORECASE))
            for positive, negative in (patterns or DEFAULT_POLARITY_PATTERNS)
        ]

    def find_contradiction(self, a: str, b: str) -> Optional[str]:
        for positive, negative in self._patterns:
            for first, second in ((a, b), (b, a)):
                positive_match = positive.search(first)
                negative_match = negative.search(second)
                if not positive_match or not negative_match:
                    continue
                subject = positive_match.group(1)
                if subject.lower() == negative_match.group(1).lower():
                    return f'Contradicting information about "{subject}"'
        return None


class MemoryConsolidator:
    def __init__(
        self,
        summarizer: Optional[SummarizationBackend] = None,
        *,
        graph: Optional[KnowledgeGraph] = None,
        strategy: Optional[ContradictionStrategy] = None,
        options: Optional[ConsolidationOptions] = None,
    ):
        self._summarizer = summarizer or ExtractiveSummarizer()
        self._graph = graph
        self._strategy = strategy or PolarityPatternStrategy()
        self._options = options or ConsolidationOptions()
        self._changelog: List[ChangeLogEntry] = []

    @property
    def changelog(self) -> List[ChangeLogEntry]:
        return list(self._changelog)

    def reset_changelog(self) -> None:
        self._changelog = []

    def _log(self, action: str, description: str, fragments: Sequence[MemoryFragment]) -> None:
        self._changelog.append(
            ChangeLogEntry(
                action=action,
                description=description,
                fragments=[snippet(fragment.content, 60) for fragment in fragments],
            )
        )

    # -------------------------------------------------------------------------
    # Deduplication
    # -------------------------------------------------------------------------

    def _group_by_entity(self, fragments: List[MemoryFragment]) -> List[List[MemoryFragment]]:
        groups: Dict[Optional[int], List[MemoryFragment]] = {}
        for fragment in fragments:
            key: Optional[int] = None
            if self._graph is not None:
                mentioned = self._graph.entities_mentioned_in(fragment.content)
                if mentioned:
                    key = mentioned[0].id
            groups.setdefault(key, []).append(fragment)
        return list(groups.values())

    @staticmethod
    def _cluster(group: List[MemoryFragment], threshold: float) -> List[List[MemoryFragment]]:
        clusters: List[List[MemoryFragment]] = []
        assigned = [False] * len(group)
        for i, seed in enumerate(group):
            if assigned[i]:
                continue
            assigned[i] = True
            cluster = [seed]
            for j in range(i + 1, len(group)):
                if assigned[j]:
                    continue
                if jaccard_similarity(seed.content, group[j].content) >= threshold:
                    assigned[j] = True
                    cluster.append(group[j])
            clusters.append(cluster)
        return clusters

    async def consolidate(
        self,
        fragments: List[MemoryFragment],
        options: Optional[ConsolidationOptions] = None,
    ) -> ConsolidationResult:
        opts = options or self._options
        start = len(self._changelog)
        result = ConsolidationResult()

        for group in self._group_by_entity(list(fragments)):
            for cluster in self._cluster(group, opts.similarity_threshold):
                if len(cluster) == 1:
                    result.kept.append(cluster[0])
                    continue

                important = [f for f in cluster if f.score > opts.high_score_threshold]
                if important:
                    dropped = [f for f in cluster if f.score <= opts.high_score_threshold]
                    result.kept.extend(important)
                    result.removed.extend(dropped)
                    if dropped:
                        self._log(
                            "removed",
                            f"Dropped {len(dropped)} near-duplicates of high-importance memories",
                            dropped,
                        )
                    continue

                merged = await self._merge(cluster)
                if merged is None:
                    result.kept.extend(cluster)
                    continue
                result.merged.append(merged)
                result.removed.extend(cluster[1:])
                self._log("merged", f"Merged {len(cluster)} similar memories", cluster)

        return ConsolidationResult(
            kept=result.kept,
            merged=result.merged,
            removed=result.removed,
            changelog=self._changelog[start:],
        )

    async def _merge(self, cluster: List[MemoryFragment]) -> Optional[MemoryFragment]:
        try:
            summary = await self._summarizer.summarize([f.content for f in cluster])
        except Exception as exc:
            logger.warning(f"Summarizer failed, keeping {len(cluster)} fragments unmerged: {exc}")
            return None
        summary = (summary or "").strip()
        if not summary:
            logger.warning("Summarizer returned an empty summary; keeping fragments unmerged")
            return None

        first = cluster[0]
        return MemoryFragment(
            content=summary,
            source=first.source,
            timestamp=max(f.timestamp for f in cluster),
            score=max(f.score for f in cluster),
            tokens=estimate_tokens(summary),
            signals=FragmentSignals(relevance=max(f.signals.relevance for f in cluster)),
            document_id=first.document_id,
            metadata={**first.metadata, "merged_from": len(cluster)},
        )

    # -------------------------------------------------------------------------
    # Contradictions
    # -------------------------------------------------------------------------

    def detect_contradictions(self, fragments: List[MemoryFragment]) -> List[Contradiction]:
        found: List[Contradiction] = []
        for i in range(len(fragments)):
            for j in range(i + 1, len(fragments)):
                a, b = fragments[i], fragments[j]
                if a.timestamp == b.timestamp:
                    continue
                reason = self._strategy.find_contradiction(a.content, b.content)
                if reason:
                    found.append(Contradiction(a=a, b=b, reason=reason))
        return found

    def resolve_contradictions(
        self, contradictions: List[Contradiction]
    ) -> ContradictionResolution:
        """Newer fragment wins every pair."""
        keep: List[MemoryFragment] = []
        discard: List[MemoryFragment] = []
        for contradiction in contradictions:
            newer, older = contradiction.a, contradiction.b
            if older.timestamp > newer.timestamp:
                newer, older = older, newer
            if not any(item is older for item in discard):
                discard.append(older)
            if not any(item is newer for item in keep):
                keep.append(newer)
            self._log(
                "contradiction_resolved",
                f"{contradiction.reason}: kept newer memory",
                [newer, older],
            )
        keep = [item for item in keep if not any(item is gone for gone in discard)]
        return ContradictionResolution(keep=keep, discard=discard)

    # -------------------------------------------------------------------------
    # Promotion
    # -------------------------------------------------------------------------

    def promote_frequent(
        self,
        fragments: List[MemoryFragment],
        min_mentions: int = 3,
        min_score: float = 0.5,
    ) -> List[PromotionCandidate]:
        candidates: List[PromotionCandidate] = []

        groups: Dict[str, List[MemoryFragment]] = {}
        for fragment in fragments:
            fingerprint = content_fingerprint(fragment.content)
            if fingerprint:
                groups.setdefault(fingerprint, []).append(fragment)
        for group in groups.values():
            if len(group) < min_mentions:
                continue
            best = max(group, key=lambda f: f.score)
            candidates.append(
                PromotionCandidate(
                    fragment=best,
                    reason=f"Mentioned {len(group)} times",
                    score=best.score * (1 + len(group) * 0.1),
                )
            )

        for fragment in fragments:
            if fragment.score >= min_score:
                candidates.append(
                    PromotionCandidate(
                        fragment=fragment,
                        reason=f"High relevance score ({fragment.score:.2f})",
                        score=fragment.score,
                    )
                )
            if _REMEMBER_PATTERN.search(fragment.content):
                candidates.append(
                    PromotionCandidate(
                        fragment=fragment,
                        reason="Explicitly asked to remember",
                        score=fragment.score + REMEMBER_BOOST,
                    )
                )

        best_by_content: Dict[str, PromotionCandidate] = {}
        for candidate in candidates:
            key = candidate.fragment.content
            existing = best_by_content.get(key)
            if existing is None or candidate.score > existing.score:
                best_by_content[key] = candidate
        ranked = sorted(best_by_content.values(), key=lambda c: -c.score)
        for candidate in ranked:
            self._log("promoted", candidate.reason, [candidate.fragment])
        return ranked

    async def summarize_period(self, fragments: List[MemoryFragment], label: str) -> str:
        ordered = sorted(fragments, key=lambda f: f.timestamp)
        if not ordered:
            return f"{label}: nothing recorded."
        texts = [f.content for f in ordered]
        try:
            summary = (await self._summarizer.summarize(texts) or "").strip()
        except Exception as exc:
            logger.warning(f"Summarizer failed for period '{label}': {exc}")
            summary = ""
        if not summary:
            summary = await ExtractiveSummarizer().summarize(texts)
        return f"{label}: {summary}"
