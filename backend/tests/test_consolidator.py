from datetime import datetime, timedelta
from pathlib import Path
from typing import List

import pytest

from db.graph_store import KnowledgeGraph
from engine.consolidator import ConsolidationOptions, MemoryConsolidator, PolarityPatternStrategy
from engine.models import MemoryFragment

T1 = datetime(2024, 2, 1, 9, 0, 0)
T2 = T1 + timedelta(days=3)


def _fragment(content: str, *, score: float = 0.3, timestamp: datetime = T1,
              document_id: int = None, source: str = "agent:main") -> MemoryFragment:
    return MemoryFragment(
        content=content,
        source=source,
        timestamp=timestamp,
        score=score,
        document_id=document_id,
    )


class _StaticSummarizer:
    def __init__(self, summary: str) -> None:
        self.summary = summary
        self.calls: List[List[str]] = []

    async def summarize(self, texts):
        self.calls.append(list(texts))
        return self.summary


class _BrokenSummarizer:
    async def summarize(self, texts):
        raise RuntimeError("summarizer down")


@pytest.mark.asyncio
async def test_similar_fragments_are_merged_into_one() -> None:
    summarizer = _StaticSummarizer("Team meeting is on Thursday afternoon.")
    consolidator = MemoryConsolidator(summarizer)
    first = _fragment("the team meeting moved to thursday afternoon", document_id=1)
    second = _fragment(
        "team meeting moved to thursday afternoon again", timestamp=T2, document_id=2
    )
    unrelated = _fragment("buy oat milk on the way home", document_id=3)

    result = await consolidator.consolidate([first, second, unrelated])

    assert result.kept == [unrelated]
    [merged] = result.merged
    assert merged.content == "Team meeting is on Thursday afternoon."
    assert merged.document_id == 1
    assert merged.timestamp == T2
    assert merged.metadata["merged_from"] == 2
    assert result.removed == [second]
    assert [entry.action for entry in result.changelog] == ["merged"]
    assert summarizer.calls == [[first.content, second.content]]


@pytest.mark.asyncio
async def test_high_score_fragments_survive_verbatim() -> None:
    summarizer = _StaticSummarizer("should not be used")
    consolidator = MemoryConsolidator(summarizer)
    important = _fragment("the team meeting moved to thursday afternoon", score=0.95)
    echo = _fragment("team meeting moved to thursday afternoon again", score=0.2)

    result = await consolidator.consolidate([important, echo])

    assert result.kept == [important]
    assert result.removed == [echo]
    assert result.merged == []
    assert summarizer.calls == []
    assert [entry.action for entry in result.changelog] == ["removed"]


@pytest.mark.asyncio
async def test_summarizer_failure_keeps_cluster_unmerged() -> None:
    consolidator = MemoryConsolidator(_BrokenSummarizer())
    first = _fragment("the team meeting moved to thursday afternoon")
    second = _fragment("team meeting moved to thursday afternoon again")

    result = await consolidator.consolidate([first, second])

    assert result.kept == [first, second]
    assert result.merged == []
    assert result.removed == []
    assert result.changelog == []


@pytest.mark.asyncio
async def test_similarity_threshold_is_configurable() -> None:
    consolidator = MemoryConsolidator(_StaticSummarizer("merged"))
    first = _fragment("the team meeting moved to thursday afternoon")
    second = _fragment("team meeting moved to thursday afternoon again")

    result = await consolidator.consolidate(
        [first, second], ConsolidationOptions(similarity_threshold=0.9)
    )

    assert result.kept == [first, second]
    assert result.merged == []


@pytest.mark.asyncio
async def test_fragments_about_different_entities_are_not_merged(tmp_path: Path) -> None:
    graph = KnowledgeGraph(f"sqlite+aiosqlite:///{tmp_path / 'graph.db'}")
    await graph.init_db()
    await graph.add_entity("person", "Alice")
    await graph.add_entity("person", "Bob")
    consolidator = MemoryConsolidator(_StaticSummarizer("merged"), graph=graph)
    alice = _fragment("Alice deployed the billing service today")
    bob = _fragment("Bob deployed the billing service today")

    result = await consolidator.consolidate([alice, bob])

    assert result.kept == [alice, bob]
    assert result.merged == []
    await graph.close()


def test_contradiction_resolution_keeps_newer_fragment() -> None:
    consolidator = MemoryConsolidator()
    older = _fragment("Bob lives in Paris", timestamp=T1)
    newer = _fragment("Bob moved from Paris", timestamp=T2)
    same_time = _fragment("Bob moved from Paris last year", timestamp=T1)

    contradictions = consolidator.detect_contradictions([older, newer, same_time])

    assert len(contradictions) == 1
    assert contradictions[0].reason == 'Contradicting information about "Bob"'
    resolution = consolidator.resolve_contradictions(contradictions)
    assert resolution.keep == [newer]
    assert resolution.discard == [older]
    [entry] = consolidator.changelog
    assert entry.action == "contradiction_resolved"
    assert entry.fragments == ["Bob moved from Paris", "Bob lives in Paris"]


def test_polarity_strategy_requires_same_subject() -> None:
    strategy = PolarityPatternStrategy()
    assert strategy.find_contradiction("Alice likes coffee", "Alice hates coffee")
    assert strategy.find_contradiction("Alice likes coffee", "Bob hates coffee") is None
    assert strategy.find_contradiction("Carol is busy", "Carol is not busy")
    assert strategy.find_contradiction("Carol is busy", "Carol is tired") is None


def test_promote_frequent_ranks_candidates() -> None:
    consolidator = MemoryConsolidator()
    repeated = [
        _fragment("Standup happens every morning at nine", score=score)
        for score in (0.2, 0.3, 0.4)
    ]
    explicit = _fragment("Please remember the wifi password is hunter2", score=0.1)
    strong = _fragment("Dentist appointment booked for March", score=0.7)
    weak = _fragment("it rained a bit", score=0.1)

    ranked = consolidator.promote_frequent(repeated + [explicit, strong, weak])

    assert [candidate.fragment.content for candidate in ranked] == [
        strong.content,
        explicit.content,
        repeated[0].content,
    ]
    assert ranked[0].score == pytest.approx(0.7)
    assert ranked[1].score == pytest.approx(0.6)
    assert ranked[1].reason == "Explicitly asked to remember"
    assert ranked[2].score == pytest.approx(0.4 * 1.3)
    assert ranked[2].reason == "Mentioned 3 times"
    assert ranked[2].fragment is repeated[2]
    assert [entry.action for entry in consolidator.changelog] == ["promoted"] * 3

    consolidator.reset_changelog()
    assert consolidator.changelog == []


@pytest.mark.asyncio
async def test_summarize_period_falls_back_to_extractive_summary() -> None:
    consolidator = MemoryConsolidator(_BrokenSummarizer())
    later = _fragment("Shipped the beta.", timestamp=T2)
    earlier = _fragment("Started the beta.", timestamp=T1)

    summary = await consolidator.summarize_period([later, earlier], "Week 5")

    assert summary == "Week 5: Started the beta. Shipped the beta."
    assert await consolidator.summarize_period([], "Week 6") == "Week 6: nothing recorded."
