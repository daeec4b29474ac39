from typing import Any, Dict, List

import pytest

from engine.extractor import EntityExtractor
from engine.models import Entity


class _ScriptedBackend:
    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: List[List[str]] = []

    async def extract(self, texts, known_entities, options=None):
        self.calls.append(list(texts))
        if not self.responses:
            return {"entities": [], "relationships": []}
        return self.responses.pop(0)


class _FailingBackend:
    async def extract(self, texts, known_entities, options=None):
        raise RuntimeError("model unavailable")


def _known_alice() -> Entity:
    return Entity(
        id=7,
        type="person",
        name="Alice",
        attributes={"team": "platform"},
        confidence=0.8,
        aliases=["Ali"],
    )


@pytest.mark.asyncio
async def test_extract_batch_normalizes_backend_output() -> None:
    backend = _ScriptedBackend(
        {
            "entities": [
                {"name": "  Bob  ", "type": "Person", "confidence": 1.7, "category": "friend"},
                {"name": "Orbit", "type": "gadget", "aliases": ["orbit app", 3, None]},
                "not an entity",
            ],
            "relationships": [
                {"sourceName": "Bob", "targetName": "Orbit", "type": "works_on", "confidence": 0.4},
                ["bad"],
            ],
        }
    )
    extractor = EntityExtractor(backend)

    result = await extractor.extract_batch(["Bob works on Orbit."], [])

    bob, orbit = result.entities
    assert bob.name == "Bob"
    assert bob.type == "person"
    assert bob.confidence == 1.0
    assert bob.attributes == {"category": "friend"}
    assert bob.is_new
    assert orbit.type == "custom"
    assert orbit.aliases == ["orbit app", "3"]

    [relationship] = result.relationships
    assert (relationship.source, relationship.target) == ("Bob", "Orbit")
    assert relationship.weight == pytest.approx(0.4)


@pytest.mark.asyncio
async def test_malformed_backend_output_yields_empty_result() -> None:
    for raw in (None, "plain text", ["list"], {"entities": "nope", "relationships": 5}):
        extractor = EntityExtractor(_ScriptedBackend(raw))
        result = await extractor.extract_batch(["something happened"], [])
        assert result.entities == []
        assert result.relationships == []


@pytest.mark.asyncio
async def test_candidates_missing_name_or_type_are_kept() -> None:
    backend = _ScriptedBackend(
        {"entities": [{"name": "", "type": "person"}, {"name": "Carol"}]}
    )
    result = await EntityExtractor(backend).extract_batch(["Carol said hi"], [])

    names = [candidate.name for candidate in result.entities]
    assert names == ["Carol", None]
    assert result.entities[0].type is None


@pytest.mark.asyncio
async def test_known_entities_resolve_by_name_and_alias() -> None:
    backend = _ScriptedBackend(
        {
            "entities": [
                {"name": "ali", "type": "person", "confidence": 0.3, "attributes": {"mood": "busy"}},
                {"name": "ALICE", "type": "person", "aliases": ["A."]},
            ],
            "relationships": [
                {"source": "ali", "target": "a.", "type": "knows"},
            ],
        }
    )
    extractor = EntityExtractor(backend)

    result = await extractor.extract_batch(["ali pinged me"], [_known_alice()])

    [alice] = result.entities
    assert alice.id == 7
    assert alice.name == "Alice"
    assert alice.confidence == pytest.approx(0.8)
    assert alice.attributes == {"team": "platform", "mood": "busy"}
    assert "ali" in alice.aliases
    assert "A." in alice.aliases
    [relationship] = result.relationships
    assert relationship.source == "Alice"
    assert relationship.target == "Alice"


@pytest.mark.asyncio
async def test_texts_are_batched_by_max_batch_size() -> None:
    backend = _ScriptedBackend(
        {"entities": [{"name": "Dana", "type": "person"}]},
        {"entities": [{"name": "dana", "type": "person", "confidence": 0.9}]},
        {"entities": [{"name": "Eve", "type": "person"}]},
    )
    extractor = EntityExtractor(backend, max_batch_size=2)

    result = await extractor.extract_batch(["one", "two", "  ", "three", "four", "five"], [])

    assert backend.calls == [["one", "two"], ["three", "four"], ["five"]]
    assert [candidate.name for candidate in result.entities] == ["Dana", "Eve"]
    assert result.entities[0].confidence == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_empty_input_skips_backend() -> None:
    backend = _ScriptedBackend()
    result = await EntityExtractor(backend).extract_batch(["", "   "], [])
    assert backend.calls == []
    assert result.entities == []


@pytest.mark.asyncio
async def test_backend_errors_propagate() -> None:
    extractor = EntityExtractor(_FailingBackend())
    with pytest.raises(RuntimeError, match="model unavailable"):
        await extractor.extract_batch(["hello"], [])


@pytest.mark.asyncio
async def test_typeless_match_does_not_inherit_known_type() -> None:
    backend = _ScriptedBackend({"entities": [{"name": "alice", "confidence": 0.9}]})

    result = await EntityExtractor(backend).extract_batch(["alice again"], [_known_alice()])

    [alice] = result.entities
    assert alice.id == 7
    assert alice.name == "Alice"
    assert alice.type is None


@pytest.mark.asyncio
async def test_low_confidence_candidates_are_dropped() -> None:
    payload = {
        "entities": [
            {"name": "Frank", "type": "person", "confidence": 0.9},
            {"name": "Maybe Gina", "type": "person", "confidence": 0.2},
            {"name": "Hal", "type": "person"},
        ],
        "relationships": [
            {"source": "Frank", "target": "Hal", "type": "knows", "weight": 0.8},
            {"source": "Frank", "target": "Maybe Gina", "type": "knows", "weight": 0.1},
        ],
    }
    backend = _ScriptedBackend(payload, payload)
    extractor = EntityExtractor(backend, min_confidence=0.3)

    result = await extractor.extract_batch(["Frank met Hal"], [])
    assert [candidate.name for candidate in result.entities] == ["Frank", "Hal"]
    assert [(r.source, r.target) for r in result.relationships] == [("Frank", "Hal")]

    strict = await extractor.extract_batch(["Frank met Hal"], [], {"min_confidence": 0.6})
    assert [candidate.name for candidate in strict.entities] == ["Frank"]
    assert len(strict.relationships) == 1


@pytest.mark.asyncio
async def test_processed_texts_are_skipped_until_cache_is_cleared() -> None:
    backend = _ScriptedBackend(
        {"entities": [{"name": "Ivy", "type": "person"}]},
        {"entities": [{"name": "Jon", "type": "person"}]},
        {"entities": [{"name": "Ivy", "type": "person"}]},
    )
    extractor = EntityExtractor(backend, skip_processed=True)

    first = await extractor.extract_batch(["Ivy joined", "Ivy joined"], [])
    second = await extractor.extract_batch(["Ivy joined", "Jon left"], [])
    repeated = await extractor.extract_batch(["Ivy joined", "Jon left"], [])

    assert [candidate.name for candidate in first.entities] == ["Ivy"]
    assert [candidate.name for candidate in second.entities] == ["Jon"]
    assert repeated.entities == []
    assert backend.calls == [["Ivy joined"], ["Jon left"]]
    assert extractor.processed_count == 2

    extractor.clear_processed_cache()
    assert extractor.processed_count == 0
    again = await extractor.extract_batch(["Ivy joined"], [])
    assert [candidate.name for candidate in again.entities] == ["Ivy"]
    assert backend.calls[-1] == ["Ivy joined"]
