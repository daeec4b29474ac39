import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from db.graph_store import KnowledgeGraph, normalize_relationship_type


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _open_graph(db_path: Path) -> KnowledgeGraph:
    graph = KnowledgeGraph(_sqlite_url(db_path))
    await graph.init_db()
    return graph


async def _build_chain(graph: KnowledgeGraph):
    a = await graph.add_entity("person", "A")
    b = await graph.add_entity("person", "B")
    c = await graph.add_entity("person", "C")
    d = await graph.add_entity("person", "D")
    await graph.add_relationship(a.id, b.id, "knows")
    await graph.add_relationship(b.id, c.id, "knows")
    await graph.add_relationship(c.id, d.id, "knows")
    return a, b, c, d


@pytest.mark.asyncio
async def test_chain_traversal_paths_and_depths(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    a, b, c, d = await _build_chain(graph)

    assert graph.shortest_path(a.id, d.id) == [a.id, b.id, c.id, d.id]
    assert {e.name for e in graph.get_connected_entities(a.id, 1)} == {"B"}
    assert {e.name for e in graph.get_connected_entities(a.id, 2)} == {"B", "C"}
    assert graph.shortest_path(a.id, d.id, max_depth=2) is None
    assert graph.shortest_path(a.id, a.id) == [a.id]

    subgraph = graph.get_subgraph(b.id, depth=1)
    assert {e.name for e in subgraph["entities"]} == {"A", "B", "C"}
    assert len(subgraph["relationships"]) == 2
    await graph.close()


@pytest.mark.asyncio
async def test_entity_names_are_unique_case_insensitively(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    await graph.add_entity("person", "Alice", aliases=["Ali"])

    with pytest.raises(ValueError, match="already exists"):
        await graph.add_entity("person", "alice")
    with pytest.raises(ValueError, match="already exists"):
        await graph.add_entity("person", "ALI")
    with pytest.raises(ValueError, match="must not be empty"):
        await graph.add_entity("person", "   ")

    assert graph.find_entity_by_name("ALICE").name == "Alice"
    assert graph.find_entity_by_name("ali").name == "Alice"
    assert graph.find_entity_by_name("Bob") is None
    await graph.close()


@pytest.mark.asyncio
async def test_unknown_entity_type_becomes_custom(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    entity = await graph.add_entity("spaceship", "Rocinante")
    assert entity.type == "custom"
    await graph.close()


@pytest.mark.asyncio
async def test_relationship_creation_rejects_bad_input(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    alice = await graph.add_entity("person", "Alice")
    project = await graph.add_entity("project", "ProjectX")

    with pytest.raises(ValueError, match="does not exist"):
        await graph.add_relationship(alice.id, 9999, "works_on")
    with pytest.raises(ValueError, match="must not be empty"):
        await graph.add_relationship(alice.id, project.id, "  ")

    created = await graph.add_relationship(alice.id, project.id, "Works On", context="backend")
    assert created.type == "works_on"
    with pytest.raises(ValueError, match="already exists"):
        await graph.add_relationship(alice.id, project.id, "works_on")

    assert graph.find_relationship(alice.id, project.id, "works on").id == created.id
    assert graph.get_relationship_between(project.id, alice.id)[0].id == created.id
    await graph.close()


@pytest.mark.asyncio
async def test_missing_ids_are_no_ops(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    alice = await graph.add_entity("person", "Alice")

    assert graph.get_entity(404) is None
    assert await graph.update_entity(404, mention_count=3) is None
    assert await graph.delete_entity(404) is False
    assert await graph.update_relationship(404, weight=2.0) is None
    assert await graph.delete_relationship(404) is False
    assert await graph.add_alias(404, "ghost") is False
    assert graph.get_connected_entities(404, 2) == []
    assert graph.shortest_path(alice.id, 404) is None
    assert graph.get_subgraph(404) == {"entities": [], "relationships": []}
    await graph.close()


@pytest.mark.asyncio
async def test_update_entity_keeps_counters_monotonic(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    first_seen = datetime(2024, 1, 10)
    alice = await graph.add_entity(
        "person", "Alice", mention_count=5, first_seen=first_seen, last_seen=first_seen
    )

    updated = await graph.update_entity(
        alice.id, mention_count=2, last_seen=datetime(2023, 1, 1), confidence=3.0
    )
    assert updated.mention_count == 5
    assert updated.last_seen == first_seen
    assert updated.confidence == 1.0

    renamed = await graph.update_entity(alice.id, name="Alice Smith")
    assert graph.find_entity_by_name("alice smith").id == renamed.id
    assert graph.find_entity_by_name("Alice") is None
    await graph.close()


@pytest.mark.asyncio
async def test_delete_entity_cascades_and_persists(tmp_path: Path) -> None:
    db_path = tmp_path / "graph.db"
    graph = await _open_graph(db_path)
    a, b, c, _d = await _build_chain(graph)
    await graph.add_alias(b.id, "Bee")

    assert await graph.delete_entity(b.id) is True
    assert graph.get_entity(b.id) is None
    assert graph.find_entity_by_name("Bee") is None
    assert graph.get_relationships(a.id) == []
    assert len(graph.get_relationships(c.id)) == 1
    await graph.close()

    with sqlite3.connect(db_path) as conn:
        orphaned = conn.execute(
            "SELECT COUNT(*) FROM relationships WHERE source_id = ? OR target_id = ?",
            (b.id, b.id),
        ).fetchone()[0]
        aliases = conn.execute("SELECT COUNT(*) FROM entity_aliases").fetchone()[0]
    assert orphaned == 0
    assert aliases == 0


@pytest.mark.asyncio
async def test_graph_reload_restores_arena(tmp_path: Path) -> None:
    db_path = tmp_path / "graph.db"
    graph = await _open_graph(db_path)
    alice = await graph.add_entity(
        "person", "Alice", {"role": "engineer"}, confidence=0.9, aliases=["Ali"]
    )
    project = await graph.add_entity("project", "ProjectX")
    await graph.add_relationship(alice.id, project.id, "works_on", weight=2.5, context="lead")
    await graph.close()

    reopened = await _open_graph(db_path)
    restored = reopened.find_entity_by_name("Ali")
    assert restored is not None
    assert restored.attributes == {"role": "engineer"}
    assert restored.confidence == pytest.approx(0.9)
    relationships = reopened.get_relationships(restored.id)
    assert len(relationships) == 1
    assert relationships[0].weight == pytest.approx(2.5)
    assert relationships[0].context == "lead"
    await reopened.close()


@pytest.mark.asyncio
async def test_find_entities_and_mentions(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    alice = await graph.add_entity("person", "Alice", mention_count=4)
    await graph.add_entity("person", "Alicia", mention_count=9)
    await graph.add_entity("project", "ProjectX")

    assert [e.name for e in graph.find_entities("ali")] == ["Alicia", "Alice"]
    assert len(graph.find_entities("")) == 3
    mentioned = graph.entities_mentioned_in("Alice pushed to ProjectX today")
    assert [e.name for e in mentioned] == ["Alice", "ProjectX"]
    assert graph.entities_mentioned_in("Malice aforethought") == []
    assert alice.id in {e.id for e in mentioned}
    await graph.close()


@pytest.mark.asyncio
async def test_entities_by_type_and_recent_activity(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    now = datetime(2024, 5, 1, 12, 0, 0)
    for entity_type, name, mentions, age in (
        ("person", "Alice", 2, timedelta(hours=1)),
        ("person", "Bob", 5, timedelta(hours=30)),
        ("project", "ProjectX", 1, timedelta(hours=3)),
        ("gadget", "Orbit", 1, timedelta(days=10)),
    ):
        seen = now - age
        await graph.add_entity(
            entity_type, name, mention_count=mentions, first_seen=seen, last_seen=seen
        )

    assert [e.name for e in graph.get_entities_by_type("Person")] == ["Bob", "Alice"]
    assert [e.name for e in graph.get_entities_by_type("project")] == ["ProjectX"]
    assert [e.name for e in graph.get_entities_by_type("custom")] == ["Orbit"]
    assert graph.get_entities_by_type("place") == []

    recent = graph.get_recently_active(hours=24, now=now)
    assert [e.name for e in recent] == ["Alice", "ProjectX"]
    assert [e.name for e in graph.get_recently_active(hours=48, now=now)] == [
        "Alice",
        "ProjectX",
        "Bob",
    ]
    assert graph.get_recently_active(hours=0, now=now) == []
    await graph.close()


@pytest.mark.asyncio
async def test_graph_stats_and_meta(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    a, b, c, d = await _build_chain(graph)
    project = await graph.add_entity("project", "ProjectX")
    await graph.add_relationship(b.id, project.id, "works_on")

    stats = graph.get_stats()
    assert stats["total_entities"] == 5
    assert stats["total_relationships"] == 4
    assert stats["avg_connections"] == pytest.approx(8 / 5, rel=1e-3)
    assert stats["most_connected"][0]["name"] == "B"
    assert stats["entity_types"] == {"person": 4, "project": 1}
    assert stats["relationship_types"] == {"knows": 3, "works_on": 1}

    assert await graph.get_meta("missing") is None
    await graph.set_meta("relationships.last_decay_at", "2024-01-01T00:00:00")
    await graph.set_meta("relationships.last_decay_at", "2024-02-01T00:00:00")
    assert await graph.get_meta("relationships.last_decay_at") == "2024-02-01T00:00:00"
    with pytest.raises(ValueError):
        await graph.set_meta(" ", "x")
    await graph.close()


def test_normalize_relationship_type() -> None:
    assert normalize_relationship_type("Works On") == "works_on"
    assert normalize_relationship_type("  Depends   ON ") == "depends_on"
    assert normalize_relationship_type("  ") == ""
