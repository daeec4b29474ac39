from datetime import datetime, timedelta
from pathlib import Path

import pytest

from db.graph_store import KnowledgeGraph
from engine.relationship_mapper import (
    LAST_DECAY_META_KEY,
    MAX_RELATIONSHIP_WEIGHT,
    RelationshipMapper,
    RelationshipTypeInfo,
)


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _open_graph(db_path: Path) -> KnowledgeGraph:
    graph = KnowledgeGraph(_sqlite_url(db_path))
    await graph.init_db()
    return graph


T0 = datetime(2024, 1, 1)


@pytest.mark.asyncio
async def test_decay_weakens_then_removes_stale_relationships(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    alice = await graph.add_entity("person", "Alice")
    project = await graph.add_entity("project", "ProjectX")
    rel = await graph.add_relationship(alice.id, project.id, "works_on", weight=1.0, timestamp=T0)
    mapper = RelationshipMapper(graph, decay_half_life_days=30, remove_below=0.05)

    first = await mapper.decay_relationships(T0 + timedelta(days=365))
    assert first == {"decayed": 1, "removed": 0, "checked": 1}
    weakened = graph.get_relationship(rel.id)
    assert weakened.weight == pytest.approx(2 ** -3.65, rel=1e-6)
    assert weakened.timestamp == T0
    assert await graph.get_meta(LAST_DECAY_META_KEY) == (T0 + timedelta(days=365)).isoformat()

    second = await mapper.decay_relationships(T0 + timedelta(days=730))
    assert second == {"decayed": 0, "removed": 1, "checked": 1}
    assert graph.get_relationship(rel.id) is None
    await graph.close()


@pytest.mark.asyncio
async def test_decay_removes_long_untouched_relationship_in_one_pass(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    alice = await graph.add_entity("person", "Alice")
    project = await graph.add_entity("project", "ProjectX")
    await graph.add_relationship(alice.id, project.id, "works_on", weight=1.0, timestamp=T0)
    await graph.add_relationship(alice.id, project.id, "created", weight=1.0, timestamp=T0)
    mapper = RelationshipMapper(graph)

    result = await mapper.decay_relationships(T0 + timedelta(days=730))

    assert result == {"decayed": 0, "removed": 1, "checked": 1}
    [survivor] = graph.get_all_relationships()
    assert survivor.type == "created"
    assert survivor.weight == pytest.approx(1.0)
    await graph.close()


@pytest.mark.asyncio
async def test_strengthen_caps_weight_and_refreshes_timestamp(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    a = await graph.add_entity("person", "A")
    b = await graph.add_entity("person", "B")
    rel = await graph.add_relationship(a.id, b.id, "knows", weight=9.5, timestamp=T0)
    mapper = RelationshipMapper(graph)

    strengthened = await mapper.strengthen_relationship(rel.id, delta=2.0)
    assert strengthened.weight == MAX_RELATIONSHIP_WEIGHT
    assert strengthened.timestamp > T0
    assert await mapper.strengthen_relationship(404) is None
    assert mapper.get_strongest(a.id, limit=1)[0].id == rel.id
    await graph.close()


@pytest.mark.asyncio
async def test_detect_clusters_returns_connected_components(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    a = await graph.add_entity("person", "A")
    b = await graph.add_entity("person", "B")
    c = await graph.add_entity("person", "C")
    d = await graph.add_entity("project", "D")
    e = await graph.add_entity("project", "E")
    await graph.add_entity("concept", "Loner")
    await graph.add_relationship(a.id, b.id, "knows")
    await graph.add_relationship(b.id, c.id, "knows")
    await graph.add_relationship(d.id, e.id, "depends_on")
    mapper = RelationshipMapper(graph)

    clusters = mapper.detect_clusters()

    assert [[entity.name for entity in cluster.entities] for cluster in clusters] == [
        ["A", "B", "C"],
        ["D", "E"],
    ]
    assert clusters[0].central_entity.name == "B"
    assert clusters[0].density == pytest.approx(2 / 3)
    assert clusters[1].density == pytest.approx(1.0)
    assert len(mapper.detect_clusters(min_size=1)) == 3
    assert mapper.clusters_for_entity(e.id) == [2]
    await graph.close()


@pytest.mark.asyncio
async def test_find_paths_lists_simple_paths_strongest_first(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    a = await graph.add_entity("person", "A")
    b = await graph.add_entity("person", "B")
    c = await graph.add_entity("person", "C")
    d = await graph.add_entity("project", "D")
    await graph.add_relationship(a.id, b.id, "knows", weight=0.9)
    await graph.add_relationship(b.id, d.id, "works_on", weight=0.9)
    await graph.add_relationship(a.id, c.id, "knows", weight=0.4)
    await graph.add_relationship(d.id, c.id, "related_to", weight=0.6)
    mapper = RelationshipMapper(graph)

    paths = mapper.find_paths(a.id, d.id)

    assert [path.entity_ids for path in paths] == [[a.id, b.id, d.id], [a.id, c.id, d.id]]
    assert paths[0].total_weight == pytest.approx(0.9)
    assert paths[1].total_weight == pytest.approx(0.5)
    assert [rel.type for rel in paths[1].relationships] == ["knows", "related_to"]
    assert paths[0].to_dict()["total_weight"] == pytest.approx(0.9)
    assert mapper.find_paths(a.id, d.id, max_length=1) == []
    assert len(mapper.find_paths(a.id, d.id, max_paths=1)) == 1
    assert mapper.find_paths(a.id, a.id) == []
    assert mapper.find_paths(a.id, 999) == []
    await graph.close()


@pytest.mark.asyncio
async def test_infer_relationships_suggests_two_hop_links(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    alice = await graph.add_entity("person", "Alice")
    bob = await graph.add_entity("person", "Bob")
    project = await graph.add_entity("project", "ProjectX")
    service = await graph.add_entity("project", "AuthService")
    library = await graph.add_entity("project", "CryptoLib")
    await graph.add_relationship(alice.id, project.id, "works_on", weight=2.0)
    await graph.add_relationship(bob.id, project.id, "works_on", weight=1.0)
    await graph.add_relationship(service.id, library.id, "depends_on", weight=1.0)
    await graph.add_relationship(project.id, service.id, "uses", weight=1.0)
    mapper = RelationshipMapper(graph)

    inferred = {item.target_id: item for item in mapper.infer_relationships(alice.id)}
    assert set(inferred) == {bob.id, service.id}
    assert inferred[bob.id].type == "knows"
    assert inferred[bob.id].confidence == pytest.approx(0.3)
    assert inferred[bob.id].via == [project.id]
    assert "both work on ProjectX" in inferred[bob.id].reason

    from_project = {item.target_id: item for item in mapper.infer_relationships(project.id)}
    assert from_project[library.id].type == "uses"
    assert from_project[library.id].confidence == pytest.approx(0.6)
    assert graph.get_relationship_between(project.id, library.id) == []
    assert mapper.infer_relationships(404) == []
    await graph.close()


@pytest.mark.asyncio
async def test_describe_relationship_direct_indirect_and_missing(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    alice = await graph.add_entity("person", "Alice")
    bob = await graph.add_entity("person", "Bob")
    project = await graph.add_entity("project", "ProjectX")
    await graph.add_entity("person", "Zed")
    await graph.add_relationship(alice.id, project.id, "works_on", weight=5.0, context="backend")
    await graph.add_relationship(bob.id, project.id, "manages", weight=1.0)
    mapper = RelationshipMapper(graph)

    assert mapper.describe_relationship("alice", "ProjectX") == (
        "Alice strongly works on ProjectX (backend)."
    )
    assert mapper.describe_relationship("Alice", "Bob") == (
        "Alice and Bob are indirectly connected through 1 intermediary entities (ProjectX)."
    )
    assert mapper.describe_relationship("Alice", "Zed") == (
        "No connection found between Alice and Zed."
    )
    assert mapper.describe_relationship("Alice", "Nobody") == "No information about Nobody."
    await graph.close()


@pytest.mark.asyncio
async def test_registered_types_control_labels_and_decay(tmp_path: Path) -> None:
    graph = await _open_graph(tmp_path / "graph.db")
    mapper = RelationshipMapper(graph)
    mapper.register_type(RelationshipTypeInfo("Mentors", "mentors", decay_rate=-1.0))

    info = mapper.get_type_info("mentors")
    assert info.label == "mentors"
    assert info.decay_rate == 0.0
    assert mapper.get_type_info("Reports To").label == "reports to"
    await graph.close()
