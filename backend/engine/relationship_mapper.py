"""
Relationship mapping on top of the knowledge graph: clusters, strength
reinforcement and decay, inferred links and readable descriptions.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from loguru import logger

from db.graph_store import KnowledgeGraph, normalize_relationship_type
from .models import (
    Cluster,
    Entity,
    InferredRelationship,
    Relationship,
    RelationshipPath,
    utc_now,
)

MAX_RELATIONSHIP_WEIGHT = 10.0
DEFAULT_DECAY_RATE = 0.3
LAST_DECAY_META_KEY = "relationships.last_decay_at"


@dataclass(frozen=True)
class RelationshipTypeInfo:
    type: str
    label: str
    bidirectional: bool = False
    transitive_through: Tuple[str, ...] = field(default_factory=tuple)
    decay_rate: float = DEFAULT_DECAY_RATE


_BUILTIN_TYPES = (
    RelationshipTypeInfo("works_on", "works on", decay_rate=0.3),
    RelationshipTypeInfo("knows", "knows", bidirectional=True, decay_rate=0.1),
    RelationshipTypeInfo("part_of", "is part of", transitive_through=("part_of",), decay_rate=0.05),
    RelationshipTypeInfo("uses", "uses", transitive_through=("depends_on",), decay_rate=0.3),
    RelationshipTypeInfo("created", "created", decay_rate=0.0),
    RelationshipTypeInfo("manages", "manages", decay_rate=0.2),
    RelationshipTypeInfo(
        "depends_on", "depends on", transitive_through=("depends_on",), decay_rate=0.15
    ),
    RelationshipTypeInfo("opposes", "opposes", bidirectional=True, decay_rate=0.2),
    RelationshipTypeInfo("supports", "supports", decay_rate=0.2),
    RelationshipTypeInfo(
        "located_in", "is located in", transitive_through=("located_in",), decay_rate=0.05
    ),
    RelationshipTypeInfo("happened_at", "happened at", decay_rate=0.0),
    RelationshipTypeInfo("scheduled_for", "is scheduled for", decay_rate=0.5),
    RelationshipTypeInfo("prefers", "prefers", decay_rate=0.3),
    RelationshipTypeInfo("related_to", "is related to", bidirectional=True, decay_rate=0.4),
    RelationshipTypeInfo("inferred", "is possibly linked to", decay_rate=0.6),
)


def _strength_word(weight: float) -> str:
    if weight >= 5:
        return "strongly"
    if weight >= 2:
        return "moderately"
    return "weakly"


class RelationshipMapper:
    def __init__(
        self,
        graph: KnowledgeGraph,
        *,
        decay_half_life_days: float = 30.0,
        remove_below: float = 0.05,
    ):
        self._graph = graph
        self._half_life_days = max(0.01, float(decay_half_life_days))
        self._remove_below = max(0.0, float(remove_below))
        self._types: Dict[str, RelationshipTypeInfo] = {
            info.type: info for info in _BUILTIN_TYPES
        }

    def register_type(self, info: RelationshipTypeInfo) -> None:
        key = normalize_relationship_type(info.type)
        self._types[key] = RelationshipTypeInfo(
            type=key,
            label=info.label,
            bidirectional=info.bidirectional,
            transitive_through=tuple(info.transitive_through),
            decay_rate=max(0.0, float(info.decay_rate)),
        )

    def get_type_info(self, relationship_type: str) -> RelationshipTypeInfo:
        key = normalize_relationship_type(relationship_type)
        info = self._types.get(key)
        if info is not None:
            return info
        return RelationshipTypeInfo(type=key, label=key.replace("_", " "))

    async def strengthen_relationship(
        self, relationship_id: int, delta: float = 0.1
    ) -> Optional[Relationship]:
        """Raise the weight (capped) and refresh the timestamp; None for unknown ids."""
        current = self._graph.get_relationship(relationship_id)
        if current is None:
            return None
        weight = min(MAX_RELATIONSHIP_WEIGHT, max(0.0, current.weight + float(delta)))
        return await self._graph.update_relationship(
            relationship_id, weight=weight, timestamp=utc_now()
        )

    def get_strongest(self, entity_id: int, limit: int = 5) -> List[Relationship]:
        return self._graph.get_relationships(entity_id)[: max(0, int(limit))]

    def find_paths(
        self, from_id: int, to_id: int, max_length: int = 4, max_paths: int = 50
    ) -> List[RelationshipPath]:
        """
        Every simple path of at most `max_length` hops between two entities,
        strongest (highest mean weight) first.
        """
        if (
            from_id == to_id
            or self._graph.get_entity(from_id) is None
            or self._graph.get_entity(to_id) is None
        ):
            return []

        paths: List[RelationshipPath] = []
        entity_path: List[int] = [from_id]
        rel_path: List[Relationship] = []
        visited: Set[int] = {from_id}

        def _walk(current: int) -> None:
            if len(paths) >= max_paths:
                return
            if current == to_id:
                weight = sum(rel.weight for rel in rel_path) / len(rel_path)
                paths.append(RelationshipPath(list(entity_path), list(rel_path), weight))
                return
            if len(rel_path) >= max_length:
                return
            for rel in self._graph.get_relationships(current):
                neighbor = rel.other_end(current)
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                entity_path.append(neighbor)
                rel_path.append(rel)
                _walk(neighbor)
                rel_path.pop()
                entity_path.pop()
                visited.discard(neighbor)

        _walk(from_id)
        paths.sort(key=lambda path: (-path.total_weight, len(path.entity_ids)))
        return paths

    # -------------------------------------------------------------------------
    # Clusters
    # -------------------------------------------------------------------------

    def detect_clusters(self, min_size: int = 2) -> List[Cluster]:
        """Connected components over the whole graph, largest first."""
        visited: Set[int] = set()
        components: List[List[int]] = []
        for entity in self._graph.get_all_entities():
            if entity.id in visited:
                continue
            component: List[int] = []
            stack = [entity.id]
            visited.add(entity.id)
            while stack:
                current = stack.pop()
                component.append(current)
                for neighbor in self._graph.neighbor_ids(current):
                    if neighbor not in visited:
                        visited.add(neighbor)
                        stack.append(neighbor)
            if len(component) >= max(1, int(min_size)):
                components.append(sorted(component))

        components.sort(key=lambda ids: (-len(ids), ids[0]))
        clusters: List[Cluster] = []
        for position, member_ids in enumerate(components, start=1):
            members = [self._graph.get_entity(entity_id) for entity_id in member_ids]
            member_set = set(member_ids)
            internal = {
                rel.id
                for entity_id in member_ids
                for rel in self._graph.get_relationships(entity_id)
                if rel.source_id in member_set and rel.target_id in member_set
            }
            size = len(member_ids)
            possible = size * (size - 1) / 2
            central = max(
                members, key=lambda entity: (self._graph.degree(entity.id), -entity.id)
            )
            clusters.append(
                Cluster(
                    cluster_id=position,
                    entities=members,
                    central_entity=central,
                    density=min(1.0, len(internal) / possible) if possible else 0.0,
                )
            )
        return clusters

    def clusters_for_entity(self, entity_id: int) -> List[int]:
        return [
            cluster.cluster_id
            for cluster in self.detect_clusters()
            if any(entity.id == entity_id for entity in cluster.entities)
        ]

    # -------------------------------------------------------------------------
    # Inference
    # -------------------------------------------------------------------------

    def infer_relationships(self, entity_id: int, limit: int = 10) -> List[InferredRelationship]:
        """
        Two-hop link suggestions. Nothing is written to the graph.

        Transitive types chain at 0.6 of the weaker edge, uses->depends_on at
        0.4, two works_on edges to the same project suggest `knows` at 0.3,
        anything else suggests `related_to` at 0.15.
        """
        origin = self._graph.get_entity(entity_id)
        if origin is None:
            return []
        direct = self._graph.neighbor_ids(entity_id)
        best: Dict[int, InferredRelationship] = {}

        for first in self._graph.get_relationships(entity_id):
            middle_id = first.other_end(entity_id)
            middle = self._graph.get_entity(middle_id)
            if middle is None:
                continue
            for second in self._graph.get_relationships(middle_id):
                if second.id == first.id:
                    continue
                target_id = second.other_end(middle_id)
                if target_id == entity_id or target_id in direct:
                    continue
                target = self._graph.get_entity(target_id)
                if target is None:
                    continue
                candidate = self._infer_pair(origin, middle, target, first, second)
                if candidate is None or candidate.confidence <= 0.1:
                    continue
                existing = best.get(target_id)
                if existing is None or candidate.confidence > existing.confidence:
                    best[target_id] = candidate

        ranked = sorted(best.values(), key=lambda item: (-item.confidence, item.target_id))
        return ranked[: max(0, int(limit))]

    def _infer_pair(
        self,
        origin: Entity,
        middle: Entity,
        target: Entity,
        first: Relationship,
        second: Relationship,
    ) -> Optional[InferredRelationship]:
        weakest = min(first.weight, second.weight)
        first_info = self.get_type_info(first.type)
        if second.type in first_info.transitive_through:
            confidence = weakest * 0.6
            inferred_type = first.type
            reason = (
                f"{origin.name} {first_info.label} {middle.name}, which "
                f"{self.get_type_info(second.type).label} {target.name}"
            )
        elif first.type == "uses" and second.type == "depends_on":
            confidence = weakest * 0.4
            inferred_type = "depends_on"
            reason = f"{origin.name} uses {middle.name}, which depends on {target.name}"
        elif first.type == "works_on" and second.type == "works_on":
            confidence = weakest * 0.3
            inferred_type = "knows"
            reason = f"{origin.name} and {target.name} both work on {middle.name}"
        else:
            confidence = weakest * 0.15
            inferred_type = "related_to"
            reason = f"{origin.name} and {target.name} are both connected to {middle.name}"
        return InferredRelationship(
            source_id=origin.id,
            target_id=target.id,
            type=inferred_type,
            confidence=min(1.0, confidence),
            reason=reason,
            via=[middle.id],
        )

    # -------------------------------------------------------------------------
    # Decay
    # -------------------------------------------------------------------------

    async def _last_decay_at(self) -> Optional[datetime]:
        raw = await self._graph.get_meta(LAST_DECAY_META_KEY)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    async def decay_relationships(
        self, reference_time: Optional[datetime] = None
    ) -> Dict[str, int]:
        """
        Exponential weight decay since the later of the relationship's own
        timestamp and the previous decay pass. Relationships that end up at
        or below the removal threshold are deleted.
        """
        now = reference_time or utc_now()
        last_pass = await self._last_decay_at()
        half_life_seconds = self._half_life_days * 86400.0
        decayed = 0
        removed = 0
        checked = 0

        for relationship in self._graph.get_all_relationships():
            rate = self.get_type_info(relationship.type).decay_rate
            if rate <= 0:
                continue
            checked += 1
            start = relationship.timestamp
            if last_pass is not None and last_pass > start:
                start = last_pass
            elapsed = (now - start).total_seconds()
            if elapsed <= 0:
                continue
            factor = math.exp(-elapsed * math.log(2) * rate / half_life_seconds)
            new_weight = max(0.0, relationship.weight * factor)
            if new_weight <= self._remove_below:
                await self._graph.delete_relationship(relationship.id)
                removed += 1
            elif relationship.weight - new_weight > 1e-9:
                # Timestamp stays: it records the last observation, not the decay.
                await self._graph.update_relationship(relationship.id, weight=new_weight)
                decayed += 1

        await self._graph.set_meta(LAST_DECAY_META_KEY, now.isoformat())
        if removed:
            logger.info(f"Relationship decay removed {removed} relationships")
        return {"decayed": decayed, "removed": removed, "checked": checked}

    # -------------------------------------------------------------------------
    # Descriptions
    # -------------------------------------------------------------------------

    def describe_relationship(self, name_a: str, name_b: str) -> str:
        entity_a = self._graph.find_entity_by_name(name_a)
        entity_b = self._graph.find_entity_by_name(name_b)
        if entity_a is None or entity_b is None:
            missing = name_a if entity_a is None else name_b
            return f"No information about {missing}."

        direct = self._graph.get_relationship_between(entity_a.id, entity_b.id)
        if direct:
            parts = []
            for rel in direct:
                subject = self._graph.get_entity(rel.source_id)
                obj = self._graph.get_entity(rel.target_id)
                sentence = (
                    f"{subject.name} {_strength_word(rel.weight)} "
                    f"{self.get_type_info(rel.type).label} {obj.name}"
                )
                if rel.context:
                    sentence += f" ({rel.context})"
                parts.append(sentence)
            return "; ".join(parts) + "."

        path = self._graph.shortest_path(entity_a.id, entity_b.id)
        if path and len(path) > 2:
            intermediaries = [self._graph.get_entity(item).name for item in path[1:-1]]
            return (
                f"{entity_a.name} and {entity_b.name} are indirectly connected through "
                f"{len(intermediaries)} intermediary entities ({', '.join(intermediaries)})."
            )
        return f"No connection found between {entity_a.name} and {entity_b.name}."
