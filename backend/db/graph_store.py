"""
Knowledge graph store.

Entities and relationships are persisted in their own SQLite database and
mirrored into an in-memory arena:
- entities keyed by integer handle, with a lowercase name -> handle index
  and an alias -> handle index
- relationships keyed by integer handle, with an entity -> relationship
  adjacency set

Reads are served synchronously from the arena. Writes run in one
transaction each and touch the arena only after the commit succeeded, so a
failed write never leaves the arena ahead of the database.

Relationships are stored directed; every traversal here treats them as
undirected.
"""

import dataclasses
import json
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    or_,
    select,
)
from sqlalchemy.orm import declarative_base
from loguru import logger

from engine.models import Entity, Relationship, normalize_entity_type, utc_now
from engine.text import contains_phrase
from .base import SQLiteStore
from .migration_runner import MIGRATIONS_ROOT

GraphBase = declarative_base()


# =============================================================================
# ORM Models
# =============================================================================


class EntityRecord(GraphBase):
    __tablename__ = "entities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(32), nullable=False, default="custom")
    name = Column(String(255), nullable=False)
    # Lowercased name; enforces case-insensitive uniqueness.
    name_key = Column(String(255), nullable=False, unique=True)
    attributes = Column(Text, nullable=False, default="{}")
    first_seen = Column(DateTime, default=utc_now)
    last_seen = Column(DateTime, default=utc_now)
    mention_count = Column(Integer, nullable=False, default=1)
    confidence = Column(Float, nullable=False, default=0.5)


class EntityAliasRecord(GraphBase):
    __tablename__ = "entity_aliases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_id = Column(Integer, ForeignKey("entities.id"), nullable=False)
    alias = Column(String(255), nullable=False)
    alias_key = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime, default=utc_now)


class RelationshipRecord(GraphBase):
    __tablename__ = "relationships"
    __table_args__ = (
        UniqueConstraint("source_id", "target_id", "type", name="uq_relationship_edge"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(Integer, ForeignKey("entities.id"), nullable=False)
    target_id = Column(Integer, ForeignKey("entities.id"), nullable=False)
    type = Column(String(64), nullable=False)
    weight = Column(Float, nullable=False, default=1.0)
    context = Column(Text, nullable=False, default="")
    timestamp = Column(DateTime, default=utc_now)


class GraphMeta(GraphBase):
    """Graph runtime metadata (e.g. last decay pass)."""

    __tablename__ = "graph_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


def _name_key(name: str) -> str:
    return " ".join(str(name or "").split()).lower()


def _clean_name(name: Any) -> str:
    return " ".join(str(name or "").split())


def normalize_relationship_type(value: Any) -> str:
    """'Works On' -> 'works_on'."""
    return "_".join(str(value or "").strip().lower().split())


def _load_attributes(raw: Optional[str]) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _dump_attributes(attributes: Optional[Dict[str, Any]]) -> str:
    return json.dumps(attributes or {}, ensure_ascii=False, default=str)


class KnowledgeGraph(SQLiteStore):
    """
    Persistent entity/relationship store.

    Failure policy: lookups and mutations on a missing id return None /
    False / [] instead of raising. Creating a relationship with a missing
    endpoint, or an entity whose name is already taken, raises ValueError.
    """

    meta_table = "graph_meta"

    def __init__(self, database_url: str):
        super().__init__(database_url)
        self._entities: Dict[int, Entity] = {}
        self._name_index: Dict[str, int] = {}
        self._alias_index: Dict[str, int] = {}
        self._relationships: Dict[int, Relationship] = {}
        self._adjacency: Dict[int, Set[int]] = {}

    async def init_db(self) -> None:
        """Create tables, apply migrations and load the arena."""
        await self._create_schema(GraphBase.metadata, MIGRATIONS_ROOT / "graph")
        await self._load()

    async def _load(self) -> None:
        async with self.session() as session:
            entity_rows = (await session.execute(select(EntityRecord))).scalars().all()
            alias_rows = (await session.execute(select(EntityAliasRecord))).scalars().all()
            rel_rows = (await session.execute(select(RelationshipRecord))).scalars().all()

        self._entities.clear()
        self._name_index.clear()
        self._alias_index.clear()
        self._relationships.clear()
        self._adjacency.clear()

        for row in entity_rows:
            first_seen = row.first_seen or utc_now()
            entity = Entity(
                id=row.id,
                type=row.type,
                name=row.name,
                attributes=_load_attributes(row.attributes),
                first_seen=first_seen,
                last_seen=max(row.last_seen or first_seen, first_seen),
                mention_count=int(row.mention_count or 0),
                confidence=float(row.confidence or 0.0),
            )
            self._register_entity(entity)

        for row in alias_rows:
            entity = self._entities.get(row.entity_id)
            if entity is None:
                continue
            entity.aliases.append(row.alias)
            self._alias_index[row.alias_key] = entity.id

        for row in rel_rows:
            if row.source_id not in self._entities or row.target_id not in self._entities:
                logger.warning(f"Skipping dangling relationship {row.id} while loading graph")
                continue
            self._register_relationship(
                Relationship(
                    id=row.id,
                    source_id=row.source_id,
                    target_id=row.target_id,
                    type=row.type,
                    weight=max(0.0, float(row.weight or 0.0)),
                    context=row.context or "",
                    timestamp=row.timestamp or utc_now(),
                )
            )

        logger.debug(
            f"Loaded graph: {len(self._entities)} entities, "
            f"{len(self._relationships)} relationships"
        )

    # -------------------------------------------------------------------------
    # Arena bookkeeping
    # -------------------------------------------------------------------------

    def _register_entity(self, entity: Entity) -> None:
        self._entities[entity.id] = entity
        self._name_index[_name_key(entity.name)] = entity.id
        self._adjacency.setdefault(entity.id, set())

    def _register_relationship(self, relationship: Relationship) -> None:
        self._relationships[relationship.id] = relationship
        self._adjacency.setdefault(relationship.source_id, set()).add(relationship.id)
        self._adjacency.setdefault(relationship.target_id, set()).add(relationship.id)

    def _unregister_relationship(self, relationship_id: int) -> None:
        relationship = self._relationships.pop(relationship_id, None)
        if relationship is None:
            return
        for endpoint in (relationship.source_id, relationship.target_id):
            self._adjacency.get(endpoint, set()).discard(relationship_id)

    def _fresh_aliases(self, aliases: Optional[Iterable[str]], own_key: str) -> List[str]:
        fresh: List[str] = []
        seen: Set[str] = set()
        for alias in aliases or []:
            cleaned = _clean_name(alias)
            key = cleaned.lower()
            if not key or key == own_key or key in seen:
                continue
            if key in self._name_index or key in self._alias_index:
                continue
            seen.add(key)
            fresh.append(cleaned)
        return fresh

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    async def add_entity(
        self,
        type: Optional[str],
        name: str,
        attributes: Optional[Dict[str, Any]] = None,
        *,
        confidence: float = 0.5,
        mention_count: int = 1,
        first_seen: Optional[datetime] = None,
        last_seen: Optional[datetime] = None,
        aliases: Optional[Iterable[str]] = None,
    ) -> Entity:
        clean_name = _clean_name(name)
        if not clean_name:
            raise ValueError("Entity name must not be empty.")
        key = clean_name.lower()
        if key in self._name_index or key in self._alias_index:
            raise ValueError(f"Entity '{clean_name}' already exists.")

        entity_type = normalize_entity_type(type) or "custom"
        first = first_seen or utc_now()
        last = max(last_seen or first, first)
        confidence_value = min(1.0, max(0.0, float(confidence)))
        attribute_map = dict(attributes or {})
        fresh_aliases = self._fresh_aliases(aliases, key)

        async with self.session() as session:
            record = EntityRecord(
                type=entity_type,
                name=clean_name,
                name_key=key,
                attributes=_dump_attributes(attribute_map),
                first_seen=first,
                last_seen=last,
                mention_count=max(1, int(mention_count)),
                confidence=confidence_value,
            )
            session.add(record)
            await session.flush()
            entity_id = record.id
            for alias in fresh_aliases:
                session.add(
                    EntityAliasRecord(entity_id=entity_id, alias=alias, alias_key=alias.lower())
                )

        entity = Entity(
            id=entity_id,
            type=entity_type,
            name=clean_name,
            attributes=attribute_map,
            first_seen=first,
            last_seen=last,
            mention_count=max(1, int(mention_count)),
            confidence=confidence_value,
            aliases=list(fresh_aliases),
        )
        self._register_entity(entity)
        for alias in fresh_aliases:
            self._alias_index[alias.lower()] = entity_id
        return entity

    def get_entity(self, entity_id: int) -> Optional[Entity]:
        return self._entities.get(entity_id)

    def get_all_entities(self) -> List[Entity]:
        return [self._entities[key] for key in sorted(self._entities)]

    async def update_entity(
        self,
        entity_id: int,
        *,
        type: Optional[str] = None,
        name: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
        mention_count: Optional[int] = None,
        last_seen: Optional[datetime] = None,
        confidence: Optional[float] = None,
    ) -> Optional[Entity]:
        """
        Apply a partial update. Returns None for an unknown id.

        mention_count never decreases and last_seen never precedes first_seen;
        values that would break either are clamped.
        """
        current = self._entities.get(entity_id)
        if current is None:
            return None

        changes: Dict[str, Any] = {}
        if type is not None:
            changes["type"] = normalize_entity_type(type) or current.type
        if name is not None:
            clean_name = _clean_name(name)
            key = clean_name.lower()
            if not clean_name:
                raise ValueError("Entity name must not be empty.")
            owner = self._name_index.get(key, self._alias_index.get(key))
            if owner is not None and owner != entity_id:
                raise ValueError(f"Entity '{clean_name}' already exists.")
            changes["name"] = clean_name
        if attributes is not None:
            changes["attributes"] = dict(attributes)
        if mention_count is not None:
            changes["mention_count"] = max(current.mention_count, int(mention_count))
        if last_seen is not None:
            changes["last_seen"] = max(last_seen, current.first_seen)
        if confidence is not None:
            changes["confidence"] = min(1.0, max(0.0, float(confidence)))
        if not changes:
            return current

        updated = dataclasses.replace(current, **changes)
        async with self.session() as session:
            record = await session.get(EntityRecord, entity_id)
            if record is None:
                return None
            record.type = updated.type
            record.name = updated.name
            record.name_key = _name_key(updated.name)
            record.attributes = _dump_attributes(updated.attributes)
            record.mention_count = updated.mention_count
            record.last_seen = updated.last_seen
            record.confidence = updated.confidence

        if updated.name != current.name:
            self._name_index.pop(_name_key(current.name), None)
        self._register_entity(updated)
        return updated

    async def add_alias(self, entity_id: int, alias: str) -> bool:
        entity = self._entities.get(entity_id)
        if entity is None:
            return False
        fresh = self._fresh_aliases([alias], _name_key(entity.name))
        if not fresh:
            return False
        async with self.session() as session:
            session.add(
                EntityAliasRecord(entity_id=entity_id, alias=fresh[0], alias_key=fresh[0].lower())
            )
        entity.aliases.append(fresh[0])
        self._alias_index[fresh[0].lower()] = entity_id
        return True

    async def delete_entity(self, entity_id: int) -> bool:
        """Delete an entity together with every relationship and alias touching it."""
        entity = self._entities.get(entity_id)
        if entity is None:
            return False

        async with self.session() as session:
            await session.execute(
                delete(RelationshipRecord).where(
                    or_(
                        RelationshipRecord.source_id == entity_id,
                        RelationshipRecord.target_id == entity_id,
                    )
                )
            )
            await session.execute(
                delete(EntityAliasRecord).where(EntityAliasRecord.entity_id == entity_id)
            )
            await session.execute(delete(EntityRecord).where(EntityRecord.id == entity_id))

        for relationship_id in list(self._adjacency.get(entity_id, set())):
            self._unregister_relationship(relationship_id)
        self._adjacency.pop(entity_id, None)
        self._entities.pop(entity_id, None)
        self._name_index.pop(_name_key(entity.name), None)
        for alias in entity.aliases:
            self._alias_index.pop(alias.lower(), None)
        return True

    def find_entities(self, substring: str = "") -> List[Entity]:
        """Case-insensitive substring match on names; empty returns everything."""
        needle = _name_key(substring)
        matches = [
            entity
            for entity in self._entities.values()
            if not needle or needle in entity.name.lower()
        ]
        matches.sort(key=lambda entity: (-entity.mention_count, entity.name.lower()))
        return matches

    def get_entities_by_type(self, entity_type: str) -> List[Entity]:
        wanted = normalize_entity_type(entity_type)
        if wanted is None:
            return []
        matches = [entity for entity in self._entities.values() if entity.type == wanted]
        matches.sort(key=lambda entity: (-entity.mention_count, entity.name.lower()))
        return matches

    def get_recently_active(
        self, hours: float = 24.0, now: Optional[datetime] = None
    ) -> List[Entity]:
        """Entities seen within the last `hours`, most recently seen first."""
        cutoff = (now or utc_now()) - timedelta(hours=max(0.0, float(hours)))
        active = [entity for entity in self._entities.values() if entity.last_seen > cutoff]
        active.sort(key=lambda entity: (entity.last_seen, entity.mention_count), reverse=True)
        return active

    def find_entity_by_name(self, name: str) -> Optional[Entity]:
        """Exact case-insensitive name match, then alias match."""
        key = _name_key(name)
        if not key:
            return None
        entity_id = self._name_index.get(key)
        if entity_id is None:
            entity_id = self._alias_index.get(key)
        return self._entities.get(entity_id) if entity_id is not None else None

    def entities_mentioned_in(self, text: str) -> List[Entity]:
        """Entities whose name or alias appears as a whole word in `text`."""
        if not text or not text.strip():
            return []
        mentioned = [
            entity
            for entity in self._entities.values()
            if contains_phrase(text, entity.name)
            or any(contains_phrase(text, alias) for alias in entity.aliases)
        ]
        mentioned.sort(key=lambda entity: (-entity.mention_count, entity.name.lower()))
        return mentioned

    # -------------------------------------------------------------------------
    # Relationships
    # -------------------------------------------------------------------------

    async def add_relationship(
        self,
        source_id: int,
        target_id: int,
        type: str,
        weight: float = 1.0,
        context: str = "",
        timestamp: Optional[datetime] = None,
    ) -> Relationship:
        missing = [
            str(entity_id)
            for entity_id in (source_id, target_id)
            if entity_id not in self._entities
        ]
        if missing:
            raise ValueError(
                f"Cannot create relationship: entity {', '.join(missing)} does not exist."
            )
        relationship_type = normalize_relationship_type(type)
        if not relationship_type:
            raise ValueError("Relationship type must not be empty.")
        if self.find_relationship(source_id, target_id, relationship_type) is not None:
            raise ValueError(
                f"Relationship {source_id} -[{relationship_type}]-> {target_id} already exists."
            )

        weight_value = max(0.0, float(weight))
        stamp = timestamp or utc_now()
        context_value = str(context or "")
        async with self.session() as session:
            record = RelationshipRecord(
                source_id=source_id,
                target_id=target_id,
                type=relationship_type,
                weight=weight_value,
                context=context_value,
                timestamp=stamp,
            )
            session.add(record)
            await session.flush()
            relationship_id = record.id

        relationship = Relationship(
            id=relationship_id,
            source_id=source_id,
            target_id=target_id,
            type=relationship_type,
            weight=weight_value,
            context=context_value,
            timestamp=stamp,
        )
        self._register_relationship(relationship)
        return relationship

    def get_relationship(self, relationship_id: int) -> Optional[Relationship]:
        return self._relationships.get(relationship_id)

    def get_all_relationships(self) -> List[Relationship]:
        return [self._relationships[key] for key in sorted(self._relationships)]

    async def update_relationship(
        self,
        relationship_id: int,
        *,
        weight: Optional[float] = None,
        context: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Optional[Relationship]:
        current = self._relationships.get(relationship_id)
        if current is None:
            return None
        changes: Dict[str, Any] = {}
        if weight is not None:
            changes["weight"] = max(0.0, float(weight))
        if context is not None:
            changes["context"] = str(context)
        if timestamp is not None:
            changes["timestamp"] = timestamp
        if not changes:
            return current

        updated = dataclasses.replace(current, **changes)
        async with self.session() as session:
            record = await session.get(RelationshipRecord, relationship_id)
            if record is None:
                return None
            record.weight = updated.weight
            record.context = updated.context
            record.timestamp = updated.timestamp

        self._relationships[relationship_id] = updated
        return updated

    async def delete_relationship(self, relationship_id: int) -> bool:
        if relationship_id not in self._relationships:
            return False
        async with self.session() as session:
            await session.execute(
                delete(RelationshipRecord).where(RelationshipRecord.id == relationship_id)
            )
        self._unregister_relationship(relationship_id)
        return True

    def get_relationships(self, entity_id: int) -> List[Relationship]:
        """Relationships touching an entity in either direction, strongest first."""
        relationships = [
            self._relationships[rel_id]
            for rel_id in self._adjacency.get(entity_id, set())
            if rel_id in self._relationships
        ]
        relationships.sort(key=lambda rel: (-rel.weight, rel.id))
        return relationships

    def get_relationship_between(self, a: int, b: int) -> List[Relationship]:
        """Relationships linking a and b, in both directions."""
        return [
            rel
            for rel in self.get_relationships(a)
            if {rel.source_id, rel.target_id} == {a, b}
        ]

    def find_relationship(
        self, source_id: int, target_id: int, type: str
    ) -> Optional[Relationship]:
        relationship_type = normalize_relationship_type(type)
        for rel_id in self._adjacency.get(source_id, set()):
            rel = self._relationships.get(rel_id)
            if (
                rel is not None
                and rel.source_id == source_id
                and rel.target_id == target_id
                and rel.type == relationship_type
            ):
                return rel
        return None

    def degree(self, entity_id: int) -> int:
        return len(self._adjacency.get(entity_id, set()))

    def neighbor_ids(self, entity_id: int) -> Set[int]:
        neighbors: Set[int] = set()
        for rel_id in self._adjacency.get(entity_id, set()):
            rel = self._relationships.get(rel_id)
            if rel is not None:
                neighbors.add(rel.other_end(entity_id))
        neighbors.discard(entity_id)
        return neighbors

    # -------------------------------------------------------------------------
    # Traversal
    # -------------------------------------------------------------------------

    def get_connected_entities(self, entity_id: int, depth: int = 1) -> List[Entity]:
        """Entities reachable within `depth` hops, in BFS order, origin excluded."""
        if entity_id not in self._entities or depth < 1:
            return []
        visited: Set[int] = {entity_id}
        ordered: List[int] = []
        frontier = [entity_id]
        for _ in range(depth):
            next_frontier: List[int] = []
            for current in frontier:
                for neighbor in sorted(self.neighbor_ids(current)):
                    if neighbor in visited:
                        continue
                    visited.add(neighbor)
                    ordered.append(neighbor)
                    next_frontier.append(neighbor)
            if not next_frontier:
                break
            frontier = next_frontier
        return [self._entities[item] for item in ordered]

    def shortest_path(
        self, from_id: int, to_id: int, max_depth: int = 10
    ) -> Optional[List[int]]:
        """BFS path including both endpoints, or None when disconnected."""
        if from_id not in self._entities or to_id not in self._entities:
            return None
        if from_id == to_id:
            return [from_id]

        parents: Dict[int, int] = {}
        visited: Set[int] = {from_id}
        queue = deque([(from_id, 0)])
        while queue:
            current, distance = queue.popleft()
            if distance >= max_depth:
                continue
            for neighbor in sorted(self.neighbor_ids(current)):
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                parents[neighbor] = current
                if neighbor == to_id:
                    path = [to_id]
                    while path[-1] != from_id:
                        path.append(parents[path[-1]])
                    path.reverse()
                    return path
                queue.append((neighbor, distance + 1))
        return None

    def get_subgraph(self, entity_id: int, depth: int = 1) -> Dict[str, List[Any]]:
        """The entity, its neighborhood and every relationship among them."""
        origin = self._entities.get(entity_id)
        if origin is None:
            return {"entities": [], "relationships": []}
        members = [origin] + self.get_connected_entities(entity_id, depth)
        member_ids = {entity.id for entity in members}
        relationships = [
            rel
            for rel in self.get_all_relationships()
            if rel.source_id in member_ids and rel.target_id in member_ids
        ]
        return {"entities": members, "relationships": relationships}

    def get_stats(self) -> Dict[str, Any]:
        total_entities = len(self._entities)
        degrees = {entity_id: self.degree(entity_id) for entity_id in self._entities}
        most_connected = sorted(
            self._entities.values(),
            key=lambda entity: (-degrees[entity.id], entity.name.lower()),
        )[:10]
        return {
            "total_entities": total_entities,
            "total_relationships": len(self._relationships),
            "total_aliases": len(self._alias_index),
            "avg_connections": (
                round(sum(degrees.values()) / total_entities, 3) if total_entities else 0.0
            ),
            "most_connected": [
                {"id": entity.id, "name": entity.name, "connections": degrees[entity.id]}
                for entity in most_connected
                if degrees[entity.id] > 0
            ],
            "entity_types": dict(Counter(entity.type for entity in self._entities.values())),
            "relationship_types": dict(
                Counter(rel.type for rel in self._relationships.values())
            ),
        }
