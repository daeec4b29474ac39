"""
Value types shared by the graph store, the relevance index and the engine.

Entities and relationships are owned by the graph store; documents by the
relevance index. Everything else in this module is transient: fragments,
changelog entries and consolidation results never hit the disk as-is.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ENTITY_TYPES = ("person", "project", "concept", "place", "file", "event", "custom")

CHANGELOG_ACTIONS = ("merged", "removed", "promoted", "contradiction_resolved")


def utc_now() -> datetime:
    """Naive UTC datetime, matching what SQLite columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_entity_type(value: Any) -> Optional[str]:
    if value is None:
        return None
    lowered = str(value).strip().lower()
    if not lowered:
        return None
    return lowered if lowered in ENTITY_TYPES else "custom"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else None


@dataclass
class Entity:
    id: int
    type: str
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    first_seen: datetime = field(default_factory=utc_now)
    last_seen: datetime = field(default_factory=utc_now)
    mention_count: int = 1
    confidence: float = 0.5
    aliases: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "attributes": dict(self.attributes),
            "first_seen": _iso(self.first_seen),
            "last_seen": _iso(self.last_seen),
            "mention_count": self.mention_count,
            "confidence": round(float(self.confidence), 4),
            "aliases": list(self.aliases),
        }


@dataclass
class Relationship:
    id: int
    source_id: int
    target_id: int
    type: str
    weight: float = 1.0
    context: str = ""
    timestamp: datetime = field(default_factory=utc_now)

    def other_end(self, entity_id: int) -> int:
        return self.target_id if self.source_id == entity_id else self.source_id

    def touches(self, entity_id: int) -> bool:
        return entity_id in (self.source_id, self.target_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "type": self.type,
            "weight": round(float(self.weight), 4),
            "context": self.context,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class EntityCandidate:
    """An entity proposed by the extraction backend, possibly incomplete."""

    name: Optional[str]
    type: Optional[str]
    attributes: Dict[str, Any] = field(default_factory=dict)
    confidence: Optional[float] = None
    aliases: List[str] = field(default_factory=list)
    id: Optional[int] = None

    @property
    def is_new(self) -> bool:
        return self.id is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "attributes": dict(self.attributes),
            "confidence": self.confidence,
            "aliases": list(self.aliases),
            "is_new": self.is_new,
        }


@dataclass
class RelationshipCandidate:
    source: Optional[str]
    target: Optional[str]
    type: Optional[str]
    context: str = ""
    weight: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "type": self.type,
            "context": self.context,
            "weight": self.weight,
        }


@dataclass
class ExtractionResult:
    entities: List[EntityCandidate] = field(default_factory=list)
    relationships: List[RelationshipCandidate] = field(default_factory=list)


@dataclass
class TimeRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, value: datetime) -> bool:
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True


@dataclass
class ScoredDocument:
    id: int
    content: str
    source: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    score: float = 0.0
    lexical_score: float = 0.0
    semantic_score: Optional[float] = None
    importance: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "source": self.source,
            "timestamp": _iso(self.timestamp),
            "metadata": dict(self.metadata),
            "score": round(float(self.score), 6),
            "lexical_score": round(float(self.lexical_score), 6),
            "semantic_score": (
                round(float(self.semantic_score), 6)
                if self.semantic_score is not None
                else None
            ),
            "importance": self.importance,
        }


@dataclass
class FragmentSignals:
    relevance: float = 0.0
    recency: float = 0.0
    connections: float = 0.0
    frequency: float = 0.0
    diversity_penalty: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "relevance": round(self.relevance, 4),
            "recency": round(self.recency, 4),
            "connections": round(self.connections, 4),
            "frequency": round(self.frequency, 4),
            "diversity_penalty": round(self.diversity_penalty, 4),
        }


@dataclass
class MemoryFragment:
    content: str
    source: str
    timestamp: datetime
    score: float = 0.0
    tokens: int = 0
    signals: FragmentSignals = field(default_factory=FragmentSignals)
    document_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    rank: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "source": self.source,
            "timestamp": _iso(self.timestamp),
            "score": round(float(self.score), 6),
            "tokens": self.tokens,
            "signals": self.signals.to_dict(),
            "document_id": self.document_id,
            "rank": self.rank,
        }


@dataclass
class ChangeLogEntry:
    action: str
    description: str
    fragments: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "description": self.description,
            "fragments": list(self.fragments),
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class Contradiction:
    a: MemoryFragment
    b: MemoryFragment
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"a": self.a.to_dict(), "b": self.b.to_dict(), "reason": self.reason}


@dataclass
class ContradictionResolution:
    keep: List[MemoryFragment] = field(default_factory=list)
    discard: List[MemoryFragment] = field(default_factory=list)


@dataclass
class PromotionCandidate:
    fragment: MemoryFragment
    reason: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fragment": self.fragment.to_dict(),
            "reason": self.reason,
            "score": round(float(self.score), 4),
        }


@dataclass
class ConsolidationResult:
    kept: List[MemoryFragment] = field(default_factory=list)
    merged: List[MemoryFragment] = field(default_factory=list)
    removed: List[MemoryFragment] = field(default_factory=list)
    changelog: List[ChangeLogEntry] = field(default_factory=list)


@dataclass
class Cluster:
    cluster_id: int
    entities: List[Entity]
    central_entity: Optional[Entity] = None
    density: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "entities": [entity.name for entity in self.entities],
            "central_entity": self.central_entity.name if self.central_entity else None,
            "density": round(self.density, 4),
        }


@dataclass
class InferredRelationship:
    source_id: int
    target_id: int
    type: str
    confidence: float
    reason: str
    via: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "type": self.type,
            "confidence": round(self.confidence, 4),
            "reason": self.reason,
            "via": list(self.via),
        }


@dataclass
class RelationshipPath:
    """A simple path between two entities; `total_weight` is the mean edge weight."""

    entity_ids: List[int]
    relationships: List[Relationship]
    total_weight: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_ids": list(self.entity_ids),
            "relationships": [rel.to_dict() for rel in self.relationships],
            "total_weight": round(self.total_weight, 4),
        }
