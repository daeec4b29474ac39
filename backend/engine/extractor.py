"""
Entity extraction wrapper.

Batches texts into as few backend calls as possible, normalizes whatever
the backend returns into candidates and resolves candidates against the
entities the graph already knows.
"""

import hashlib
from typing import Any, Dict, Iterable, List, Optional, Set

from loguru import logger

from .collaborators import ExtractionBackend
from .models import (
    Entity,
    EntityCandidate,
    ExtractionResult,
    RelationshipCandidate,
    normalize_entity_type,
)


def _clean_str(value: Any) -> Optional[str]:
    if not isinstance(value, (str, int, float)):
        return None
    cleaned = " ".join(str(value).split())
    return cleaned or None


def _clean_confidence(value: Any) -> Optional[float]:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if numeric != numeric:
        return None
    return min(1.0, max(0.0, numeric))


def _first_present(item: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item.get(key)
    return None


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class EntityExtractor:
    def __init__(
        self,
        backend: ExtractionBackend,
        *,
        max_batch_size: int = 20,
        min_confidence: float = 0.3,
        skip_processed: bool = False,
    ):
        """
        Args:
            min_confidence: candidates (and relationship weights) below this
                            are dropped; a missing confidence counts as 0.5.
            skip_processed: remember hashes of extracted texts and never send
                            the same text to the backend twice.
        """
        self._backend = backend
        self._max_batch_size = max(1, int(max_batch_size))
        self._min_confidence = min(1.0, max(0.0, float(min_confidence)))
        self._skip_processed = bool(skip_processed)
        self._processed: Set[str] = set()

    @property
    def processed_count(self) -> int:
        return len(self._processed)

    def clear_processed_cache(self) -> None:
        self._processed.clear()

    async def extract_batch(
        self,
        texts: List[str],
        known_entities: Iterable[Entity],
        options: Optional[Dict[str, Any]] = None,
    ) -> ExtractionResult:
        """
        One backend call per batch of up to `max_batch_size` texts.

        Backend exceptions propagate; malformed output does not. Candidates
        lacking a name or type are kept so the caller can decide what to do.
        `options["min_confidence"]` overrides the extractor's threshold.
        """
        cleaned = [text.strip() for text in texts if isinstance(text, str) and text.strip()]
        if self._skip_processed:
            fresh: List[str] = []
            for text in cleaned:
                digest = _text_hash(text)
                if digest not in self._processed and text not in fresh:
                    fresh.append(text)
            cleaned = fresh
        if not cleaned:
            return ExtractionResult()

        min_confidence = self._min_confidence
        if options and options.get("min_confidence") is not None:
            min_confidence = _clean_confidence(options.get("min_confidence")) or 0.0

        known = list(known_entities)
        lookup = self._build_lookup(known)
        result = ExtractionResult()
        for start in range(0, len(cleaned), self._max_batch_size):
            batch = cleaned[start : start + self._max_batch_size]
            raw = await self._backend.extract(batch, known, options)
            entities, relationships = self._normalize(raw)
            result.entities.extend(entities)
            result.relationships.extend(relationships)
            if self._skip_processed:
                self._processed.update(_text_hash(text) for text in batch)

        kept = [
            candidate
            for candidate in result.entities
            if (0.5 if candidate.confidence is None else candidate.confidence) >= min_confidence
        ]
        if len(kept) < len(result.entities):
            logger.debug(
                f"Dropped {len(result.entities) - len(kept)} entity candidates "
                f"below confidence {min_confidence}"
            )
        result.entities = kept
        result.relationships = [
            relationship
            for relationship in result.relationships
            if relationship.weight >= min_confidence
        ]

        result.entities = self._merge_duplicates(
            [self._resolve(candidate, lookup) for candidate in result.entities]
        )
        canonical = {
            candidate.name.lower(): candidate.name
            for candidate in result.entities
            if candidate.name
        }
        for candidate in result.entities:
            for alias in candidate.aliases:
                if candidate.name:
                    canonical.setdefault(alias.lower(), candidate.name)
        for relationship in result.relationships:
            relationship.source = self._canonical_name(relationship.source, lookup, canonical)
            relationship.target = self._canonical_name(relationship.target, lookup, canonical)
        return result

    @staticmethod
    def _build_lookup(known: List[Entity]) -> Dict[str, Entity]:
        lookup: Dict[str, Entity] = {}
        for entity in known:
            lookup.setdefault(entity.name.lower(), entity)
        for entity in known:
            for alias in entity.aliases:
                lookup.setdefault(alias.lower(), entity)
        return lookup

    def _normalize(self, raw: Any):
        if isinstance(raw, ExtractionResult):
            return list(raw.entities), list(raw.relationships)
        if not isinstance(raw, dict):
            logger.warning(f"Extraction backend returned {type(raw).__name__}; ignoring it")
            return [], []

        entities: List[EntityCandidate] = []
        for item in _as_list(raw.get("entities")):
            if isinstance(item, EntityCandidate):
                entities.append(item)
                continue
            if not isinstance(item, dict):
                logger.debug(f"Skipping malformed entity candidate: {item!r}")
                continue
            attributes = item.get("attributes")
            attribute_map = dict(attributes) if isinstance(attributes, dict) else {}
            category = _clean_str(item.get("category"))
            if category:
                attribute_map.setdefault("category", category)
            entities.append(
                EntityCandidate(
                    name=_clean_str(item.get("name")),
                    type=normalize_entity_type(item.get("type")),
                    attributes=attribute_map,
                    confidence=_clean_confidence(item.get("confidence")),
                    aliases=[
                        alias
                        for alias in (_clean_str(value) for value in _as_list(item.get("aliases")))
                        if alias
                    ],
                )
            )

        relationships: List[RelationshipCandidate] = []
        for item in _as_list(raw.get("relationships")):
            if isinstance(item, RelationshipCandidate):
                relationships.append(item)
                continue
            if not isinstance(item, dict):
                logger.debug(f"Skipping malformed relationship candidate: {item!r}")
                continue
            weight = _clean_confidence(_first_present(item, ("weight", "confidence")))
            relationships.append(
                RelationshipCandidate(
                    source=_clean_str(_first_present(item, ("source", "sourceName", "source_name"))),
                    target=_clean_str(_first_present(item, ("target", "targetName", "target_name"))),
                    type=_clean_str(item.get("type")),
                    context=_clean_str(item.get("context")) or "",
                    weight=weight if weight is not None else 1.0,
                )
            )
        return entities, relationships

    @staticmethod
    def _resolve(candidate: EntityCandidate, lookup: Dict[str, Entity]) -> EntityCandidate:
        if not candidate.name:
            return candidate
        match = lookup.get(candidate.name.lower())
        if match is None:
            for alias in candidate.aliases:
                match = lookup.get(alias.lower())
                if match is not None:
                    break
        if match is None:
            return candidate

        confidence = candidate.confidence
        if confidence is None or confidence < match.confidence:
            confidence = match.confidence
        aliases = list(candidate.aliases)
        if candidate.name.lower() != match.name.lower():
            aliases.append(candidate.name)
        return EntityCandidate(
            name=match.name,
            type=candidate.type,
            attributes={**match.attributes, **candidate.attributes},
            confidence=confidence,
            aliases=aliases,
            id=match.id,
        )

    @staticmethod
    def _merge_duplicates(candidates: List[EntityCandidate]) -> List[EntityCandidate]:
        merged: Dict[str, EntityCandidate] = {}
        passthrough: List[EntityCandidate] = []
        order: List[str] = []
        for candidate in candidates:
            if not candidate.name:
                passthrough.append(candidate)
                continue
            key = candidate.name.lower()
            existing = merged.get(key)
            if existing is None:
                merged[key] = candidate
                order.append(key)
                continue
            existing.attributes = {**existing.attributes, **candidate.attributes}
            confidences = [c for c in (existing.confidence, candidate.confidence) if c is not None]
            existing.confidence = max(confidences) if confidences else None
            existing.type = existing.type or candidate.type
            existing.id = existing.id if existing.id is not None else candidate.id
            for alias in candidate.aliases:
                if alias.lower() not in {a.lower() for a in existing.aliases}:
                    existing.aliases.append(alias)
        return [merged[key] for key in order] + passthrough

    @staticmethod
    def _canonical_name(
        name: Optional[str], lookup: Dict[str, Entity], canonical: Dict[str, str]
    ) -> Optional[str]:
        if not name:
            return name
        known = lookup.get(name.lower())
        if known is not None:
            return known.name
        return canonical.get(name.lower(), name)
