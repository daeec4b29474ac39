"""
Memory engine facade.

Wires the knowledge graph, the relevance index, extraction, relationship
mapping, ranking and consolidation into the operations agents call:
ingest, recall, remember, forget, consolidate and a handful of read-only
composites. Mutating operations run inside a write lane and hold the
engine's mutation lock while they touch the graph or the index.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from db.graph_store import KnowledgeGraph, normalize_relationship_type
from db.index_store import RelevanceIndex
from runtime_state import WriteLaneCoordinator, runtime_state
from .collaborators import (
    EmbeddingBackend,
    ExtractionBackend,
    ExtractiveSummarizer,
    SummarizationBackend,
    build_collaborators_from_env,
)
from .config import MemoryEngineConfig
from .consolidator import ConsolidationOptions, ContradictionStrategy, MemoryConsolidator
from .context_ranker import ContextRanker, RankOptions
from .extractor import EntityExtractor
from .models import (
    Entity,
    EntityCandidate,
    FragmentSignals,
    MemoryFragment,
    RelationshipCandidate,
    ScoredDocument,
    TimeRange,
    utc_now,
)
from .relationship_mapper import RelationshipMapper
from .text import contains_phrase, estimate_tokens

MAINTENANCE_LANE = "maintenance"
REMEMBER_LANE = "remember"
ORIGIN_SOURCE_KEY = "origin_source"


def message_text(message: Any) -> str:
    """Plain text of a chat message: a string body or a list of text parts."""
    if isinstance(message, str):
        return message.strip()
    if isinstance(message, dict):
        content = message.get("content")
    else:
        content = getattr(message, "content", None)

    if isinstance(content, str):
        return content.strip()
    if not isinstance(content, list):
        return ""

    parts: List[str] = []
    for part in content:
        if isinstance(part, str):
            text = part
        elif isinstance(part, dict):
            if part.get("type", "text") != "text":
                continue
            text = part.get("text")
        else:
            text = getattr(part, "text", None)
        if isinstance(text, str) and text.strip():
            parts.append(text.strip())
    return "\n".join(parts)


def _fragment_from_document(document: ScoredDocument, relevance: float = 0.0) -> MemoryFragment:
    return MemoryFragment(
        content=document.content,
        source=document.source,
        timestamp=document.timestamp,
        score=document.score,
        tokens=estimate_tokens(document.content),
        signals=FragmentSignals(relevance=relevance),
        document_id=document.id,
        metadata=dict(document.metadata),
    )


def _select_within_budget(fragments: List[MemoryFragment], budget: int) -> List[MemoryFragment]:
    selected: List[MemoryFragment] = []
    used = 0
    for fragment in sorted(fragments, key=lambda item: -item.signals.relevance):
        if used + fragment.tokens > budget:
            continue
        fragment.score = fragment.signals.relevance
        fragment.rank = len(selected) + 1
        used += fragment.tokens
        selected.append(fragment)
    return selected


class MemoryEngine:
    def __init__(
        self,
        config: MemoryEngineConfig,
        *,
        extractor: Optional[ExtractionBackend] = None,
        summarizer: Optional[SummarizationBackend] = None,
        embedder: Optional[EmbeddingBackend] = None,
        write_lanes: Optional[WriteLaneCoordinator] = None,
        contradiction_strategy: Optional[ContradictionStrategy] = None,
    ):
        self.config = config
        self._write_lanes = write_lanes or WriteLaneCoordinator()
        self._mutation_lock = asyncio.Lock()
        self._extraction_enabled = extractor is not None and bool(
            getattr(extractor, "configured", True)
        )

        self.graph = KnowledgeGraph(config.graph_database_url)
        self.index = RelevanceIndex(
            config.index_database_url,
            embedder=embedder,
            chunk_size=config.chunk_size,
            chunk_overlap=config.chunk_overlap,
            semantic_weight=config.semantic_weight,
        )
        self.extractor = (
            EntityExtractor(
                extractor,
                max_batch_size=config.extraction_batch_size,
                min_confidence=config.extraction_min_confidence,
            )
            if extractor is not None
            else None
        )
        self.mapper = RelationshipMapper(
            self.graph,
            decay_half_life_days=config.decay_half_life_days,
            remove_below=config.decay_remove_below,
        )
        self.ranker = ContextRanker(
            self.graph,
            half_life_hours=config.recency_half_life_hours,
            long_term_sources=(config.long_term_source, "MEMORY.md"),
        )
        self.consolidator = MemoryConsolidator(
            summarizer or ExtractiveSummarizer(),
            graph=self.graph,
            strategy=contradiction_strategy,
            options=ConsolidationOptions(
                similarity_threshold=config.similarity_threshold,
                high_score_threshold=config.high_score_threshold,
            ),
        )
        self._initialized = False

    async def init(self) -> None:
        if self._initialized:
            return
        await self.graph.init_db()
        await self.index.init_db()
        self._initialized = True
        graph_stats = self.graph.get_stats()
        logger.info(
            f"Memory engine ready: {graph_stats['total_entities']} entities, "
            f"{graph_stats['total_relationships']} relationships, "
            f"{len(self.index.dump())} documents"
        )

    async def close(self) -> None:
        await self.graph.close()
        await self.index.close()
        self._initialized = False

    async def _run_write(
        self, session_id: str, operation: str, task: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Run `task` in a write lane while holding the mutation lock."""

        async def _locked_task():
            async with self._mutation_lock:
                return await task()

        return await self._write_lanes.run_write(
            session_id=session_id, operation=operation, task=_locked_task
        )

    # =========================================================================
    # Ingest
    # =========================================================================

    async def ingest(self, messages: Iterable[Any], agent_id: str = "default") -> Dict[str, Any]:
        """
        Extract entities and relationships from messages, update the graph
        and index the combined text under `agent:{agent_id}`.

        Extraction and graph-write failures degrade the result instead of
        raising; the raw text is indexed regardless.
        """
        texts = [text for text in (message_text(m) for m in (messages or [])) if text]
        agent = (agent_id or "").strip() or "default"
        if not texts:
            return {
                "entities": [],
                "relationships": [],
                "indexed": 0,
                "degraded": False,
                "degrade_reasons": [],
            }

        async def _write_task():
            return await self._ingest_locked(texts, agent)

        return await self._write_lanes.run_write(
            session_id=agent, operation="ingest", task=_write_task
        )

    async def _ingest_locked(self, texts: List[str], agent_id: str) -> Dict[str, Any]:
        degrade_reasons: List[str] = []
        stored_entities: List[Entity] = []
        stored_relationships: List[Dict[str, Any]] = []

        extraction = None
        if self.extractor is None or not self._extraction_enabled:
            degrade_reasons.append("extraction_unavailable")
        else:
            try:
                extraction = await self.extractor.extract_batch(
                    texts, self.graph.get_all_entities(), {"agent_id": agent_id}
                )
            except Exception as exc:
                logger.warning(f"Entity extraction failed for agent '{agent_id}': {exc}")
                degrade_reasons.append("extraction_failed")

        # Extraction runs unlocked; candidates are re-resolved by name under the lock.
        async with self._mutation_lock:
            if extraction is not None:
                now = utc_now()
                try:
                    for candidate in extraction.entities:
                        entity = await self._upsert_entity(candidate, now)
                        if entity is not None:
                            stored_entities.append(entity)
                    for relationship in extraction.relationships:
                        stored = await self._upsert_relationship(relationship, now)
                        if stored is not None:
                            stored_relationships.append(stored)
                except Exception as exc:
                    logger.warning(f"Graph update failed for agent '{agent_id}': {exc}")
                    degrade_reasons.append("graph_update_failed")

            document_ids = await self.index.index(
                "\n\n".join(texts),
                f"agent:{agent_id}",
                {"agent_id": agent_id, "message_count": len(texts)},
                importance=self.config.default_importance,
            )
        return {
            "entities": [entity.to_dict() for entity in stored_entities],
            "relationships": stored_relationships,
            "indexed": len(document_ids),
            "degraded": bool(degrade_reasons),
            "degrade_reasons": degrade_reasons,
        }

    async def _upsert_entity(self, candidate: EntityCandidate, now) -> Optional[Entity]:
        if not candidate.name or not candidate.type:
            logger.debug(f"Dropping entity candidate without name or type: {candidate.to_dict()}")
            return None

        existing = self.graph.get_entity(candidate.id) if candidate.id is not None else None
        if existing is None:
            existing = self.graph.find_entity_by_name(candidate.name)
        if existing is None:
            for alias in candidate.aliases:
                existing = self.graph.find_entity_by_name(alias)
                if existing is not None:
                    break

        if existing is None:
            try:
                return await self.graph.add_entity(
                    candidate.type,
                    candidate.name,
                    candidate.attributes,
                    confidence=candidate.confidence if candidate.confidence is not None else 0.5,
                    first_seen=now,
                    last_seen=now,
                    aliases=candidate.aliases,
                )
            except ValueError as exc:
                logger.warning(f"Skipping entity '{candidate.name}': {exc}")
                return None

        confidence = existing.confidence
        if candidate.confidence is not None:
            confidence = max(confidence, candidate.confidence)
        updated = await self.graph.update_entity(
            existing.id,
            attributes={**existing.attributes, **candidate.attributes},
            mention_count=existing.mention_count + 1,
            last_seen=now,
            confidence=confidence,
        )
        aliases = list(candidate.aliases)
        if candidate.name.lower() != existing.name.lower():
            aliases.append(candidate.name)
        for alias in aliases:
            await self.graph.add_alias(existing.id, alias)
        return self.graph.get_entity(existing.id) or updated

    async def _upsert_relationship(
        self, candidate: RelationshipCandidate, now
    ) -> Optional[Dict[str, Any]]:
        relationship_type = normalize_relationship_type(candidate.type or "")
        if not candidate.source or not candidate.target or not relationship_type:
            logger.debug(f"Dropping incomplete relationship candidate: {candidate.to_dict()}")
            return None
        source = self.graph.find_entity_by_name(candidate.source)
        target = self.graph.find_entity_by_name(candidate.target)
        if source is None or target is None:
            logger.debug(
                f"Dropping relationship with unknown endpoint: "
                f"{candidate.source} -[{relationship_type}]-> {candidate.target}"
            )
            return None
        if source.id == target.id:
            return None

        existing = self.graph.find_relationship(source.id, target.id, relationship_type)
        if existing is not None:
            stored = await self.mapper.strengthen_relationship(
                existing.id, self.config.relationship_strengthen_delta
            )
            if stored is not None and candidate.context and not stored.context:
                stored = await self.graph.update_relationship(stored.id, context=candidate.context)
        else:
            stored = await self.graph.add_relationship(
                source.id,
                target.id,
                relationship_type,
                weight=candidate.weight,
                context=candidate.context,
                timestamp=now,
            )
        if stored is None:
            return None
        return {**stored.to_dict(), "source": source.name, "target": target.name}

    # =========================================================================
    # Recall
    # =========================================================================

    def _query_entities(self, query: str) -> List[Entity]:
        matched = self.graph.entities_mentioned_in(query)
        if not matched and query.strip():
            matched = self.graph.find_entities(query)[:5]
        return matched

    def _related_entities(self, query_entities: List[Entity]) -> List[Entity]:
        related: Dict[int, Entity] = {}
        for entity in query_entities:
            related[entity.id] = entity
            for neighbor in self.graph.get_connected_entities(entity.id, 1):
                related.setdefault(neighbor.id, neighbor)
        ordered = sorted(
            related.values(), key=lambda entity: (-entity.mention_count, entity.name.lower())
        )
        return ordered[: self.config.recall_related_entities]

    @staticmethod
    def _format_context(entities: List[Entity], fragments: List[MemoryFragment]) -> str:
        sections: List[str] = []
        if entities:
            lines = "\n".join(
                f"- {entity.name} ({entity.type}): mentioned {entity.mention_count}x"
                for entity in entities
            )
            sections.append(f"[Known Entities]\n{lines}")
        if fragments:
            memories = "\n---\n".join(fragment.content for fragment in fragments)
            sections.append(f"[Relevant Memories]\n{memories}")
        return "\n\n".join(sections)

    async def recall(
        self,
        query: str,
        max_tokens: Optional[int] = None,
        limit: Optional[int] = None,
        sources: Optional[Sequence[str]] = None,
        time_range: Optional[TimeRange] = None,
        priority_sources: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """
        Ranked, token-bounded context for a query.

        Never raises: a failing graph, index, embedder or ranker degrades
        the answer and is named in `degrade_reasons`.
        """
        query_text = (query or "").strip()
        budget = self.config.recall_max_tokens if max_tokens is None else int(max_tokens)
        hit_limit = self.config.recall_limit if limit is None else int(limit)
        degrade_reasons: List[str] = []

        query_entities: List[Entity] = []
        try:
            query_entities = self._query_entities(query_text)
        except Exception as exc:
            logger.warning(f"Graph lookup failed during recall: {exc}")
            degrade_reasons.append("graph_unavailable")

        expand_terms: List[str] = []
        for entity in query_entities:
            expand_terms.append(entity.name)
            expand_terms.extend(entity.aliases)

        hits: List[ScoredDocument] = []
        try:
            hits = await self.index.search_async(
                query_text,
                limit=hit_limit,
                sources=sources,
                time_range=time_range,
                expand_terms=expand_terms,
                degrade_reasons=degrade_reasons,
            )
        except Exception as exc:
            logger.warning(f"Index search failed during recall: {exc}")
            degrade_reasons.append("index_unavailable")

        max_score = max((hit.score for hit in hits), default=0.0) or 1.0
        fragments = [_fragment_from_document(hit, relevance=hit.score / max_score) for hit in hits]

        ranked: List[MemoryFragment] = []
        try:
            ranked = self.ranker.rank(
                fragments,
                query_text,
                budget,
                RankOptions(
                    diversity_penalty=self.config.diversity_penalty,
                    priority_sources=tuple(priority_sources or ()),
                ),
            )
        except Exception as exc:
            logger.warning(f"Context ranking failed during recall: {exc}")
            degrade_reasons.append("ranking_failed")
            ranked = _select_within_budget(fragments, budget)

        related: List[Entity] = []
        try:
            related = self._related_entities(query_entities)
        except Exception as exc:
            logger.warning(f"Related entity lookup failed during recall: {exc}")
            if "graph_unavailable" not in degrade_reasons:
                degrade_reasons.append("graph_unavailable")

        return {
            "context": self._format_context(related, ranked),
            "fragments": [fragment.to_dict() for fragment in ranked],
            "related_entities": [entity.to_dict() for entity in related],
            "degraded": bool(degrade_reasons),
            "degrade_reasons": degrade_reasons,
        }

    # =========================================================================
    # Explicit facts
    # =========================================================================

    async def remember(self, fact: str, source: str = "explicit") -> List[int]:
        text = (fact or "").strip()
        if not text:
            return []
        source_value = (source or "").strip() or "explicit"

        async def _write_task():
            return await self.index.index(
                text,
                source_value,
                {"explicit": True},
                importance=self.config.explicit_fact_importance,
            )

        return await self._run_write(REMEMBER_LANE, "remember", _write_task)

    async def forget(self, entity_or_fact: str) -> Dict[str, int]:
        """
        Delete the entity named (or aliased) `entity_or_fact` with all its
        relationships, every document from that source (including documents
        promoted away from it) and every document whose content is exactly
        that text.
        """
        target = (entity_or_fact or "").strip()
        if not target:
            return {"deleted_entities": 0, "deleted_index": 0}

        async def _write_task():
            deleted_entities = 0
            entity = self.graph.find_entity_by_name(target)
            if entity is not None and await self.graph.delete_entity(entity.id):
                deleted_entities += 1
            deleted_index = await self.index.remove_by_source(target)
            matching = [
                document.id
                for document in self.index.dump()
                if document.content.strip() == target
                or document.metadata.get(ORIGIN_SOURCE_KEY) == target
            ]
            deleted_index += await self.index.remove_documents(matching)
            if deleted_entities or deleted_index:
                logger.info(
                    f"Forgot '{target}': {deleted_entities} entities, {deleted_index} documents"
                )
            return {"deleted_entities": deleted_entities, "deleted_index": deleted_index}

        return await self._run_write(MAINTENANCE_LANE, "forget", _write_task)

    # =========================================================================
    # Read-only composites
    # =========================================================================

    def get_entity_profile(self, name: str) -> Optional[Dict[str, Any]]:
        entity = self.graph.find_entity_by_name(name)
        if entity is None:
            return None

        relationships = []
        for rel in self.graph.get_relationships(entity.id):
            related = self.graph.get_entity(rel.other_end(entity.id))
            if related is None:
                continue
            relationships.append(
                {
                    "relationship": rel.to_dict(),
                    "related_entity": related.to_dict(),
                    "direction": "outgoing" if rel.source_id == entity.id else "incoming",
                }
            )

        inferred = []
        for item in self.mapper.infer_relationships(entity.id, 5):
            target = self.graph.get_entity(item.target_id)
            if target is not None:
                inferred.append(
                    {
                        "entity": target.to_dict(),
                        "type": item.type,
                        "reason": item.reason,
                        "confidence": round(item.confidence, 4),
                    }
                )

        mentions = self.index.search(entity.name, limit=10, expand_terms=entity.aliases)
        return {
            "entity": entity.to_dict(),
            "relationships": relationships,
            "mentions": [mention.to_dict() for mention in mentions],
            "clusters": self.mapper.clusters_for_entity(entity.id),
            "inferred_connections": inferred,
        }

    def get_timeline(self, entity_name: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Documents mentioning the entity, oldest first."""
        name = (entity_name or "").strip()
        if not name:
            return []
        entity = self.graph.find_entity_by_name(name)
        expand = [entity.name, *entity.aliases] if entity is not None else []
        hits = self.index.search(name, limit=limit, expand_terms=expand)

        known_names = [item.name for item in self.graph.find_entities(name)]
        if entity is not None and entity.name not in known_names:
            known_names.insert(0, entity.name)

        entries = [
            {
                "timestamp": hit.timestamp.isoformat(),
                "content": hit.content,
                "source": hit.source,
                "document_id": hit.id,
                "entities": [
                    known for known in known_names if contains_phrase(hit.content, known)
                ],
            }
            for hit in hits
        ]
        entries.sort(key=lambda entry: (entry["timestamp"], entry["document_id"]))
        return entries

    def summarize_relationship(self, entity_a: str, entity_b: str) -> str:
        return self.mapper.describe_relationship(entity_a, entity_b)

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def consolidate(self, dry_run: bool = False) -> Dict[str, Any]:
        """
        Contradictions, deduplication, promotion and relationship decay over
        the whole index. With `dry_run` nothing is written and decay is
        skipped.
        """

        async def _write_task():
            return await self._consolidate_locked(dry_run)

        return await self._run_write(MAINTENANCE_LANE, "consolidate", _write_task)

    async def _consolidate_locked(self, dry_run: bool) -> Dict[str, Any]:
        self.consolidator.reset_changelog()
        fragments = [
            _fragment_from_document(document, relevance=document.importance)
            for document in self.index.dump()
        ]

        contradictions = self.consolidator.detect_contradictions(fragments)
        resolution = self.consolidator.resolve_contradictions(contradictions)
        discarded_ids = {fragment.document_id for fragment in resolution.discard}
        survivors = [f for f in fragments if f.document_id not in discarded_ids]

        result = await self.consolidator.consolidate(survivors)
        removed_ids = discarded_ids | {fragment.document_id for fragment in result.removed}

        promoted = self.consolidator.promote_frequent(
            result.kept + result.merged,
            min_mentions=self.config.promotion_min_mentions,
            min_score=self.config.promotion_min_score,
        )
        long_term = self.config.long_term_source
        to_promote = [
            candidate.fragment
            for candidate in promoted
            if candidate.fragment.source != long_term
            and candidate.fragment.document_id is not None
            and candidate.fragment.document_id not in removed_ids
        ]

        decay = {"decayed": 0, "removed": 0, "checked": 0}
        if not dry_run:
            await self.index.remove_documents(
                [document_id for document_id in removed_ids if document_id is not None]
            )
            for merged in result.merged:
                if merged.document_id is None:
                    continue
                await self.index.update_document(
                    merged.document_id,
                    content=merged.content,
                    metadata=merged.metadata,
                    timestamp=merged.timestamp,
                )
            for fragment in to_promote:
                document = self.index.get_document(fragment.document_id)
                if document is None:
                    continue
                metadata = dict(document.metadata)
                metadata.setdefault(ORIGIN_SOURCE_KEY, document.source)
                await self.index.update_document(
                    document.id, source=long_term, metadata=metadata
                )
            decay = await self.mapper.decay_relationships()

        summary = {
            "merged": len(result.merged),
            "removed": len(removed_ids),
            "promoted": [candidate.to_dict() for candidate in promoted],
            "decayed": decay["decayed"] + decay["removed"],
            "relationships_removed": decay["removed"],
            "contradictions": [item.to_dict() for item in contradictions],
            "changelog": [entry.to_dict() for entry in self.consolidator.changelog],
            "dry_run": bool(dry_run),
        }
        logger.info(
            f"Consolidation{' (dry run)' if dry_run else ''}: merged={summary['merged']} "
            f"removed={summary['removed']} promoted={len(to_promote)} "
            f"decayed={summary['decayed']} contradictions={len(contradictions)}"
        )
        return summary

    async def decay_relationships(self) -> Dict[str, int]:
        return await self._run_write(
            MAINTENANCE_LANE, "decay_relationships", self.mapper.decay_relationships
        )

    async def rebuild_index(self) -> Dict[str, int]:
        return await self._run_write(MAINTENANCE_LANE, "rebuild_index", self.index.rebuild)

    def get_memory_stats(self) -> Dict[str, Any]:
        graph_stats = self.graph.get_stats()
        index_stats = self.index.get_stats()
        top_entities = sorted(
            self.graph.get_all_entities(),
            key=lambda entity: (-entity.mention_count, entity.name.lower()),
        )[:10]
        return {
            "total_entities": graph_stats["total_entities"],
            "total_relationships": graph_stats["total_relationships"],
            "total_index_entries": index_stats["total_documents"],
            "total_sources": index_stats["total_sources"],
            "entity_types": graph_stats["entity_types"],
            "relationship_types": graph_stats["relationship_types"],
            "top_entities": [
                {"name": entity.name, "type": entity.type, "mentions": entity.mention_count}
                for entity in top_entities
            ],
            "oldest_memory": index_stats["oldest"],
            "newest_memory": index_stats["newest"],
            "graph": graph_stats,
            "index": index_stats,
        }

    def export(self) -> Dict[str, Any]:
        return {
            "entities": [entity.to_dict() for entity in self.graph.get_all_entities()],
            "relationships": [rel.to_dict() for rel in self.graph.get_all_relationships()],
            "stats": self.get_memory_stats(),
        }


_memory_engine: Optional[MemoryEngine] = None


def get_memory_engine() -> MemoryEngine:
    """Get the global MemoryEngine instance (call `await engine.init()` before use)."""
    global _memory_engine
    if _memory_engine is None:
        config = MemoryEngineConfig.from_env()
        collaborators = build_collaborators_from_env()
        _memory_engine = MemoryEngine(
            config,
            extractor=collaborators["extractor"],
            summarizer=collaborators["summarizer"],
            embedder=collaborators["embedder"],
            write_lanes=runtime_state.write_lanes,
        )
    return _memory_engine


async def close_memory_engine():
    """Close the global MemoryEngine connections."""
    global _memory_engine
    if _memory_engine:
        await _memory_engine.close()
        _memory_engine = None
