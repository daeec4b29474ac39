"""
Relevance index over stored documents.

Each document keeps its raw content, source, timestamp and metadata plus a
derived term-frequency table. Scoring is BM25 (k1=1.2, b=0.75) over the
full working set held in memory; an optional embedding backend adds a
cosine signal on top of the lexical candidates in `search_async`.

Long content is split into overlapping chunks, one document per chunk, so
a single remembered fact never dominates the average document length.
"""

import json
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text, delete, select
from sqlalchemy.orm import declarative_base
from loguru import logger

from engine.models import ScoredDocument, TimeRange, utc_now
from engine.text import cosine_similarity, estimate_tokens, tokenize
from .base import SQLiteStore
from .migration_runner import MIGRATIONS_ROOT

IndexBase = declarative_base()

BM25_K1 = 1.2
BM25_B = 0.75
EXPANSION_TERM_WEIGHT = 0.5


class DocumentRecord(IndexBase):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    content = Column(Text, nullable=False)
    source = Column(String(255), nullable=False, default="unknown")
    meta_json = Column("metadata", Text, nullable=False, default="{}")
    term_freqs = Column(Text, nullable=False, default="{}")
    token_count = Column(Integer, nullable=False, default=0)
    importance = Column(Float, nullable=False, default=0.5)
    created_at = Column(DateTime, default=utc_now)


class DocumentVector(IndexBase):
    __tablename__ = "document_vectors"

    document_id = Column(Integer, ForeignKey("documents.id"), primary_key=True)
    model = Column(String(64), nullable=False, default="hash-v1")
    dim = Column(Integer, nullable=False)
    vector = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class IndexMeta(IndexBase):
    __tablename__ = "index_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


@dataclass
class _IndexedDocument:
    id: int
    content: str
    source: str
    timestamp: datetime
    metadata: Dict[str, Any]
    term_freqs: Dict[str, int]
    length: int
    importance: float
    vector: Optional[List[float]] = field(default=None, repr=False)

    def to_scored(self, score: float = 0.0, lexical: float = 0.0) -> ScoredDocument:
        return ScoredDocument(
            id=self.id,
            content=self.content,
            source=self.source,
            timestamp=self.timestamp,
            metadata=dict(self.metadata),
            score=score,
            lexical_score=lexical,
            importance=self.importance,
        )


def _load_json_object(raw: Optional[str]) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _term_frequencies(content: str) -> Tuple[Dict[str, int], int]:
    tokens = tokenize(content)
    return dict(Counter(tokens)), len(tokens)


class RelevanceIndex(SQLiteStore):
    """BM25 document index with optional embedding re-ranking."""

    meta_table = "index_meta"

    def __init__(
        self,
        database_url: str,
        *,
        embedder: Any = None,
        embedding_model: str = "",
        chunk_size: int = 1600,
        chunk_overlap: int = 320,
        semantic_weight: float = 0.35,
    ):
        super().__init__(database_url)
        self._embedder = embedder
        self._embedding_model = ""
        if embedder is not None:
            self._embedding_model = (
                embedding_model or getattr(embedder, "model", "") or type(embedder).__name__
            )
        self._chunk_size = max(200, int(chunk_size))
        self._chunk_overlap = max(0, min(int(chunk_overlap), self._chunk_size // 2))
        self._semantic_weight = min(1.0, max(0.0, float(semantic_weight)))
        self._documents: Dict[int, _IndexedDocument] = {}
        self._doc_freqs: Counter = Counter()
        self._total_length = 0

    @property
    def embedding_enabled(self) -> bool:
        return self._embedder is not None

    async def init_db(self) -> None:
        await self._create_schema(IndexBase.metadata, MIGRATIONS_ROOT / "index")
        await self._load()

    async def _load(self) -> None:
        async with self.session() as session:
            rows = (await session.execute(select(DocumentRecord))).scalars().all()
            vector_rows = (await session.execute(select(DocumentVector))).scalars().all()

        vectors: Dict[int, List[float]] = {}
        for row in vector_rows:
            try:
                vectors[row.document_id] = [float(v) for v in json.loads(row.vector)]
            except (TypeError, ValueError):
                continue

        self._documents.clear()
        self._doc_freqs.clear()
        self._total_length = 0
        for row in rows:
            term_freqs = {
                str(term): int(count)
                for term, count in _load_json_object(row.term_freqs).items()
            }
            self._add_to_arena(
                _IndexedDocument(
                    id=row.id,
                    content=row.content,
                    source=row.source,
                    timestamp=row.created_at or utc_now(),
                    metadata=_load_json_object(row.meta_json),
                    term_freqs=term_freqs,
                    length=int(row.token_count or 0),
                    importance=float(row.importance if row.importance is not None else 0.5),
                    vector=vectors.get(row.id),
                )
            )
        logger.debug(f"Loaded index: {len(self._documents)} documents")

    def _add_to_arena(self, document: _IndexedDocument) -> None:
        self._documents[document.id] = document
        self._doc_freqs.update(document.term_freqs.keys())
        self._total_length += document.length

    def _remove_from_arena(self, document_id: int) -> Optional[_IndexedDocument]:
        document = self._documents.pop(document_id, None)
        if document is None:
            return None
        for term in document.term_freqs:
            remaining = self._doc_freqs.get(term, 0) - 1
            if remaining > 0:
                self._doc_freqs[term] = remaining
            else:
                self._doc_freqs.pop(term, None)
        self._total_length -= document.length
        return document

    def chunk_content(self, content: str) -> List[str]:
        """Split content into overlapping chunks, preferring whitespace boundaries."""
        if not content:
            return []
        chunks: List[str] = []
        total_len = len(content)
        start = 0
        while start < total_len:
            end = min(total_len, start + self._chunk_size)
            if end < total_len:
                split_point = max(
                    content.rfind("\n", start, end), content.rfind(" ", start, end)
                )
                if split_point > start + (self._chunk_size // 2):
                    end = split_point
            chunk_text = content[start:end].strip()
            if chunk_text:
                chunks.append(chunk_text)
            if end >= total_len:
                break
            start = max(end - self._chunk_overlap, start + 1)
        return chunks

    async def _embed(self, content: str) -> Optional[List[float]]:
        if self._embedder is None:
            return None
        try:
            vector = await self._embedder.embed(content)
        except Exception as exc:
            logger.warning(f"Embedding failed, continuing lexical-only: {exc}")
            return None
        if not vector:
            return None
        try:
            return [float(value) for value in vector]
        except (TypeError, ValueError):
            logger.warning("Embedding backend returned a non-numeric vector; ignoring it")
            return None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def index(
        self,
        content: str,
        source: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        importance: float = 0.5,
        timestamp: Optional[datetime] = None,
    ) -> List[int]:
        """Store content (chunked when long) and return the new document ids."""
        chunks = self.chunk_content((content or "").strip())
        if not chunks:
            return []

        source_value = (source or "").strip() or "unknown"
        meta = dict(metadata or {})
        stamp = timestamp or utc_now()
        importance_value = min(1.0, max(0.0, float(importance)))
        vectors = [await self._embed(chunk) for chunk in chunks]

        pending: List[_IndexedDocument] = []
        async with self.session() as session:
            for position, (chunk, vector) in enumerate(zip(chunks, vectors)):
                term_freqs, length = _term_frequencies(chunk)
                chunk_meta = dict(meta)
                if len(chunks) > 1:
                    chunk_meta.update({"chunk_index": position, "chunk_count": len(chunks)})
                record = DocumentRecord(
                    content=chunk,
                    source=source_value,
                    meta_json=json.dumps(chunk_meta, ensure_ascii=False, default=str),
                    term_freqs=json.dumps(term_freqs, ensure_ascii=False),
                    token_count=length,
                    importance=importance_value,
                    created_at=stamp,
                )
                session.add(record)
                await session.flush()
                if vector is not None:
                    session.add(
                        DocumentVector(
                            document_id=record.id,
                            model=self._embedding_model[:64],
                            dim=len(vector),
                            vector=json.dumps(vector),
                        )
                    )
                pending.append(
                    _IndexedDocument(
                        id=record.id,
                        content=chunk,
                        source=source_value,
                        timestamp=stamp,
                        metadata=chunk_meta,
                        term_freqs=term_freqs,
                        length=length,
                        importance=importance_value,
                        vector=vector,
                    )
                )

        for document in pending:
            self._add_to_arena(document)
        return [document.id for document in pending]

    async def update_document(
        self,
        document_id: int,
        *,
        content: Optional[str] = None,
        source: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        importance: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Rewrite a document in place; returns False for an unknown id."""
        current = self._documents.get(document_id)
        if current is None:
            return False

        new_content = current.content
        term_freqs, length = current.term_freqs, current.length
        vector = current.vector
        if content is not None and content.strip() and content.strip() != current.content:
            new_content = content.strip()
            term_freqs, length = _term_frequencies(new_content)
            vector = await self._embed(new_content)

        updated = _IndexedDocument(
            id=document_id,
            content=new_content,
            source=(source or "").strip() or current.source,
            timestamp=timestamp or current.timestamp,
            metadata=dict(metadata) if metadata is not None else dict(current.metadata),
            term_freqs=term_freqs,
            length=length,
            importance=(
                min(1.0, max(0.0, float(importance)))
                if importance is not None
                else current.importance
            ),
            vector=vector,
        )

        async with self.session() as session:
            record = await session.get(DocumentRecord, document_id)
            if record is None:
                return False
            record.content = updated.content
            record.source = updated.source
            record.meta_json = json.dumps(updated.metadata, ensure_ascii=False, default=str)
            record.term_freqs = json.dumps(updated.term_freqs, ensure_ascii=False)
            record.token_count = updated.length
            record.importance = updated.importance
            record.created_at = updated.timestamp
            if vector is not current.vector:
                await session.execute(
                    delete(DocumentVector).where(DocumentVector.document_id == document_id)
                )
                if vector is not None:
                    session.add(
                        DocumentVector(
                            document_id=document_id,
                            model=self._embedding_model[:64],
                            dim=len(vector),
                            vector=json.dumps(vector),
                        )
                    )

        self._remove_from_arena(document_id)
        self._add_to_arena(updated)
        return True

    async def remove_documents(self, document_ids: Iterable[int]) -> int:
        ids = sorted({int(item) for item in document_ids if int(item) in self._documents})
        if not ids:
            return 0
        async with self.session() as session:
            await session.execute(
                delete(DocumentVector).where(DocumentVector.document_id.in_(ids))
            )
            await session.execute(delete(DocumentRecord).where(DocumentRecord.id.in_(ids)))
        for document_id in ids:
            self._remove_from_arena(document_id)
        return len(ids)

    async def remove_by_source(self, source: str) -> int:
        source_value = (source or "").strip()
        if not source_value:
            return 0
        return await self.remove_documents(
            document.id for document in self._documents.values() if document.source == source_value
        )

    async def rebuild(self) -> Dict[str, int]:
        """Re-derive every term-frequency table from the stored raw content."""
        rebuilt = 0
        async with self.session() as session:
            rows = (await session.execute(select(DocumentRecord))).scalars().all()
            for row in rows:
                term_freqs, length = _term_frequencies(row.content)
                row.term_freqs = json.dumps(term_freqs, ensure_ascii=False)
                row.token_count = length
                rebuilt += 1
            await self._upsert_meta(session, "last_rebuild_at", utc_now().isoformat())
        await self._load()
        logger.info(f"Rebuilt term frequencies for {rebuilt} documents")
        return {"rebuilt": rebuilt}

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_document(self, document_id: int) -> Optional[ScoredDocument]:
        document = self._documents.get(document_id)
        return document.to_scored() if document else None

    def dump(self, sources: Optional[Sequence[str]] = None) -> List[ScoredDocument]:
        """All documents, oldest first, scored by their stored importance."""
        allowed = set(sources) if sources else None
        documents = [
            document
            for document in self._documents.values()
            if allowed is None or document.source in allowed
        ]
        documents.sort(key=lambda document: (document.timestamp, document.id))
        return [
            document.to_scored(score=document.importance, lexical=0.0)
            for document in documents
        ]

    def _candidates(
        self,
        sources: Optional[Sequence[str]],
        time_range: Optional[TimeRange],
    ) -> List[_IndexedDocument]:
        allowed = set(sources) if sources else None
        return [
            document
            for document in self._documents.values()
            if (allowed is None or document.source in allowed)
            and (time_range is None or time_range.contains(document.timestamp))
        ]

    def _query_terms(
        self, query: str, expand_terms: Optional[Iterable[str]]
    ) -> Dict[str, float]:
        weights: Dict[str, float] = {}
        for token in tokenize(query):
            weights[token] = 1.0
        for phrase in expand_terms or []:
            for token in tokenize(phrase):
                weights.setdefault(token, EXPANSION_TERM_WEIGHT)
        return weights

    def _bm25(self, document: _IndexedDocument, terms: Dict[str, float]) -> float:
        total_docs = len(self._documents)
        avg_length = (self._total_length / total_docs) if total_docs else 0.0
        score = 0.0
        for term, term_weight in terms.items():
            tf = document.term_freqs.get(term, 0)
            if tf <= 0:
                continue
            df = self._doc_freqs.get(term, 0)
            idf = math.log((total_docs - df + 0.5) / (df + 0.5) + 1)
            length_ratio = (document.length / avg_length) if avg_length > 0 else 1.0
            score += term_weight * idf * (tf * (BM25_K1 + 1)) / (
                tf + BM25_K1 * (1 - BM25_B + BM25_B * length_ratio)
            )
        return score

    def _lexical_hits(
        self,
        query: str,
        sources: Optional[Sequence[str]],
        time_range: Optional[TimeRange],
        threshold: float,
        expand_terms: Optional[Iterable[str]],
    ) -> List[ScoredDocument]:
        terms = self._query_terms(query, expand_terms)
        if not terms:
            return []
        hits: List[ScoredDocument] = []
        for document in self._candidates(sources, time_range):
            score = self._bm25(document, terms)
            if score <= 0 or score < threshold:
                continue
            hits.append(document.to_scored(score=score, lexical=score))
        hits.sort(key=lambda hit: (-hit.score, -hit.timestamp.timestamp(), -hit.id))
        return hits

    def search(
        self,
        query: str,
        *,
        limit: int = 10,
        sources: Optional[Sequence[str]] = None,
        time_range: Optional[TimeRange] = None,
        threshold: float = 0.0,
        expand_terms: Optional[Iterable[str]] = None,
    ) -> List[ScoredDocument]:
        """
        BM25 search.

        Documents matching none of the query tokens are excluded. Ties are
        broken by timestamp (newest first), then id.
        """
        hits = self._lexical_hits(query, sources, time_range, threshold, expand_terms)
        return hits[: max(0, int(limit))]

    async def search_async(
        self,
        query: str,
        *,
        limit: int = 10,
        sources: Optional[Sequence[str]] = None,
        time_range: Optional[TimeRange] = None,
        threshold: float = 0.0,
        expand_terms: Optional[Iterable[str]] = None,
        degrade_reasons: Optional[List[str]] = None,
    ) -> List[ScoredDocument]:
        """
        BM25 candidates re-scored with embedding cosine similarity.

        final = (1 - w) * bm25 / max_bm25 + w * max(0, cosine). Without an
        embedder, or when the query embedding fails, this is `search`.
        """
        hits = self._lexical_hits(query, sources, time_range, threshold, expand_terms)
        limit_value = max(0, int(limit))
        if not hits or self._embedder is None:
            return hits[:limit_value]

        query_vector = await self._embed(query)
        if query_vector is None:
            if degrade_reasons is not None and "embedding_unavailable" not in degrade_reasons:
                degrade_reasons.append("embedding_unavailable")
            return hits[:limit_value]

        max_lexical = max(hit.lexical_score for hit in hits) or 1.0
        weight = self._semantic_weight
        for hit in hits:
            document = self._documents.get(hit.id)
            cosine = (
                cosine_similarity(query_vector, document.vector)
                if document is not None and document.vector
                else 0.0
            )
            hit.semantic_score = cosine
            hit.score = (1 - weight) * (hit.lexical_score / max_lexical) + weight * max(0.0, cosine)
        hits.sort(key=lambda hit: (-hit.score, -hit.timestamp.timestamp(), -hit.id))
        return hits[:limit_value]

    def get_stats(self) -> Dict[str, Any]:
        documents = list(self._documents.values())
        timestamps = [document.timestamp for document in documents]
        return {
            "total_documents": len(documents),
            "total_sources": len({document.source for document in documents}),
            "avg_document_tokens": (
                round(
                    sum(estimate_tokens(document.content) for document in documents)
                    / len(documents),
                    2,
                )
                if documents
                else 0.0
            ),
            "oldest": min(timestamps).isoformat() if timestamps else None,
            "newest": max(timestamps).isoformat() if timestamps else None,
            "embedded_documents": sum(1 for document in documents if document.vector),
            "vocabulary_size": len(self._doc_freqs),
        }
