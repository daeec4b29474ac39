"""
Memory API - ingest conversations, recall context, manage explicit facts.

Reads are open; anything that writes requires the maintenance API key.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from engine.memory_engine import MemoryEngine, get_memory_engine
from engine.models import TimeRange
from .maintenance import require_maintenance_api_key

router = APIRouter(prefix="/memory", tags=["memory"])


class IngestRequest(BaseModel):
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    agent_id: str = "default"


class RecallRequest(BaseModel):
    query: str = Field(min_length=1)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    limit: Optional[int] = Field(default=None, ge=1, le=200)
    sources: Optional[List[str]] = None
    priority_sources: Optional[List[str]] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class RememberRequest(BaseModel):
    fact: str = Field(min_length=1)
    source: str = "explicit"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


async def _ready_engine() -> MemoryEngine:
    engine = get_memory_engine()
    await engine.init()
    return engine


@router.post("/ingest")
async def ingest_messages(
    body: IngestRequest,
    _auth: None = Depends(require_maintenance_api_key),
):
    engine = await _ready_engine()
    result = await engine.ingest(body.messages, agent_id=body.agent_id)
    return {"success": True, **result}


@router.post("/recall")
async def recall(body: RecallRequest):
    """
    Ranked context for a query.

    The response always succeeds; `degraded` tells whether a backend
    (graph, index, embedder, ranker) had to be skipped.
    """
    time_range = None
    if body.start is not None or body.end is not None:
        time_range = TimeRange(start=_naive_utc(body.start), end=_naive_utc(body.end))
    engine = await _ready_engine()
    return await engine.recall(
        body.query,
        max_tokens=body.max_tokens,
        limit=body.limit,
        sources=body.sources,
        time_range=time_range,
        priority_sources=body.priority_sources,
    )


@router.post("/remember")
async def remember(
    body: RememberRequest,
    _auth: None = Depends(require_maintenance_api_key),
):
    fact = body.fact.strip()
    if not fact:
        raise HTTPException(status_code=400, detail="fact must not be blank")
    engine = await _ready_engine()
    document_ids = await engine.remember(fact, source=body.source)
    return {"success": True, "document_ids": document_ids}


@router.delete("/forget")
async def forget(
    target: str = Query(..., min_length=1, description="Entity name, alias, source or exact fact"),
    _auth: None = Depends(require_maintenance_api_key),
):
    engine = await _ready_engine()
    result = await engine.forget(target)
    return {"success": True, **result}


@router.get("/entities/{name}")
async def get_entity_profile(name: str):
    engine = await _ready_engine()
    profile = engine.get_entity_profile(name)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"Entity not found: {name}")
    return profile


@router.get("/entities/{name}/timeline")
async def get_entity_timeline(name: str, limit: int = Query(20, ge=1, le=200)):
    engine = await _ready_engine()
    return {"entity": name, "timeline": engine.get_timeline(name, limit=limit)}


@router.get("/relationship")
async def describe_relationship(a: str = Query(..., min_length=1), b: str = Query(..., min_length=1)):
    engine = await _ready_engine()
    return {"a": a, "b": b, "summary": engine.summarize_relationship(a, b)}


@router.get("/stats")
async def get_stats():
    engine = await _ready_engine()
    return engine.get_memory_stats()


@router.get("/export")
async def export_memory():
    engine = await _ready_engine()
    return engine.export()
