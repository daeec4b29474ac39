"""
MCP Server for the Memory Engine

This module provides the MCP (Model Context Protocol) interface for agents
to store conversations in, and recall context from, long-term memory:

- recall_memory / remember_fact / forget_memory   - everyday use
- ingest_messages                                  - feed conversation turns
- entity_profile / entity_timeline / relationship_summary - graph questions
- consolidate_memory / memory_stats                - maintenance

Every tool returns a JSON string with an `ok` flag; failures never raise.
"""

import os
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from loguru import logger
from mcp.server.fastmcp import FastMCP
from engine.memory_engine import MemoryEngine, close_memory_engine, get_memory_engine
from runtime_state import runtime_state

# Initialize FastMCP server
mcp = FastMCP("Memory Engine")


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read int env with a safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _utc_iso_now() -> str:
    """Return current UTC timestamp in ISO-8601 format with trailing Z."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


RECALL_HARD_MAX_TOKENS = _env_int("MCP_RECALL_HARD_MAX_TOKENS", 16000, minimum=1)
RECALL_HARD_MAX_LIMIT = _env_int("MCP_RECALL_HARD_MAX_LIMIT", 100, minimum=1)


# =============================================================================
# Helper Functions
# =============================================================================


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False, default=str)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _error_response(exc: Exception, **extra: Any) -> str:
    return _tool_response(ok=False, message=f"Error: {exc}", error=str(exc), **extra)


async def _ready_engine() -> MemoryEngine:
    engine = get_memory_engine()
    await engine.init()
    return engine


# =============================================================================
# Tools
# =============================================================================


@mcp.tool()
async def recall_memory(
    query: str,
    max_tokens: int = 4000,
    limit: int = 20,
    sources: Optional[List[str]] = None,
    priority_sources: Optional[List[str]] = None,
) -> str:
    """
    Recall context relevant to a query from long-term memory.

    Args:
        query: What you want to remember (names, topics, questions).
        max_tokens: Token budget for the returned context (approx. 4 chars per token).
        limit: Maximum number of index hits considered before ranking.
        sources: Only search these sources (e.g. ["explicit", "agent:main"]).
        priority_sources: Sources whose memories get a ranking boost.

    Returns:
        JSON with `context` (ready to paste into a prompt), ranked `fragments`
        and `related_entities`.

    Examples:
        recall_memory("What is Alice working on?")
        recall_memory("deployment checklist", sources=["explicit"])
    """
    if not (query or "").strip():
        return _tool_response(ok=False, message="Error: query must not be empty.", error="empty_query")
    try:
        engine = await _ready_engine()
        result = await engine.recall(
            query,
            max_tokens=min(max(1, int(max_tokens)), RECALL_HARD_MAX_TOKENS),
            limit=min(max(1, int(limit)), RECALL_HARD_MAX_LIMIT),
            sources=sources or None,
            priority_sources=priority_sources or None,
        )
        return _tool_response(
            ok=True,
            message=f"Recalled {len(result['fragments'])} memories.",
            **result,
        )
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def remember_fact(fact: str, source: str = "explicit") -> str:
    """
    Store a fact explicitly. Explicit facts rank above ingested chatter and
    are promoted to long-term memory on consolidation.

    Args:
        fact: The fact, phrased as a standalone sentence.
        source: Source label (default "explicit").

    Examples:
        remember_fact("Alice prefers morning meetings.")
    """
    if not (fact or "").strip():
        return _tool_response(ok=False, message="Error: fact must not be empty.", error="empty_fact")
    try:
        engine = await _ready_engine()
        document_ids = await engine.remember(fact, source=source)
        return _tool_response(
            ok=True,
            message=f"Success: remembered as {len(document_ids)} document(s).",
            document_ids=document_ids,
        )
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def forget_memory(target: str) -> str:
    """
    Forget an entity (by name or alias, with all its relationships), every
    document from a source with that name, and documents whose text is
    exactly `target`.

    Examples:
        forget_memory("ProjectX")
        forget_memory("Alice prefers morning meetings.")
    """
    if not (target or "").strip():
        return _tool_response(ok=False, message="Error: target must not be empty.", error="empty_target")
    try:
        engine = await _ready_engine()
        result = await engine.forget(target)
        forgot_anything = bool(result["deleted_entities"] or result["deleted_index"])
        return _tool_response(
            ok=True,
            message=(
                f"Success: forgot '{target}'."
                if forgot_anything
                else f"Nothing matched '{target}'."
            ),
            **result,
        )
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def ingest_messages(messages: List[Dict[str, Any]], agent_id: str = "default") -> str:
    """
    Feed conversation messages into memory: entities and relationships are
    extracted into the knowledge graph, the text is indexed for recall.

    Args:
        messages: Chat messages, each with a `content` string (or list of text parts).
        agent_id: Which agent the conversation belongs to.
    """
    try:
        engine = await _ready_engine()
        result = await engine.ingest(messages or [], agent_id=agent_id)
        message = (
            f"Ingested {len(result['entities'])} entities, "
            f"{len(result['relationships'])} relationships, "
            f"{result['indexed']} document(s)."
        )
        return _tool_response(ok=True, message=message, **result)
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def entity_profile(name: str) -> str:
    """
    Everything known about one entity: attributes, relationships, mentions,
    clusters and inferred connections.
    """
    try:
        engine = await _ready_engine()
        profile = engine.get_entity_profile(name)
        if profile is None:
            return _tool_response(ok=False, message=f"Entity '{name}' not found.", error="not_found")
        return _tool_response(ok=True, message=f"Profile of {profile['entity']['name']}.", **profile)
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def entity_timeline(name: str, limit: int = 20) -> str:
    """Chronological list of memories mentioning an entity."""
    try:
        engine = await _ready_engine()
        timeline = engine.get_timeline(name, limit=max(1, int(limit)))
        return _tool_response(
            ok=True,
            message=f"{len(timeline)} timeline entries for '{name}'.",
            timeline=timeline,
        )
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def relationship_summary(entity_a: str, entity_b: str) -> str:
    """Describe how two entities are related, directly or through others."""
    try:
        engine = await _ready_engine()
        summary = engine.summarize_relationship(entity_a, entity_b)
        return _tool_response(ok=True, message=summary, summary=summary)
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def consolidate_memory(force: bool = False, dry_run: bool = False) -> str:
    """
    Run memory consolidation: resolve contradictions, merge near-duplicates,
    promote important memories to long-term and decay stale relationships.

    Non-forced runs are skipped when the previous run is too recent.

    Args:
        force: Run even if the minimum interval has not elapsed.
        dry_run: Report what would change without writing anything.
    """
    try:
        result = await runtime_state.consolidation.run(
            engine_factory=_ready_engine,
            force=force,
            dry_run=dry_run,
            reason="mcp.consolidate_memory",
        )
        degraded = bool(result.get("degraded"))
        return _tool_response(
            ok=not degraded,
            message=(
                "Consolidation skipped (ran recently)."
                if result.get("skipped")
                else ("Consolidation degraded." if degraded else "Consolidation finished.")
            ),
            **result,
        )
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def memory_stats() -> str:
    """Memory statistics plus runtime (write lane, consolidation) status."""
    try:
        engine = await _ready_engine()
        payload = engine.get_memory_stats()
        payload["runtime"] = await runtime_state.status()
        payload["timestamp"] = _utc_iso_now()
        return _tool_response(ok=True, message="Memory statistics.", **payload)
    except Exception as e:
        return _error_response(e)


# =============================================================================
# Startup
# =============================================================================


async def startup():
    """Create both databases and apply migrations before serving."""
    engine = get_memory_engine()
    await engine.init()
    # Pooled connections belong to this event loop; tools reopen them lazily.
    await close_memory_engine()
    logger.info("Memory Engine MCP server ready.")


if __name__ == "__main__":
    import asyncio

    asyncio.run(startup())
    mcp.run()
