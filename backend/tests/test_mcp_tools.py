import json

import pytest

import mcp_server


class _FakeEngine:
    def __init__(self) -> None:
        self.recall_args = None

    async def init(self) -> None:
        return None

    async def recall(self, query, max_tokens=None, limit=None, sources=None,
                     priority_sources=None):
        self.recall_args = {"max_tokens": max_tokens, "limit": limit, "sources": sources}
        return {
            "context": "[Relevant Memories]\nAlice works on ProjectX",
            "fragments": [{"content": "Alice works on ProjectX"}],
            "related_entities": [],
            "degraded": False,
            "degrade_reasons": [],
        }

    async def remember(self, fact, source="explicit"):
        return [1, 2]

    async def forget(self, target):
        return {"deleted_entities": 0, "deleted_index": 0}

    async def ingest(self, messages, agent_id="default"):
        return {
            "entities": [{"name": "Alice"}],
            "relationships": [],
            "indexed": 1,
            "degraded": False,
            "degrade_reasons": [],
        }

    def get_entity_profile(self, name):
        return None

    def get_timeline(self, name, limit=20):
        return [{"content": "Alice joined", "timestamp": "2024-01-01T00:00:00"}]

    def summarize_relationship(self, a, b):
        return f"No information about {b}."

    def get_memory_stats(self):
        return {"total_entities": 3}


class _BrokenEngine(_FakeEngine):
    async def init(self) -> None:
        raise RuntimeError("graph database is locked")


@pytest.mark.asyncio
async def test_recall_memory_rejects_empty_query() -> None:
    payload = json.loads(await mcp_server.recall_memory("   "))
    assert payload["ok"] is False
    assert payload["error"] == "empty_query"


@pytest.mark.asyncio
async def test_recall_memory_clamps_limits(monkeypatch) -> None:
    engine = _FakeEngine()
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: engine)

    payload = json.loads(
        await mcp_server.recall_memory("Alice", max_tokens=10**9, limit=0, sources=[])
    )

    assert payload["ok"] is True
    assert payload["message"] == "Recalled 1 memories."
    assert payload["context"].endswith("Alice works on ProjectX")
    assert engine.recall_args == {
        "max_tokens": mcp_server.RECALL_HARD_MAX_TOKENS,
        "limit": 1,
        "sources": None,
    }


@pytest.mark.asyncio
async def test_engine_failures_return_error_json(monkeypatch) -> None:
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: _BrokenEngine())

    payload = json.loads(await mcp_server.recall_memory("Alice"))

    assert payload["ok"] is False
    assert payload["error"] == "graph database is locked"
    assert payload["message"].startswith("Error:")


@pytest.mark.asyncio
async def test_remember_and_forget_validation(monkeypatch) -> None:
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: _FakeEngine())

    assert json.loads(await mcp_server.remember_fact(""))["error"] == "empty_fact"
    assert json.loads(await mcp_server.forget_memory(" "))["error"] == "empty_target"

    remembered = json.loads(await mcp_server.remember_fact("Alice likes tea."))
    assert remembered["ok"] is True
    assert remembered["document_ids"] == [1, 2]

    forgotten = json.loads(await mcp_server.forget_memory("Nobody"))
    assert forgotten["ok"] is True
    assert forgotten["message"] == "Nothing matched 'Nobody'."


@pytest.mark.asyncio
async def test_graph_tools(monkeypatch) -> None:
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: _FakeEngine())

    ingested = json.loads(await mcp_server.ingest_messages([{"content": "Alice joined"}]))
    assert ingested["ok"] is True
    assert ingested["message"] == "Ingested 1 entities, 0 relationships, 1 document(s)."

    profile = json.loads(await mcp_server.entity_profile("Zed"))
    assert profile == {"ok": False, "message": "Entity 'Zed' not found.", "error": "not_found"}

    timeline = json.loads(await mcp_server.entity_timeline("Alice"))
    assert timeline["timeline"][0]["content"] == "Alice joined"

    summary = json.loads(await mcp_server.relationship_summary("Alice", "Zed"))
    assert summary["summary"] == "No information about Zed."


@pytest.mark.asyncio
async def test_consolidate_memory_reports_degraded(monkeypatch) -> None:
    async def _run(*, engine_factory, force, dry_run, reason):
        return {"applied": False, "degraded": True, "reason": "index locked", "trigger": reason}

    monkeypatch.setattr(mcp_server.runtime_state.consolidation, "run", _run)

    payload = json.loads(await mcp_server.consolidate_memory(force=True))

    assert payload["ok"] is False
    assert payload["message"] == "Consolidation degraded."
    assert payload["trigger"] == "mcp.consolidate_memory"


@pytest.mark.asyncio
async def test_memory_stats_includes_runtime(monkeypatch) -> None:
    monkeypatch.setattr(mcp_server, "get_memory_engine", lambda: _FakeEngine())

    payload = json.loads(await mcp_server.memory_stats())

    assert payload["ok"] is True
    assert payload["total_entities"] == 3
    assert set(payload["runtime"]) == {"write_lanes", "consolidation"}
    assert payload["timestamp"].endswith("Z")
