from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from loguru import logger

from api import maintenance_router, memory_router
from engine.memory_engine import close_memory_engine, get_memory_engine
from runtime_state import runtime_state


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Memory Engine API starting...")

    try:
        engine = get_memory_engine()
        await engine.init()
        logger.info("Graph and index databases initialized.")
    except Exception as e:
        logger.error(f"Failed to initialize memory engine: {e}")
        raise RuntimeError("Failed to initialize memory engine during startup") from e

    yield

    logger.info("Closing database connections...")
    await close_memory_engine()


app = FastAPI(
    title="Memory Engine API",
    description="Long-term memory for personal agents: knowledge graph, relevance index, consolidation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(memory_router)
app.include_router(maintenance_router)


@app.get("/")
async def root():
    return {
        "message": "Memory Engine API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }

    try:
        engine = get_memory_engine()
        stats = engine.get_memory_stats()
        payload["memory"] = {
            "total_entities": stats["total_entities"],
            "total_relationships": stats["total_relationships"],
            "total_index_entries": stats["total_index_entries"],
            "embedding_enabled": engine.index.embedding_enabled,
        }
        payload["runtime"] = await runtime_state.status()
    except Exception as e:
        payload["status"] = "degraded"
        payload["memory"] = {"degraded": True, "reason": str(e)}
        payload["runtime"] = {"degraded": True, "reason": str(e)}

    return payload


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
