import hmac
import os
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from engine.memory_engine import MemoryEngine, get_memory_engine
from runtime_state import runtime_state

_MEMORY_API_KEY_ENV = "MEMORY_API_KEY"
_MEMORY_API_KEY_HEADER = "X-Memory-API-Key"
_MEMORY_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MEMORY_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _get_configured_api_key() -> str:
    return str(os.getenv(_MEMORY_API_KEY_ENV) or "").strip()


def _allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(_MEMORY_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def _is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    value = authorization.strip()
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


async def require_maintenance_api_key(
    request: Request,
    x_memory_api_key: Optional[str] = Header(default=None, alias=_MEMORY_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    configured = _get_configured_api_key()
    if not configured:
        if _allow_insecure_local_without_api_key() and _is_loopback_request(request):
            return
        reason = (
            "insecure_local_override_requires_loopback"
            if _allow_insecure_local_without_api_key()
            else "api_key_not_configured"
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "maintenance_auth_failed",
                "reason": reason,
            },
            headers={"WWW-Authenticate": "Bearer"},
        )

    provided = str(x_memory_api_key or "").strip() or _extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "maintenance_auth_failed",
                "reason": "invalid_or_missing_api_key",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )


router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)


async def _ready_engine() -> MemoryEngine:
    engine = get_memory_engine()
    await engine.init()
    return engine


@router.post("/consolidate")
async def trigger_consolidation(
    force: bool = False, dry_run: bool = False, reason: str = "api"
):
    result = await runtime_state.consolidation.run(
        engine_factory=_ready_engine,
        force=force,
        dry_run=dry_run,
        reason=reason or "api",
    )
    degraded = bool(result.get("degraded"))
    return {
        "ok": not degraded,
        "status": "degraded" if degraded else "ok",
        "result": result,
    }


@router.post("/decay")
async def trigger_relationship_decay():
    engine = await _ready_engine()
    result = await engine.decay_relationships()
    return {"ok": True, "result": result}


@router.get("/clusters")
async def get_clusters(min_size: int = 2):
    if min_size < 1:
        raise HTTPException(status_code=400, detail="min_size must be at least 1")
    engine = await _ready_engine()
    clusters = engine.mapper.detect_clusters(min_size=min_size)
    return {"count": len(clusters), "clusters": [cluster.to_dict() for cluster in clusters]}


@router.get("/entities/{name}/inferred")
async def get_inferred_relationships(name: str, limit: int = 10):
    engine = await _ready_engine()
    entity = engine.graph.find_entity_by_name(name)
    if entity is None:
        raise HTTPException(status_code=404, detail=f"Entity not found: {name}")
    inferred = engine.mapper.infer_relationships(entity.id, limit=max(1, limit))
    return {"entity": entity.to_dict(), "inferred": [item.to_dict() for item in inferred]}


@router.post("/index/rebuild")
async def rebuild_index():
    engine = await _ready_engine()
    try:
        result = await engine.rebuild_index()
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {"ok": True, "executed_sync": True, "result": result}


@router.get("/status")
async def get_runtime_status():
    payload: dict[str, Any] = await runtime_state.status()
    engine = await _ready_engine()
    payload["memory"] = engine.get_memory_stats()
    payload["embedding_enabled"] = engine.index.embedding_enabled
    return payload
