"""
Engine configuration read from the environment (.env supported).
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on", "enabled"}


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY_ENV_VALUES


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


def _sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


@dataclass
class MemoryEngineConfig:
    graph_database_url: str
    index_database_url: str

    recall_max_tokens: int = 4000
    recall_limit: int = 20
    recall_related_entities: int = 10

    extraction_batch_size: int = 20
    extraction_min_confidence: float = 0.3
    relationship_strengthen_delta: float = 0.2

    chunk_size: int = 1600
    chunk_overlap: int = 320
    semantic_weight: float = 0.35

    default_importance: float = 0.5
    explicit_fact_importance: float = 0.9

    recency_half_life_hours: float = 24.0
    diversity_penalty: float = 0.3

    similarity_threshold: float = 0.55
    high_score_threshold: float = 0.8
    promotion_min_mentions: int = 3
    promotion_min_score: float = 0.85
    long_term_source: str = "long-term"

    decay_half_life_days: float = 30.0
    decay_remove_below: float = 0.05

    @classmethod
    def from_env(cls) -> "MemoryEngineConfig":
        data_dir = _first_env(["MEMORY_DATA_DIR"])
        graph_url = _first_env(["MEMORY_GRAPH_DATABASE_URL"])
        index_url = _first_env(["MEMORY_INDEX_DATABASE_URL"])
        if data_dir:
            base = Path(data_dir).expanduser()
            graph_url = graph_url or _sqlite_url(base / "graph.db")
            index_url = index_url or _sqlite_url(base / "index.db")
        if not graph_url or not index_url:
            raise ValueError(
                "MEMORY_GRAPH_DATABASE_URL / MEMORY_INDEX_DATABASE_URL (or MEMORY_DATA_DIR) "
                "environment variables are not set. Please check your .env file."
            )

        return cls(
            graph_database_url=graph_url,
            index_database_url=index_url,
            recall_max_tokens=_env_int("MEMORY_RECALL_MAX_TOKENS", 4000, minimum=1),
            recall_limit=_env_int("MEMORY_RECALL_LIMIT", 20, minimum=1),
            recall_related_entities=_env_int("MEMORY_RECALL_RELATED_ENTITIES", 10),
            extraction_batch_size=_env_int("MEMORY_EXTRACTION_BATCH_SIZE", 20, minimum=1),
            extraction_min_confidence=_env_float("MEMORY_EXTRACTION_MIN_CONFIDENCE", 0.3),
            relationship_strengthen_delta=_env_float("MEMORY_RELATIONSHIP_STRENGTHEN_DELTA", 0.2),
            chunk_size=_env_int("MEMORY_INDEX_CHUNK_SIZE", 1600, minimum=200),
            chunk_overlap=_env_int("MEMORY_INDEX_CHUNK_OVERLAP", 320),
            semantic_weight=_env_float("MEMORY_SEMANTIC_WEIGHT", 0.35),
            recency_half_life_hours=_env_float("MEMORY_RECENCY_HALF_LIFE_HOURS", 24.0),
            diversity_penalty=_env_float("MEMORY_DIVERSITY_PENALTY", 0.3),
            similarity_threshold=_env_float("MEMORY_CONSOLIDATION_SIMILARITY", 0.55),
            high_score_threshold=_env_float("MEMORY_CONSOLIDATION_HIGH_SCORE", 0.8),
            promotion_min_mentions=_env_int("MEMORY_PROMOTION_MIN_MENTIONS", 3, minimum=1),
            promotion_min_score=_env_float("MEMORY_PROMOTION_MIN_SCORE", 0.85),
            long_term_source=_first_env(["MEMORY_LONG_TERM_SOURCE"], "long-term"),
            decay_half_life_days=_env_float("MEMORY_DECAY_HALF_LIFE_DAYS", 30.0),
            decay_remove_below=_env_float("MEMORY_DECAY_REMOVE_BELOW", 0.05),
        )
