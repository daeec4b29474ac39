"""
External collaborators of the memory engine.

The engine only depends on three narrow protocols:
- ExtractionBackend.extract(texts, known_entities, options) -> raw dict
- SummarizationBackend.summarize(texts) -> str
- EmbeddingBackend.embed(text) -> list of floats

Remote implementations talk to an OpenAI-compatible API
(/chat/completions, /embeddings) over httpx. Local implementations
(hash embeddings, extractive summaries) need no network and back the
remote ones when they are not configured.

Remote backends raise CollaboratorError on transport or response-shape
problems; the engine decides the fallback.
"""

import hashlib
import json
import math
import re
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import httpx
from loguru import logger

from .config import _env_bool, _env_float, _env_int, _first_env
from .models import Entity


class CollaboratorError(RuntimeError):
    """A collaborator call failed or returned something unusable."""


@runtime_checkable
class ExtractionBackend(Protocol):
    async def extract(
        self,
        texts: List[str],
        known_entities: List[Entity],
        options: Optional[Dict[str, Any]] = None,
    ) -> Any:
        ...


@runtime_checkable
class SummarizationBackend(Protocol):
    async def summarize(self, texts: List[str]) -> str:
        ...


@runtime_checkable
class EmbeddingBackend(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


RELATIONSHIP_TYPE_HINTS = (
    ("works_on", "person works on project/concept"),
    ("knows", "person knows person/concept"),
    ("uses", "entity uses technology/tool"),
    ("part_of", "entity is part of another entity"),
    ("created", "person created entity"),
    ("manages", "person manages project/entity"),
    ("depends_on", "entity depends on another"),
    ("located_in", "entity is located in place"),
    ("opposes", "entity opposes another"),
    ("supports", "entity supports another"),
    ("prefers", "person prefers something"),
    ("scheduled_for", "event is scheduled for a time"),
    ("happened_at", "event happened at time/place"),
)


# =============================================================================
# HTTP plumbing
# =============================================================================


def _join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


def _strip_endpoint_suffix(base: str, suffixes: Tuple[str, ...]) -> str:
    normalized = (base or "").strip().rstrip("/")
    lowered = normalized.lower()
    for suffix in suffixes:
        if lowered.endswith(suffix):
            return normalized[: -len(suffix)]
    return normalized


def extract_chat_message_text(payload: Dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first_choice = choices[0]
    if not isinstance(first_choice, dict):
        return ""
    message = first_choice.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts: List[str] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            text_content = item.get("text")
            if isinstance(text_content, str) and text_content.strip():
                parts.append(text_content.strip())
        return "\n".join(parts).strip()
    return ""


def parse_chat_json_object(raw_text: str) -> Optional[Dict[str, Any]]:
    """Parse a JSON object out of an LLM reply, tolerating code fences and chatter."""
    candidate = (raw_text or "").strip()
    if not candidate:
        return None

    parse_candidates = [candidate]
    if candidate.startswith("```"):
        stripped = re.sub(r"^```(?:json)?\s*", "", candidate, flags=re.IGNORECASE)
        stripped = re.sub(r"\s*```$", "", stripped)
        parse_candidates.append(stripped.strip())

    start = candidate.find("{")
    end = candidate.rfind("}")
    if start >= 0 and end > start:
        parse_candidates.append(candidate[start : end + 1])

    for item in parse_candidates:
        try:
            parsed = json.loads(item)
        except (TypeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def extract_embedding_from_response(payload: Any) -> Optional[List[float]]:
    candidates: List[Any] = []
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list) and data:
            first_item = data[0]
            if isinstance(first_item, dict):
                candidates.append(first_item.get("embedding"))
            elif isinstance(first_item, list):
                candidates.append(first_item)
        candidates.append(payload.get("embedding"))

    for candidate in candidates:
        if not isinstance(candidate, list):
            continue
        try:
            return [float(v) for v in candidate]
        except (TypeError, ValueError):
            continue
    return None


class OpenAICompatibleClient:
    """Minimal JSON-over-HTTP client for OpenAI-compatible endpoints."""

    endpoint_suffixes: Tuple[str, ...] = ("/chat/completions", "/responses")

    def __init__(
        self,
        api_base: str,
        model: str,
        api_key: str = "",
        timeout_sec: float = 20.0,
    ):
        self.api_base = _strip_endpoint_suffix(api_base, self.endpoint_suffixes)
        self.model = (model or "").strip()
        self.api_key = (api_key or "").strip()
        self.timeout_sec = max(1.0, float(timeout_sec))

    @property
    def configured(self) -> bool:
        return bool(self.api_base and self.model)

    async def _post_json(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.configured:
            raise CollaboratorError(
                f"{type(self).__name__} is not configured (api base or model missing)"
            )

        url = _join_api_url(self.api_base, endpoint)
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
            headers["X-API-Key"] = self.api_key

        try:
            timeout = httpx.Timeout(self.timeout_sec)
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                parsed = response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError) as exc:
            raise CollaboratorError(f"{endpoint} request failed: {exc}") from exc
        if isinstance(parsed, dict):
            return parsed
        return {"data": parsed}

    async def _chat(self, system_prompt: str, user_prompt: str) -> str:
        payload = {
            "model": self.model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        response = await self._post_json("/chat/completions", payload)
        message_text = extract_chat_message_text(response)
        if not message_text:
            raise CollaboratorError("chat completion returned an empty message")
        return message_text


# =============================================================================
# Extraction
# =============================================================================


class ChatCompletionExtractor(OpenAICompatibleClient):
    """Entity/relationship extraction through a chat-completion model."""

    system_prompt = (
        "You are a knowledge graph extraction system. "
        "Return strict JSON only with keys: entities, relationships."
    )

    def build_prompt(self, texts: List[str], known_entities: List[Entity]) -> str:
        known_names = ", ".join(entity.name for entity in known_entities[:200]) or "none"
        relationship_lines = "\n".join(
            f"- {name}: {hint}" for name, hint in RELATIONSHIP_TYPE_HINTS
        )
        joined = "\n---\n".join(texts)
        return (
            "Extract entities and relationships from the conversation text below.\n"
            "Entity types: person, project, concept, place, file, event, custom.\n"
            "Use the canonical spelling of a known entity when the text refers to it.\n"
            f"Known entities: {known_names}\n\n"
            f"Relationship types:\n{relationship_lines}\n\n"
            f'Text:\n"""\n{joined}\n"""\n\n'
            "JSON shape:\n"
            '{"entities": [{"type": "person", "name": "Canonical Name", '
            '"attributes": {"key": "value"}, "confidence": 0.9, "aliases": ["nickname"]}], '
            '"relationships": [{"source": "Entity A", "target": "Entity B", '
            '"type": "works_on", "context": "short context", "confidence": 0.8}]}'
        )

    async def extract(
        self,
        texts: List[str],
        known_entities: List[Entity],
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        message_text = await self._chat(
            self.system_prompt, self.build_prompt(texts, list(known_entities))
        )
        parsed = parse_chat_json_object(message_text)
        if parsed is None:
            raise CollaboratorError("extraction response is not a JSON object")
        return parsed


# =============================================================================
# Summarization
# =============================================================================


class ChatCompletionSummarizer(OpenAICompatibleClient):
    system_prompt = (
        "You merge overlapping memory notes into one concise note. "
        "Keep every distinct fact, drop repetition, answer with the note only."
    )

    async def summarize(self, texts: List[str]) -> str:
        notes = "\n".join(f"- {text.strip()}" for text in texts if text and text.strip())
        if not notes:
            return ""
        return await self._chat(self.system_prompt, f"Notes:\n{notes}")


_SENTENCE_SPLIT_PATTERN = re.compile(r"(?<=[.!?])\s+")


class ExtractiveSummarizer:
    """
    Deterministic summary: unique sentences in first-seen order, capped.

    Used when no chat model is configured.
    """

    def __init__(self, max_chars: int = 800):
        self.max_chars = max(80, int(max_chars))

    async def summarize(self, texts: List[str]) -> str:
        seen = set()
        sentences: List[str] = []
        for text in texts:
            flattened = re.sub(r"\s+", " ", (text or "").strip())
            for sentence in _SENTENCE_SPLIT_PATTERN.split(flattened):
                sentence = sentence.strip()
                key = sentence.lower().rstrip(".!?")
                if not sentence or key in seen:
                    continue
                seen.add(key)
                sentences.append(sentence)

        summary = " ".join(sentences)
        if len(summary) > self.max_chars:
            summary = summary[: self.max_chars - 3].rstrip() + "..."
        return summary


class FallbackSummarizer:
    """Try the primary summarizer, fall back to an extractive summary."""

    def __init__(self, primary: SummarizationBackend, fallback: Optional[SummarizationBackend] = None):
        self.primary = primary
        self.fallback = fallback or ExtractiveSummarizer()

    async def summarize(self, texts: List[str]) -> str:
        try:
            summary = await self.primary.summarize(texts)
            if summary and summary.strip():
                return summary.strip()
            logger.warning("Primary summarizer returned an empty summary; using extractive fallback")
        except Exception as exc:
            logger.warning(f"Primary summarizer failed ({exc}); using extractive fallback")
        return await self.fallback.summarize(texts)


# =============================================================================
# Embeddings
# =============================================================================


class RemoteEmbedder(OpenAICompatibleClient):
    endpoint_suffixes = ("/embeddings",)

    async def embed(self, text: str) -> List[float]:
        response = await self._post_json("/embeddings", {"model": self.model, "input": text})
        embedding = extract_embedding_from_response(response)
        if embedding is None:
            raise CollaboratorError("embedding response has no vector")
        return embedding


class HashEmbedder:
    """Deterministic local embedding from hashed tokens (no semantics, no network)."""

    model = "hash-v1"

    def __init__(self, dim: int = 64):
        self.dim = max(16, int(dim))

    async def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dim
        normalized = re.sub(r"\s+", " ", (text or "").strip().lower())
        tokens = re.findall(r"[a-z0-9_]+", normalized)
        if not tokens and normalized:
            tokens = list(normalized)

        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            for i in range(0, 8, 2):
                idx = digest[i] % self.dim
                sign = -1.0 if (digest[i + 1] & 1) else 1.0
                weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
                vector[idx] += sign * weight

        norm = math.sqrt(sum(v * v for v in vector))
        if norm <= 0:
            return [0.0] * self.dim
        return [v / norm for v in vector]


# =============================================================================
# Environment wiring
# =============================================================================


def _llm_settings() -> Tuple[str, str, str]:
    api_base = _first_env(["MEMORY_LLM_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"])
    api_key = _first_env(["MEMORY_LLM_API_KEY", "LLM_API_KEY", "OPENAI_API_KEY"])
    model = _first_env(["MEMORY_LLM_MODEL", "LLM_MODEL_NAME", "OPENAI_MODEL"])
    return api_base, api_key, model


def build_collaborators_from_env() -> Dict[str, Any]:
    """
    Build extractor/summarizer/embedder from environment variables.

    MEMORY_EMBEDDING_BACKEND: none (default) | hash | api
    """
    timeout_sec = _env_float("MEMORY_HTTP_TIMEOUT_SEC", 20.0)
    api_base, api_key, model = _llm_settings()
    llm_enabled = _env_bool("MEMORY_LLM_ENABLED", bool(api_base and model))

    extractor = ChatCompletionExtractor(
        api_base if llm_enabled else "", model, api_key, timeout_sec=timeout_sec
    )
    if llm_enabled and extractor.configured:
        summarizer: SummarizationBackend = FallbackSummarizer(
            ChatCompletionSummarizer(api_base, model, api_key, timeout_sec=timeout_sec)
        )
    else:
        logger.info("No chat model configured; extraction disabled, summaries are extractive")
        summarizer = ExtractiveSummarizer()

    backend = _first_env(["MEMORY_EMBEDDING_BACKEND"], "none").lower()
    embedder: Optional[EmbeddingBackend] = None
    if backend == "hash":
        embedder = HashEmbedder(dim=_env_int("MEMORY_EMBEDDING_DIM", 64, minimum=16))
    elif backend in {"api", "openai", "router"}:
        embedder = RemoteEmbedder(
            _first_env(["MEMORY_EMBEDDING_API_BASE", "OPENAI_BASE_URL", "OPENAI_API_BASE"]),
            _first_env(["MEMORY_EMBEDDING_MODEL", "OPENAI_EMBEDDING_MODEL"]),
            _first_env(["MEMORY_EMBEDDING_API_KEY", "OPENAI_API_KEY"]),
            timeout_sec=timeout_sec,
        )
    elif backend not in {"none", "off", "disabled", "false", "0", ""}:
        logger.warning(f"Unknown MEMORY_EMBEDDING_BACKEND '{backend}'; embeddings disabled")

    return {"extractor": extractor, "summarizer": summarizer, "embedder": embedder}
