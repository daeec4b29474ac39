"""
Runtime state helpers for the memory engine.

This module provides:
1) Write-lane coordination (session lane + global lane).
2) Single-flight consolidation with a minimum interval between non-forced runs.
"""

from __future__ import annotations

import asyncio
import inspect
import os
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _normalize_session_id(session_id: Optional[str]) -> str:
    value = (session_id or "").strip()
    return value if value else "default"


class WriteLaneCoordinator:
    """
    Two-layer write coordination:
    - Session lane: serial writes within the same session.
    - Global lane: bounded write concurrency across all sessions.
    """

    def __init__(self) -> None:
        self._global_concurrency = _env_int(
            "RUNTIME_WRITE_GLOBAL_CONCURRENCY", 1, minimum=1
        )
        self._wait_warn_ms = _env_int("RUNTIME_WRITE_WAIT_WARN_MS", 2000, minimum=1)
        self._global_sem = asyncio.Semaphore(self._global_concurrency)
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._session_waiting: Dict[str, int] = {}
        self._session_users: Dict[str, int] = {}
        self._global_waiting = 0
        self._global_active = 0
        self._completed_writes = 0
        self._guard = asyncio.Lock()

    async def _enter_session_lane(self, session_id: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = asyncio.Lock()
                self._session_locks[session_id] = lock
            self._session_users[session_id] = self._session_users.get(session_id, 0) + 1
            self._session_waiting[session_id] = self._session_waiting.get(session_id, 0) + 1
            return lock

    async def _leave_session_lane(self, session_id: str) -> None:
        # Lanes with no holder and no waiter are dropped.
        async with self._guard:
            users = self._session_users.get(session_id, 1) - 1
            if users > 0:
                self._session_users[session_id] = users
                return
            self._session_users.pop(session_id, None)
            self._session_locks.pop(session_id, None)
            self._session_waiting.pop(session_id, None)

    async def run_write(
        self,
        *,
        session_id: Optional[str],
        operation: str,
        task: Callable[[], Awaitable[Any]],
    ) -> Any:
        lane = _normalize_session_id(session_id)
        session_wait_start = time.monotonic()
        session_lock = await self._enter_session_lane(lane)
        try:
            async with session_lock:
                waited_session_ms = int((time.monotonic() - session_wait_start) * 1000)
                async with self._guard:
                    self._session_waiting[lane] = max(
                        0, self._session_waiting.get(lane, 1) - 1
                    )
                    self._global_waiting += 1

                global_wait_start = time.monotonic()
                await self._global_sem.acquire()
                waited_global_ms = int((time.monotonic() - global_wait_start) * 1000)
                async with self._guard:
                    self._global_waiting = max(0, self._global_waiting - 1)
                    self._global_active += 1

                waited_ms = waited_session_ms + waited_global_ms
                if waited_ms >= self._wait_warn_ms:
                    logger.warning(
                        f"Write '{operation}' on lane '{lane}' waited {waited_ms} ms for its turn"
                    )
                try:
                    return await task()
                finally:
                    async with self._guard:
                        self._global_active = max(0, self._global_active - 1)
                        self._completed_writes += 1
                    self._global_sem.release()
        finally:
            await self._leave_session_lane(lane)

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            busy_sessions = {
                session: waiting
                for session, waiting in self._session_waiting.items()
                if waiting > 0
            }
            max_session_wait = max(busy_sessions.values(), default=0)
            return {
                "global_concurrency": self._global_concurrency,
                "global_active": self._global_active,
                "global_waiting": self._global_waiting,
                "session_waiting_count": sum(busy_sessions.values()),
                "session_waiting_sessions": len(busy_sessions),
                "max_session_waiting": max_session_wait,
                "active_sessions": len(self._session_locks),
                "completed_writes": self._completed_writes,
                "wait_warn_ms": self._wait_warn_ms,
            }


class ConsolidationCoordinator:
    """Single-flight wrapper around engine consolidation."""

    def __init__(self) -> None:
        self._guard = asyncio.Lock()
        self._min_interval_seconds = _env_int(
            "RUNTIME_CONSOLIDATION_MIN_INTERVAL_SECONDS", 600, minimum=0
        )
        self._last_run_ts = 0.0
        self._last_result: Dict[str, Any] = {
            "applied": False,
            "reason": "not_started",
        }

    async def run(
        self,
        *,
        engine_factory: Callable[[], Any],
        force: bool = False,
        dry_run: bool = False,
        reason: str = "runtime",
    ) -> Dict[str, Any]:
        async with self._guard:
            now_ts = time.time()
            if (
                not force
                and not dry_run
                and self._last_run_ts > 0
                and (now_ts - self._last_run_ts) < self._min_interval_seconds
            ):
                return {**dict(self._last_result), "skipped": True}

            if not callable(engine_factory):
                self._last_result = {
                    "applied": False,
                    "degraded": True,
                    "reason": "engine_factory_unavailable",
                }
                return dict(self._last_result)

            try:
                engine = engine_factory()
                if inspect.isawaitable(engine):
                    engine = await engine
                consolidate = getattr(engine, "consolidate", None)
                if not callable(consolidate):
                    raise RuntimeError("consolidate_unavailable")
                payload = await consolidate(dry_run=bool(dry_run))
                if not isinstance(payload, dict):
                    payload = {"raw": payload}
                payload = {
                    **payload,
                    "applied": not dry_run,
                    "dry_run": bool(dry_run),
                    "degraded": False,
                }
            except Exception as exc:
                logger.exception(f"Consolidation failed ({reason})")
                payload = {
                    "applied": False,
                    "degraded": True,
                    "reason": str(exc),
                }

            payload["trigger"] = reason or "runtime"
            payload["finished_at"] = _utc_iso_now()
            if not dry_run:
                self._last_run_ts = now_ts
            self._last_result = payload
            return dict(payload)

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            summary = {
                key: value
                for key, value in self._last_result.items()
                if key != "changelog"
            }
            return {
                **summary,
                "min_interval_seconds": self._min_interval_seconds,
            }


class RuntimeState:
    def __init__(self) -> None:
        self.write_lanes = WriteLaneCoordinator()
        self.consolidation = ConsolidationCoordinator()

    async def status(self) -> Dict[str, Any]:
        return {
            "write_lanes": await self.write_lanes.status(),
            "consolidation": await self.consolidation.status(),
        }


runtime_state = RuntimeState()
