"""
Process-local runtime helpers.

This module provides:
1) A bounded heating queue that applies read-path "heating" writes off the
   request path, one batch at a time.
2) A throttled scheduler that runs consolidation in the background when a
   project has enough cold entities.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional, Set, Tuple

import structlog

from config import Settings
from lifecycle.consolidation import run_consolidation, should_consolidate
from lifecycle.temperature import decay_temperatures, heat_entities

logger = structlog.get_logger(__name__)

HeatTarget = Tuple[str, int]


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HeatingQueue:
    """
    Background worker that applies heating writes serially.

    Targets already waiting in the queue are not enqueued twice. When the
    queue is full the batch is dropped; heating is best-effort bookkeeping.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue_maxsize = max(1, int(maxsize))
        self._queue: asyncio.Queue[Tuple[int, List[HeatTarget]]] = asyncio.Queue(
            maxsize=self._queue_maxsize
        )
        self._client: Any = None
        self._runner: Optional[asyncio.Task] = None
        self._guard = asyncio.Lock()
        self._pending: Set[Tuple[int, str, int]] = set()

        self._enqueued_total = 0
        self._heated_total = 0
        self._dropped_total = 0
        self._failed_total = 0
        self._last_error: Optional[str] = None

    async def ensure_started(self, client: Any) -> None:
        async with self._guard:
            self._client = client
            if self._runner is None or self._runner.done():
                self._runner = asyncio.create_task(self._run_loop(), name="heating-queue")

    async def shutdown(self) -> None:
        runner: Optional[asyncio.Task] = None
        async with self._guard:
            runner = self._runner
            self._runner = None
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass

    async def enqueue(self, project_id: int, targets: Iterable[HeatTarget]) -> Dict[str, Any]:
        async with self._guard:
            fresh: List[HeatTarget] = []
            for entity_type, entity_id in targets:
                key = (int(project_id), str(entity_type), int(entity_id))
                if key in self._pending:
                    continue
                self._pending.add(key)
                fresh.append((key[1], key[2]))
            if not fresh:
                return {"queued": False, "deduped": True, "count": 0}
            try:
                self._queue.put_nowait((int(project_id), fresh))
            except asyncio.QueueFull:
                for entity_type, entity_id in fresh:
                    self._pending.discard((int(project_id), entity_type, entity_id))
                self._dropped_total += len(fresh)
                logger.warning("heating_queue_full", project_id=project_id, dropped=len(fresh))
                return {"queued": False, "reason": "queue_full", "count": len(fresh)}
            self._enqueued_total += len(fresh)
            return {"queued": True, "count": len(fresh)}

    async def flush(self) -> None:
        """Wait until every queued batch has been applied."""
        await self._queue.join()

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            return {
                "running": self._runner is not None and not self._runner.done(),
                "queue_depth": self._queue.qsize(),
                "queue_maxsize": self._queue_maxsize,
                "pending_targets": len(self._pending),
                "stats": {
                    "enqueued": self._enqueued_total,
                    "heated": self._heated_total,
                    "dropped": self._dropped_total,
                    "failed": self._failed_total,
                },
                "last_error": self._last_error,
            }

    async def _run_loop(self) -> None:
        while True:
            project_id, targets = await self._queue.get()
            try:
                heated = await heat_entities(self._client, project_id, targets)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("heating_failed", project_id=project_id, error=str(exc))
                async with self._guard:
                    self._failed_total += len(targets)
                    self._last_error = str(exc)
            else:
                async with self._guard:
                    self._heated_total += heated
            finally:
                async with self._guard:
                    for entity_type, entity_id in targets:
                        self._pending.discard((project_id, entity_type, entity_id))
                self._queue.task_done()


class ConsolidationScheduler:
    """Throttled background trigger for consolidation runs."""

    def __init__(self, interval_seconds: int = 1800) -> None:
        self._check_interval_seconds = max(0, int(interval_seconds))
        self._last_check_ts: Dict[int, float] = {}
        self._tasks: Dict[int, asyncio.Task] = {}
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=10)
        self._guard = asyncio.Lock()
        self._last_result: Dict[str, Any] = {"scheduled": False, "reason": "not_started"}

    async def schedule(
        self,
        client: Any,
        project_id: int,
        *,
        force: bool = False,
        reason: str = "runtime",
    ) -> Dict[str, Any]:
        async with self._guard:
            now_ts = time.time()
            last_ts = self._last_check_ts.get(project_id, 0.0)
            if (
                not force
                and last_ts > 0
                and (now_ts - last_ts) < self._check_interval_seconds
            ):
                return {**self._last_result, "throttled": True}
            running = self._tasks.get(project_id)
            if running is not None and not running.done():
                return {"scheduled": False, "reason": "already_running", "project_id": project_id}
            self._last_check_ts[project_id] = now_ts

        if not force and not await should_consolidate(client, project_id):
            result = {
                "scheduled": False,
                "reason": "not_enough_cold_entities",
                "project_id": project_id,
                "requested_at": _utc_iso_now(),
            }
        else:
            task = asyncio.create_task(
                self._run(client, project_id, reason), name=f"consolidation-{project_id}"
            )
            async with self._guard:
                self._tasks[project_id] = task
            result = {
                "scheduled": True,
                "reason": reason or "runtime",
                "forced": bool(force),
                "project_id": project_id,
                "requested_at": _utc_iso_now(),
            }
        async with self._guard:
            self._last_result = result
        return dict(result)

    async def wait(self, project_id: int) -> Optional[Dict[str, Any]]:
        async with self._guard:
            task = self._tasks.get(project_id)
        if task is None:
            return None
        return await task

    async def _run(self, client: Any, project_id: int, reason: str) -> Dict[str, Any]:
        try:
            payload = await run_consolidation(client, project_id)
        except Exception as exc:
            logger.error(
                "scheduled_consolidation_failed",
                project_id=project_id,
                reason=reason,
                error=str(exc),
                exc_info=True,
            )
            payload = {"ok": False, "project_id": project_id, "error": str(exc)}
        payload = {**payload, "reason": reason, "finished_at": _utc_iso_now()}
        async with self._guard:
            self._recent.appendleft(payload)
        return payload

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            return {
                "check_interval_seconds": self._check_interval_seconds,
                "running_projects": sorted(
                    project_id for project_id, task in self._tasks.items() if not task.done()
                ),
                "last_result": dict(self._last_result),
                "recent_runs": list(self._recent),
            }

    async def shutdown(self) -> None:
        async with self._guard:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass


class RuntimeState:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or Settings()
        self.heating_queue = HeatingQueue(maxsize=settings.heating_queue_maxsize)
        self.consolidation = ConsolidationScheduler(
            interval_seconds=settings.consolidation_interval_seconds
        )

    async def ensure_started(self, client: Any) -> None:
        await self.heating_queue.ensure_started(client)

    async def on_session_start(self, client: Any, project_id: int) -> Dict[str, Any]:
        """Age temperatures and, when due, consolidate in the background."""
        decay = await decay_temperatures(client, project_id)
        scheduled = await self.consolidation.schedule(
            client, project_id, reason="session_start"
        )
        return {"decay": decay, "consolidation": scheduled}

    async def status(self) -> Dict[str, Any]:
        return {
            "heating_queue": await self.heating_queue.status(),
            "consolidation": await self.consolidation.status(),
        }

    async def shutdown(self) -> None:
        await self.heating_queue.shutdown()
        await self.consolidation.shutdown()
