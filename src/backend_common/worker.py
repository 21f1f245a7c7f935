"""Reusable periodic background worker for aiohttp services.

Usage::

    from backend_common.worker import BackgroundWorker, WorkerTask

    async def purge_deliveries(now: datetime) -> str | None:
        purged = await repo.delete_older_than(now - timedelta(days=30))
        return f"purged={purged}" if purged else None

    worker = BackgroundWorker(
        interval_seconds=60.0,
        tasks=[WorkerTask(name="delivery_purge", fn=purge_deliveries)],
    )

    # In create_app():
    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

# Receives current UTC time, returns an optional summary (logged when non-empty).
TaskFn = Callable[[datetime], Awaitable[str | None]]


@dataclass
class WorkerTask:
    """A named periodic task executed by :class:`BackgroundWorker`."""

    name: str
    fn: TaskFn


_WORKER_TASK_KEY = "__background_worker_task__"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BackgroundWorker:
    """In-process async worker that runs a list of tasks in a loop.

    Tasks are isolated from each other: one raising does not prevent the
    rest of the sweep. Lifecycle goes through :meth:`start` / :meth:`stop`,
    which match the ``app.on_startup`` / ``app.on_cleanup`` signatures.
    """

    interval_seconds: float = 60.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)
    clock: Callable[[], datetime] = _utcnow

    async def start(self, app: web.Application) -> None:
        app[_WORKER_TASK_KEY] = asyncio.create_task(self._loop())

    async def stop(self, app: web.Application) -> None:
        task = app.get(_WORKER_TASK_KEY)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self) -> dict[str, str | None]:
        """Run every task once; returns summaries keyed by task name (failed tasks omitted)."""
        now = self.clock()
        summaries: dict[str, str | None] = {}
        for task in self.tasks:
            try:
                summary = await task.fn(now)
            except Exception:
                logger.exception("background_task failed", task=task.name)
                continue
            summaries[task.name] = summary
            if summary:
                logger.info("background_task completed", task=task.name, summary=summary)
        return summaries

    async def _loop(self) -> None:
        logger.info(
            "background_worker started",
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
        except asyncio.CancelledError:
            logger.info("background_worker stopped")
            raise
