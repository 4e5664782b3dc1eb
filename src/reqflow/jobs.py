from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from reqflow.domain import Job, isoformat, utcnow
from reqflow.state.repository import Repository

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]
CompletionCallback = Callable[[Job], None]


class UnknownJobKind(ValueError):
    """Raised when a job is submitted for a kind with no handler."""


class JobQueue:
    """Background work on an asyncio.Queue with persisted job records.

    A job finishes exactly once. Completion callbacks and waiters are
    notified on that first finish only; later attempts to finish the same
    job are ignored.
    """

    def __init__(self, repository: Repository, *, workers: int = 2) -> None:
        self.repository = repository
        self.worker_count = max(1, workers)
        self._handlers: dict[str, JobHandler] = {}
        self._callbacks: list[CompletionCallback] = []
        self._queue: asyncio.Queue[int] = asyncio.Queue()
        self._events: dict[int, asyncio.Event] = {}
        self._workers: list[asyncio.Task[None]] = []

    def register(self, kind: str, handler: JobHandler) -> None:
        self._handlers[kind] = handler

    def add_done_callback(self, callback: CompletionCallback) -> None:
        self._callbacks.append(callback)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def _event_for(self, job_id: int) -> asyncio.Event:
        event = self._events.get(job_id)
        if event is None:
            event = asyncio.Event()
            self._events[job_id] = event
        return event

    def submit(self, kind: str, payload: dict[str, Any] | None = None) -> Job:
        if kind not in self._handlers:
            raise UnknownJobKind(f"No handler registered for job kind '{kind}'.")
        job = self.repository.create(Job, kind=kind, payload=dict(payload or {}))
        self._event_for(job.id)
        self._queue.put_nowait(job.id)
        logger.info("queued job %s (%s)", job.id, kind)
        return job

    def get(self, job_id: int) -> Job | None:
        return self.repository.find(Job, job_id)

    async def wait(self, job_id: int, timeout: float | None = None) -> Job:
        job = self.repository.get(Job, job_id)
        if job.done:
            return job
        await asyncio.wait_for(self._event_for(job_id).wait(), timeout=timeout)
        return self.repository.get(Job, job_id)

    def finish(
        self,
        job_id: int,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> bool:
        """Mark a job done; returns False when it had already finished."""
        job = self.repository.get(Job, job_id)
        if job.done:
            logger.debug("job %s already %s; ignoring second completion", job_id, job.status)
            return False
        job.status = "failed" if error is not None else "completed"
        job.result = result
        job.error = error
        job.updated_at = isoformat(utcnow())
        self.repository.save(job)
        event = self._events.pop(job_id, None)
        if event is not None:
            event.set()
        for callback in self._callbacks:
            try:
                callback(job)
            except Exception:
                logger.exception("job completion callback failed for job %s", job_id)
        return True

    async def _run(self, job_id: int) -> None:
        job = self.repository.find(Job, job_id)
        if job is None or job.done:
            return
        job.status = "running"
        job.attempts += 1
        job.updated_at = isoformat(utcnow())
        self.repository.save(job)
        handler = self._handlers[job.kind]
        try:
            result = await handler(dict(job.payload))
        except asyncio.CancelledError:
            self.finish(job_id, error="cancelled")
            raise
        except Exception as exc:
            logger.exception("job %s (%s) failed", job_id, job.kind)
            self.finish(job_id, error=str(exc) or type(exc).__name__)
            return
        self.finish(job_id, result=result)

    async def _worker(self, index: int) -> None:
        logger.debug("job worker %d started", index)
        while True:
            job_id = await self._queue.get()
            try:
                await self._run(job_id)
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"reqflow-job-worker-{index}")
            for index in range(self.worker_count)
        ]

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
