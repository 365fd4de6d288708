#!/usr/bin/env python3
"""
Deduplicating job queue.

One worker runs jobs strictly one at a time in submission order. Each job
has a key; while a key is queued or running, further pushes with the same
key are dropped and ``push`` returns False. A job finishes when its task
returns or raises; a failure is handed to that job's ``on_done`` and never
stops the jobs behind it. ``on_drain`` fires each time the queue runs dry.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional, Set, Union

from config import get_logger

logger = get_logger("job_queue")

Task = Callable[[Any], Union[Awaitable[Any], Any]]
DoneCallback = Callable[[Optional[BaseException]], Any]
DrainCallback = Callable[[], Any]


@dataclass
class Job:
    key: str
    payload: Any
    task: Task
    on_done: Optional[DoneCallback] = None


async def _call(callback: Callable[..., Any], *args) -> Any:
    result = callback(*args)
    if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
        result = await result
    return result


class DedupJobQueue:
    """Single-worker FIFO queue with at most one pending or running job per key."""

    def __init__(self, name: str = "jobs", on_drain: Optional[DrainCallback] = None):
        self.name = name
        self.on_drain = on_drain
        self._pending: Deque[Job] = deque()
        self._keys: Set[str] = set()
        self._running: Optional[Job] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self.completed = 0
        self.failed = 0

    def push(self, key: str, payload: Any, task: Task, on_done: Optional[DoneCallback] = None) -> bool:
        """Queue a job. Returns False if ``key`` is already queued or running."""
        if self._closed:
            raise RuntimeError(f"Job queue '{self.name}' is closed")
        if key in self._keys:
            logger.debug(f"[{self.name}] dropping duplicate job {key}")
            return False

        self._keys.add(key)
        self._pending.append(Job(key=key, payload=payload, task=task, on_done=on_done))
        self._idle.clear()
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.get_running_loop().create_task(self._worker())
        return True

    def job_count(self) -> int:
        """Jobs queued plus the one running, if any."""
        return len(self._pending) + (1 if self._running is not None else 0)

    def is_busy(self, key: str) -> bool:
        return key in self._keys

    @property
    def running_key(self) -> Optional[str]:
        return self._running.key if self._running else None

    @property
    def closed(self) -> bool:
        return self._closed

    async def join(self) -> None:
        """Wait until every known job has finished."""
        await self._idle.wait()

    async def close(self, cancel_pending: bool = False) -> None:
        """Stop accepting jobs and wait for the worker to finish.

        With ``cancel_pending`` the queued (not yet running) jobs are dropped.
        """
        self._closed = True
        if cancel_pending and self._pending:
            logger.info(f"[{self.name}] dropping {len(self._pending)} queued jobs")
            for job in self._pending:
                self._keys.discard(job.key)
            self._pending.clear()
        if self._worker_task is not None:
            await asyncio.gather(self._worker_task, return_exceptions=True)
        self._idle.set()

    async def _run_job(self, job: Job) -> None:
        error: Optional[BaseException] = None
        try:
            await _call(job.task, job.payload)
            self.completed += 1
        except asyncio.CancelledError as e:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                # The worker itself is being cancelled
                raise
            error = e
            self.failed += 1
            logger.error(f"[{self.name}] job {job.key} was cancelled")
        except Exception as e:
            error = e
            self.failed += 1
            logger.error(f"[{self.name}] job {job.key} failed: {e}")
        finally:
            self._keys.discard(job.key)
            self._running = None

        if job.on_done is not None:
            try:
                await _call(job.on_done, error)
            except Exception as e:
                logger.warning(f"[{self.name}] completion callback for {job.key} failed: {e}")

    async def _worker(self) -> None:
        try:
            while True:
                while self._pending:
                    job = self._pending.popleft()
                    self._running = job
                    await self._run_job(job)

                if self.on_drain is not None:
                    try:
                        await _call(self.on_drain)
                    except Exception as e:
                        logger.warning(f"[{self.name}] drain callback failed: {e}")

                # on_drain may have queued more work
                if not self._pending:
                    break
        finally:
            if self._pending:
                logger.warning(f"[{self.name}] worker stopped with {len(self._pending)} jobs queued")
                for job in self._pending:
                    self._keys.discard(job.key)
                self._pending.clear()
            self._idle.set()
